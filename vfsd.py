#!/usr/bin/env python3
# vfsd.py - VFShare daemon: service wiring + HTTP RPC surface
#
# Queries are GET /api/<procedure>, mutations POST /api/<procedure> with a JSON
# body. Every answer is {"result": ...} or {"error": "..."}.
#
#   python3 vfsd.py --data-dir /data --port 8790
#   python3 vfsd.py --token s3cret -v

from __future__ import annotations
import argparse
import atexit
import hmac
import logging
import os
import signal
import socket
import sys
import threading
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request

from vfsfavorites import FavoritesIndex
from vfsnetwork import NetworkStorageManager
from vfspaths import PathResolver
from vfssamba import SambaPublisher, ShareRegistry
from vfsstore import Store
from vfswatch import ChangeFeed, PathPoller
from vfsutils import (
    API_HOST,
    API_PORT,
    API_TOKEN,
    DATA_DIR,
    HUMAN_NAME,
    MOUNTS_FILE,
    PATH_POLL_INTERVAL,
    SERVICE_ID,
    SHARE_WATCH_INTERVAL,
    SMB_CONF,
    SMB_USER,
    STORE_FILENAME,
    InvalidArgument,
    VfsError,
    run_command,
)

log = logging.getLogger("vfshare.daemon")

# -------------------- Service wiring --------------------

class Files:
    """Owns every component and their start/stop order."""

    def __init__(
        self,
        data_dir: str = DATA_DIR,
        run=run_command,
        smb_conf: str = SMB_CONF,
        smb_user: str = SMB_USER,
        mounts_file: str = MOUNTS_FILE,
        share_watch_interval: float = SHARE_WATCH_INTERVAL,
        poll_interval: float = PATH_POLL_INTERVAL,
    ):
        self.data_dir = os.path.abspath(data_dir)
        self.paths = PathResolver(self.data_dir)
        self.store = Store(os.path.join(self.data_dir, STORE_FILENAME))
        self.feed = ChangeFeed()
        self.publisher = SambaPublisher(smb_conf, user=smb_user, run=run)
        self.shares = ShareRegistry(self.paths, self.store, self.publisher)
        self.network = NetworkStorageManager(
            self.paths, self.store, run=run,
            mounts_file=mounts_file, share_watch_interval=share_watch_interval,
        )
        self.favorites = FavoritesIndex(self.paths, self.store)
        self.poller = PathPoller(self.feed, self._watched_paths, interval=poll_interval)
        self._state_lock = threading.Lock()
        self._running = False

    def _watched_paths(self) -> List[str]:
        return self.shares.watched_paths() + self.favorites.watched_paths()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._state_lock:
            if self._running:
                return
            log.info("[vfsd] starting (data=%s)", self.data_dir)
            self.paths.ensure_roots()
            self.feed.start()
            self.shares.start(self.feed)
            self.favorites.start(self.feed)
            self.poller.start()
            self.network.start()
            self._running = True

    def stop(self) -> None:
        with self._state_lock:
            if not self._running:
                return
            log.info("[vfsd] stopping")
            self.poller.stop()
            self.network.stop()
            self.favorites.stop()
            try:
                self.shares.stop()
            except VfsError as e:
                log.error("[vfsd] stopping samba failed: %s", e)
            self.feed.stop()
            self._running = False

# -------------------- Flask app --------------------

def _body() -> Dict[str, Any]:
    if request.method == "GET":
        return request.args.to_dict()
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidArgument("expected a JSON object")
    return data


def _field(data: Dict[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str):
        raise InvalidArgument(f"missing '{name}'")
    return value


def _ok(result: Any):
    return jsonify({"result": result})


def create_app(files: Files, token: Optional[str] = API_TOKEN) -> Flask:
    app = Flask(__name__)
    app.json.sort_keys = False

    @app.before_request
    def _check_token():
        if not token or request.path == "/healthz":
            return None
        supplied = request.headers.get("Authorization", "")
        if not hmac.compare_digest(supplied.encode("utf-8"), f"Bearer {token}".encode("utf-8")):
            return jsonify({"error": "Invalid token"}), 401
        return None

    @app.errorhandler(VfsError)
    def _vfs_error(e: VfsError):
        if e.status >= 500:
            log.error("[vfsd] %s failed: %s", request.path, e)
        return jsonify({"error": str(e)}), e.status

    @app.route("/healthz", methods=["GET"])
    def healthz():
        return jsonify({"ok": True, "service": SERVICE_ID, "name": HUMAN_NAME,
                        "hostname": socket.gethostname()})

    # ---- shares ----

    @app.route("/api/shares.list", methods=["GET"])
    def shares_list():
        return _ok(files.shares.list())

    @app.route("/api/shares.add", methods=["POST"])
    def shares_add():
        return _ok(files.shares.add_share(_field(_body(), "path")))

    @app.route("/api/shares.remove", methods=["POST"])
    def shares_remove():
        return _ok(files.shares.remove_share(_field(_body(), "path")))

    @app.route("/api/shares.password", methods=["GET"])
    def shares_password():
        return _ok(files.shares.shared_secret())

    # ---- network ----

    @app.route("/api/network.list", methods=["GET"])
    def network_list():
        return _ok(files.network.list())

    @app.route("/api/network.discoverServers", methods=["GET"])
    def network_discover_servers():
        return _ok(files.network.discover_servers())

    @app.route("/api/network.discoverShares", methods=["POST"])
    def network_discover_shares():
        data = _body()
        return _ok(files.network.discover_shares(
            _field(data, "host"), _field(data, "username"), _field(data, "password")))

    @app.route("/api/network.isServerOwnDevice", methods=["GET"])
    def network_is_server_own_device():
        return _ok(files.network.is_server_own_device(_field(_body(), "address")))

    @app.route("/api/network.add", methods=["POST"])
    def network_add():
        data = _body()
        return _ok(files.network.add_network_share(
            _field(data, "host"), _field(data, "share"),
            _field(data, "username"), _field(data, "password")))

    @app.route("/api/network.remove", methods=["POST"])
    def network_remove():
        return _ok(files.network.remove_network_share(_field(_body(), "mountPath")))

    # ---- favorites ----

    @app.route("/api/favorites.list", methods=["GET"])
    def favorites_list():
        return _ok(files.favorites.list())

    @app.route("/api/favorites.add", methods=["POST"])
    def favorites_add():
        return _ok(files.favorites.add(_field(_body(), "path")))

    @app.route("/api/favorites.remove", methods=["POST"])
    def favorites_remove():
        return _ok(files.favorites.remove(_field(_body(), "path")))

    return app

# -------------------- Server --------------------

def serve(files: Files, host: str = API_HOST, port: int = API_PORT, token: Optional[str] = API_TOKEN) -> None:
    """Start everything, serve until SIGINT/SIGTERM, then shut down in order."""
    from werkzeug.serving import make_server

    app = create_app(files, token=token)
    httpd = make_server(host, port, app, threaded=True)
    files.start()
    atexit.register(files.stop)

    done = threading.Event()

    def _on_signal(signum, _frame):
        log.info("[vfsd] signal %d received", signum)
        done.set()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    server_thread = threading.Thread(target=httpd.serve_forever, name="vfshare-http", daemon=True)
    server_thread.start()
    log.info("[vfsd] HTTP listening on %s:%d", host, httpd.server_port)
    try:
        while not done.wait(1.0):
            pass
    finally:
        httpd.shutdown()
        files.stop()


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="vfsd", description=f"{HUMAN_NAME} storage daemon")
    ap.add_argument("--data-dir", default=DATA_DIR, help="directory holding home/, app-data/, external/, network/")
    ap.add_argument("--host", default=API_HOST, help="API bind address")
    ap.add_argument("--port", type=int, default=API_PORT, help="API port")
    ap.add_argument("--token", default=API_TOKEN, help="require 'Authorization: Bearer <token>'")
    ap.add_argument("--smb-conf", default=SMB_CONF, help="generated samba config path")
    ap.add_argument("--smb-user", default=SMB_USER, help="samba account used by every share")
    ap.add_argument("--share-watch-interval", type=float, default=SHARE_WATCH_INTERVAL,
                    help="seconds between network mount health checks")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    files = Files(
        data_dir=args.data_dir,
        smb_conf=args.smb_conf,
        smb_user=args.smb_user,
        share_watch_interval=args.share_watch_interval,
    )
    try:
        serve(files, host=args.host, port=args.port, token=args.token)
    except OSError as e:
        log.error("[vfsd] cannot start: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
