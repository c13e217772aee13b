# vfsnetwork.py - remote SMB shares mounted under /Network for VFShare
#
# Each record lives at /Network/<host>/<share>. Mount state is never stored:
# it is read from the mount table when asked. A background loop re-mounts
# records whose mount dropped (host rebooted, share removed and re-added, or
# this process restarted), and stop() unmounts everything again.

from __future__ import annotations
import logging
import os
import threading
from typing import Any, Callable, Dict, List, Optional

import vfsdiscover
from vfspaths import PathResolver
from vfsstore import Store
from vfsutils import (
    MOUNT_TIMEOUT,
    MOUNTS_FILE,
    PROBE_TIMEOUT,
    SHARE_WATCH_INTERVAL,
    CommandResult,
    CredentialError,
    InvalidArgument,
    MountError,
    NetworkShareAlreadyExists,
    NetworkShareNotFound,
    NetworkUnreachable,
    OperationNotAllowed,
    VfsError,
    is_mount_point,
    remove_empty_dirs,
    run_command,
)

log = logging.getLogger("vfshare.network")

NETWORK_KEY = "files.networkShares"

# mount.cifs failure text -> error class
_CREDENTIAL_HINTS = ("error(13)", "Permission denied", "error(1)")
_UNREACHABLE_HINTS = (
    "error(112)", "Host is down",
    "error(113)", "No route to host",
    "error(110)", "timed out",
    "error(111)", "Connection refused",
    "error(101)", "Network is unreachable",
    "could not resolve address", "Unable to find suitable address",
)


def _valid_segment(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    if value in (".", "..") or value != value.strip():
        return False
    return not any(ch in value for ch in ("/", "\\", "\x00"))


def mount_error_for(res: CommandResult, source: str) -> VfsError:
    out = res.output.strip()
    if any(hint in out for hint in _CREDENTIAL_HINTS):
        return CredentialError(f"{source}: authentication failed")
    if any(hint in out for hint in _UNREACHABLE_HINTS):
        return NetworkUnreachable(f"{source}: {out[:200]}")
    return MountError(f"{source}: {out[:200] or 'mount failed'}")


class NetworkStorageManager:
    def __init__(
        self,
        paths: PathResolver,
        store: Store,
        run: Callable[..., CommandResult] = run_command,
        mounts_file: str = MOUNTS_FILE,
        share_watch_interval: float = SHARE_WATCH_INTERVAL,
        mount_timeout: float = MOUNT_TIMEOUT,
        probe_timeout: float = PROBE_TIMEOUT,
    ):
        self.paths = paths
        self.store = store
        self.run = run
        self.mounts_file = mounts_file
        # read on every pass, so it may be changed while running
        self.share_watch_interval = share_watch_interval
        self.mount_timeout = mount_timeout
        self.probe_timeout = probe_timeout
        self._stop_evt = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._probes: Dict[str, threading.Thread] = {}
        self._probes_lock = threading.Lock()

    # ---- helpers ---------------------------------------------------------

    @property
    def root(self) -> str:
        return self.paths.root("Network")

    def _get(self) -> List[Dict[str, str]]:
        return self.store.get(NETWORK_KEY) or []

    def _real(self, record: Dict[str, str]) -> str:
        return os.path.join(self.root, record["host"], record["share"])

    def is_mounted(self, real: str) -> bool:
        return is_mount_point(real, self.mounts_file)

    def _probe(self, real: str) -> bool:
        """List the mount in a helper thread; a dead CIFS mount may block for minutes."""
        with self._probes_lock:
            previous = self._probes.get(real)
            if previous is not None and previous.is_alive():
                # at most one stuck listing per mount
                log.info("[network] %s still not answering the previous probe", real)
                return False
            outcome: Dict[str, Any] = {}

            def _ls() -> None:
                try:
                    os.listdir(real)
                    outcome["ok"] = True
                except OSError as e:
                    outcome["error"] = e

            t = threading.Thread(target=_ls, name="vfshare-probe", daemon=True)
            self._probes[real] = t
            t.start()
        t.join(self.probe_timeout)
        if not t.is_alive():
            with self._probes_lock:
                if self._probes.get(real) is t:
                    del self._probes[real]
        if "error" in outcome:
            log.info("[network] %s unhealthy: %s", real, outcome["error"])
        return bool(outcome.get("ok"))

    def is_healthy(self, real: str) -> bool:
        return self.is_mounted(real) and self._probe(real)

    def _mount(self, record: Dict[str, str], real: str) -> None:
        source = f"//{record['host']}/{record['share']}"
        options = ",".join([
            f"username={record['username']}",
            f"uid={os.getuid()}",
            f"gid={os.getgid()}",
            "iocharset=utf8",
            "file_mode=0664",
            "dir_mode=0775",
        ])
        # mount.cifs takes the password from PASSWD so it never shows up in ps
        res = self.run(["mount", "-t", "cifs", source, real, "-o", options],
                       timeout=self.mount_timeout, env={"PASSWD": record["password"]})
        if not res.ok:
            raise mount_error_for(res, source)
        log.info("[network] mounted %s at %s", source, real)

    def _unmount(self, real: str) -> None:
        res = self.run(["umount", real], timeout=self.mount_timeout)
        if res.ok:
            return
        # busy or dead server: detach now, clean up when the kernel can
        lazy = self.run(["umount", "-l", real], timeout=self.mount_timeout)
        if not lazy.ok:
            raise MountError(f"cannot unmount {real}: {lazy.output.strip()[:200]}")

    def _teardown(self, real: str) -> None:
        """Best-effort unmount followed by removal of the now empty directories."""
        try:
            if self.is_mounted(real):
                self._unmount(real)
        except VfsError as e:
            log.warning("[network] unmount of %s failed: %s", real, e)
        remove_empty_dirs(real, self.root)

    # ---- discovery (read-only) ----------------------------------------------

    def discover_servers(self) -> List[str]:
        return vfsdiscover.discover_servers()

    def discover_shares(self, host: str, username: str, password: str) -> List[str]:
        if not _valid_segment(host):
            raise InvalidArgument("invalid host")
        return vfsdiscover.discover_shares(host, username, password, run=self.run)

    def is_server_own_device(self, address: str) -> bool:
        return vfsdiscover.is_server_own_device(address)

    # ---- records -------------------------------------------------------------

    def list(self) -> List[Dict[str, Any]]:
        return [{
            "host": rec["host"],
            "share": rec["share"],
            "mountPath": rec["mountPath"],
            "isMounted": self.is_mounted(self._real(rec)),
        } for rec in self._get()]

    def add_network_share(self, host: str, share: str, username: str, password: str) -> str:
        if not _valid_segment(host):
            raise InvalidArgument("invalid host")
        if not _valid_segment(share):
            raise InvalidArgument("invalid share")
        if not isinstance(username, str) or "," in username:
            raise InvalidArgument("invalid username")
        if not isinstance(password, str):
            raise InvalidArgument("invalid password")

        mount_path = f"/Network/{host}/{share}"
        real = self.paths.resolve(mount_path)
        record = {"host": host, "share": share, "mountPath": mount_path,
                  "username": username, "password": password}

        mounted = False
        try:
            with self.store.write_lock(NETWORK_KEY) as tx:
                records = tx.get([])
                if any(rec["mountPath"] == mount_path for rec in records):
                    raise NetworkShareAlreadyExists(f"Network share {mount_path} already exists")
                os.makedirs(real, exist_ok=True)
                if self.is_mounted(real):
                    self._unmount(real)
                self._mount(record, real)
                mounted = True
                tx.set(records + [record])
        except NetworkShareAlreadyExists:
            raise
        except Exception:
            if mounted:
                self._teardown(real)
            else:
                remove_empty_dirs(real, self.root)
            raise
        return mount_path

    def remove_network_share(self, mount_path: str) -> bool:
        try:
            mount_path = self.paths.normalize(mount_path)
        except OperationNotAllowed:
            raise NetworkShareNotFound(f"Share with mount path {mount_path} not found") from None
        with self.store.write_lock(NETWORK_KEY) as tx:
            records = tx.get([])
            match = [rec for rec in records if rec["mountPath"] == mount_path]
            if not match:
                raise NetworkShareNotFound(f"Share with mount path {mount_path} not found")
            self._teardown(self._real(match[0]))
            tx.set([rec for rec in records if rec["mountPath"] != mount_path])
        log.info("[network] removed %s", mount_path)
        return True

    # ---- reconciliation ------------------------------------------------------

    def reconcile(self, mount_path: str) -> bool:
        """Re-mount one record if its mount is gone or dead; True if it mounted."""
        with self.store.write_lock(NETWORK_KEY) as tx:
            if self._stop_evt.is_set():
                return False     # stop() already unmounted everything
            match = [rec for rec in tx.get([]) if rec["mountPath"] == mount_path]
            if not match:
                return False     # removed while we were waiting for the lock
            record = match[0]
            real = self._real(record)
            if self.is_healthy(real):
                return False
            log.info("[network] %s is not mounted, remounting", mount_path)
            if self.is_mounted(real):
                self._unmount(real)
            os.makedirs(real, exist_ok=True)
            self._mount(record, real)
            # a listing stuck on the detached mount says nothing about the new one
            with self._probes_lock:
                self._probes.pop(real, None)
            return True

    def reconcile_once(self) -> int:
        remounted = 0
        for rec in self._get():
            if self._stop_evt.is_set():
                break
            try:
                if self.reconcile(rec["mountPath"]):
                    remounted += 1
            except Exception as e:
                log.warning("[network] remount of %s failed, retrying next pass: %s", rec["mountPath"], e)
        return remounted

    def _watch_loop(self) -> None:
        while not self._stop_evt.is_set():
            self.reconcile_once()
            self._stop_evt.wait(self.share_watch_interval)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._watch_loop, name="vfshare-share-watch", daemon=True)
        self._thread.start()
        log.info("[network] watching %d share(s) every %ss", len(self._get()), self.share_watch_interval)

    def stop(self) -> None:
        """End the watch loop and unmount every record; they come back on the next start()."""
        self._stop_evt.set()
        if self._thread:
            self._thread.join(timeout=self.mount_timeout + self.probe_timeout + 1)
            self._thread = None
        with self.store.write_lock(NETWORK_KEY) as tx:
            for rec in tx.get([]):
                self._teardown(self._real(rec))
        log.info("[network] unmounted all shares")
