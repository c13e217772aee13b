# vfssamba.py - local SMB shares for VFShare
#
# ShareRegistry owns the persisted list of shared /Home directories and the
# shared secret. SambaPublisher turns the active list into smb.conf and keeps
# smbd and the wsdd2 announcer running exactly while at least one share is active.

from __future__ import annotations
import logging
import os
import re
import secrets
from typing import Any, Callable, Dict, List, Optional

from vfspaths import PathResolver
from vfsstore import Store
from vfswatch import ChangeFeed, FileChangeEvent
from vfsutils import (
    ANNOUNCE_SERVICE,
    COMMAND_TIMEOUT,
    HUMAN_NAME,
    SMB_CONF,
    SMB_SERVICE,
    SMB_USER,
    CommandResult,
    OperationNotAllowed,
    SambaError,
    ShareAlreadyExists,
    is_same_or_below,
    run_command,
)

log = logging.getLogger("vfshare.samba")

SHARES_KEY = "files.shares"
SECRET_KEY = "files.sharedSecret"

# Characters smb.conf / SMB clients refuse in share names
_FORBIDDEN_SHARE_CHARS = re.compile(r'[\\/\[\]:|<>+=;,*?"\x00-\x1f]')
# Section names Samba gives a meaning of its own
_RESERVED_SHARE_NAMES = {"global", "homes", "printers", "print$", "ipc$"}

Runner = Callable[..., CommandResult]

# ------------------------- Naming -------------------------

def share_name_for(vpath: str) -> str:
    """Last path segment, made safe for smb.conf."""
    name = vpath.rstrip("/").rsplit("/", 1)[-1]
    name = _FORBIDDEN_SHARE_CHARS.sub("_", name).strip()
    return name or "share"


def unique_share_name(name: str, taken: List[str]) -> str:
    """name, name (2), name (3), ... compared case-insensitively like SMB does."""
    used = {t.casefold() for t in taken} | _RESERVED_SHARE_NAMES
    candidate = name
    n = 2
    while candidate.casefold() in used:
        candidate = f"{name} ({n})"
        n += 1
    return candidate

# ------------------------- Publisher -------------------------

_GLOBAL_SECTION = """\
[global]
   server string = {human}
   server role = standalone server
   workgroup = WORKGROUP
   security = user
   map to guest = never
   restrict anonymous = 2
   server min protocol = SMB2
   follow symlinks = no
   wide links = no
   unix extensions = no
   load printers = no
   printing = bsd
   printcap name = /dev/null
   disable spoolss = yes
"""

_SHARE_SECTION = """\
[{sharename}]
   path = {path}
   browseable = yes
   read only = no
   guest ok = no
   valid users = {user}
   force user = {user}
   create mask = 0664
   directory mask = 0775
"""


class SambaPublisher:
    def __init__(self, conf_path: str = SMB_CONF, user: str = SMB_USER,
                 run: Runner = run_command, timeout: float = COMMAND_TIMEOUT):
        self.conf_path = conf_path
        self.user = user
        self.run = run
        self.timeout = timeout
        self._running: Optional[bool] = None    # unknown until first apply
        self._user_ready = False

    @property
    def running(self) -> bool:
        return bool(self._running)

    def render(self, shares: List[Dict[str, str]]) -> str:
        out = [f"# Generated by {HUMAN_NAME}; local edits are overwritten.\n",
               _GLOBAL_SECTION.format(human=HUMAN_NAME)]
        for share in shares:
            out.append("\n")
            out.append(_SHARE_SECTION.format(sharename=share["sharename"],
                                             path=share["realPath"], user=self.user))
        return "".join(out)

    def write_config(self, shares: List[Dict[str, str]]) -> None:
        text = self.render(shares)
        directory = os.path.dirname(self.conf_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = self.conf_path + ".tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, self.conf_path)
        except OSError as e:
            raise SambaError(f"cannot write {self.conf_path}: {e}")

    def _must(self, cmd: List[str], **kwargs) -> CommandResult:
        res = self.run(cmd, timeout=self.timeout, **kwargs)
        if not res.ok:
            raise SambaError(f"{' '.join(cmd[:3])} failed ({res.returncode}): {res.output.strip()}")
        return res

    def ensure_user(self, password: str) -> None:
        if self._user_ready:
            return
        self._must(["smbpasswd", "-a", "-s", self.user], input=f"{password}\n{password}\n")
        self._user_ready = True
        log.info("[samba] credentials set for %s", self.user)

    def apply(self, shares: List[Dict[str, str]], password: str) -> None:
        """
        Publish `shares` (each with sharename and realPath). Returns once the
        daemons reflect the new state.
        """
        self.write_config(shares)
        if shares:
            self.ensure_user(password)
            if self._running:
                self._must(["systemctl", "reload", SMB_SERVICE])
                log.info("[samba] reloaded with %d share(s)", len(shares))
                return
            self._must(["systemctl", "start", SMB_SERVICE])
            if self._running is None:
                # may have been left running by a previous process
                self._must(["systemctl", "reload", SMB_SERVICE])
            self._must(["systemctl", "start", ANNOUNCE_SERVICE])
            self._running = True
            log.info("[samba] started with %d share(s)", len(shares))
        elif self._running or self._running is None:
            self.stop()

    def stop(self) -> None:
        self._must(["systemctl", "stop", ANNOUNCE_SERVICE])
        self._must(["systemctl", "stop", SMB_SERVICE])
        self._running = False
        log.info("[samba] stopped, no active shares")

# ------------------------- Registry -------------------------

class ShareRegistry:
    def __init__(self, paths: PathResolver, store: Store, publisher: SambaPublisher):
        self.paths = paths
        self.store = store
        self.publisher = publisher
        self._unsubscribe: Optional[Callable[[], None]] = None

    def _get(self) -> List[Dict[str, Any]]:
        return self.store.get(SHARES_KEY) or []

    def _active(self, shares: List[Dict[str, Any]]) -> List[Dict[str, str]]:
        active = []
        for share in shares:
            try:
                real = self.paths.resolve(share["path"])
            except OperationNotAllowed:
                continue
            if os.path.isdir(real):
                active.append({"sharename": share["sharename"], "realPath": real})
        return active

    def _publish(self, shares: List[Dict[str, Any]], previous: List[Dict[str, Any]]) -> None:
        try:
            self.publisher.apply(self._active(shares), self.shared_secret())
        except Exception:
            log.error("[samba] publishing failed, restoring previous configuration")
            try:
                self.publisher.apply(self._active(previous), self.shared_secret())
            except Exception as e:
                log.error("[samba] restoring previous configuration failed: %s", e)
            raise

    # ---- public -----------------------------------------------------------

    def list(self) -> List[Dict[str, Any]]:
        out = []
        for share in self._get():
            if self.paths.is_directory(share["path"]):
                out.append({"path": share["path"], "name": share["name"], "sharename": share["sharename"]})
        return out

    def add_share(self, vpath: str) -> str:
        vpath = self.paths.normalize(vpath)
        real = self.paths.check(vpath, "share")
        if not os.path.isdir(real):
            raise OperationNotAllowed()

        with self.store.write_lock(SHARES_KEY) as tx:
            shares = tx.get([])
            if any(share["path"] == vpath for share in shares):
                raise ShareAlreadyExists()
            name = share_name_for(vpath)
            sharename = unique_share_name(name, [share["sharename"] for share in shares])
            updated = shares + [{"path": vpath, "name": name, "sharename": sharename}]
            self._publish(updated, shares)
            tx.set(updated)
        log.info("[samba] shared %s as '%s'", vpath, sharename)
        return sharename

    def remove_share(self, vpath: str) -> bool:
        vpath = self.paths.normalize(vpath)
        with self.store.write_lock(SHARES_KEY) as tx:
            shares = tx.get([])
            updated = [share for share in shares if share["path"] != vpath]
            if len(updated) == len(shares):
                return False
            self._publish(updated, shares)
            tx.set(updated)
        log.info("[samba] unshared %s", vpath)
        return True

    def shared_secret(self) -> str:
        secret = self.store.get(SECRET_KEY)
        if secret:
            return secret
        with self.store.write_lock(SECRET_KEY) as tx:
            secret = tx.get()
            if not secret:
                secret = secrets.token_hex(16)
                tx.set(secret)
        return secret

    def watched_paths(self) -> List[str]:
        out = []
        for share in self._get():
            try:
                out.append(self.paths.resolve(share["path"]))
            except OperationNotAllowed:
                continue
        return out

    # ---- lifecycle & events ------------------------------------------------

    def handle_file_change(self, event: FileChangeEvent) -> None:
        # A rename shows up as the old path going away; the share is dropped,
        # not moved along with it.
        if not event.removes_path:
            return
        try:
            deleted = self.paths.to_virtual(event.path)
        except OperationNotAllowed:
            return
        for share in self._get():
            if not is_same_or_below(share["path"], deleted):
                continue
            try:
                self.remove_share(share["path"])
            except Exception:
                log.exception("[samba] could not drop share %s", share["path"])

    def start(self, feed: ChangeFeed) -> None:
        self._unsubscribe = feed.subscribe(self.handle_file_change)
        try:
            with self.store.write_lock(SHARES_KEY) as tx:
                self.publisher.apply(self._active(tx.get([])), self.shared_secret())
        except SambaError as e:
            # keep serving the API; the next add/remove retries the daemons
            log.error("[samba] initial sync failed: %s", e)

    def stop(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self.publisher.running:
            self.publisher.stop()
