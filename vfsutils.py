# vfsutils.py - shared constants, errors & helpers for VFShare
# Configuration is plain module constants with VFSHARE_* environment overrides;
# components take explicit arguments that default to these.

from __future__ import annotations
import os
import subprocess
from typing import Dict, List, Optional, Sequence

# ------------------------- Public constants -------------------------

HUMAN_NAME = "VFShare"
SERVICE_ID = "vfshare"

DATA_DIR = os.environ.get("VFSHARE_DATA_DIR", os.path.expanduser("~/.vfshare"))
STORE_FILENAME = "store.json"

API_PORT = int(os.environ.get("VFSHARE_PORT", "8790"))
API_HOST = os.environ.get("VFSHARE_HOST", "0.0.0.0")
API_TOKEN = os.environ.get("VFSHARE_TOKEN", "")

# Base name -> directory under DATA_DIR
BASE_DIRS: Dict[str, str] = {
    "Home": "home",
    "Apps": "app-data",
    "External": "external",
    "Network": "network",
}

# Samba
SMB_CONF = os.environ.get("VFSHARE_SMB_CONF", "/etc/samba/smb.conf")
SMB_USER = os.environ.get("VFSHARE_SMB_USER", SERVICE_ID)
SMB_SERVICE = "smbd"
ANNOUNCE_SERVICE = "wsdd2"

# Network storage
MOUNTS_FILE = os.environ.get("VFSHARE_MOUNTS_FILE", "/proc/self/mounts")
SHARE_WATCH_INTERVAL = float(os.environ.get("VFSHARE_SHARE_WATCH_INTERVAL", "60"))
PATH_POLL_INTERVAL = float(os.environ.get("VFSHARE_PATH_POLL_INTERVAL", "5"))

# Timeouts (seconds)
COMMAND_TIMEOUT = 30
MOUNT_TIMEOUT = 20
PROBE_TIMEOUT = 5
DISCOVERY_TIMEOUT = 3

# ------------------------------ Errors ------------------------------

class VfsError(Exception):
    """Base error; `status` is the HTTP status the RPC layer answers with."""
    status = 500
    code = "[internal-error]"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.code)


class OperationNotAllowed(VfsError):
    status = 403
    code = "[operation-not-allowed]"


class InvalidArgument(VfsError):
    status = 400
    code = "[invalid-argument]"


class ShareAlreadyExists(VfsError):
    status = 409
    code = "[share-already-exists]"


class NetworkShareAlreadyExists(VfsError):
    status = 409
    code = "[network-share-already-exists]"


class NetworkShareNotFound(VfsError):
    status = 404
    code = "[network-share-not-found]"


class CredentialError(VfsError):
    # 401 is reserved for the API token
    status = 403
    code = "[invalid-credentials]"


class NetworkUnreachable(VfsError):
    status = 504
    code = "[network-unreachable]"


class CommandTimeout(NetworkUnreachable):
    code = "[timeout]"


class MountError(VfsError):
    status = 502
    code = "[mount-failed]"


class SambaError(VfsError):
    status = 500
    code = "[samba-failed]"

# ------------------------- Command runner --------------------------

class CommandResult:
    __slots__ = ("args", "returncode", "stdout", "stderr")

    def __init__(self, args: Sequence[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.args = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return (self.stdout or "") + (self.stderr or "")

    def __repr__(self) -> str:
        return f"CommandResult({self.args[0] if self.args else '?'}, rc={self.returncode})"


def run_command(
    cmd: Sequence[str],
    timeout: float = COMMAND_TIMEOUT,
    input: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
) -> CommandResult:
    """
    Run a command and capture its output. A missing binary is reported as
    returncode 127 like a shell would; a timeout raises CommandTimeout.
    Extra `env` entries are layered over the current environment.
    """
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)
    try:
        proc = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input,
            env=full_env,
        )
    except subprocess.TimeoutExpired:
        raise CommandTimeout(f"{cmd[0]} timed out after {timeout}s")
    except FileNotFoundError:
        return CommandResult(cmd, 127, "", f"{cmd[0]}: command not found")
    return CommandResult(cmd, proc.returncode, proc.stdout, proc.stderr)

# -------------------------- Mount table ---------------------------

def _unescape_mount_field(field: str) -> str:
    """Undo the octal escapes (\\040 etc.) the kernel uses in /proc/mounts."""
    out = []
    i = 0
    while i < len(field):
        ch = field[i]
        octal = field[i + 1:i + 4]
        if ch == "\\" and len(octal) == 3 and octal.isdigit():
            out.append(chr(int(octal, 8)))
            i += 4
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def escape_mount_field(field: str) -> str:
    """Inverse of _unescape_mount_field for the characters the kernel escapes."""
    return (field.replace("\\", "\\134").replace(" ", "\\040")
            .replace("\t", "\\011").replace("\n", "\\012"))


def read_mount_points(mounts_file: str = MOUNTS_FILE) -> List[str]:
    """Return the canonical mount points listed in a mounts table."""
    points: List[str] = []
    try:
        with open(mounts_file, "r", encoding="utf-8") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2:
                    points.append(_unescape_mount_field(parts[1]))
    except FileNotFoundError:
        pass
    return points


def is_mount_point(path: str, mounts_file: str = MOUNTS_FILE) -> bool:
    # the kernel lists the symlink-resolved mount point
    return os.path.realpath(path) in read_mount_points(mounts_file)

# ------------------------- Path utilities --------------------------

def is_within(base: str, path: str) -> bool:
    """True if `path` equals `base` or lives below it (both taken as given)."""
    try:
        return os.path.commonpath([base, path]) == base
    except ValueError:
        return False


def is_same_or_below(vpath: str, ancestor: str) -> bool:
    """Virtual-path prefix test on segment boundaries."""
    ancestor = ancestor.rstrip("/") or "/"
    if vpath == ancestor:
        return True
    return vpath.startswith(ancestor if ancestor.endswith("/") else ancestor + "/")


def remove_empty_dirs(path: str, stop_at: str) -> None:
    """
    rmdir `path` and then its parents while they are empty, never touching
    `stop_at` or anything above it.
    """
    stop = os.path.abspath(stop_at)
    cur = os.path.abspath(path)
    while cur != stop and is_within(stop, cur):
        try:
            os.rmdir(cur)
        except FileNotFoundError:
            pass
        except OSError:
            return
        cur = os.path.dirname(cur)
