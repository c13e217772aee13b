import os
import threading
import time

import pytest

from vfsd import Files, create_app
from vfsfavorites import FavoritesIndex
from vfsnetwork import NetworkStorageManager
from vfspaths import PathResolver
from vfssamba import SambaPublisher, ShareRegistry
from vfsstore import Store
from vfsutils import CommandResult, escape_mount_field

TOKEN = "test-token"


class Gate:
    """Holds a matching command until released; `entered` is set once one arrives."""

    def __init__(self):
        self.entered = threading.Event()
        self.released = threading.Event()

    def release(self):
        self.released.set()


class FakeRunner:
    """
    Stands in for systemctl/smbpasswd/mount/umount/smbclient.
    mount and umount edit a fake mount table so is_mount_point() sees them;
    like the kernel, the table holds symlink-resolved mount points.
    """

    def __init__(self, mounts_file):
        self.mounts_file = mounts_file
        self.calls = []
        self.services = {}
        self.remote_shares = {("localhost", "docs"), ("nas.local", "Media"), ("localhost", "my files")}
        self.failures = {}
        self.gates = {}
        self.smbclient_result = CommandResult(["smbclient"], 0, "", "")
        self._table_lock = threading.Lock()

    def programs(self):
        return [cmd[0] for cmd, _env in self.calls]

    def commands(self, program):
        return [cmd for cmd, _env in self.calls if cmd[0] == program]

    def hold(self, *prefix):
        gate = self.gates[tuple(prefix)] = Gate()
        return gate

    # ---- mount table ----

    def _lines(self):
        with open(self.mounts_file, encoding="utf-8") as f:
            return f.readlines()

    def _write(self, lines):
        with open(self.mounts_file, "w", encoding="utf-8") as f:
            f.writelines(lines)

    def mounted_sources(self):
        return [ln.split()[0] for ln in self._lines()]

    def drop_mount(self, target):
        """Forget a mount behind the manager's back, like a reboot of the remote host."""
        field = escape_mount_field(os.path.realpath(target))
        with self._table_lock:
            self._write([ln for ln in self._lines() if ln.split()[1] != field])

    # ---- dispatch ----

    def __call__(self, cmd, timeout=None, input=None, env=None):
        cmd = list(cmd)
        self.calls.append((cmd, env))
        for prefix, gate in list(self.gates.items()):
            if tuple(cmd[:len(prefix)]) == prefix:
                gate.entered.set()
                gate.released.wait(10)
        prog = cmd[0]
        if prog in self.failures:
            rc, err = self.failures[prog]
            return CommandResult(cmd, rc, "", err)
        if prog == "systemctl":
            action, unit = cmd[1], cmd[2]
            if action == "start":
                self.services[unit] = True
            elif action == "stop":
                self.services[unit] = False
            return CommandResult(cmd, 0)
        if prog == "smbpasswd":
            return CommandResult(cmd, 0, "Added user.\n")
        if prog == "mount":
            source, target = cmd[3], cmd[4]
            host, share = source[2:].split("/", 1)
            if (host, share) not in self.remote_shares:
                return CommandResult(cmd, 32, "", "mount error(112): Host is down")
            with self._table_lock:
                self._write(self._lines() + [
                    f"{escape_mount_field(source)} {escape_mount_field(os.path.realpath(target))} cifs rw 0 0\n"])
            return CommandResult(cmd, 0)
        if prog == "umount":
            target = escape_mount_field(os.path.realpath(cmd[-1]))
            with self._table_lock:
                lines = self._lines()
                # the most recent mount on a point goes first
                for i in range(len(lines) - 1, -1, -1):
                    if lines[i].split()[1] == target:
                        del lines[i]
                        self._write(lines)
                        return CommandResult(cmd, 0)
            return CommandResult(cmd, 32, "", f"umount: {cmd[-1]}: not mounted.")
        if prog == "smbclient":
            return self.smbclient_result
        return CommandResult(cmd, 127, "", f"{prog}: command not found")


def wait_for(condition, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


@pytest.fixture
def data_dir(tmp_path):
    d = tmp_path / "data"
    for sub in ("home", "app-data", "external", "network"):
        (d / sub).mkdir(parents=True)
    return d


@pytest.fixture
def mounts_file(tmp_path):
    p = tmp_path / "mounts"
    p.write_text("proc /proc proc rw 0 0\n")
    return str(p)


@pytest.fixture
def runner(mounts_file):
    return FakeRunner(mounts_file)


@pytest.fixture
def paths(data_dir):
    return PathResolver(str(data_dir))


@pytest.fixture
def store(tmp_path):
    return Store(str(tmp_path / "store.json"))


@pytest.fixture
def publisher(tmp_path, runner):
    return SambaPublisher(str(tmp_path / "samba" / "smb.conf"), user="vfshare", run=runner)


@pytest.fixture
def shares(paths, store, publisher):
    return ShareRegistry(paths, store, publisher)


@pytest.fixture
def network(paths, store, runner, mounts_file):
    manager = NetworkStorageManager(paths, store, run=runner, mounts_file=mounts_file,
                                    share_watch_interval=0.05, probe_timeout=1)
    yield manager
    manager._stop_evt.set()


@pytest.fixture
def favorites(paths, store):
    return FavoritesIndex(paths, store)


@pytest.fixture
def files(data_dir, runner, mounts_file, tmp_path):
    f = Files(
        data_dir=str(data_dir),
        run=runner,
        smb_conf=str(tmp_path / "samba" / "smb.conf"),
        mounts_file=mounts_file,
        share_watch_interval=0.05,
        poll_interval=0.05,
    )
    yield f
    f.stop()


class Api:
    def __init__(self, client, token=TOKEN):
        self.client = client
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}

    def query(self, procedure, **params):
        r = self.client.get(f"/api/{procedure}", query_string=params, headers=self.headers)
        return r.status_code, r.get_json()

    def mutate(self, procedure, **body):
        r = self.client.post(f"/api/{procedure}", json=body, headers=self.headers)
        return r.status_code, r.get_json()


@pytest.fixture
def app(files):
    return create_app(files, token=TOKEN)


@pytest.fixture
def api(app):
    return Api(app.test_client())


@pytest.fixture
def anonymous(app):
    return Api(app.test_client(), token=None)
