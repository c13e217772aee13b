import os
import re
import shutil

import pytest

import vfsd
import vfsdiscover
from conftest import wait_for
from vfsd import create_app, main
from vfssamba import SHARES_KEY
from vfsfavorites import FAVORITES_KEY
from vfsutils import CommandResult


def test_healthz_needs_no_token(anonymous):
    r = anonymous.client.get("/healthz")
    assert r.status_code == 200
    body = r.get_json()
    assert body["ok"] is True
    assert body["service"] == "vfshare"
    assert body["name"] == "VFShare"


@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "test-token"}])
def test_api_requires_token(app, headers):
    r = app.test_client().get("/api/shares.list", headers=headers)
    assert r.status_code == 401
    assert r.get_json() == {"error": "Invalid token"}


def test_no_token_configured_means_open_api(files):
    client = create_app(files, token="").test_client()
    assert client.get("/api/shares.list").get_json() == {"result": []}


def test_queries_reject_post_and_mutations_reject_get(api):
    assert api.client.post("/api/shares.list", headers=api.headers).status_code == 405
    assert api.client.get("/api/shares.add", headers=api.headers).status_code == 405


# ---- shares ----

def test_share_lifecycle(api, data_dir):
    (data_dir / "home" / "Documents").mkdir()
    assert api.query("shares.list") == (200, {"result": []})
    assert api.mutate("shares.add", path="/Home/Documents") == (200, {"result": "Documents"})
    status, body = api.query("shares.list")
    assert body["result"] == [{"path": "/Home/Documents", "name": "Documents", "sharename": "Documents"}]
    assert api.mutate("shares.remove", path="/Home/Documents") == (200, {"result": True})
    assert api.mutate("shares.remove", path="/Home/Documents") == (200, {"result": False})


def test_share_errors_carry_their_code(api, data_dir):
    (data_dir / "home" / "Documents").mkdir()
    api.mutate("shares.add", path="/Home/Documents")
    assert api.mutate("shares.add", path="/Home/Documents") == (409, {"error": "[share-already-exists]"})
    assert api.mutate("shares.add", path="/Apps/x") == (403, {"error": "[operation-not-allowed]"})
    assert api.mutate("shares.add", path="/Home/../etc") == (403, {"error": "[operation-not-allowed]"})


def test_missing_field_is_a_bad_request(api):
    status, body = api.mutate("shares.add")
    assert status == 400
    assert "path" in body["error"]
    r = api.client.post("/api/shares.add", json=["/Home"], headers=api.headers)
    assert r.status_code == 400


def test_share_password(api):
    status, body = api.query("shares.password")
    assert status == 200
    assert re.fullmatch(r"[0-9a-f]{32}", body["result"])
    assert api.query("shares.password") == (200, body)


# ---- network ----

def test_network_lifecycle(api, data_dir):
    status, body = api.mutate("network.add", host="localhost", share="docs", username="alice", password="pw")
    assert (status, body) == (200, {"result": "/Network/localhost/docs"})
    status, body = api.query("network.list")
    assert body["result"] == [{"host": "localhost", "share": "docs",
                               "mountPath": "/Network/localhost/docs", "isMounted": True}]

    status, body = api.mutate("network.add", host="localhost", share="docs", username="alice", password="pw")
    assert status == 409
    assert "already exists" in body["error"]

    assert api.mutate("network.remove", mountPath="/Network/localhost/docs") == (200, {"result": True})
    assert os.listdir(data_dir / "network") == []


def test_network_remove_unknown(api):
    assert api.mutate("network.remove", mountPath="/Network/x/y") == (
        404, {"error": "Share with mount path /Network/x/y not found"})


def test_network_failed_add_leaves_no_directories(api, data_dir):
    status, _ = api.mutate("network.add", host="unknown-host", share="docs", username="alice", password="pw")
    assert status == 504
    assert os.listdir(data_dir / "network") == []
    assert api.query("network.list") == (200, {"result": []})


def test_network_discover_shares(api, runner):
    runner.smbclient_result = CommandResult(["smbclient"], 0, "Disk|docs|\nIPC|IPC$|\n")
    assert api.mutate("network.discoverShares", host="localhost", username="alice", password="pw") == (
        200, {"result": ["docs"]})
    runner.smbclient_result = CommandResult(["smbclient"], 1, "", "NT_STATUS_LOGON_FAILURE")
    status, _ = api.mutate("network.discoverShares", host="localhost", username="alice", password="bad")
    assert status == 403


def test_network_discover_servers(api, monkeypatch):
    monkeypatch.setattr(vfsdiscover, "discover_servers", lambda: ["nas.local"])
    assert api.query("network.discoverServers") == (200, {"result": ["nas.local"]})


def test_network_is_server_own_device(api, monkeypatch):
    monkeypatch.setattr(vfsdiscover, "is_server_own_device", lambda address: address == "10.0.0.2")
    assert api.query("network.isServerOwnDevice", address="10.0.0.2") == (200, {"result": True})
    assert api.query("network.isServerOwnDevice", address="10.0.0.3") == (200, {"result": False})
    assert api.query("network.isServerOwnDevice")[0] == 400


# ---- favorites ----

def test_favorites_lifecycle(api, data_dir):
    (data_dir / "home" / "Photos").mkdir()
    assert api.mutate("favorites.add", path="/Home/Photos") == (200, {"result": True})
    assert api.query("favorites.list") == (200, {"result": ["/Home/Photos"]})
    assert api.mutate("favorites.add", path="/Apps/bitcoin") == (403, {"error": "[operation-not-allowed]"})
    assert api.mutate("favorites.remove", path="/Home/Photos") == (200, {"result": True})
    assert api.query("favorites.list") == (200, {"result": []})


# ---- service lifecycle ----

def test_deleted_directories_are_pruned_while_running(files, api, data_dir):
    for name in ("Documents", "Photos"):
        (data_dir / "home" / name).mkdir()
    files.start()
    api.mutate("shares.add", path="/Home/Documents")
    api.mutate("favorites.add", path="/Home/Photos")
    # let the poller see both directories once
    assert wait_for(lambda: len(files.poller._seen) == 2)

    shutil.rmtree(data_dir / "home" / "Documents")
    shutil.rmtree(data_dir / "home" / "Photos")
    assert wait_for(lambda: files.store.get(SHARES_KEY) == [] and files.store.get(FAVORITES_KEY) == [])


def test_network_mounts_follow_service_lifecycle(files, api, data_dir, runner):
    files.start()
    api.mutate("network.add", host="localhost", share="docs", username="alice", password="pw")
    files.stop()
    assert not files.running
    assert api.query("network.list")[1]["result"][0]["isMounted"] is False
    assert os.listdir(data_dir / "network") == []
    assert runner.services.get("smbd") is False

    files.start()
    assert wait_for(lambda: api.query("network.list")[1]["result"][0]["isMounted"])


def test_stop_is_idempotent(files):
    files.start()
    files.stop()
    files.stop()


def test_main_reports_bind_failure(monkeypatch, tmp_path):
    def fail(*_args, **_kwargs):
        raise OSError("address in use")

    monkeypatch.setattr(vfsd, "serve", fail)
    assert main(["--data-dir", str(tmp_path / "data"), "--port", "1"]) == 1
