import json
import threading

import pytest

from vfsstore import Store


def test_get_returns_default_for_missing_key(store):
    assert store.get("files.shares") is None
    assert store.get("files.shares", []) == []


def test_set_persists_to_disk(tmp_path):
    path = tmp_path / "store.json"
    s = Store(str(path))
    s.set("files.favorites", ["/Home/Photos"])
    assert json.loads(path.read_text())["files.favorites"] == ["/Home/Photos"]
    assert Store(str(path)).get("files.favorites") == ["/Home/Photos"]


def test_readers_get_copies(store):
    store.set("files.favorites", ["/Home/a"])
    value = store.get("files.favorites")
    value.append("/Home/b")
    assert store.get("files.favorites") == ["/Home/a"]


def test_write_lock_applies_on_clean_exit(store):
    with store.write_lock("files.shares") as tx:
        assert tx.get([]) == []
        tx.set([{"path": "/Home/a"}])
        assert tx.get() == [{"path": "/Home/a"}]
    assert store.get("files.shares") == [{"path": "/Home/a"}]


def test_write_lock_discards_changes_when_block_raises(store):
    store.set("files.shares", ["keep"])
    with pytest.raises(RuntimeError):
        with store.write_lock("files.shares") as tx:
            tx.set(["lost"])
            raise RuntimeError("boom")
    assert store.get("files.shares") == ["keep"]


def test_untouched_transaction_does_not_write(tmp_path):
    path = tmp_path / "store.json"
    s = Store(str(path))
    with s.write_lock("files.shares") as tx:
        tx.get([])
    assert not path.exists()


def test_write_lock_is_reentrant(store):
    with store.write_lock("k") as outer:
        with store.write_lock("k") as inner:
            inner.set(1)
        outer.set(outer.get(0) + 1)
    assert store.get("k") == 2


def test_concurrent_read_modify_write_loses_nothing(store):
    def bump():
        for _ in range(25):
            with store.write_lock("counter") as tx:
                tx.set(tx.get(0) + 1)

    threads = [threading.Thread(target=bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.get("counter") == 100


def test_rejects_non_object_document(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("[1, 2]")
    with pytest.raises(ValueError):
        Store(str(path))
