# vfsstore.py - persisted collections for VFShare
#
# One JSON document keyed by collection name ("files.shares", ...).
# Readers get copies; writers take the collection's lock, mutate, and the
# document is rewritten atomically (tmp + os.replace) when the block exits cleanly.

from __future__ import annotations
import copy
import json
import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

log = logging.getLogger("vfshare.store")

_MISSING = object()


class Transaction:
    """Scoped view handed out by Store.write_lock(); changes apply on exit."""

    def __init__(self, store: "Store", key: str):
        self._store = store
        self.key = key
        self._value: Any = _MISSING

    def get(self, default: Any = None) -> Any:
        if self._value is _MISSING:
            return self._store.get(self.key, default)
        return copy.deepcopy(self._value)

    def set(self, value: Any) -> None:
        self._value = copy.deepcopy(value)

    @property
    def dirty(self) -> bool:
        return self._value is not _MISSING


class Store:
    def __init__(self, path: str):
        self.path = path
        self._io_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._data: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return
        if not isinstance(data, dict):
            raise ValueError(f"store file {self.path} does not hold an object")
        self._data = data

    def _save(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._data, f, ensure_ascii=False, indent=1)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)

    def _lock_for(self, key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    # ---- public -----------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        with self._io_lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self.write_lock(key) as tx:
            tx.set(value)

    @contextmanager
    def write_lock(self, key: str) -> Iterator[Transaction]:
        """
        Exclusive read-modify-write on one collection. Nothing is written if
        the block raises. Re-entrant for the owning thread.
        """
        with self._lock_for(key):
            tx = Transaction(self, key)
            yield tx
            if tx.dirty:
                with self._io_lock:
                    previous: Optional[Any] = self._data.get(key, _MISSING)
                    self._data[key] = tx._value
                    try:
                        self._save()
                    except OSError:
                        if previous is _MISSING:
                            self._data.pop(key, None)
                        else:
                            self._data[key] = previous
                        raise
                log.debug("[store] wrote %s", key)
