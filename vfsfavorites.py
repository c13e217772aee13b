# vfsfavorites.py - favorited directories for VFShare

from __future__ import annotations
import logging
from typing import Callable, List, Optional

from vfspaths import PathResolver
from vfsstore import Store
from vfswatch import ChangeFeed, FileChangeEvent
from vfsutils import OperationNotAllowed, is_same_or_below

log = logging.getLogger("vfshare.favorites")

FAVORITES_KEY = "files.favorites"


class FavoritesIndex:
    def __init__(self, paths: PathResolver, store: Store):
        self.paths = paths
        self.store = store
        self._unsubscribe: Optional[Callable[[], None]] = None

    def _get(self) -> List[str]:
        return self.store.get(FAVORITES_KEY) or []

    def list(self) -> List[str]:
        """Favorites that are still directories. Stale ones stay stored until the next write."""
        return [favorite for favorite in self._get() if self.paths.is_directory(favorite)]

    def add(self, vpath: str) -> bool:
        vpath = self.paths.normalize(vpath)
        self.paths.check(vpath, "favorite")
        with self.store.write_lock(FAVORITES_KEY) as tx:
            favorites = tx.get([])
            if vpath in favorites:
                return True
            tx.set(favorites + [vpath])
        return True

    def remove(self, vpath: str) -> bool:
        vpath = self.paths.normalize(vpath)
        with self.store.write_lock(FAVORITES_KEY) as tx:
            favorites = tx.get([])
            remaining = [favorite for favorite in favorites if favorite != vpath]
            if len(remaining) == len(favorites):
                return False
            tx.set(remaining)
        return True

    def watched_paths(self) -> List[str]:
        out = []
        for favorite in self._get():
            try:
                out.append(self.paths.resolve(favorite))
            except OperationNotAllowed:
                continue
        return out

    # TODO: follow a favorited directory when it is moved instead of dropping
    # it; needs the watcher to pair the delete and create of one rename.
    def handle_file_change(self, event: FileChangeEvent) -> None:
        if not event.removes_path:
            return
        try:
            deleted = self.paths.to_virtual(event.path)
        except OperationNotAllowed:
            return
        for favorite in self._get():
            if not is_same_or_below(favorite, deleted):
                continue
            try:
                self.remove(favorite)
            except Exception:
                log.exception("[favorites] could not drop %s", favorite)

    def start(self, feed: ChangeFeed) -> None:
        log.info("[favorites] starting")
        self._unsubscribe = feed.subscribe(self.handle_file_change)

    def stop(self) -> None:
        log.info("[favorites] stopping")
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
