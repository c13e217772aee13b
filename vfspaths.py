# vfspaths.py - virtual path namespace for VFShare
#
# Virtual paths look like /Home/Documents, /Apps/<app>/..., /External/<drive>/...,
# /Network/<host>/<share>/... and map onto directories under the data dir.
# Every mutating operation goes through PathResolver.check() before acting.

from __future__ import annotations
import os
from typing import Dict, FrozenSet, List, NamedTuple, Optional

from vfsutils import BASE_DIRS, DATA_DIR, OperationNotAllowed, is_within

# ------------------------- Operations -------------------------

OPERATIONS: FrozenSet[str] = frozenset({
    "list", "read", "create", "copy", "move", "rename",
    "trash", "delete", "favorite", "share",
})

# things that change an entry's identity or location
_RELOCATING = frozenset({"move", "rename", "trash", "delete"})


class Classification(NamedTuple):
    base: str
    operations: FrozenSet[str]

    def allows(self, operation: str) -> bool:
        return operation in self.operations


def split_vpath(vpath) -> List[str]:
    """
    Validate a virtual path and return its segments, base first.
    Rejects anything that is not absolute or carries '.'/'..' segments.
    """
    if not isinstance(vpath, str) or not vpath.strip():
        raise OperationNotAllowed()
    if not vpath.startswith("/"):
        raise OperationNotAllowed()
    parts = [p for p in vpath.split("/") if p != ""]
    if not parts:
        raise OperationNotAllowed()
    for p in parts:
        if p in (".", "..") or "\x00" in p:
            raise OperationNotAllowed()
    if parts[0] not in BASE_DIRS:
        raise OperationNotAllowed()
    return parts


def _operations_for(parts: List[str]) -> FrozenSet[str]:
    base, depth = parts[0], len(parts)
    ops = set(OPERATIONS)

    if depth == 1:
        # base roots never move or disappear
        ops -= _RELOCATING

    if base == "Home":
        return frozenset(ops)

    ops -= {"share"}

    if base in ("Apps", "External"):
        ops -= {"favorite"}
        if base == "External" and depth == 2:
            # a drive's mount root
            ops -= _RELOCATING
        return frozenset(ops)

    # Network: /Network, /Network/<host>, /Network/<host>/<share> are owned by
    # the mount manager
    ops -= {"trash"}
    if depth <= 3:
        ops -= _RELOCATING
        ops -= {"create"}
    if depth <= 2:
        ops -= {"favorite"}
    return frozenset(ops)


class PathResolver:
    """Maps virtual paths to real paths and decides what may be done to them."""

    def __init__(self, data_dir: str = DATA_DIR, roots: Optional[Dict[str, str]] = None):
        self.data_dir = os.path.abspath(data_dir)
        if roots is None:
            roots = {base: os.path.join(self.data_dir, sub) for base, sub in BASE_DIRS.items()}
        self.roots: Dict[str, str] = {base: os.path.abspath(p) for base, p in roots.items()}

    def root(self, base: str) -> str:
        return self.roots[base]

    def ensure_roots(self) -> None:
        for path in self.roots.values():
            os.makedirs(path, exist_ok=True)

    # ---- pure ------------------------------------------------------------

    def classify(self, vpath: str) -> Classification:
        parts = split_vpath(vpath)
        return Classification(parts[0], _operations_for(parts))

    def normalize(self, vpath: str) -> str:
        return "/" + "/".join(split_vpath(vpath))

    # ---- filesystem-aware ------------------------------------------------

    def resolve(self, vpath: str) -> str:
        """
        Virtual -> real path. The symlink-expanded result must stay inside the
        base's real root, whatever the link targets look like.
        """
        parts = split_vpath(vpath)
        root = self.roots[parts[0]]
        real = os.path.join(root, *parts[1:]) if len(parts) > 1 else root
        if not is_within(os.path.realpath(root), os.path.realpath(real)):
            raise OperationNotAllowed()
        return real

    def to_virtual(self, real_path: str) -> str:
        real = os.path.abspath(real_path)
        # longest root first so nested roots map to the most specific base
        for base, root in sorted(self.roots.items(), key=lambda kv: len(kv[1]), reverse=True):
            if is_within(root, real):
                rel = os.path.relpath(real, root)
                return f"/{base}" if rel == "." else f"/{base}/" + rel.replace(os.sep, "/")
        raise OperationNotAllowed()

    def check(self, vpath: str, operation: str) -> str:
        """Gate: raise OperationNotAllowed unless `operation` is permitted; return the real path."""
        if not self.classify(vpath).allows(operation):
            raise OperationNotAllowed()
        return self.resolve(vpath)

    def is_directory(self, vpath: str) -> bool:
        try:
            return os.path.isdir(self.resolve(vpath))
        except OperationNotAllowed:
            return False
