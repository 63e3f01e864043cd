from __future__ import annotations

import hashlib
import os
import stat

_CHUNK_SIZE = 1024 * 1024


def file_digest(path: str) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def _is_executable(mode: int) -> bool:
    return bool(mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


def iter_tree_files(root: str) -> list[str]:
    """Relative POSIX paths of every regular file under `root`, sorted."""

    out: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            full = os.path.join(dirpath, filename)
            if os.path.islink(full) or not os.path.isfile(full):
                continue
            out.append(os.path.relpath(full, root).replace(os.sep, "/"))
    return sorted(out)


def tree_digest(path: str) -> str:
    """Content digest of a file or directory.

    Directory digests cover sorted relative paths, the executable bit, and file
    contents. Timestamps and ownership are ignored, so two builds of identical
    inputs compare equal.
    """

    if os.path.isfile(path):
        mode = os.stat(path).st_mode
        return f"sha256:{file_digest(path)}{'+x' if _is_executable(mode) else ''}"

    if not os.path.isdir(path):
        raise FileNotFoundError(f"Cannot digest missing path: {path}")

    hasher = hashlib.sha256()
    for rel in iter_tree_files(path):
        full = os.path.join(path, *rel.split("/"))
        mode = os.stat(full).st_mode
        hasher.update(rel.encode("utf-8"))
        hasher.update(b"\0x\0" if _is_executable(mode) else b"\0-\0")
        hasher.update(file_digest(full).encode("ascii"))
        hasher.update(b"\n")
    return f"sha256:{hasher.hexdigest()}"


def tree_size(path: str) -> int:
    if os.path.isfile(path):
        return os.path.getsize(path)
    total = 0
    for rel in iter_tree_files(path):
        total += os.path.getsize(os.path.join(path, *rel.split("/")))
    return total
