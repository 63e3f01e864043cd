"""Build output registry keyed by producing stage.

Stages never share a working directory. A producer publishes an artifact once; the
registry stores a private copy with write bits removed. Consumers name both the
artifact and the stage they expect it from, and receive a fresh copy in their own
workspace.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import threading
from dataclasses import asdict, dataclass
from typing import Any, Literal

from release_image.foundation.errors import ArtifactCopyError
from release_image.framework.artifacts.digest import tree_digest, tree_size

ArtifactKind = Literal["file", "directory"]

logger = logging.getLogger(__name__)

_WRITE_BITS = stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH


@dataclass(frozen=True)
class Artifact:
    name: str
    stage: str
    kind: ArtifactKind
    path: str
    digest: str
    size_bytes: int
    executable: bool
    filename: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _strip_write_bits(path: str) -> None:
    """Make every file under `path` read-only. Directories stay traversable/removable."""

    if os.path.isfile(path):
        mode = os.stat(path).st_mode
        os.chmod(path, mode & ~_WRITE_BITS)
        return
    for dirpath, _dirnames, filenames in os.walk(path):
        for filename in filenames:
            full = os.path.join(dirpath, filename)
            if os.path.islink(full):
                continue
            mode = os.stat(full).st_mode
            os.chmod(full, mode & ~_WRITE_BITS)


def _restore_user_write_bit(path: str) -> None:
    paths = [path] if os.path.isfile(path) else [
        os.path.join(dirpath, filename)
        for dirpath, _dirnames, filenames in os.walk(path)
        for filename in filenames
    ]
    for full in paths:
        if os.path.islink(full):
            continue
        os.chmod(full, os.stat(full).st_mode | stat.S_IWUSR)


def _copy(source: str, dest: str) -> None:
    if os.path.isdir(source):
        shutil.copytree(source, dest, symlinks=False)
    else:
        shutil.copy2(source, dest)


class ArtifactRegistry:
    def __init__(self, root: str):
        if not isinstance(root, str) or not root.strip():
            raise ValueError("ArtifactRegistry root must be a non-empty path")
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)
        self._lock = threading.Lock()
        self._by_name: dict[str, Artifact] = {}

    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._by_name))

    def describe(self) -> list[dict[str, Any]]:
        with self._lock:
            return [self._by_name[name].to_dict() for name in sorted(self._by_name)]

    def publish(
        self,
        *,
        stage: str,
        name: str,
        source: str,
        executable: bool = False,
    ) -> Artifact:
        """Copy `source` into the registry as artifact `name` produced by `stage`."""

        stage = (stage or "").strip()
        name = (name or "").strip()
        if not stage or not name:
            raise ValueError("Artifact stage and name must be non-empty strings")
        if not os.path.exists(source):
            raise ArtifactCopyError(
                f"Cannot publish artifact {name!r} from stage {stage}: source does not exist: {source}"
            )
        kind: ArtifactKind = "directory" if os.path.isdir(source) else "file"
        if executable and kind != "file":
            raise ValueError(f"Artifact {name!r}: only file artifacts can be executable")

        with self._lock:
            existing = self._by_name.get(name)
            if existing is not None:
                raise ArtifactCopyError(
                    f"Artifact {name!r} already published by stage {existing.stage}; "
                    f"stage {stage} cannot publish it again"
                )
            dest = os.path.join(self.root, stage, name)
            if os.path.exists(dest):
                raise ArtifactCopyError(f"Registry path already occupied for {stage}/{name}: {dest}")
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            _copy(source, dest)
            if executable:
                mode = os.stat(dest).st_mode
                os.chmod(dest, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
            _strip_write_bits(dest)

            artifact = Artifact(
                name=name,
                stage=stage,
                kind=kind,
                path=dest,
                digest=tree_digest(dest),
                size_bytes=tree_size(dest),
                executable=bool(executable),
                filename=os.path.basename(os.path.normpath(source)),
            )
            self._by_name[name] = artifact

        logger.debug("Published artifact %s from %s (%s)", name, stage, artifact.digest)
        return artifact

    def get(self, name: str, *, stage: str) -> Artifact:
        """Look up `name`, insisting it was produced by `stage`."""

        with self._lock:
            artifact = self._by_name.get((name or "").strip())
            available = ", ".join(f"{a.stage}/{a.name}" for a in self._by_name.values()) or "<none>"
        if artifact is None:
            raise ArtifactCopyError(
                f"Missing artifact {stage}/{name}: not published by any stage (available: {available})"
            )
        if artifact.stage != (stage or "").strip():
            raise ArtifactCopyError(
                f"Artifact {name!r} requested from stage {stage} but it was produced by {artifact.stage}"
            )
        if not os.path.exists(artifact.path):
            raise ArtifactCopyError(f"Artifact {stage}/{name} vanished from the registry: {artifact.path}")
        return artifact

    def verify(self, name: str, *, stage: str) -> Artifact:
        """Re-digest a stored artifact and fail if it changed since publishing."""

        artifact = self.get(name, stage=stage)
        current = tree_digest(artifact.path)
        if current != artifact.digest:
            raise ArtifactCopyError(
                f"Artifact {stage}/{name} was modified after publishing "
                f"(expected {artifact.digest}, found {current})"
            )
        return artifact

    def materialize(
        self, name: str, *, stage: str, dest: str, writable: bool = False
    ) -> Artifact:
        """Copy a verified artifact to `dest` (which must not already exist)."""

        artifact = self.verify(name, stage=stage)
        if os.path.lexists(dest):
            raise ArtifactCopyError(f"Refusing to overwrite existing path with {stage}/{name}: {dest}")
        os.makedirs(os.path.dirname(os.path.abspath(dest)), exist_ok=True)
        _copy(artifact.path, dest)
        if writable:
            _restore_user_write_bit(dest)
        logger.debug("Materialized %s/%s into %s", stage, name, dest)
        return artifact
