"""Isolated per-stage workspaces.

Each stage works in its own directory under `<build_dir>/workspaces/<stage_id>`.
Source trees are copied in, so stages never mutate the inputs, and the whole
workspace (including any dependency closure) is removed when the stage ends.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterable
from dataclasses import dataclass

DEFAULT_IGNORED_NAMES: tuple[str, ...] = (".git", ".hg", ".svn", "node_modules", "__pycache__", ".DS_Store")


def copy_source_tree(
    source: str,
    dest: str,
    *,
    exclude_paths: Iterable[str] = (),
    ignored_names: Iterable[str] = DEFAULT_IGNORED_NAMES,
) -> None:
    """Copy `source` to `dest`, skipping excluded absolute paths and ignored names.

    `exclude_paths` holds absolute paths (directories or files) that must not
    appear in the copy, such as a sibling source tree or the build output directory.
    """

    source = os.path.abspath(source)
    if not os.path.isdir(source):
        raise FileNotFoundError(f"Source tree does not exist: {source}")
    if os.path.lexists(dest):
        raise FileExistsError(f"Workspace destination already exists: {dest}")

    excluded = {os.path.abspath(p) for p in exclude_paths}
    excluded.add(os.path.abspath(dest))
    names = set(ignored_names)

    def _ignore(directory: str, entries: list[str]) -> set[str]:
        skipped: set[str] = set()
        for entry in entries:
            if entry in names:
                skipped.add(entry)
                continue
            if os.path.abspath(os.path.join(directory, entry)) in excluded:
                skipped.add(entry)
        return skipped

    shutil.copytree(source, dest, ignore=_ignore, symlinks=True)


@dataclass
class StageWorkspace:
    stage_id: str
    path: str
    keep: bool = False
    logger: logging.Logger | None = None

    @classmethod
    def create(
        cls,
        root: str,
        stage_id: str,
        *,
        keep: bool = False,
        logger: logging.Logger | None = None,
    ) -> "StageWorkspace":
        path = os.path.join(os.path.abspath(root), stage_id)
        if os.path.lexists(path):
            raise FileExistsError(f"Stage workspace already exists: {path}")
        os.makedirs(path)
        return cls(stage_id=stage_id, path=path, keep=keep, logger=logger)

    def join(self, *parts: str) -> str:
        return os.path.join(self.path, *parts)

    def cleanup(self) -> None:
        if self.keep:
            if self.logger:
                self.logger.debug("Keeping workspace for %s: %s", self.stage_id, self.path)
            return
        shutil.rmtree(self.path, ignore_errors=False)
        if self.logger:
            self.logger.debug("Removed workspace for %s", self.stage_id)

    def __enter__(self) -> "StageWorkspace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()
