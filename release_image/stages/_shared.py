from __future__ import annotations

import os
import time
from collections.abc import Iterable

from release_image.foundation.errors import CommandTimeout, DependencyResolutionError
from release_image.framework.stage_blocks import PlanInputs

DEFAULT_FRONTEND_SOURCE_DIR = "."
DEFAULT_BACKEND_SOURCE_DIR = "src-tauri"


def require_lock_inputs(source_dir: str, names: Iterable[str], *, stage_id: str) -> None:
    """Fail before anything runs when the manifest or lockfile is missing."""

    if not os.path.isdir(source_dir):
        raise DependencyResolutionError(f"{stage_id}: source directory does not exist: {source_dir}")
    missing = [name for name in names if not os.path.isfile(os.path.join(source_dir, name))]
    if missing:
        raise DependencyResolutionError(
            f"{stage_id}: missing dependency manifest/lockfile in {source_dir}: {', '.join(missing)}"
        )


def relative_excludes(inputs: PlanInputs, *, owner_kind: str, source_dir: str) -> list[str]:
    """Isolation excludes that fall inside `source_dir`, relative to it."""

    out: list[str] = []
    for path in inputs.isolation_excludes(owner_kind=owner_kind):
        rel = os.path.relpath(path, source_dir)
        if rel == "." or rel == ".." or rel.startswith(".." + os.sep):
            continue
        out.append(rel.replace(os.sep, "/"))
    return out


def remaining_seconds(deadline: float, *, stage_id: str, timeout_seconds: int) -> float:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise CommandTimeout(f"{stage_id}: stage timed out after {timeout_seconds}s")
    return remaining


def relative_output_path(raw: str, *, path: str) -> str:
    """Validate a path that must stay inside the stage's working tree."""

    normalized = os.path.normpath(raw.replace("/", os.sep))
    if os.path.isabs(normalized) or normalized == ".." or normalized.startswith(".." + os.sep):
        raise ValueError(f"{path} must be a relative path inside the source tree (got {raw!r})")
    if normalized == ".":
        raise ValueError(f"{path} must name a path below the source tree root")
    return normalized
