from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable

from stagekit.engine.pipeline import ActionStep, Block
from release_image.framework.config import BuildConfig, BuildVariant
from release_image.framework.runtime import BuildContext


@dataclass(frozen=True)
class PlanInputs:
    """Read-only inputs shared by every stage builder of one plan."""

    cfg: BuildConfig
    variant: BuildVariant
    # Stage kind id -> absolute source directory, for stages that own a source tree.
    source_dirs: Mapping[str, str] = field(default_factory=dict)

    def project_path(self, raw: str, *, path: str) -> str:
        text = (raw or "").strip()
        if not text:
            raise ValueError(f"{path} must be a non-empty path")
        expanded = os.path.expanduser(text)
        if not os.path.isabs(expanded):
            expanded = os.path.join(self.cfg.project_root, expanded)
        return os.path.abspath(expanded)

    def project_relpath(self, abs_path: str) -> str:
        rel = os.path.relpath(abs_path, self.cfg.project_root)
        return rel.replace(os.sep, "/")

    def isolation_excludes(self, *, owner_kind: str) -> tuple[str, ...]:
        """Absolute paths a stage must not see: other stages' sources and the build output."""

        paths = [p for kind, p in sorted(self.source_dirs.items()) if kind != owner_kind]
        paths.append(self.cfg.output_dir)
        return tuple(paths)


def make_action_stage_block(
    stage_id: str,
    *,
    fn: Callable[[BuildContext], Any],
    capture_key: str | None = None,
    doc: str | None = None,
    recipe: Mapping[str, Any] | None = None,
    tags: tuple[str, ...] = (),
) -> Block:
    """Wrap one stage action in a named Block.

    `recipe` is the stage's fragment of the equivalent multi-stage Dockerfile; it
    is carried in the block metadata so plans can be rendered without running them.
    """

    if not isinstance(stage_id, str) or not stage_id.strip():
        raise TypeError("stage_id must be a non-empty string")
    stage_id = stage_id.strip()
    if not callable(fn):
        raise TypeError("fn must be callable")

    stage_meta: dict[str, Any] = {}
    if doc and doc.strip():
        stage_meta["doc"] = doc.strip()
    if tags:
        stage_meta["tags"] = list(tags)
    if recipe is not None:
        stage_meta["recipe"] = dict(recipe)

    return Block(
        name=stage_id,
        nodes=[ActionStep(name="action", fn=fn, capture_key=capture_key)],
        meta=stage_meta,
    )
