from __future__ import annotations

from functools import lru_cache

from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import StageRef


@lru_cache(maxsize=1)
def get_stage_registry() -> StageRegistry:
    # Import side-effect: stage modules define `STAGE` symbols collected here.
    # This function is the single import point for the CLI and plan compilation.
    from release_image.stages import (  # noqa: PLC0415
        backend,
        frontend,
        image,
        runtime,
    )

    refs: list[StageRef] = []
    for pkg in (frontend, backend, image, runtime):
        exported = getattr(pkg, "__all_stages__", None)
        if isinstance(exported, (list, tuple)):
            refs.extend(exported)

    return StageRegistry.from_refs(refs)
