"""Project-specific framework utilities.

This package contains structural helpers that are generic *within* this repo
(artifact storage and indexing, build context, workspaces, image layout, the
entrypoint contract), but intentionally excludes stage and plan implementations.

Common entrypoints:

- `release_image.framework.artifacts`: artifact registry, digests, transcript + build index
- `release_image.framework.stage_blocks`: stage authoring glue (`PlanInputs`, action blocks)
- `release_image.framework.entrypoint`: entrypoint contract + host-side launcher

For reusable, project-agnostic pipeline primitives, use `stagekit`.
"""
