from __future__ import annotations

import os
import time
from typing import Any

from stagekit.config_namespace import ConfigNamespace
from stagekit.stage_types import StageIO, StageRef
from release_image.foundation.commands import run_command
from release_image.foundation.errors import CommandFailed, CompilationError, DependencyResolutionError
from release_image.framework.runtime import BuildContext
from release_image.framework.stage_blocks import PlanInputs, make_action_stage_block
from release_image.framework.workspace import StageWorkspace, copy_source_tree
from release_image.stages._shared import (
    DEFAULT_FRONTEND_SOURCE_DIR,
    relative_excludes,
    relative_output_path,
    remaining_seconds,
    require_lock_inputs,
)

KIND_ID = "frontend.bundle"
STATIC_BUNDLE = "static_bundle"


def _build(inputs: PlanInputs, *, instance_id: str, cfg: ConfigNamespace):
    """Build the action stage that installs locked JS dependencies and bundles static assets."""

    source_rel = cfg.get_str("source_dir", default=DEFAULT_FRONTEND_SOURCE_DIR)
    source_dir = inputs.project_path(source_rel, path=f"stages.{instance_id}.source_dir")
    manifest = cfg.get_str("manifest", default="package.json")
    lockfile = cfg.get_str("lockfile", default="package-lock.json")
    install_command = cfg.get_list_str("install_command", default=["npm", "ci"])
    build_command = cfg.get_list_str("build_command", default=["npm", "run", "build"])
    output_dir = relative_output_path(
        cfg.get_str("output_dir", default="dist"), path=f"stages.{instance_id}.output_dir"
    )
    extra_exclude = cfg.get_list_str("exclude", default=[], allow_empty=True)
    env = cfg.get_str_mapping("env", default={})
    timeout_seconds = cfg.get_int("timeout_seconds", default=900, min_value=1)
    builder_image = cfg.get_str("builder_image", default="node:22-slim")

    # A host-side `output_dir` left by an earlier build stays out of the workspace.
    exclude_paths = [*inputs.isolation_excludes(owner_kind=KIND_ID), os.path.join(source_dir, output_dir)]
    for idx, raw in enumerate(extra_exclude):
        rel = relative_output_path(raw, path=f"stages.{instance_id}.exclude[{idx}]")
        exclude_paths.append(os.path.join(source_dir, rel))

    recipe = {
        "builder_image": builder_image,
        "source_dir": inputs.project_relpath(source_dir),
        "manifest": manifest,
        "lockfile": lockfile,
        "install_command": list(install_command),
        "build_command": list(build_command),
        "output_dir": output_dir.replace(os.sep, "/"),
        "exclude": list(
            dict.fromkeys(
                relative_excludes(inputs, owner_kind=KIND_ID, source_dir=source_dir)
                + [output_dir.replace(os.sep, "/")]
                + [p.replace(os.sep, "/") for p in extra_exclude]
            )
        ),
    }

    def _action(ctx: BuildContext) -> dict[str, Any]:
        require_lock_inputs(source_dir, (manifest, lockfile), stage_id=instance_id)
        deadline = time.monotonic() + timeout_seconds

        with StageWorkspace.create(
            ctx.workspaces_dir, instance_id, keep=ctx.cfg.keep_workspaces, logger=ctx.logger
        ) as workspace:
            tree = workspace.join("src")
            copy_source_tree(source_dir, tree, exclude_paths=exclude_paths)

            try:
                run_command(
                    install_command,
                    cwd=tree,
                    env=env,
                    timeout_seconds=remaining_seconds(
                        deadline, stage_id=instance_id, timeout_seconds=timeout_seconds
                    ),
                    cancel_event=ctx.cancel_event,
                    logger=ctx.logger,
                )
            except CommandFailed as exc:
                raise DependencyResolutionError(
                    f"{instance_id}: locked dependency install failed: {exc}"
                ) from exc

            try:
                run_command(
                    build_command,
                    cwd=tree,
                    env=env,
                    timeout_seconds=remaining_seconds(
                        deadline, stage_id=instance_id, timeout_seconds=timeout_seconds
                    ),
                    cancel_event=ctx.cancel_event,
                    logger=ctx.logger,
                )
            except CommandFailed as exc:
                raise CompilationError(f"{instance_id}: bundle build failed: {exc}") from exc

            bundle_dir = os.path.join(tree, output_dir)
            if not os.path.isdir(bundle_dir) or not os.listdir(bundle_dir):
                raise CompilationError(
                    f"{instance_id}: bundle build produced no output at {recipe['output_dir']}"
                )
            artifact = ctx.registry.publish(stage=instance_id, name=STATIC_BUNDLE, source=bundle_dir)

        ctx.logger.info(
            "Published %s from %s (digest=%s, size=%d bytes)",
            STATIC_BUNDLE,
            instance_id,
            artifact.digest,
            artifact.size_bytes,
        )
        return {
            "artifact": STATIC_BUNDLE,
            "digest": artifact.digest,
            "size_bytes": artifact.size_bytes,
        }

    cfg.assert_consumed()
    return make_action_stage_block(instance_id, fn=_action, recipe=recipe)


STAGE = StageRef(
    id=KIND_ID,
    builder=_build,
    doc="Install locked frontend dependencies in isolation and bundle static assets.",
    source="npm ci && npm run build",
    tags=("frontend",),
    kind="action",
    io=StageIO(provides=(STATIC_BUNDLE,)),
)
