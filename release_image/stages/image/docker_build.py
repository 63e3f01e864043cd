from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from stagekit.config_namespace import ConfigNamespace
from stagekit.stage_types import StageIO, StageRef
from release_image.foundation.commands import format_argv, run_command
from release_image.foundation.errors import CommandFailed, ImageAssemblyError
from release_image.framework.runtime import BuildContext
from release_image.framework.stage_blocks import PlanInputs, make_action_stage_block
from release_image.stages.runtime.entrypoint import DOCKERFILE_NAME, IMAGE_CONTEXT
from release_image.stages.runtime.entrypoint import KIND_ID as ENTRYPOINT_KIND_ID

KIND_ID = "image.docker_build"


def _build(inputs: PlanInputs, *, instance_id: str, cfg: ConfigNamespace):
    """Build the action stage that hands the sealed context to `docker build`."""

    cfg.get_bool("enabled", default=False)
    tag_template = cfg.get_str("tag", default="release-image:{build_id}")
    docker_command = cfg.get_list_str("docker_command", default=["docker"])
    platform = cfg.get_str("platform", default=None)
    extra_args = cfg.get_list_str("extra_args", default=[], allow_empty=True)
    timeout_seconds = cfg.get_int("timeout_seconds", default=1800, min_value=1)
    context_stage = cfg.get_str("context_stage", default=ENTRYPOINT_KIND_ID)

    def _action(ctx: BuildContext) -> str:
        context = ctx.registry.verify(IMAGE_CONTEXT, stage=context_stage)
        tag = format_argv([tag_template], build_id=ctx.build_id)[0]

        argv = [*docker_command, "build", "--file", DOCKERFILE_NAME, "--tag", tag]
        if platform:
            argv.extend(["--platform", platform])
        argv.extend(extra_args)
        argv.append(".")
        try:
            run_command(
                argv,
                cwd=context.path,
                timeout_seconds=timeout_seconds,
                cancel_event=ctx.cancel_event,
                logger=ctx.logger,
            )
        except CommandFailed as exc:
            raise ImageAssemblyError(f"{instance_id}: docker build failed for {tag}: {exc}") from exc
        ctx.logger.info("Built image %s", tag)
        return tag

    cfg.assert_consumed()
    return make_action_stage_block(instance_id, fn=_action, capture_key="image_ref")


def is_enabled(stage_cfg: Mapping[str, Any] | None) -> bool:
    raw = (stage_cfg or {}).get("enabled", False)
    if not isinstance(raw, bool):
        raise ValueError(f"stages.{KIND_ID}.enabled must be a boolean (type={type(raw).__name__})")
    return raw


STAGE = StageRef(
    id=KIND_ID,
    builder=_build,
    doc="Build the container image from the sealed context with the docker CLI.",
    source="docker build",
    tags=("image",),
    kind="action",
    io=StageIO(requires=(IMAGE_CONTEXT,)),
)
