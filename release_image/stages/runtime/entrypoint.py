from __future__ import annotations

import os
import posixpath
from typing import Any

from stagekit.config_namespace import ConfigNamespace
from stagekit.stage_types import StageIO, StageRef
from release_image.foundation.errors import EntrypointMismatchError
from release_image.framework.dockerfile import render_image_dockerfile
from release_image.framework.entrypoint import (
    DEFAULT_PORT,
    DEFAULT_PORT_ENV,
    EntrypointContract,
    verify_entrypoint,
)
from release_image.framework.image import ImageManifest, read_image_manifest, write_image_manifest
from release_image.framework.runtime import BuildContext
from release_image.framework.stage_blocks import PlanInputs, make_action_stage_block
from release_image.framework.workspace import StageWorkspace
from release_image.stages.image.assemble import IMAGE_ROOTFS
from release_image.stages.image.assemble import KIND_ID as ASSEMBLE_KIND_ID

KIND_ID = "runtime.entrypoint"
IMAGE_CONTEXT = "image_context"
DOCKERFILE_NAME = "Dockerfile"


def default_command(manifest: ImageManifest) -> list[str]:
    """Run the single executable copied into the image, relative to the workdir."""

    executables = [item for item in manifest.copies if item.executable]
    if len(executables) != 1:
        found = ", ".join(item.dest for item in executables) or "<none>"
        raise EntrypointMismatchError(
            f"Cannot derive the entrypoint: expected exactly one executable copy (found: {found})"
        )
    dest = executables[0].dest
    if posixpath.dirname(dest) == posixpath.normpath(manifest.workdir):
        return [f"./{posixpath.basename(dest)}"]
    return [dest]


def _build(inputs: PlanInputs, *, instance_id: str, cfg: ConfigNamespace):
    """Build the action stage that pins the entrypoint contract and seals the image context."""

    prefix = f"stages.{instance_id}"
    command = cfg.get_list_str("command", default=[], allow_empty=True)
    port_env = cfg.get_str("port_env", default=DEFAULT_PORT_ENV)
    port = cfg.get_int("port", default=DEFAULT_PORT, min_value=1, max_value=65535)
    env = cfg.get_str_mapping("env", default={})
    if port_env in env:
        raise ValueError(f"{prefix}.env must not set {port_env}; configure {prefix}.port instead")
    image_stage = cfg.get_str("image_stage", default=ASSEMBLE_KIND_ID)

    recipe = {
        "command": list(command) or None,
        "port_env": port_env,
        "port": port,
        "env": dict(env),
    }

    def _action(ctx: BuildContext) -> dict[str, Any]:
        ctx.registry.get(IMAGE_ROOTFS, stage=image_stage)

        with StageWorkspace.create(
            ctx.workspaces_dir, instance_id, keep=ctx.cfg.keep_workspaces, logger=ctx.logger
        ) as workspace:
            context_dir = workspace.join("context")
            ctx.registry.materialize(IMAGE_ROOTFS, stage=image_stage, dest=context_dir, writable=True)
            manifest = read_image_manifest(context_dir)

            contract = EntrypointContract(
                command=tuple(command or default_command(manifest)),
                workdir=manifest.workdir,
                port_env=port_env,
                default_port=port,
                env=env,
            )
            executable = verify_entrypoint(contract, manifest, context_dir)

            sealed = manifest.seal(contract.to_dict())
            write_image_manifest(context_dir, sealed)
            with open(os.path.join(context_dir, DOCKERFILE_NAME), "w", encoding="utf-8") as handle:
                handle.write(render_image_dockerfile(sealed))

            artifact = ctx.registry.publish(stage=instance_id, name=IMAGE_CONTEXT, source=context_dir)

        ctx.outputs["entrypoint_contract"] = contract.to_dict()
        ctx.logger.info(
            "Entrypoint: %s (workdir=%s, %s default %d; executable=%s)",
            " ".join(contract.command),
            contract.workdir,
            contract.port_env,
            contract.default_port,
            os.path.basename(executable),
        )
        return {
            "artifact": IMAGE_CONTEXT,
            "digest": artifact.digest,
            "entrypoint": contract.to_dict(),
        }

    cfg.assert_consumed()
    return make_action_stage_block(instance_id, fn=_action, recipe=recipe)


STAGE = StageRef(
    id=KIND_ID,
    builder=_build,
    doc="Pin the entrypoint to the copied binary and seal the image build context.",
    tags=("runtime",),
    kind="action",
    io=StageIO(requires=(IMAGE_ROOTFS,), provides=(IMAGE_CONTEXT,)),
)
