from __future__ import annotations

import os
import posixpath
from typing import Any

from stagekit.config_namespace import ConfigNamespace
from stagekit.stage_types import StageIO, StageRef
from release_image.foundation.errors import ImageAssemblyError
from release_image.framework.image import (
    ROOTFS_DIRNAME,
    ImageCopy,
    ImageManifest,
    assert_minimal,
    find_toolchain_packages,
    rootfs_path,
    write_image_manifest,
)
from release_image.framework.runtime import BuildContext
from release_image.framework.stage_blocks import PlanInputs, make_action_stage_block
from release_image.framework.workspace import StageWorkspace
from release_image.stages._shared import relative_output_path
from release_image.stages.backend.compile import KIND_ID as BACKEND_KIND_ID
from release_image.stages.backend.compile import RELEASE_BINARY
from release_image.stages.frontend.bundle import KIND_ID as FRONTEND_KIND_ID
from release_image.stages.frontend.bundle import STATIC_BUNDLE

KIND_ID = "image.assemble"
IMAGE_ROOTFS = "image_rootfs"

DEFAULT_RUNTIME_PACKAGES: tuple[str, ...] = ("ca-certificates", "libssl3", "libwebkit2gtk-4.0-37")


def _build(inputs: PlanInputs, *, instance_id: str, cfg: ConfigNamespace):
    """Build the action stage that lays out the runtime rootfs from the two build outputs."""

    prefix = f"stages.{instance_id}"
    base_image = cfg.get_str("base_image", default="debian:bookworm-slim")
    workdir = cfg.get_str("workdir", default="/app")
    if not workdir.startswith("/"):
        raise ValueError(f"{prefix}.workdir must be an absolute path (got {workdir!r})")
    workdir = posixpath.normpath(workdir)
    runtime_packages = cfg.get_list_str(
        "runtime_packages", default=list(DEFAULT_RUNTIME_PACKAGES), allow_empty=True
    )
    assets_dest = relative_output_path(
        cfg.get_str("assets_dest", default="dist"), path=f"{prefix}.assets_dest"
    ).replace(os.sep, "/")
    binary_stage = cfg.get_str("binary_stage", default=BACKEND_KIND_ID)
    assets_stage = cfg.get_str("assets_stage", default=FRONTEND_KIND_ID)

    toolchain = find_toolchain_packages(runtime_packages)
    if toolchain:
        raise ImageAssemblyError(
            f"{prefix}.runtime_packages includes build toolchain packages: {', '.join(toolchain)}"
        )

    recipe = {
        "base_image": base_image,
        "workdir": workdir,
        "runtime_packages": list(runtime_packages),
        "assets_dest": assets_dest,
    }

    def _action(ctx: BuildContext) -> dict[str, Any]:
        binary = ctx.registry.get(RELEASE_BINARY, stage=binary_stage)
        bundle = ctx.registry.get(STATIC_BUNDLE, stage=assets_stage)

        binary_dest = posixpath.join(workdir, binary.filename)
        assets_path = posixpath.join(workdir, assets_dest)
        if binary_dest == assets_path or binary_dest.startswith(assets_path + "/"):
            raise ImageAssemblyError(
                f"{instance_id}: binary {binary_dest} collides with the static assets at {assets_path}"
            )

        with StageWorkspace.create(
            ctx.workspaces_dir, instance_id, keep=ctx.cfg.keep_workspaces, logger=ctx.logger
        ) as workspace:
            context_dir = workspace.join("image")
            os.makedirs(os.path.join(context_dir, ROOTFS_DIRNAME))
            ctx.registry.materialize(
                RELEASE_BINARY, stage=binary_stage, dest=rootfs_path(context_dir, binary_dest)
            )
            ctx.registry.materialize(
                STATIC_BUNDLE, stage=assets_stage, dest=rootfs_path(context_dir, assets_path)
            )
            assert_minimal(
                rootfs=os.path.join(context_dir, ROOTFS_DIRNAME), runtime_packages=runtime_packages
            )

            manifest = ImageManifest(
                build_id=ctx.build_id,
                base_image=base_image,
                workdir=workdir,
                runtime_packages=tuple(runtime_packages),
                copies=(
                    ImageCopy(
                        stage=binary_stage,
                        artifact=RELEASE_BINARY,
                        dest=binary_dest,
                        digest=binary.digest,
                        executable=True,
                    ),
                    ImageCopy(
                        stage=assets_stage,
                        artifact=STATIC_BUNDLE,
                        dest=assets_path,
                        digest=bundle.digest,
                    ),
                ),
            )
            write_image_manifest(context_dir, manifest)
            artifact = ctx.registry.publish(stage=instance_id, name=IMAGE_ROOTFS, source=context_dir)

        ctx.logger.info(
            "Assembled image rootfs: %s -> %s, %s -> %s",
            RELEASE_BINARY,
            binary_dest,
            STATIC_BUNDLE,
            assets_path,
        )
        return {
            "artifact": IMAGE_ROOTFS,
            "digest": artifact.digest,
            "copies": [item.dest for item in manifest.copies],
        }

    cfg.assert_consumed()
    return make_action_stage_block(instance_id, fn=_action, recipe=recipe)


STAGE = StageRef(
    id=KIND_ID,
    builder=_build,
    doc="Copy exactly the release binary and static bundle onto a minimal runtime base.",
    tags=("image",),
    kind="action",
    io=StageIO(requires=(RELEASE_BINARY, STATIC_BUNDLE), provides=(IMAGE_ROOTFS,)),
)
