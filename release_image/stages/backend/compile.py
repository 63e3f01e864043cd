from __future__ import annotations

import os
import shutil
import time
from typing import Any

from stagekit.config_namespace import ConfigNamespace
from stagekit.stage_types import StageIO, StageRef
from release_image.foundation.commands import format_argv, run_command
from release_image.foundation.errors import CommandFailed, CompilationError
from release_image.framework.runtime import BuildContext
from release_image.framework.stage_blocks import PlanInputs, make_action_stage_block
from release_image.framework.targets import (
    ALLOWED_TARGET_KINDS,
    DEFAULT_TARGETS,
    parse_targets,
    select_build_target,
)
from release_image.framework.workspace import StageWorkspace, copy_source_tree
from release_image.stages._shared import (
    DEFAULT_BACKEND_SOURCE_DIR,
    relative_output_path,
    remaining_seconds,
    require_lock_inputs,
)
from release_image.stages.frontend.bundle import KIND_ID as FRONTEND_KIND_ID
from release_image.stages.frontend.bundle import STATIC_BUNDLE

KIND_ID = "backend.compile"
RELEASE_BINARY = "release_binary"

DEFAULT_SYSTEM_PACKAGES: tuple[str, ...] = (
    "pkg-config",
    "libssl-dev",
    "build-essential",
    "libwebkit2gtk-4.0-dev",
    "libgtk-3-dev",
    "libayatana-appindicator3-dev",
    "librsvg2-dev",
)


def _embeds_assets(inputs: PlanInputs) -> bool:
    return inputs.variant == "embedded"


def _io(inputs: PlanInputs, cfg: ConfigNamespace) -> StageIO:
    requires = (STATIC_BUNDLE,) if _embeds_assets(inputs) else ()
    return StageIO(requires=requires, provides=(RELEASE_BINARY,))


def _build(inputs: PlanInputs, *, instance_id: str, cfg: ConfigNamespace):
    """Build the action stage that compiles the explicitly named server target."""

    prefix = f"stages.{instance_id}"
    source_dir = inputs.project_path(
        cfg.get_str("source_dir", default=DEFAULT_BACKEND_SOURCE_DIR), path=f"{prefix}.source_dir"
    )
    source_rel = inputs.project_relpath(source_dir)
    if source_rel == ".." or source_rel.startswith("../"):
        raise ValueError(f"{prefix}.source_dir must be inside the project root (got {source_dir})")
    manifest = cfg.get_str("manifest", default="Cargo.toml")
    lockfile = cfg.get_str("lockfile", default="Cargo.lock")

    targets_ns = cfg.namespace("targets", default=DEFAULT_TARGETS)
    raw_targets: dict[str, dict[str, Any]] = {}
    for name in list(targets_ns.data.keys()):
        target_ns = targets_ns.namespace(str(name))
        raw_targets[str(name)] = {
            "kind": target_ns.get_str("kind", choices=ALLOWED_TARGET_KINDS),
            "binary": target_ns.get_str("binary"),
        }
    targets = parse_targets(raw_targets, path=f"{prefix}.targets")
    target = select_build_target(targets, cfg.get_str("target", default=None))

    build_command = format_argv(
        cfg.get_list_str(
            "build_command",
            default=["cargo", "build", "--release", "--locked", "--bin", "{binary}"],
        ),
        binary=target.binary,
        target=target.name,
    )
    output_path = relative_output_path(
        format_argv(
            [cfg.get_str("output_path", default="target/release/{binary}")],
            binary=target.binary,
            target=target.name,
        )[0],
        path=f"{prefix}.output_path",
    )
    required_tools = cfg.get_list_str("required_tools", default=[build_command[0]], allow_empty=True)
    system_packages = cfg.get_list_str(
        "system_packages", default=list(DEFAULT_SYSTEM_PACKAGES), allow_empty=True
    )
    assets_dir = relative_output_path(
        cfg.get_str("assets_dir", default="dist"), path=f"{prefix}.assets_dir"
    )
    assets_stage = cfg.get_str("assets_stage", default=FRONTEND_KIND_ID)
    env = cfg.get_str_mapping("env", default={})
    timeout_seconds = cfg.get_int("timeout_seconds", default=1800, min_value=1)
    builder_image = cfg.get_str("builder_image", default="rust:1.80-slim")

    embed_assets = _embeds_assets(inputs)
    # The compiler output root (`target` by default) is never copied from the host.
    output_root = output_path.split(os.sep)[0]
    if output_root in (manifest, lockfile):
        raise ValueError(f"{prefix}.output_path must not start at the crate manifest or lockfile")
    exclude_paths = [*inputs.isolation_excludes(owner_kind=KIND_ID), os.path.join(source_dir, output_root)]

    recipe = {
        "builder_image": builder_image,
        "source_dir": source_rel,
        "system_packages": list(system_packages),
        "build_command": list(build_command),
        "output_path": output_path.replace(os.sep, "/"),
        "exclude": [output_root],
        "binary": target.binary,
        "target": target.name,
        "embed_assets": embed_assets,
        "assets_path": assets_dir.replace(os.sep, "/"),
    }

    def _action(ctx: BuildContext) -> dict[str, Any]:
        require_lock_inputs(source_dir, (manifest, lockfile), stage_id=instance_id)
        missing_tools = [tool for tool in required_tools if shutil.which(tool) is None]
        if missing_tools:
            hint = ", ".join(system_packages) or "<none>"
            raise CompilationError(
                f"{instance_id}: required build tools not found: {', '.join(missing_tools)} "
                f"(target {target.name} also expects system packages: {hint})"
            )
        deadline = time.monotonic() + timeout_seconds

        with StageWorkspace.create(
            ctx.workspaces_dir, instance_id, keep=ctx.cfg.keep_workspaces, logger=ctx.logger
        ) as workspace:
            tree = workspace.join("tree")
            crate_dir = os.path.join(tree, source_rel)
            copy_source_tree(source_dir, crate_dir, exclude_paths=exclude_paths)

            if embed_assets:
                bundle = ctx.registry.materialize(
                    STATIC_BUNDLE, stage=assets_stage, dest=os.path.join(tree, assets_dir)
                )
                ctx.logger.info("Embedding %s from %s (%s)", STATIC_BUNDLE, assets_stage, bundle.digest)

            try:
                run_command(
                    build_command,
                    cwd=crate_dir,
                    env=env,
                    timeout_seconds=remaining_seconds(
                        deadline, stage_id=instance_id, timeout_seconds=timeout_seconds
                    ),
                    cancel_event=ctx.cancel_event,
                    logger=ctx.logger,
                )
            except CommandFailed as exc:
                raise CompilationError(
                    f"{instance_id}: compiling target {target.name} failed: {exc}"
                ) from exc

            binary_path = os.path.join(crate_dir, output_path)
            if not os.path.isfile(binary_path):
                raise CompilationError(
                    f"{instance_id}: target {target.name} produced no binary at "
                    f"{recipe['output_path']}"
                )
            artifact = ctx.registry.publish(
                stage=instance_id, name=RELEASE_BINARY, source=binary_path, executable=True
            )

        ctx.outputs["backend_target"] = {
            "name": target.name,
            "kind": target.kind,
            "binary": target.binary,
        }
        ctx.logger.info(
            "Published %s from %s (target=%s, digest=%s)",
            RELEASE_BINARY,
            instance_id,
            target.name,
            artifact.digest,
        )
        return {
            "artifact": RELEASE_BINARY,
            "target": target.name,
            "binary": target.binary,
            "digest": artifact.digest,
            "embedded_assets": embed_assets,
        }

    cfg.assert_consumed()
    return make_action_stage_block(instance_id, fn=_action, recipe=recipe)


STAGE = StageRef(
    id=KIND_ID,
    builder=_build,
    doc="Compile the named server target into a release binary.",
    source="cargo build --release --locked --bin <binary>",
    tags=("backend",),
    kind="action",
    io=StageIO(provides=(RELEASE_BINARY,)),
    io_resolver=_io,
)
