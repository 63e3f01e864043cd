from __future__ import annotations

import os
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from stagekit.engine.pipeline import FlowRunner, utc_now_iso8601
from release_image.foundation.logging_utils import close_logger, setup_operational_logger
from release_image.framework.artifacts.build_index import (
    append_build_index_entry,
    build_index_entry,
)
from release_image.framework.artifacts.registry import ArtifactRegistry
from release_image.framework.artifacts.transcript import write_build_transcript
from release_image.framework.config import ALLOWED_VARIANTS, BuildConfig
from release_image.framework.runtime import BuildContext
from release_image.impl.plans import ResolvedBuildPlan, compile_build_plan


def generate_build_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def transcript_path_for(cfg: BuildConfig, build_id: str) -> str:
    return os.path.join(cfg.log_dir, f"{build_id}_transcript.json")


def apply_variant_override(cfg: BuildConfig, variant: str | None) -> BuildConfig:
    if variant is None:
        return cfg
    normalized = variant.strip().lower()
    if normalized not in ALLOWED_VARIANTS:
        raise ValueError(
            f"Invalid variant override: {variant!r} (expected one of: {', '.join(ALLOWED_VARIANTS)})"
        )
    return replace(cfg, variant=normalized)


def _failed_stage(exc: BaseException, plan: ResolvedBuildPlan | None) -> str | None:
    path = getattr(exc, "pipeline_path", None)
    if not isinstance(path, str) or plan is None:
        return None
    stage_ids = set(plan.compiled.stage_ids)
    for segment in reversed(path.split("/")):
        if segment in stage_ids:
            return segment
    return None


def _record_build(ctx: BuildContext, transcript_path: str, *, status: str) -> None:
    write_build_transcript(transcript_path, ctx)
    ctx.logger.info("Wrote transcript JSON to %s", transcript_path)
    try:
        append_build_index_entry(ctx.cfg.index_path, build_index_entry(ctx, status=status))
        ctx.logger.info("Appended build index entry to %s (status=%s)", ctx.cfg.index_path, status)
    except Exception as exc:  # noqa: BLE001
        ctx.logger.exception("Build index append failed: %s", exc)
        ctx.outputs["build_index_error"] = str(exc)


def run_build(
    cfg_dict: dict[str, Any],
    *,
    build_id: str | None = None,
    variant: str | None = None,
    config_meta: dict[str, Any] | None = None,
) -> BuildContext:
    """Run one build end to end. Raises the first stage failure after recording it."""

    config_dir = (config_meta or {}).get("config_dir")
    cfg, cfg_warnings = BuildConfig.from_dict(cfg_dict, config_dir=config_dir)
    cfg = apply_variant_override(cfg, variant)
    build_id = build_id or generate_build_id()

    logger, operational_log_path = setup_operational_logger(cfg.log_dir, build_id)
    if config_meta:
        mode = config_meta.get("mode")
        paths = config_meta.get("paths") or []
        env_var = config_meta.get("env_var") or "RELEASE_IMAGE_CONFIG"
        if mode in {"env", "explicit"} and paths:
            label = f"env {env_var}" if mode == "env" else "explicit path"
            logger.info("Loaded config from %s=%s", label, paths[0])
        elif paths:
            local = paths[1] if len(paths) > 1 else None
            if local:
                logger.info("Loaded config base=%s local=%s", paths[0], local)
            else:
                logger.info("Loaded config base=%s", paths[0])

    logger.info("Build started: %s (variant=%s, project=%s)", build_id, cfg.variant, cfg.project_root)
    for warning in cfg_warnings:
        logger.warning("%s", warning)

    transcript_path = transcript_path_for(cfg, build_id)
    build_dir = cfg.build_dir(build_id)
    plan: ResolvedBuildPlan | None = None
    phase = "init"
    ctx: BuildContext | None = None
    try:
        if os.path.exists(build_dir):
            raise FileExistsError(f"Build directory already exists: {build_dir}")
        ctx = BuildContext(
            build_id=build_id,
            cfg=cfg,
            logger=logger,
            registry=ArtifactRegistry(os.path.join(build_dir, "artifacts")),
            build_dir=build_dir,
            created_at=utc_now_iso8601(),
        )

        phase = "plan"
        plan = compile_build_plan(cfg)
        ctx.outputs["plan"] = plan.metadata
        logger.info(
            "Build plan %s: %s",
            plan.name,
            " -> ".join("[" + ", ".join(b.name or "?" for b in wave) + "]" for wave in plan.compiled.waves),
        )

        phase = "pipeline"
        FlowRunner(max_workers=cfg.max_workers).run(ctx, plan.pipeline)

        phase = "record"
        _record_build(ctx, transcript_path, status="success")
        logger.info("Operational log stored at %s", operational_log_path)
        logger.info("Build %s completed successfully", build_id)
        return ctx
    except Exception as exc:
        logger.exception("Build failed during phase %s", phase)
        if ctx is not None:
            ctx.error = {
                "phase": phase,
                "type": type(exc).__name__,
                "message": str(exc),
            }
            stage = _failed_stage(exc, plan)
            if stage:
                ctx.error["stage"] = stage
            pipeline_path = getattr(exc, "pipeline_path", None)
            if pipeline_path:
                ctx.error["path"] = pipeline_path
            try:
                _record_build(ctx, transcript_path, status="error")
            except Exception:
                logger.exception("Failed to write transcript during error handling")
        raise
    finally:
        if ctx is not None and not cfg.keep_workspaces:
            try:
                os.rmdir(ctx.workspaces_dir)
            except OSError:
                pass
        close_logger(logger)
