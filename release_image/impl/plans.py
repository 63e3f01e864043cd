"""Build plans: which stages run, and in which waves, for each build variant.

`split` builds the frontend bundle and the backend binary concurrently and joins
before assembly. `embedded` compiles the backend only after the bundle exists,
because the binary embeds the static assets.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from stagekit.compiler import CompiledPlan, compile_stage_waves
from stagekit.engine.patterns import waves
from stagekit.engine.pipeline import Block
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import StageInstance, StageRef
from release_image.framework.config import BuildConfig, BuildVariant
from release_image.framework.dockerfile import render_multistage_dockerfile
from release_image.framework.stage_blocks import PlanInputs
from release_image.stages._shared import DEFAULT_BACKEND_SOURCE_DIR, DEFAULT_FRONTEND_SOURCE_DIR
from release_image.stages.backend.compile import STAGE as BACKEND_COMPILE
from release_image.stages.frontend.bundle import STAGE as FRONTEND_BUNDLE
from release_image.stages.image.assemble import STAGE as IMAGE_ASSEMBLE
from release_image.stages.image.docker_build import STAGE as IMAGE_DOCKER_BUILD
from release_image.stages.image.docker_build import is_enabled as docker_build_enabled
from release_image.stages.registry import get_stage_registry
from release_image.stages.runtime.entrypoint import STAGE as RUNTIME_ENTRYPOINT

PIPELINE_NAME = "pipeline"


class WavePlan:
    """Declarative plan: a sequence of waves of stage references."""

    name: str

    def stage_waves(self, inputs: PlanInputs) -> list[list[StageRef]]:
        raise NotImplementedError

    def wave_instances(self, inputs: PlanInputs) -> list[list[StageInstance]]:
        out: list[list[StageInstance]] = []
        for idx, wave in enumerate(self.stage_waves(inputs)):
            if not wave:
                raise ValueError(f"build.variant={self.name} produced an empty wave at index {idx}")
            out.append([ref.instance() for ref in wave])
        return out

    def _tail(self, inputs: PlanInputs) -> list[list[StageRef]]:
        tail = [[IMAGE_ASSEMBLE], [RUNTIME_ENTRYPOINT]]
        if docker_build_enabled(inputs.cfg.stage_configs.get(IMAGE_DOCKER_BUILD.id)):
            tail.append([IMAGE_DOCKER_BUILD])
        return tail


class SplitPlan(WavePlan):
    name = "split"

    def stage_waves(self, inputs: PlanInputs) -> list[list[StageRef]]:
        return [[FRONTEND_BUNDLE, BACKEND_COMPILE], *self._tail(inputs)]


class EmbeddedPlan(WavePlan):
    name = "embedded"

    def stage_waves(self, inputs: PlanInputs) -> list[list[StageRef]]:
        return [[FRONTEND_BUNDLE], [BACKEND_COMPILE], *self._tail(inputs)]


_PLAN_REGISTRY: dict[str, type[WavePlan]] = {
    SplitPlan.name: SplitPlan,
    EmbeddedPlan.name: EmbeddedPlan,
}


def get_plan(variant: str) -> WavePlan:
    plan_cls = _PLAN_REGISTRY.get(variant)
    if plan_cls is None:
        raise ValueError(
            f"Unknown build.variant: {variant!r} (available: {', '.join(sorted(_PLAN_REGISTRY))})"
        )
    return plan_cls()


def make_plan_inputs(cfg: BuildConfig, *, variant: BuildVariant | None = None) -> PlanInputs:
    source_dirs: dict[str, str] = {}
    for ref, default in (
        (FRONTEND_BUNDLE, DEFAULT_FRONTEND_SOURCE_DIR),
        (BACKEND_COMPILE, DEFAULT_BACKEND_SOURCE_DIR),
    ):
        raw = (cfg.stage_configs.get(ref.id) or {}).get("source_dir", default)
        if not isinstance(raw, str) or not raw.strip():
            raise ValueError(f"stages.{ref.id}.source_dir must be a non-empty string")
        source_dirs[ref.id] = raw

    inputs = PlanInputs(cfg=cfg, variant=variant or cfg.variant)
    resolved = {
        kind: inputs.project_path(raw, path=f"stages.{kind}.source_dir")
        for kind, raw in source_dirs.items()
    }
    return PlanInputs(cfg=cfg, variant=inputs.variant, source_dirs=resolved)


@dataclass(frozen=True)
class ResolvedBuildPlan:
    name: str
    inputs: PlanInputs
    compiled: CompiledPlan
    pipeline: Block

    @property
    def metadata(self) -> dict[str, Any]:
        return dict(self.compiled.metadata)

    def blocks(self) -> list[Block]:
        return [block for wave in self.compiled.waves for block in wave]

    def recipes(self) -> dict[str, dict[str, Any]]:
        """Stage kind id -> recipe fragment, for every compiled stage that carries one."""

        out: dict[str, dict[str, Any]] = {}
        for block in self.blocks():
            recipe = block.meta.get("recipe")
            if isinstance(recipe, dict):
                out[str(block.meta.get("stage_kind"))] = dict(recipe)
        return out


def compile_build_plan(
    cfg: BuildConfig,
    *,
    variant: BuildVariant | None = None,
    stage_registry: StageRegistry | None = None,
) -> ResolvedBuildPlan:
    inputs = make_plan_inputs(cfg, variant=variant)
    plan = get_plan(inputs.variant)
    registry = stage_registry or get_stage_registry()

    compiled = compile_stage_waves(
        plan.wave_instances(inputs),
        plan_name=plan.name,
        stage_configs=cfg.stage_configs,
        stage_registry=registry,
        inputs=inputs,
        include=cfg.stages_include,
        exclude=cfg.stages_exclude,
    )
    pipeline = waves(
        PIPELINE_NAME,
        groups=[list(wave) for wave in compiled.waves],
        parallel=cfg.parallel,
        meta={"variant": plan.name},
    )
    return ResolvedBuildPlan(name=plan.name, inputs=inputs, compiled=compiled, pipeline=pipeline)


def render_plan_dockerfile(plan: ResolvedBuildPlan) -> str:
    recipes = plan.recipes()
    required: Sequence[StageRef] = (FRONTEND_BUNDLE, BACKEND_COMPILE, IMAGE_ASSEMBLE, RUNTIME_ENTRYPOINT)
    missing = [ref.id for ref in required if ref.id not in recipes]
    if missing:
        raise ValueError(
            "Cannot render a Dockerfile without stages: " + ", ".join(missing)
            + " (check build.stages include/exclude)"
        )
    return render_multistage_dockerfile(
        frontend=recipes[FRONTEND_BUNDLE.id],
        backend=recipes[BACKEND_COMPILE.id],
        image=recipes[IMAGE_ASSEMBLE.id],
        runtime=recipes[RUNTIME_ENTRYPOINT.id],
    )
