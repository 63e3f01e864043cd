from __future__ import annotations

"""Generic stage plan compilation.

This module intentionally contains no application-specific conventions. A plan is a
sequence of waves; stages inside one wave have no data dependency on each other and
may run concurrently. Compilation enforces:

- unique stage instance ids
- include/exclude selectors that name real instances
- stage configs keyed by known stage kinds, with every key consumed by its builder
- artifact IO: each required artifact is provided by a stage in a strictly earlier
  wave (or by the initial artifacts), and no two stages provide the same artifact
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from stagekit.config_namespace import STAGE_CONFIG_PREFIX, ConfigNamespace
from stagekit.engine.pipeline import Block
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import StageInstance

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompiledPlan:
    waves: tuple[tuple[Block, ...], ...]
    metadata: dict[str, Any]

    @property
    def stage_ids(self) -> tuple[str, ...]:
        return tuple(block.name or "" for wave in self.waves for block in wave)


def _normalize_selector(
    raw: Any,
    *,
    available: Sequence[str],
    plan_name: str,
    path: str,
) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError(f"{path} entries must be non-empty strings (plan={plan_name})")
    key = raw.strip()
    if key not in available:
        listed = ", ".join(available) or "<none>"
        raise ValueError(f"{path} names unknown stage {key!r} (plan={plan_name}; available: {listed})")
    return key


def compile_stage_waves(
    waves: Sequence[Sequence[StageInstance]],
    *,
    plan_name: str,
    stage_configs: Mapping[str, Mapping[str, Any]],
    stage_registry: StageRegistry,
    inputs: Any,
    include: tuple[str, ...] = (),
    exclude: tuple[str, ...] = (),
    initial_artifacts: Iterable[str] = (),
) -> CompiledPlan:
    """Compile waves of stage instances into concrete blocks with strict IO + config validation."""

    instance_ids: list[str] = []
    for wave_idx, wave in enumerate(waves):
        for idx, node in enumerate(wave):
            if not isinstance(node, StageInstance):
                raise TypeError(
                    f"plan={plan_name} waves[{wave_idx}][{idx}] must be a StageInstance "
                    f"(type={type(node).__name__}, value={node!r})"
                )
            instance_ids.append(node.instance_id)

    seen: set[str] = set()
    for instance_id in instance_ids:
        if instance_id in seen:
            raise ValueError(f"Duplicate stage id: {instance_id} (plan={plan_name})")
        seen.add(instance_id)

    include_set = {
        _normalize_selector(raw, available=instance_ids, plan_name=plan_name, path="build.stages.include")
        for raw in include
    }
    exclude_set = {
        _normalize_selector(raw, available=instance_ids, plan_name=plan_name, path="build.stages.exclude")
        for raw in exclude
    }

    # Configs may name stage kinds the plan does not use, but never unknown kinds.
    normalized_configs: dict[str, Mapping[str, Any]] = {}
    for raw_kind_id, raw_cfg in stage_configs.items():
        try:
            kind = stage_registry.resolve(raw_kind_id).id
        except ValueError as exc:
            raise ValueError(f"Unknown stage kind id in stages config: {raw_kind_id!r}") from exc
        if raw_cfg is not None and not isinstance(raw_cfg, Mapping):
            raise ValueError(
                f"stages.{raw_kind_id} must be a mapping (type={type(raw_cfg).__name__})"
            )
        normalized_configs[kind] = dict(raw_cfg or {})

    provided: set[str] = {str(item).strip() for item in initial_artifacts if str(item).strip()}
    owners: dict[str, str] = {name: "<initial>" for name in provided}

    compiled_waves: list[tuple[Block, ...]] = []
    stage_io_effective: dict[str, dict[str, Any]] = {}
    stage_configs_effective: dict[str, dict[str, Any]] = {}
    stage_instances_out: list[dict[str, Any]] = []

    wave_number = 0
    for wave in waves:
        selected = [
            node
            for node in wave
            if (not include_set or node.instance_id in include_set)
            and node.instance_id not in exclude_set
        ]
        if not selected:
            continue
        wave_number += 1

        wave_provides: dict[str, str] = {}
        blocks: list[Block] = []
        for node in selected:
            stage_id = node.instance_id
            ref = node.stage
            kind_id = ref.id

            cfg_ns = ConfigNamespace(
                dict(normalized_configs.get(kind_id, {})),
                path=f"{STAGE_CONFIG_PREFIX}{stage_id}",
            )
            io = ref.resolve_io(inputs, cfg_ns)

            missing = [name for name in io.requires if name not in provided]
            if missing:
                details: list[str] = []
                for name in missing:
                    if name in wave_provides:
                        details.append(f"{name} (provided by {wave_provides[name]} in the same wave)")
                        continue
                    producers = stage_registry.producers(name)
                    hint = ", ".join(producers) if producers else "<none>"
                    details.append(f"{name} (producers: {hint})")
                raise ValueError(
                    "Stage IO validation failed: "
                    f"stage={stage_id} kind={kind_id} missing_required_artifacts={'; '.join(details)}"
                )

            for name in io.provides:
                owner = owners.get(name) or wave_provides.get(name)
                if owner is not None:
                    raise ValueError(
                        f"Artifact {name!r} provided by more than one stage: {owner} and {stage_id}"
                    )
                wave_provides[name] = stage_id

            try:
                block = ref.build(inputs, instance_id=stage_id, cfg=cfg_ns)
                cfg_ns.assert_consumed()
            except (TypeError, ValueError) as exc:
                raise ValueError(
                    f"Stage config/build failed: stage={stage_id} kind={kind_id}: {exc}"
                ) from exc

            effective = cfg_ns.effective_values()
            if effective:
                stage_configs_effective[stage_id] = effective
            stage_io_effective[stage_id] = {
                "requires": list(io.requires),
                "provides": list(io.provides),
            }
            stage_instances_out.append({"instance": stage_id, "kind": kind_id, "wave": wave_number})
            blocks.append(block)

        for name, owner in wave_provides.items():
            owners[name] = owner
            provided.add(name)
        compiled_waves.append(tuple(blocks))

    if not compiled_waves:
        raise ValueError(
            f"Resolved stage list is empty after applying build.stages include/exclude (plan={plan_name})"
        )

    logger.debug(
        "Compiled plan %s: %s",
        plan_name,
        " -> ".join("[" + ", ".join(b.name or "?" for b in wave) + "]" for wave in compiled_waves),
    )

    metadata: dict[str, Any] = {
        "plan": plan_name,
        "stages_include": sorted(include_set),
        "stages_exclude": sorted(exclude_set),
        "stage_instances": stage_instances_out,
        "stage_io": stage_io_effective,
        "artifact_owners": {name: owner for name, owner in sorted(owners.items())},
    }
    if stage_configs_effective:
        metadata["stage_configs_effective"] = stage_configs_effective

    return CompiledPlan(waves=tuple(compiled_waves), metadata=metadata)
