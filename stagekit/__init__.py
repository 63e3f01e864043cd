"""Reusable stage kernel (engine primitives + stage authoring kit).

This package is intentionally independent of `release_image.*`. Any project-specific
conventions (artifact storage, stage workspaces, collaborator commands, error
taxonomy) must live in the consuming application.
"""

from stagekit.compiler import CompiledPlan, compile_stage_waves
from stagekit.config_namespace import ConfigNamespace
from stagekit.engine.patterns import waves
from stagekit.engine.pipeline import (
    ALLOWED_EXECUTION_MODES,
    ActionStep,
    Block,
    DefaultStepRecorder,
    ExecutionMode,
    FlowContext,
    FlowRunner,
    Node,
    PipelineCancelled,
    StepRecorder,
    utc_now_iso8601,
)
from stagekit.stage_registry import StageRegistry
from stagekit.stage_types import StageBuilder, StageInstance, StageIO, StageKind, StageRef

__all__ = [
    "ALLOWED_EXECUTION_MODES",
    "ActionStep",
    "Block",
    "CompiledPlan",
    "ConfigNamespace",
    "DefaultStepRecorder",
    "ExecutionMode",
    "FlowContext",
    "FlowRunner",
    "Node",
    "PipelineCancelled",
    "StageBuilder",
    "StageIO",
    "StageInstance",
    "StageKind",
    "StageRef",
    "StageRegistry",
    "StepRecorder",
    "compile_stage_waves",
    "utc_now_iso8601",
    "waves",
]
