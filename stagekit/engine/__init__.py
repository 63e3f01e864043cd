"""Engine primitives for building and running Block/ActionStep trees."""

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

__all__ = [
    "ALLOWED_EXECUTION_MODES",
    "ActionStep",
    "Block",
    "DefaultStepRecorder",
    "ExecutionMode",
    "FlowContext",
    "FlowRunner",
    "Node",
    "PipelineCancelled",
    "StepRecorder",
    "utc_now_iso8601",
    "waves",
]
