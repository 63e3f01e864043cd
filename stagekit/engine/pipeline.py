"""Execution engine for Block/ActionStep trees.

A tree is a `Block` of named children. Sequential blocks run children in order;
parallel blocks fan children out to a thread pool and join before returning. Every
action is recorded on `ctx.steps` with its slash-separated path, e.g.
`pipeline/wave_01/backend.compile/action`.

This module is app-agnostic and must not import `release_image.*`.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Protocol, TypeAlias

ExecutionMode: TypeAlias = Literal["sequential", "parallel"]
ALLOWED_EXECUTION_MODES: tuple[str, ...] = ("sequential", "parallel")


def utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class FlowContext(Protocol):
    logger: logging.Logger
    outputs: dict[str, Any]
    steps: list[dict[str, Any]]
    cancel_event: threading.Event


class PipelineCancelled(RuntimeError):
    """Raised for nodes that were skipped because a sibling already failed."""


def _clean_optional_name(value: Any, *, what: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{what} must be a string or None (type={type(value).__name__})")
    cleaned = value.strip()
    if not cleaned:
        raise ValueError(f"{what} cannot be empty")
    return cleaned


def _require_dict(value: Any, *, what: str) -> None:
    if not isinstance(value, dict):
        raise TypeError(f"{what} must be a dict (type={type(value).__name__})")


@dataclass(frozen=True)
class ActionStep:
    """A callable run against the flow context; its return value can be captured."""

    name: str | None
    fn: Callable[[FlowContext], Any]
    capture_key: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _clean_optional_name(self.name, what="Action name"))
        if not callable(self.fn):
            raise TypeError(f"Action fn must be callable (type={type(self.fn).__name__})")
        object.__setattr__(
            self, "capture_key", _clean_optional_name(self.capture_key, what="Action capture_key")
        )
        _require_dict(self.meta, what="Action meta")


@dataclass(frozen=True)
class Block:
    name: str | None = None
    nodes: list["Node"] = field(default_factory=list)
    mode: ExecutionMode = "sequential"
    meta: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", _clean_optional_name(self.name, what="Block name"))
        if self.mode not in ALLOWED_EXECUTION_MODES:
            raise ValueError(
                f"Invalid block execution mode: {self.mode!r} "
                f"(expected one of: {', '.join(ALLOWED_EXECUTION_MODES)})"
            )
        _require_dict(self.meta, what="Block meta")


Node: TypeAlias = Block | ActionStep


class StepRecorder(Protocol):
    def on_step_start(self, ctx: FlowContext, path: str, **metrics: Any) -> None:
        ...

    def on_step_end(self, ctx: FlowContext, record: dict[str, Any]) -> None:
        ...

    def on_step_error(self, ctx: FlowContext, path: str, step_name: str, exc: Exception) -> None:
        ...


class DefaultStepRecorder:
    """Appends step records to `ctx.steps` and narrates them on the build logger."""

    def on_step_start(self, ctx: FlowContext, path: str, **metrics: Any) -> None:
        tokens: list[str] = []
        for key in ("node_type", "stage_id", "source"):
            value = metrics.get(key)
            if isinstance(value, str) and value.strip():
                tokens.append(f"{key}={value.strip()}")
        doc = metrics.get("doc")
        if isinstance(doc, str) and doc.strip():
            tokens.append(f"doc={json.dumps(doc.strip(), ensure_ascii=False)}")
        ctx.logger.info("Step: %s (%s)", path, ", ".join(tokens))

    def on_step_end(self, ctx: FlowContext, record: dict[str, Any]) -> None:
        ctx.steps.append(record)
        duration = record.get("duration_seconds")
        if isinstance(duration, (int, float)):
            ctx.logger.info("Completed %s in %.2fs", record.get("path", "<unknown>"), float(duration))
        else:
            ctx.logger.info("Completed %s", record.get("path", "<unknown>"))

    def on_step_error(self, ctx: FlowContext, path: str, step_name: str, exc: Exception) -> None:
        if isinstance(exc, PipelineCancelled):
            ctx.logger.warning("Step cancelled: %s (%s)", path, exc)
            return
        ctx.logger.error("Step failed: %s (%s: %s)", path, type(exc).__name__, exc)


def _default_name(node: Node, *, index: int) -> str:
    if isinstance(node, ActionStep):
        return node.name or f"action_{index + 1:02d}"
    return node.name or f"block_{index + 1:02d}"


def _callable_source(fn: Any) -> str:
    module = getattr(fn, "__module__", None) or "<unknown_module>"
    qualname = getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or "<callable>"
    return f"{module}.{qualname}"


def _json_safe(value: Any, *, max_depth: int = 4, max_items: int = 25) -> Any:
    """Bound a step result or meta value so it can be written to the transcript."""

    if max_depth <= 0:
        return "<max_depth>"
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        out = [_json_safe(item, max_depth=max_depth - 1, max_items=max_items) for item in value[:max_items]]
        if len(value) > max_items:
            out.append(f"<{len(value) - max_items} more>")
        return out
    if isinstance(value, dict):
        mapped: dict[str, Any] = {}
        for idx, (key, item) in enumerate(value.items()):
            if idx >= max_items:
                mapped["<more>"] = f"<{len(value) - max_items} more>"
                break
            mapped[str(key)] = _json_safe(item, max_depth=max_depth - 1, max_items=max_items)
        return mapped
    return repr(value)


def _annotate_error(exc: Exception, *, path: str, node_type: str, node_name: str) -> None:
    """Record where an error surfaced; the innermost node wins."""

    for attr, value in (
        ("pipeline_path", path),
        ("pipeline_node_type", node_type),
        ("pipeline_node_name", node_name),
    ):
        if hasattr(exc, attr):
            continue
        try:
            setattr(exc, attr, value)
        except AttributeError:
            pass


class FlowRunner:
    """Runs a node tree against a context.

    Sequential blocks run children in order and stop at the first failure. Parallel
    blocks run children on a thread pool and act as a join barrier: the block only
    returns once every child finished. The first child failure sets
    `ctx.cancel_event`, pending siblings are never started, and the original error is
    re-raised.
    """

    def __init__(self, *, recorder: StepRecorder | None = None, max_workers: int | None = None):
        if max_workers is not None and (isinstance(max_workers, bool) or int(max_workers) < 1):
            raise ValueError("max_workers must be >= 1 or None")
        self._recorder = recorder or DefaultStepRecorder()
        for method in ("on_step_start", "on_step_end", "on_step_error"):
            if not callable(getattr(self._recorder, method, None)):
                raise TypeError(f"Step recorder missing required method: {method}")
        self._max_workers = max_workers

    def run(self, ctx: FlowContext, node: Node) -> None:
        root = node.name or ("pipeline" if isinstance(node, Block) else "action_01")
        self._execute_node(ctx, node, path_segments=[root], inherited_meta=None)

    def _execute_node(
        self,
        ctx: FlowContext,
        node: Node,
        *,
        path_segments: list[str],
        inherited_meta: dict[str, Any] | None,
    ) -> None:
        if isinstance(node, ActionStep):
            self._execute_action(ctx, node, path_segments=path_segments, inherited_meta=inherited_meta)
        elif isinstance(node, Block):
            self._execute_block(ctx, node, path_segments=path_segments, inherited_meta=inherited_meta)
        else:
            raise TypeError(f"Unsupported node type: {type(node).__name__}")

    def _execute_action(
        self,
        ctx: FlowContext,
        action: ActionStep,
        *,
        path_segments: list[str],
        inherited_meta: dict[str, Any] | None,
    ) -> None:
        path = "/".join(path_segments)
        name = path_segments[-1]
        try:
            if ctx.cancel_event.is_set():
                raise PipelineCancelled(f"Skipped {path}: pipeline already failed")

            record_meta = {**(inherited_meta or {}), **action.meta}
            record_meta.setdefault("source", _callable_source(action.fn))
            self._recorder.on_step_start(
                ctx,
                path,
                node_type="action",
                stage_id=record_meta.get("stage_id"),
                source=record_meta.get("source"),
                doc=record_meta.get("doc"),
            )

            started_at = utc_now_iso8601()
            start = time.monotonic()
            result = action.fn(ctx)
            duration = time.monotonic() - start
            if action.capture_key is not None:
                ctx.outputs[action.capture_key] = result

            record: dict[str, Any] = {
                "type": "action",
                "name": name,
                "path": path,
                "started_at": started_at,
                "created_at": utc_now_iso8601(),
                "duration_seconds": round(duration, 3),
                "meta": _json_safe(record_meta),
            }
            if result is not None:
                record["result"] = _json_safe(result)
            self._recorder.on_step_end(ctx, record)
        except Exception as exc:
            try:
                self._recorder.on_step_error(ctx, path, name, exc)
            except Exception:
                ctx.logger.exception("Step recorder failed during error handling for %s", path)
            _annotate_error(exc, path=path, node_type="action", node_name=name)
            raise

    def _execute_block(
        self,
        ctx: FlowContext,
        block: Block,
        *,
        path_segments: list[str],
        inherited_meta: dict[str, Any] | None,
    ) -> None:
        path = "/".join(path_segments)
        try:
            block_meta = {**(inherited_meta or {}), **block.meta}
            names = [_default_name(child, index=i) for i, child in enumerate(block.nodes)]
            duplicates = sorted({n for n in names if names.count(n) > 1})
            if duplicates:
                raise ValueError(f"Duplicate node name(s) in block {path}: {', '.join(duplicates)}")

            children = [(child, [*path_segments, n]) for child, n in zip(block.nodes, names, strict=True)]
            if block.mode == "parallel" and len(children) > 1:
                self._run_parallel(ctx, children, inherited_meta=block_meta)
                return

            for child, child_path in children:
                if ctx.cancel_event.is_set():
                    raise PipelineCancelled(f"Skipped {'/'.join(child_path)}: pipeline already failed")
                self._execute_node(ctx, child, path_segments=child_path, inherited_meta=block_meta)
        except Exception as exc:
            _annotate_error(exc, path=path, node_type="block", node_name=path_segments[-1])
            raise

    def _execute_child(
        self,
        ctx: FlowContext,
        node: Node,
        *,
        path_segments: list[str],
        inherited_meta: dict[str, Any] | None,
    ) -> None:
        try:
            self._execute_node(ctx, node, path_segments=path_segments, inherited_meta=inherited_meta)
        except Exception:
            # Set on the worker thread so children still queued on this pool see it.
            if not ctx.cancel_event.is_set():
                ctx.logger.error("Cancelling sibling stages after failure in %s", "/".join(path_segments))
                ctx.cancel_event.set()
            raise

    def _run_parallel(
        self,
        ctx: FlowContext,
        children: list[tuple[Node, list[str]]],
        *,
        inherited_meta: dict[str, Any] | None,
    ) -> None:
        workers = len(children)
        if self._max_workers is not None:
            workers = min(workers, int(self._max_workers))

        first_error: BaseException | None = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stage") as pool:
            futures: list[Future[None]] = [
                pool.submit(
                    self._execute_child,
                    ctx,
                    child,
                    path_segments=child_path,
                    inherited_meta=inherited_meta,
                )
                for child, child_path in children
            ]

            pending = set(futures)
            while pending:
                done, pending = wait(pending, return_when=FIRST_EXCEPTION)
                for future in done:
                    if future.cancelled():
                        continue
                    exc = future.exception()
                    if exc is None:
                        continue
                    # A sibling's cancellation never hides the failure that caused it.
                    if first_error is None or (
                        isinstance(first_error, PipelineCancelled)
                        and not isinstance(exc, PipelineCancelled)
                    ):
                        first_error = exc
                    for other in pending:
                        other.cancel()

        if first_error is not None:
            raise first_error
