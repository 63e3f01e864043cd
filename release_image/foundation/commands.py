"""Collaborator command execution with timeouts and fail-fast cancellation."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from release_image.foundation.errors import CommandCancelled, CommandFailed, CommandTimeout

_OUTPUT_TAIL_LINES = 200


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    output_tail: str
    duration_seconds: float


def format_argv(argv: Sequence[str], **values: str) -> list[str]:
    """Substitute `{name}` placeholders in each argument.

    Unknown placeholders raise instead of passing through, so a typo in a
    configured command never reaches the collaborator.
    """

    out: list[str] = []
    for idx, item in enumerate(argv):
        if not isinstance(item, str):
            raise TypeError(f"argv[{idx}] must be a string (type={type(item).__name__})")
        try:
            out.append(item.format(**values))
        except (KeyError, IndexError) as exc:
            raise ValueError(f"Unknown placeholder in command argument {item!r}: {exc}") from exc
    return out


def _kill(proc: subprocess.Popen[str]) -> None:
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:  # pragma: no cover - windows
        proc.kill()
    proc.wait()


def run_command(
    argv: Sequence[str],
    *,
    cwd: str,
    env: Mapping[str, str] | None = None,
    timeout_seconds: float | None = None,
    cancel_event: threading.Event | None = None,
    logger: logging.Logger | None = None,
    check: bool = True,
    poll_interval_seconds: float = 0.2,
) -> CommandResult:
    """Run one collaborator command to completion.

    stdout/stderr are merged; the last lines are kept for error messages and logged
    at DEBUG. The process (and its process group on POSIX) is killed when the
    timeout expires or `cancel_event` is set.
    """

    args = [str(item) for item in argv]
    if not args or not args[0].strip():
        raise ValueError("Command argv must be a non-empty list of strings")

    log = logger or logging.getLogger(__name__)
    display = " ".join(args)
    log.info("Running: %s (cwd=%s)", display, cwd)

    merged_env = dict(os.environ)
    if env:
        merged_env.update({str(k): str(v) for k, v in env.items()})

    try:
        proc = subprocess.Popen(
            args,
            cwd=cwd,
            env=merged_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=(os.name == "posix"),
        )
    except FileNotFoundError as exc:
        raise CommandFailed(
            f"Command not found: {args[0]} ({display})",
            argv=args,
            returncode=127,
        ) from exc

    tail: deque[str] = deque(maxlen=_OUTPUT_TAIL_LINES)

    def _drain() -> None:
        assert proc.stdout is not None
        for line in proc.stdout:
            tail.append(line.rstrip("\n"))

    reader = threading.Thread(target=_drain, name=f"drain-{proc.pid}", daemon=True)
    reader.start()

    start = time.monotonic()
    deadline = start + float(timeout_seconds) if timeout_seconds else None
    while True:
        try:
            proc.wait(timeout=poll_interval_seconds)
            break
        except subprocess.TimeoutExpired:
            pass
        if cancel_event is not None and cancel_event.is_set():
            _kill(proc)
            reader.join(timeout=5)
            raise CommandCancelled(f"Command cancelled after sibling failure: {display}")
        if deadline is not None and time.monotonic() >= deadline:
            _kill(proc)
            reader.join(timeout=5)
            raise CommandTimeout(
                f"Command timed out after {float(timeout_seconds):.0f}s: {display}"
            )

    reader.join(timeout=5)
    duration = time.monotonic() - start
    output_tail = "\n".join(tail)
    if output_tail:
        log.debug("Output of %s:\n%s", display, output_tail)

    result = CommandResult(
        argv=tuple(args),
        returncode=int(proc.returncode),
        output_tail=output_tail,
        duration_seconds=round(duration, 3),
    )
    if check and result.returncode != 0:
        raise CommandFailed(
            f"Command failed (exit={result.returncode}): {display}\n{output_tail[-2000:]}",
            argv=args,
            returncode=result.returncode,
            output_tail=output_tail,
        )
    log.info("Finished: %s (exit=%d, %.2fs)", display, result.returncode, duration)
    return result
