from __future__ import annotations

import json
import os
import time
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Any

import pandas as pd

from release_image.framework.runtime import BuildContext
from stagekit import utc_now_iso8601

INDEX_SCHEMA_VERSION = 1

INDEX_COLUMNS: list[str] = [
    "build_id",
    "status",
    "variant",
    "created_at",
    "artifact",
    "stage",
    "digest",
    "size_bytes",
]


@contextmanager
def index_lock(
    index_path: str,
    *,
    timeout_seconds: float = 60.0,
    poll_interval_seconds: float = 0.1,
):
    lock_path = f"{index_path}.lock"
    start = time.monotonic()
    os.makedirs(os.path.dirname(os.path.abspath(lock_path)), exist_ok=True)

    while True:
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            with os.fdopen(fd, "w", encoding="utf-8") as file:
                file.write(f"pid={os.getpid()}\ncreated_at={utc_now_iso8601()}\n")
            break
        except FileExistsError:
            if (time.monotonic() - start) >= timeout_seconds:
                raise TimeoutError(f"Timed out waiting for build index lock: {lock_path}")
            time.sleep(poll_interval_seconds)

    try:
        yield
    finally:
        try:
            os.remove(lock_path)
        except FileNotFoundError:
            pass


def build_index_entry(ctx: BuildContext, *, status: str) -> dict[str, Any]:
    artifacts: dict[str, dict[str, Any]] = {}
    for row in ctx.registry.describe():
        artifacts[row["name"]] = {
            "stage": row["stage"],
            "digest": row["digest"],
            "size_bytes": row["size_bytes"],
        }
    entry: dict[str, Any] = {
        "schema_version": INDEX_SCHEMA_VERSION,
        "build_id": ctx.build_id,
        "created_at": ctx.created_at,
        "finished_at": utc_now_iso8601(),
        "status": status,
        "variant": ctx.cfg.variant,
        "artifacts": artifacts,
    }
    image_ref = ctx.outputs.get("image_ref")
    if image_ref is not None:
        entry["image_ref"] = image_ref
    if ctx.error is not None:
        entry["error"] = {"type": ctx.error.get("type"), "message": ctx.error.get("message")}
    return entry


def append_build_index_entry(index_path: str, entry: Mapping[str, Any]) -> None:
    """Append one JSON object to the JSONL build index under the index lock."""

    with index_lock(index_path):
        with open(index_path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(dict(entry), ensure_ascii=False))
            handle.write("\n")


def read_build_index(index_path: str) -> pd.DataFrame:
    """Load the build index as one row per (build, artifact).

    Builds that published nothing still appear once with empty artifact columns.
    """

    rows: list[dict[str, Any]] = []
    if os.path.exists(index_path):
        with open(index_path, "r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise ValueError(f"Invalid JSON in build index {index_path}:{line_no}: {exc}") from exc
                if not isinstance(entry, dict) or entry.get("schema_version") != INDEX_SCHEMA_VERSION:
                    raise ValueError(
                        f"Unsupported build index entry at {index_path}:{line_no} "
                        f"(expected schema_version={INDEX_SCHEMA_VERSION})"
                    )
                base = {
                    "build_id": entry.get("build_id"),
                    "status": entry.get("status"),
                    "variant": entry.get("variant"),
                    "created_at": entry.get("created_at"),
                }
                artifacts = entry.get("artifacts") or {}
                if not artifacts:
                    rows.append({**base, "artifact": None, "stage": None, "digest": None, "size_bytes": None})
                for name, info in sorted(artifacts.items()):
                    rows.append(
                        {
                            **base,
                            "artifact": name,
                            "stage": info.get("stage"),
                            "digest": info.get("digest"),
                            "size_bytes": info.get("size_bytes"),
                        }
                    )
    return pd.DataFrame(rows, columns=INDEX_COLUMNS)


def compare_builds(index_path: str, build_a: str, build_b: str) -> pd.DataFrame:
    """Compare artifact digests of two builds.

    Returns one row per artifact name with `digest_a`, `digest_b` and `match`.
    An artifact present in only one build never matches.
    """

    frame = read_build_index(index_path)
    frame = frame[frame["artifact"].notna()]

    selected: dict[str, pd.DataFrame] = {}
    for label, build_id in (("a", build_a), ("b", build_b)):
        rows = frame[frame["build_id"] == build_id]
        if rows.empty:
            known = ", ".join(sorted(str(b) for b in frame["build_id"].dropna().unique())) or "<none>"
            raise ValueError(f"Build {build_id!r} has no artifacts in {index_path} (known: {known})")
        selected[label] = rows[["artifact", "stage", "digest"]].rename(
            columns={"stage": f"stage_{label}", "digest": f"digest_{label}"}
        )

    merged = selected["a"].merge(selected["b"], on="artifact", how="outer")
    merged["match"] = merged["digest_a"].notna() & (merged["digest_a"] == merged["digest_b"])
    return merged.sort_values("artifact").reset_index(drop=True)
