"""Start a built image's entrypoint on the host and check that it serves."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from release_image.foundation.errors import ArtifactCopyError, ImageAssemblyError
from release_image.framework.entrypoint import EntrypointContract, EntrypointProcess
from release_image.framework.image import read_image_manifest
from release_image.stages.runtime.entrypoint import IMAGE_CONTEXT

logger = logging.getLogger(__name__)


def locate_image_context(transcript_path: str) -> str:
    try:
        with open(transcript_path, "r", encoding="utf-8") as handle:
            transcript = json.load(handle)
    except FileNotFoundError as exc:
        raise ArtifactCopyError(f"Build transcript not found: {transcript_path}") from exc

    if transcript.get("error"):
        raise ArtifactCopyError(
            f"Build {transcript.get('build_id')} failed; nothing to probe "
            f"({transcript['error'].get('type')}: {transcript['error'].get('message')})"
        )
    for artifact in transcript.get("artifacts") or []:
        if artifact.get("name") == IMAGE_CONTEXT:
            path = str(artifact.get("path") or "")
            if not os.path.isdir(path):
                raise ArtifactCopyError(f"Image context recorded in the transcript is missing: {path}")
            return path
    raise ArtifactCopyError(f"Build transcript {transcript_path} records no {IMAGE_CONTEXT} artifact")


def probe_image_context(
    context_dir: str,
    *,
    port: int | None = None,
    timeout_seconds: float = 30.0,
    health_path: str | None = None,
    probe_logger: logging.Logger | None = None,
) -> dict[str, Any]:
    """Run the sealed entrypoint until it listens (and answers `health_path`), then stop it."""

    log = probe_logger or logger
    manifest = read_image_manifest(context_dir)
    if not manifest.sealed or not manifest.entrypoint:
        raise ImageAssemblyError(f"Image context is not sealed: {context_dir}")
    contract = EntrypointContract.from_dict(manifest.entrypoint)

    environ: dict[str, str] = {}
    if port is not None:
        environ[contract.port_env] = str(port)

    result: dict[str, Any] = {"build_id": manifest.build_id, "command": list(contract.command)}
    with EntrypointProcess(contract, context_dir=context_dir, environ=environ, logger=log) as proc:
        result["port"] = proc.port
        result["startup_seconds"] = round(proc.wait_until_listening(timeout_seconds), 3)
        log.info("Entrypoint listening on port %d after %.2fs", proc.port, result["startup_seconds"])
        if health_path:
            result["health_status"] = proc.check_health(health_path)
            log.info("Health check %s -> HTTP %d", health_path, result["health_status"])
    result["returncode"] = proc.returncode
    return result
