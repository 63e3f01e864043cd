"""Dockerfile rendering.

Two renderings exist:
- `render_image_dockerfile`: the final image built from a sealed image context
  (everything already compiled on the host; only runtime packages are installed).
- `render_multistage_dockerfile`: a self-contained multi-stage recipe equivalent
  to the host pipeline, produced from the stages' recipe fragments.
"""

from __future__ import annotations

import json
import posixpath
import shlex
from collections.abc import Iterable, Mapping
from typing import Any

from release_image.framework.entrypoint import EntrypointContract
from release_image.framework.image import ROOTFS_DIRNAME, ImageManifest

FRONTEND_BUILDER = "frontend-builder"
BACKEND_BUILDER = "backend-builder"
BUILDER_ROOT = "/app"


def _apt_install(packages: Iterable[str]) -> list[str]:
    names = [str(p) for p in packages]
    if not names:
        return []
    return [
        "RUN apt-get update && apt-get install -y --no-install-recommends \\",
        "    " + " ".join(names) + " \\",
        "    && rm -rf /var/lib/apt/lists/*",
    ]


def _run(argv: Iterable[str]) -> str:
    return "RUN " + shlex.join([str(a) for a in argv])


def _runtime_tail(contract: EntrypointContract) -> list[str]:
    lines = [f"ENV {key}={shlex.quote(value)}" for key, value in contract.image_env().items()]
    lines.append(f"EXPOSE {contract.default_port}")
    lines.append("CMD " + json.dumps(list(contract.command)))
    return lines


def render_image_dockerfile(manifest: ImageManifest) -> str:
    if not manifest.sealed or not manifest.entrypoint:
        raise ValueError("Cannot render a Dockerfile for an unsealed image manifest")
    contract = EntrypointContract.from_dict(manifest.entrypoint)

    lines = [
        f"# Generated by release-image for build {manifest.build_id}; do not edit by hand.",
        f"FROM {manifest.base_image}",
    ]
    lines.extend(_apt_install(manifest.runtime_packages))
    lines.append(f"WORKDIR {manifest.workdir}")
    for item in manifest.copies:
        source = ROOTFS_DIRNAME + item.dest
        lines.append(f"COPY {source} {item.dest}")
    lines.extend(_runtime_tail(contract))
    return "\n".join(lines) + "\n"


def _rel(path: str) -> str:
    normalized = posixpath.normpath(path.replace("\\", "/"))
    return "." if normalized in ("", ".") else normalized


def _copy_excluding(source: str, dest: str, excludes: Iterable[str]) -> str:
    # `--exclude` patterns are context-relative, like the COPY source.
    flags = [f"--exclude={_rel(posixpath.join(source, p))}" for p in excludes]
    return " ".join(["COPY", *flags, source, dest])


def render_multistage_dockerfile(
    *,
    frontend: Mapping[str, Any],
    backend: Mapping[str, Any],
    image: Mapping[str, Any],
    runtime: Mapping[str, Any],
) -> str:
    """Render the multi-stage Dockerfile from recipe fragments.

    Each fragment is the `recipe` mapping a stage attaches to its block metadata
    (see the stage modules under `release_image.stages`).
    """

    fe_dir = _rel(str(frontend["source_dir"]))
    fe_root = BUILDER_ROOT if fe_dir == "." else posixpath.join(BUILDER_ROOT, fe_dir)
    fe_prefix = "" if fe_dir == "." else fe_dir + "/"
    bundle_path = posixpath.join(fe_root, _rel(str(frontend["output_dir"])))

    lines = [
        "# syntax=docker/dockerfile:1.7-labs",
        "# Generated by release-image; do not edit by hand.",
        "",
        "# --- Frontend Build ---",
        f"FROM {frontend['builder_image']} AS {FRONTEND_BUILDER}",
        f"WORKDIR {fe_root}",
        f"COPY {fe_prefix}{frontend['manifest']} {fe_prefix}{frontend['lockfile']} ./",
        _run(frontend["install_command"]),
    ]
    copy_src = "." if fe_dir == "." else fe_dir
    lines.append(_copy_excluding(copy_src, ".", frontend.get("exclude") or ()))
    lines.append(_run(frontend["build_command"]))

    be_dir = _rel(str(backend["source_dir"]))
    be_root = posixpath.join(BUILDER_ROOT, be_dir)
    lines.extend(
        [
            "",
            "# --- Backend Build ---",
            f"FROM {backend['builder_image']} AS {BACKEND_BUILDER}",
        ]
    )
    lines.extend(_apt_install(backend.get("system_packages") or ()))
    lines.append(f"WORKDIR {BUILDER_ROOT}")
    lines.append(_copy_excluding(be_dir, f"./{be_dir}", backend.get("exclude") or ()))
    if backend.get("embed_assets"):
        assets = _rel(str(backend["assets_path"]))
        lines.append(f"COPY --from={FRONTEND_BUILDER} {bundle_path} ./{assets}")
    lines.append(f"WORKDIR {be_root}")
    lines.append(_run(backend["build_command"]))
    binary_path = posixpath.join(be_root, _rel(str(backend["output_path"])))

    command = runtime.get("command") or [f"./{backend['binary']}"]
    contract = EntrypointContract(
        command=tuple(command),
        workdir=str(image["workdir"]),
        port_env=str(runtime["port_env"]),
        default_port=int(runtime["port"]),
        env=dict(runtime.get("env") or {}),
    )
    workdir = contract.workdir
    lines.extend(["", "# --- Final Production Image ---", f"FROM {image['base_image']}"])
    lines.extend(_apt_install(image.get("runtime_packages") or ()))
    lines.append(f"WORKDIR {workdir}")
    lines.append(
        f"COPY --from={BACKEND_BUILDER} {binary_path} {posixpath.join(workdir, backend['binary'])}"
    )
    lines.append(
        f"COPY --from={FRONTEND_BUILDER} {bundle_path} "
        f"{posixpath.join(workdir, _rel(str(image['assets_dest'])))}"
    )
    lines.extend(_runtime_tail(contract))
    return "\n".join(lines) + "\n"
