"""Final image layout: minimality rules and the image manifest."""

from __future__ import annotations

import fnmatch
import json
import os
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from release_image.foundation.errors import ImageAssemblyError

IMAGE_MANIFEST_FILENAME = "image.json"
ROOTFS_DIRNAME = "rootfs"

TOOLCHAIN_PACKAGE_PATTERNS: tuple[str, ...] = (
    "build-essential",
    "gcc",
    "gcc-*",
    "g++",
    "g++-*",
    "cpp",
    "clang",
    "clang-*",
    "make",
    "cmake",
    "pkg-config",
    "pkgconf",
    "cargo",
    "rustc",
    "rustup",
    "nodejs",
    "npm",
    "yarn",
    "*-dev",
    "*-dev:*",
)

TOOLCHAIN_BINARIES: frozenset[str] = frozenset(
    {
        "cc",
        "c++",
        "gcc",
        "g++",
        "clang",
        "ld",
        "make",
        "cmake",
        "cargo",
        "rustc",
        "rustup",
        "node",
        "npm",
        "npx",
        "yarn",
        "pnpm",
        "pkg-config",
    }
)

SOURCE_MARKERS: frozenset[str] = frozenset(
    {
        "Cargo.toml",
        "Cargo.lock",
        "package.json",
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
    }
)

DEPENDENCY_CLOSURE_DIRS: frozenset[str] = frozenset({"node_modules", ".cargo"})

# `target` is also an ordinary asset folder name; only cargo output dirs count.
CARGO_TARGET_DIRNAME = "target"
CARGO_TARGET_MARKERS: tuple[str, ...] = ("CACHEDIR.TAG", ".rustc_info.json", "release/deps", "debug/deps")


def find_toolchain_packages(packages: Iterable[str]) -> list[str]:
    offenders: list[str] = []
    for package in packages:
        name = str(package).strip()
        if any(fnmatch.fnmatchcase(name, pattern) for pattern in TOOLCHAIN_PACKAGE_PATTERNS):
            offenders.append(name)
    return offenders


def _is_dependency_closure(parent: str, dirname: str) -> bool:
    if dirname in DEPENDENCY_CLOSURE_DIRS:
        return True
    if dirname != CARGO_TARGET_DIRNAME:
        return False
    path = os.path.join(parent, dirname)
    return any(os.path.lexists(os.path.join(path, *marker.split("/"))) for marker in CARGO_TARGET_MARKERS)


def scan_rootfs(rootfs: str) -> list[str]:
    """Return minimality violations found under an assembled rootfs."""

    violations: list[str] = []
    for dirpath, dirnames, filenames in os.walk(rootfs):
        rel_dir = os.path.relpath(dirpath, rootfs).replace(os.sep, "/")
        closures = {d for d in dirnames if _is_dependency_closure(dirpath, d)}
        for dirname in sorted(closures):
            violations.append(f"dependency closure directory: {rel_dir}/{dirname}")
        dirnames[:] = [d for d in dirnames if d not in closures]
        for filename in sorted(filenames):
            rel = f"{rel_dir}/{filename}" if rel_dir != "." else filename
            if filename in TOOLCHAIN_BINARIES:
                violations.append(f"toolchain binary: {rel}")
            elif filename in SOURCE_MARKERS:
                violations.append(f"source manifest: {rel}")
    return violations


def assert_minimal(*, rootfs: str, runtime_packages: Iterable[str]) -> None:
    packages = find_toolchain_packages(runtime_packages)
    violations = [f"toolchain package: {name}" for name in packages]
    violations.extend(scan_rootfs(rootfs))
    if violations:
        raise ImageAssemblyError(
            "Image is not minimal: " + "; ".join(violations)
        )


@dataclass(frozen=True)
class ImageCopy:
    stage: str
    artifact: str
    dest: str
    digest: str
    executable: bool = False


@dataclass(frozen=True)
class ImageManifest:
    build_id: str
    base_image: str
    workdir: str
    runtime_packages: tuple[str, ...]
    copies: tuple[ImageCopy, ...]
    entrypoint: dict[str, Any] | None = None
    sealed: bool = False
    labels: dict[str, str] = field(default_factory=dict)

    def copy_for(self, dest: str) -> ImageCopy | None:
        for item in self.copies:
            if item.dest == dest:
                return item
        return None

    def seal(self, entrypoint: Mapping[str, Any]) -> "ImageManifest":
        if self.sealed:
            raise ImageAssemblyError("Image manifest is already sealed")
        return replace(self, entrypoint=dict(entrypoint), sealed=True)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["runtime_packages"] = list(self.runtime_packages)
        payload["copies"] = [asdict(item) for item in self.copies]
        return payload

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "ImageManifest":
        try:
            copies = tuple(ImageCopy(**dict(item)) for item in payload.get("copies") or ())
            return ImageManifest(
                build_id=str(payload["build_id"]),
                base_image=str(payload["base_image"]),
                workdir=str(payload["workdir"]),
                runtime_packages=tuple(str(p) for p in payload.get("runtime_packages") or ()),
                copies=copies,
                entrypoint=dict(payload["entrypoint"]) if payload.get("entrypoint") else None,
                sealed=bool(payload.get("sealed", False)),
                labels={str(k): str(v) for k, v in (payload.get("labels") or {}).items()},
            )
        except (KeyError, TypeError) as exc:
            raise ImageAssemblyError(f"Invalid image manifest: {exc}") from exc


def write_image_manifest(context_dir: str, manifest: ImageManifest) -> str:
    path = os.path.join(context_dir, IMAGE_MANIFEST_FILENAME)
    if os.path.exists(path):
        os.remove(path)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(manifest.to_dict(), handle, ensure_ascii=False, indent=2, sort_keys=True)
        handle.write("\n")
    return path


def read_image_manifest(context_dir: str) -> ImageManifest:
    path = os.path.join(context_dir, IMAGE_MANIFEST_FILENAME)
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except FileNotFoundError as exc:
        raise ImageAssemblyError(f"Image manifest missing: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ImageAssemblyError(f"Invalid JSON in image manifest {path}: {exc}") from exc
    return ImageManifest.from_dict(payload)


def rootfs_path(context_dir: str, image_path: str) -> str:
    """Map an absolute in-image path (e.g. `/app/server`) into the context's rootfs."""

    if not image_path.startswith("/"):
        raise ValueError(f"Image path must be absolute: {image_path!r}")
    parts = [p for p in image_path.split("/") if p]
    if any(p in (".", "..") for p in parts):
        raise ValueError(f"Image path must not contain '.' or '..': {image_path!r}")
    return os.path.join(context_dir, ROOTFS_DIRNAME, *parts)
