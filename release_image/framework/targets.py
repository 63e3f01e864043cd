"""Named backend build targets.

One backend source tree may define both a desktop application and a server. The
pipeline always names the target it wants; there is no default-target inference.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from release_image.foundation.errors import TargetSelectionError

TargetKind = Literal["desktop", "server"]
ALLOWED_TARGET_KINDS: tuple[str, ...] = ("desktop", "server")

DEFAULT_TARGETS: dict[str, dict[str, str]] = {
    "desktop-app": {"kind": "desktop", "binary": "omar-ai"},
    "server-api": {"kind": "server", "binary": "omar-ai-api"},
}

_BINARY_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(frozen=True)
class BuildTarget:
    name: str
    kind: TargetKind
    binary: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("BuildTarget.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        if self.kind not in ALLOWED_TARGET_KINDS:
            raise ValueError(
                f"BuildTarget {self.name}: kind must be one of: {', '.join(ALLOWED_TARGET_KINDS)} "
                f"(got {self.kind!r})"
            )
        if not isinstance(self.binary, str) or not _BINARY_RE.match(self.binary.strip()):
            raise ValueError(
                f"BuildTarget {self.name}: binary must be a plain file name (got {self.binary!r})"
            )
        object.__setattr__(self, "binary", self.binary.strip())


def parse_targets(raw: Mapping[str, Any], *, path: str) -> dict[str, BuildTarget]:
    if not isinstance(raw, Mapping) or not raw:
        raise ValueError(f"{path} must be a non-empty mapping of target name -> {{kind, binary}}")

    targets: dict[str, BuildTarget] = {}
    binaries: dict[str, str] = {}
    for name, entry in raw.items():
        if not isinstance(entry, Mapping):
            raise ValueError(f"{path}.{name} must be a mapping (type={type(entry).__name__})")
        unknown = sorted(set(entry.keys()) - {"kind", "binary"})
        if unknown:
            raise ValueError(f"Unknown config keys under {path}.{name}: {', '.join(unknown)}")
        target = BuildTarget(name=str(name), kind=entry.get("kind"), binary=entry.get("binary"))
        other = binaries.get(target.binary)
        if other is not None:
            raise ValueError(
                f"{path}: targets {other} and {target.name} both produce binary {target.binary!r}"
            )
        binaries[target.binary] = target.name
        targets[target.name] = target
    return targets


def select_build_target(
    targets: Mapping[str, BuildTarget],
    name: str | None,
    *,
    required_kind: TargetKind = "server",
) -> BuildTarget:
    """Pick a target by explicit name and check it is usable for `required_kind`."""

    available = ", ".join(f"{t.name} ({t.kind})" for t in targets.values()) or "<none>"
    if name is None or not str(name).strip():
        raise TargetSelectionError(
            f"Backend build target must be named explicitly (available: {available})"
        )
    target = targets.get(str(name).strip())
    if target is None:
        raise TargetSelectionError(f"Unknown backend build target {name!r} (available: {available})")
    if target.kind != required_kind:
        raise TargetSelectionError(
            f"Backend build target {target.name!r} is a {target.kind} target; "
            f"the image needs a {required_kind} target (available: {available})"
        )
    return target
