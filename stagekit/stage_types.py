from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from stagekit.config_namespace import ConfigNamespace
from stagekit.engine.pipeline import Block

StageKind = Literal["action", "composite"]
STAGE_KINDS: tuple[str, ...] = ("action", "composite")


@dataclass(frozen=True)
class StageIO:
    """Artifact names a stage consumes (`requires`) and publishes (`provides`)."""

    requires: tuple[str, ...] = ()
    provides: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for label in ("requires", "provides"):
            raw = getattr(self, label)
            if isinstance(raw, str):
                raise TypeError(f"StageIO.{label} must be a tuple of names, not a string")
            normalized = tuple(str(item).strip() for item in raw if str(item).strip())
            if len(set(normalized)) != len(normalized):
                raise ValueError(f"StageIO.{label} contains duplicate names: {normalized}")
            object.__setattr__(self, label, normalized)
        overlap = sorted(set(self.requires) & set(self.provides))
        if overlap:
            raise ValueError(f"StageIO requires and provides overlap: {', '.join(overlap)}")


class StageBuilder(Protocol):
    def __call__(self, inputs: Any, *, instance_id: str, cfg: ConfigNamespace) -> Block:
        ...


class IOResolver(Protocol):
    def __call__(self, inputs: Any, cfg: ConfigNamespace) -> StageIO:
        ...


@dataclass(frozen=True)
class StageRef:
    id: str
    builder: StageBuilder
    doc: str | None = None
    source: str | None = None
    tags: tuple[str, ...] = ()
    kind: StageKind | None = None
    io: StageIO = field(default_factory=StageIO)
    io_resolver: IOResolver | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise TypeError("StageRef.id must be a non-empty string")
        object.__setattr__(self, "id", self.id.strip())

        for label in ("doc", "source"):
            value = getattr(self, label)
            if value is not None and (not isinstance(value, str) or not value.strip()):
                raise TypeError(f"StageRef.{label} must be a non-empty string or None")

        object.__setattr__(self, "tags", tuple(str(t).strip() for t in self.tags if str(t).strip()))

        if self.kind is not None:
            kind = str(self.kind).strip().lower()
            if kind not in STAGE_KINDS:
                raise ValueError(
                    f"StageRef.kind must be one of: {', '.join(STAGE_KINDS)} (got {self.kind!r})"
                )
            object.__setattr__(self, "kind", kind)

        if self.io_resolver is not None and not callable(self.io_resolver):
            raise TypeError("StageRef.io_resolver must be callable or None")

    def instance(self, instance_id: str | None = None) -> "StageInstance":
        return StageInstance(stage=self, instance_id=instance_id or self.id)

    def resolve_io(self, inputs: Any, cfg: ConfigNamespace) -> StageIO:
        """Return the effective IO for this stage.

        Stages whose requirements depend on the plan (the embedded backend needs the
        static bundle, the split one does not) supply `io_resolver`. A resolver may
        narrow `provides` but never add to it, and may only peek at config.
        """

        if self.io_resolver is None:
            return self.io
        resolved = self.io_resolver(inputs, cfg)
        if not isinstance(resolved, StageIO):
            raise TypeError(
                f"Stage io_resolver returned non-StageIO (stage={self.id}, type={type(resolved).__name__})"
            )
        undeclared = sorted(set(resolved.provides) - set(self.io.provides))
        if undeclared:
            raise ValueError(
                f"Stage io_resolver for {self.id} provides undeclared artifacts: {', '.join(undeclared)}"
            )
        return resolved

    def build(self, inputs: Any, *, instance_id: str, cfg: ConfigNamespace) -> Block:
        """Run the builder and stamp stage identity (kind, instance, doc) onto the block meta."""

        if not isinstance(instance_id, str) or not instance_id.strip():
            raise ValueError("instance_id must be a non-empty string")
        instance_id = instance_id.strip()

        block = self.builder(inputs, instance_id=instance_id, cfg=cfg)
        if not isinstance(block, Block):
            raise TypeError(
                f"Stage builder returned non-Block (stage={self.id}, type={type(block).__name__})"
            )
        if block.name != instance_id:
            raise ValueError(
                f"Stage builder returned mismatched Block.name: expected={instance_id} got={block.name}"
            )

        meta = dict(block.meta)
        for key, expected in (("stage_kind", self.id), ("stage_id", instance_id)):
            current = meta.setdefault(key, expected)
            if not isinstance(current, str) or current.strip() != expected:
                raise ValueError(
                    f"Stage builder returned conflicting meta.{key}: expected={expected} got={current!r}"
                )
        for key, value in (("doc", self.doc), ("source", self.source), ("tags", list(self.tags))):
            if value and key not in meta:
                meta[key] = value

        if meta == block.meta:
            return block
        return Block(name=block.name, mode=block.mode, nodes=list(block.nodes), meta=meta)


@dataclass(frozen=True)
class StageInstance:
    stage: StageRef
    instance_id: str

    def __post_init__(self) -> None:
        if not isinstance(self.instance_id, str) or not self.instance_id.strip():
            raise TypeError("StageInstance.instance_id must be a non-empty string")
        object.__setattr__(self, "instance_id", self.instance_id.strip())
