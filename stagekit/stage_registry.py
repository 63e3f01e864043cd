from __future__ import annotations

import difflib
from dataclasses import dataclass
from typing import Any, Iterable

from stagekit.stage_types import StageRef


def _describe_ref(ref: StageRef) -> dict[str, Any]:
    return {
        "stage_id": ref.id,
        "doc": ref.doc,
        "source": ref.source,
        "tags": list(ref.tags),
        "kind": ref.kind,
        "io": {
            "requires": list(ref.io.requires),
            "provides": list(ref.io.provides),
            # Resolved per plan; `requires` above is the static floor.
            "conditional": ref.io_resolver is not None,
        },
    }


@dataclass(frozen=True)
class StageRegistry:
    """Stage kinds by id. The single lookup point for plans, config validation and the CLI."""

    _by_id: dict[str, StageRef]

    @classmethod
    def from_refs(cls, refs: Iterable[StageRef]) -> "StageRegistry":
        entries: dict[str, StageRef] = {}
        for ref in refs:
            if ref.id in entries:
                raise ValueError(f"Duplicate stage kind id: {ref.id}")
            entries[ref.id] = ref
        return cls(_by_id=entries)

    def _sorted(self) -> list[StageRef]:
        return [self._by_id[key] for key in sorted(self._by_id)]

    def available(self) -> tuple[str, ...]:
        return tuple(sorted(self._by_id))

    def describe(self) -> tuple[dict[str, Any], ...]:
        return tuple(_describe_ref(ref) for ref in self._sorted())

    def producers(self, artifact: str) -> tuple[str, ...]:
        """Stage kinds that declare `artifact` in their provides list."""

        name = (artifact or "").strip()
        return tuple(ref.id for ref in self._sorted() if name in ref.io.provides)

    def resolve(self, stage_id: str) -> StageRef:
        if not isinstance(stage_id, str) or not stage_id.strip():
            raise ValueError("stage_id must be a non-empty string")
        ref = self._by_id.get(stage_id.strip())
        if ref is not None:
            return ref

        suggestions = self.suggest(stage_id)
        hint = f" (did you mean: {', '.join(suggestions)})" if suggestions else ""
        raise ValueError(
            f"Unknown stage kind id: {stage_id}{hint} (available: {', '.join(self.available()) or '<none>'})"
        )

    def suggest(self, stage_id: str, *, limit: int = 3) -> tuple[str, ...]:
        key = (stage_id or "").strip()
        if not key:
            return ()
        return tuple(difflib.get_close_matches(key, list(self.available()), n=limit))
