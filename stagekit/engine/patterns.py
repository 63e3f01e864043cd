from __future__ import annotations

"""Reusable Block composition helpers.

These helpers are intentionally generic (no `release_image.*` dependencies) and work
for any Block/ActionStep tree built on `stagekit.engine.pipeline`.
"""

from collections.abc import Sequence
from typing import Any

from stagekit.engine.pipeline import ActionStep, Block

Node = ActionStep | Block


def waves(
    name: str,
    *,
    groups: Sequence[Sequence[Node]],
    parallel: bool = True,
    wave_name: str = "wave",
    meta: dict[str, Any] | None = None,
) -> Block:
    """Pattern: run groups in order; nodes inside one group have no mutual dependency.

    A single-node group is inlined so paths stay short (`pipeline/<stage>`).
    """

    if not isinstance(name, str) or not name.strip():
        raise TypeError("name must be a non-empty string")

    nodes: list[Node] = []
    for idx, group in enumerate(groups, start=1):
        members = list(group)
        if not members:
            raise ValueError(f"{name} group {idx} is empty")
        if len(members) == 1:
            nodes.append(members[0])
            continue
        nodes.append(
            Block(
                name=f"{wave_name}_{idx:02d}",
                mode="parallel" if parallel else "sequential",
                nodes=members,
            )
        )

    return Block(name=name.strip(), mode="sequential", nodes=nodes, meta=dict(meta) if meta else {})
