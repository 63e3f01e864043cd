from __future__ import annotations

import json
import os
from typing import Any

from release_image.framework.runtime import BuildContext


def write_build_transcript(path: str, ctx: BuildContext) -> None:
    payload: dict[str, Any] = {
        "build_id": ctx.build_id,
        "created_at": ctx.created_at,
        "variant": ctx.cfg.variant,
        "project_root": ctx.cfg.project_root,
        "steps": list(ctx.steps),
        "artifacts": ctx.registry.describe(),
    }
    plan = ctx.outputs.get("plan")
    if plan is not None:
        payload["plan"] = plan
    contract = ctx.outputs.get("entrypoint_contract")
    if contract is not None:
        payload["entrypoint_contract"] = contract
    image_ref = ctx.outputs.get("image_ref")
    if image_ref is not None:
        payload["image_ref"] = image_ref
    if ctx.error is not None:
        payload["error"] = ctx.error

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as file:
        json.dump(payload, file, ensure_ascii=False, indent=2)
        file.write("\n")
