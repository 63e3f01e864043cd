from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import Any

from release_image.framework.artifacts.registry import ArtifactRegistry
from release_image.framework.config import BuildConfig


@dataclass
class BuildContext:
    build_id: str
    cfg: BuildConfig
    logger: logging.Logger
    registry: ArtifactRegistry
    build_dir: str
    created_at: str

    cancel_event: threading.Event = field(default_factory=threading.Event)
    outputs: dict[str, Any] = field(default_factory=dict)
    steps: list[dict[str, Any]] = field(default_factory=list)
    error: dict[str, Any] | None = None

    @property
    def workspaces_dir(self) -> str:
        return os.path.join(self.build_dir, "workspaces")
