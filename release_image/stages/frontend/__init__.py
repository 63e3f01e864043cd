from __future__ import annotations

from release_image.stages.frontend.bundle import STAGE as BUNDLE

__all_stages__ = [
    BUNDLE,
]
