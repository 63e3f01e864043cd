from __future__ import annotations

from release_image.stages.backend.compile import STAGE as COMPILE

__all_stages__ = [
    COMPILE,
]
