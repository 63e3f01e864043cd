from __future__ import annotations

from release_image.stages.runtime.entrypoint import STAGE as ENTRYPOINT

__all_stages__ = [
    ENTRYPOINT,
]
