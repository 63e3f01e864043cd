from __future__ import annotations

from release_image.stages.image.assemble import STAGE as ASSEMBLE
from release_image.stages.image.docker_build import STAGE as DOCKER_BUILD

__all_stages__ = [
    ASSEMBLE,
    DOCKER_BUILD,
]
