"""Artifact helpers (registry, digests, build transcript, and build index).

This package groups together the utilities responsible for storing, handing off,
and recording build artifacts. It is intentionally independent of
`release_image.stages` (framework boundary). Import submodules directly.
"""
