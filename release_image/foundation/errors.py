"""Build failure taxonomy.

Every failure is fatal for the stage that raises it and, through the engine's
fail-fast behavior, for the whole build. Nothing here is retried.
"""

from __future__ import annotations

from stagekit.engine.pipeline import PipelineCancelled


class PipelineError(RuntimeError):
    """Base class for fatal build failures."""


class DependencyResolutionError(PipelineError):
    """Manifest/lockfile missing or the lock-honoring install failed."""


class CompilationError(PipelineError):
    """A collaborator failed to compile/bundle, a tool is missing, or no output appeared."""


class TargetSelectionError(CompilationError):
    """The backend build target was implicit, unknown, or not a server target."""


class ArtifactCopyError(PipelineError):
    """A referenced artifact does not exist or was requested from the wrong stage."""


class ImageAssemblyError(PipelineError):
    """The assembled image violates minimality or layout invariants."""


class EntrypointMismatchError(ImageAssemblyError):
    """The entrypoint command does not name an executable copied into the image."""


class RuntimeStartupError(PipelineError):
    """The entrypoint process exited or failed to bind its port in time."""


class CommandTimeout(PipelineError):
    """A collaborator command exceeded its timeout and was killed."""


class CommandCancelled(PipelineError, PipelineCancelled):
    """A collaborator command was killed because a sibling stage failed."""


class CommandFailed(PipelineError):
    """A collaborator command exited non-zero."""

    def __init__(self, message: str, *, argv: list[str], returncode: int, output_tail: str = ""):
        super().__init__(message)
        self.argv = list(argv)
        self.returncode = returncode
        self.output_tail = output_tail
