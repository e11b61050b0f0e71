"""Exception hierarchy and error categorization for the audiobook assembler."""

from __future__ import annotations

import threading

from .models import ErrorCategory, Stage


class PipelineError(Exception):
    """Base exception for all assembler errors."""


class ConfigError(PipelineError):
    """Invalid or missing configuration."""


class ValidationError(PipelineError):
    """Malformed arguments (missing paths, invalid concurrency limit, no inputs)."""


class ArtifactError(PipelineError):
    """Reading, writing, or deleting an artifact in the engine namespace failed."""


class CancelledError(PipelineError):
    """The run was cancelled at a suspension point."""


class EngineTimeoutError(PipelineError, TimeoutError):
    """An engine invocation exceeded its deadline and was aborted."""

    def __init__(self, tool: str, timeout: float) -> None:
        super().__init__(f"{tool} timed out after {timeout:g}s")
        self.tool = tool
        self.timeout = timeout


class ExternalToolError(PipelineError):
    """An external subprocess (ffmpeg, ffprobe) failed."""

    def __init__(self, tool: str, exit_code: int, stderr: str) -> None:
        super().__init__(f"{tool} exited with code {exit_code}: {stderr}")
        self.tool = tool
        self.exit_code = exit_code
        self.stderr = stderr


class ProbeError(ExternalToolError):
    """Probe invocation failed or produced output that could not be parsed."""


class EncodeError(ExternalToolError):
    """A transform invocation returned a non-zero status."""


class AssemblyError(PipelineError):
    """An assembly stage failed. Identifies the stage and the underlying cause."""

    def __init__(
        self,
        stage: Stage,
        cause: BaseException,
        diagnostics: list[str] | None = None,
    ) -> None:
        super().__init__(f"Assembly failed while {stage.value}: {cause}")
        self.stage = stage
        self.cause = cause
        self.diagnostics = list(diagnostics or [])


def raise_if_cancelled(cancel: threading.Event | None, where: str = "") -> None:
    """Raise CancelledError if the cancel signal has been set."""
    if cancel is not None and cancel.is_set():
        raise CancelledError(f"Cancelled{' during ' + where if where else ''}")


def categorize_exit_code(code: int) -> ErrorCategory:
    """Map an engine status to an error category.

    Status 1 is what the engine reports for aborted (timed out) runs and
    generic failures alike, so it is treated as transient along with
    everything else except 2 and 3 (bad input, missing file).
    """
    if code in (2, 3):
        return ErrorCategory.PERMANENT
    return ErrorCategory.TRANSIENT
