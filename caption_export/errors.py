"""Error taxonomy for caption exports.

WHY: Callers (CLI, HTTP service, tests) need to tell bad input apart from a
crashed ffmpeg or a hung renderer: the first is the client's fault and is
reported before any work starts, the others fail a running job.

HOW: One base class and four subclasses. Each carries a human-readable
message that is safe to show to the client as the job's terminal error.

RULES:
- ValidationError is raised before any processing starts
- ExternalToolError and RenderBackendError abort the whole job
- CleanupError is logged, never surfaced to the caller
- No error is retried anywhere
"""

from __future__ import annotations


class CaptionExportError(Exception):
    """Base class for all caption export failures."""


class ValidationError(CaptionExportError):
    """Missing or invalid input: no video, bad payload, clip too long."""


class ExternalToolError(CaptionExportError):
    """An ffmpeg/ffprobe co-process failed, timed out, or was not found.

    RULES:
    - tool is the binary name as invoked
    - returncode is None on timeout or when the binary could not be started
    - detail is the tail of stderr, or a short reason
    """

    def __init__(self, tool: str, returncode: int | None, detail: str = "") -> None:
        self.tool = tool
        self.returncode = returncode
        self.detail = detail
        if returncode is None:
            message = "{} failed: {}".format(tool, detail or "no exit status")
        else:
            message = "{} exited with status {}".format(tool, returncode)
            if detail:
                message = "{}: {}".format(message, detail)
        super().__init__(message)


class RenderBackendError(CaptionExportError):
    """A rasterization worker crashed or timed out."""


class CleanupError(CaptionExportError):
    """Best-effort removal of a temporary resource failed."""
