"""End-to-end caption export: frames, overlays, composition, progress.

WHY: An export is a fixed sequence of long-running stages that must
report one forward-only percentage, fail as a whole on the first error,
and leave no temporary frames behind either way.

HOW: run_export() creates a scoped work directory, then runs the stages in
order, each with a StageReporter feeding the ProgressStore:
  init     - validate inputs, probe the source duration
  frames   - extract video frames at the export fps, fitted to the canvas
  captions - render overlay frames with the configured rasterizer
  encode   - overlay, mux original audio, encode H.264/AAC
  finalize - verify the output file
On success the job is marked complete; on any failure it is marked error
with the failure message and the exception propagates to the caller.

RULES:
- Inputs are validated before any external process starts (ValidationError)
- The work directory is always removed; removal failures are logged
  as CleanupError and never mask the job's own result
- There are no retries
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from caption_export.config import CAPTION_RENDERER, EXPORT_FPS, RENDER_CONCURRENCY
from caption_export.core.ir import CaptionPayload
from caption_export.core.progress import ProgressStore, Stage, StageReporter
from caption_export.errors import (
    CaptionExportError,
    CleanupError,
    ExternalToolError,
    ValidationError,
)
from caption_export.media.ffmpeg import compose_video, extract_frames, probe_duration
from caption_export.pipeline.overlays import render_overlays
from caption_export.rasterizers import get_rasterizer

logger = logging.getLogger(__name__)


@dataclass
class ExportResult:
    """Summary of a finished export."""

    output_path: Path
    duration_s: float
    total_frames: int
    frames_rendered: int
    renderer: str


def remove_tree(path: Path) -> bool:
    """Remove a directory tree, logging instead of raising on failure.

    Returns True when the tree is gone afterwards.
    """
    if not path.exists():
        return True
    try:
        shutil.rmtree(path)
    except OSError as exc:
        logger.warning("%s", CleanupError("Failed to remove {}: {}".format(path, exc)))
        return False
    return True


@contextmanager
def scoped_work_dir(prefix: str = "caption_export_", parent: Optional[Path] = None) -> Iterator[Path]:
    """A temporary directory removed on exit, whatever happened inside."""
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=str(parent) if parent else None))
    try:
        yield path
    finally:
        remove_tree(path)


def _validate_inputs(video_path: Path, payload: Optional[CaptionPayload], renderer: str) -> None:
    if not video_path or not Path(video_path).is_file():
        raise ValidationError("No video file at {}".format(video_path))
    if payload is None:
        raise ValidationError("No caption payload provided")
    try:
        get_rasterizer(renderer)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


async def run_export(
    job_id: str,
    video_path: Path,
    payload: CaptionPayload,
    output_path: Path,
    progress: ProgressStore,
    renderer: str = CAPTION_RENDERER,
    fps: float = EXPORT_FPS,
    concurrency: int = RENDER_CONCURRENCY,
    work_parent: Optional[Path] = None,
) -> ExportResult:
    """Burn the payload's captions into video_path, writing output_path.

    Every stage reports into ``progress`` under ``job_id``; the last update
    is always 100 with stage ``complete`` or ``error``.
    """
    try:
        _validate_inputs(video_path, payload, renderer)
        rasterizer_cls = get_rasterizer(renderer)

        init = StageReporter(progress, job_id, Stage.INIT, "Preparing export")
        init.start()
        duration_s = await probe_duration(video_path)
        if payload.duration_s is None:
            payload.duration_s = duration_s
        init.done()

        with scoped_work_dir(prefix="export_", parent=work_parent) as work:
            frames = await extract_frames(
                video_path,
                work / "frames",
                fps=fps,
                canvas=payload.canvas,
                on_progress=StageReporter(progress, job_id, Stage.FRAMES, "Extracting frames"),
                duration_s=duration_s,
            )

            rendered = await render_overlays(
                payload,
                rasterizer_cls,
                work / "overlays",
                frames.total_frames,
                fps=fps,
                concurrency=concurrency,
                on_progress=StageReporter(progress, job_id, Stage.CAPTIONS, "Rendering captions"),
            )

            output_path.parent.mkdir(parents=True, exist_ok=True)
            await compose_video(
                frames.frames_dir,
                work / "overlays",
                video_path,
                output_path,
                fps=fps,
                total_frames=frames.total_frames,
                on_progress=StageReporter(progress, job_id, Stage.ENCODE, "Encoding video"),
            )

            finalize = StageReporter(progress, job_id, Stage.FINALIZE, "Finalizing")
            finalize.start()
            if not output_path.is_file() or output_path.stat().st_size == 0:
                raise ExternalToolError("ffmpeg", 0, "no output written to {}".format(output_path))
            finalize.done()

        progress.complete(job_id)
        logger.info("Export %s complete: %s", job_id, output_path)
        return ExportResult(
            output_path=output_path,
            duration_s=duration_s,
            total_frames=frames.total_frames,
            frames_rendered=rendered,
            renderer=renderer,
        )

    except CaptionExportError as exc:
        logger.error("Export %s failed: %s", job_id, exc)
        progress.fail(job_id, str(exc))
        raise
    except asyncio.CancelledError:
        progress.fail(job_id, "Export cancelled")
        raise
    except Exception as exc:
        logger.exception("Export %s failed unexpectedly", job_id)
        progress.fail(job_id, "Export failed: {}".format(exc))
        raise
