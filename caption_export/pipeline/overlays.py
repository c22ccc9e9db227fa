"""Render every caption overlay frame of a job with a pool of workers.

WHY: Rasterizing thousands of frames one by one is the bottleneck of an
export. Frames are independent, so the frame range is split into
contiguous slices and each slice is rendered by its own worker with its
own rendering context.

HOW: plan_frame_ranges() produces one FrameRange per worker. Each worker
is an asyncio task that opens a rasterizer instance, renders its frames
in order, writes them as overlay-%06d.png, and always closes the
rasterizer. A shared FrameCounter (guarded by an asyncio.Lock) reports
progress. The first worker to fail cancels the others and the job fails
with RenderBackendError.

RULES:
- Workers share nothing mutable except the FrameCounter
- Frame files are named by index, so completion order does not matter
- Opening a rasterizer is bounded by ready_timeout_s, each frame by frame_timeout_s
- No partial output: any worker failure fails the whole render
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional, Type

from caption_export.config import (
    EXPORT_FPS,
    FRAME_TIMEOUT_S,
    RENDER_CONCURRENCY,
    RENDERER_READY_TIMEOUT_S,
)
from caption_export.core.ir import CaptionPayload
from caption_export.core.planner import FrameRange, plan_frame_ranges
from caption_export.errors import RenderBackendError
from caption_export.media.ffmpeg import overlay_frame_path
from caption_export.rasterizers.base import BaseRasterizer

logger = logging.getLogger(__name__)

REPORT_EVERY_FRAMES = 10


class FrameCounter:
    """Completed-frame counter shared by all workers of one render."""

    def __init__(
        self,
        total_frames: int,
        on_progress: Optional[Callable[[float], object]] = None,
        report_every: int = REPORT_EVERY_FRAMES,
    ) -> None:
        self.total_frames = total_frames
        self.completed = 0
        self._on_progress = on_progress
        self._report_every = max(1, report_every)
        self._lock = asyncio.Lock()

    async def increment(self) -> int:
        async with self._lock:
            self.completed += 1
            completed = self.completed
        if self._on_progress is not None and (
            completed % self._report_every == 0 or completed == self.total_frames
        ):
            self._on_progress(completed / self.total_frames)
        return completed


async def _render_range(
    rasterizer_cls: Type[BaseRasterizer],
    payload: CaptionPayload,
    shared: object,
    frame_range: FrameRange,
    output_dir: Path,
    fps: float,
    counter: FrameCounter,
    frame_timeout_s: float,
    ready_timeout_s: float,
) -> None:
    rasterizer = rasterizer_cls(payload, shared)
    try:
        try:
            await asyncio.wait_for(rasterizer.open(), ready_timeout_s)
        except asyncio.TimeoutError:
            raise RenderBackendError(
                "Worker {} renderer not ready after {:.0f}s".format(
                    frame_range.worker, ready_timeout_s
                )
            ) from None

        logger.debug(
            "Worker %d rendering frames %d-%d with %s",
            frame_range.worker, frame_range.start, frame_range.stop - 1, rasterizer.name,
        )
        for job in frame_range.jobs(fps):
            try:
                png = await asyncio.wait_for(rasterizer.render(job.timestamp_s), frame_timeout_s)
            except asyncio.TimeoutError:
                raise RenderBackendError(
                    "Worker {} timed out rendering frame {} after {:.0f}s".format(
                        frame_range.worker, job.index, frame_timeout_s
                    )
                ) from None
            await asyncio.to_thread(overlay_frame_path(output_dir, job.index).write_bytes, png)
            await counter.increment()
    finally:
        await rasterizer.close()


async def render_overlays(
    payload: CaptionPayload,
    rasterizer_cls: Type[BaseRasterizer],
    output_dir: Path,
    total_frames: int,
    fps: float = EXPORT_FPS,
    concurrency: int = RENDER_CONCURRENCY,
    on_progress: Optional[Callable[[float], object]] = None,
    frame_timeout_s: float = FRAME_TIMEOUT_S,
    ready_timeout_s: float = RENDERER_READY_TIMEOUT_S,
) -> int:
    """Render overlay frames [0, total_frames) into output_dir.

    Returns the number of frames written. Raises RenderBackendError if any
    worker fails; the remaining workers are cancelled first.
    """
    ranges = plan_frame_ranges(total_frames, concurrency)
    output_dir.mkdir(parents=True, exist_ok=True)
    counter = FrameCounter(total_frames, on_progress)
    if not ranges:
        return 0

    logger.info(
        "Rendering %d overlay frames with %d %s workers",
        total_frames, len(ranges), rasterizer_cls.__name__,
    )

    async with rasterizer_cls.backend(payload) as shared:
        tasks: List[asyncio.Task] = [
            asyncio.create_task(
                _render_range(
                    rasterizer_cls, payload, shared, frame_range, output_dir, fps,
                    counter, frame_timeout_s, ready_timeout_s,
                ),
                name="overlay-worker-{}".format(frame_range.worker),
            )
            for frame_range in ranges
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            # Let cancelled workers close their rasterizers before the backend goes away
            await asyncio.gather(*tasks, return_exceptions=True)

        for task in tasks:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is None:
                continue
            if isinstance(exc, RenderBackendError):
                raise exc
            raise RenderBackendError(
                "Overlay {} failed: {}".format(task.get_name(), exc)
            ) from exc

    return counter.completed
