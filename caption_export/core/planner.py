"""Split an export's frame range across parallel rasterization workers.

WHY: Rendering caption overlays is the slowest stage of an export. Each
worker owns one rendering context and a contiguous slice of frames, so the
slices must cover every frame exactly once without sharing anything.

HOW: plan_frame_ranges() cuts [0, total_frames) into chunks of
ceil(total / concurrency) frames. FrameRange.jobs() expands a slice into
FrameJob units with their timestamps.

RULES:
- Ranges are contiguous, non-overlapping, and cover [0, total_frames)
- At most `concurrency` ranges; empty ranges are omitted
- concurrency < 1 or total_frames < 0 raises ValueError
"""

from __future__ import annotations

import math
from collections.abc import Iterator
from dataclasses import dataclass

from caption_export.core.ir import FrameJob

DEFAULT_CONCURRENCY = 4


@dataclass(frozen=True)
class FrameRange:
    """A half-open range [start, stop) of frame indices for one worker."""

    worker: int
    start: int
    stop: int

    def __len__(self) -> int:
        return self.stop - self.start

    def jobs(self, fps: float) -> Iterator[FrameJob]:
        """Yield one FrameJob per frame, timestamped at index / fps."""
        for index in range(self.start, self.stop):
            yield FrameJob(index=index, timestamp_s=index / fps)


def frame_count(duration_s: float, fps: float) -> int:
    """Number of frames a clip of duration_s produces at fps."""
    if duration_s <= 0:
        return 0
    # Round first so 1.1s at 30fps is 33 frames, not 34
    return math.ceil(round(duration_s * fps, 6))


def plan_frame_ranges(
    total_frames: int,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> list[FrameRange]:
    """Partition [0, total_frames) into at most `concurrency` ranges.

    Example: total_frames=10, concurrency=4 -> [0,3) [3,6) [6,9) [9,10).
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1, got {}".format(concurrency))
    if total_frames < 0:
        raise ValueError("total_frames must not be negative, got {}".format(total_frames))

    if total_frames == 0:
        return []

    chunk = math.ceil(total_frames / concurrency)
    ranges = []
    for worker in range(concurrency):
        start = worker * chunk
        stop = min(start + chunk, total_frames)
        if start >= stop:
            break
        ranges.append(FrameRange(worker=worker, start=start, stop=stop))
    return ranges
