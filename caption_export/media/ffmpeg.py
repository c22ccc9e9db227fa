"""ffmpeg/ffprobe co-process wrappers: probe, extract, compose.

WHY: Decoding the source video and encoding the final MP4 are delegated
to ffmpeg. Every call must have a hard timeout, a checked exit status, and
arguments passed as a list (never a shell string built from user paths),
so a bad upload can neither hang a job nor inject a command.

HOW: run_tool() starts the binary with asyncio.create_subprocess_exec,
streams stdout line by line to an optional callback, keeps the tail of
stderr for error messages, and raises ExternalToolError on a non-zero
exit, a timeout, or a missing binary. ffmpeg runs with ``-progress
pipe:1`` so its ``frame=N`` progress arrives on stdout as plain lines,
which FrameProgress turns into fractions.

RULES:
- Video frames are written as video-frame-%06d.jpg, numbered from 0
- Overlay frames are read as overlay-%06d.png, numbered from 0
- Frame i of both sequences shows time i / fps
- total_frames = ceil(duration x fps)
- Output is H.264 (libx264, yuv420p) + AAC 192k, cut to the shortest stream
- Progress is reported at most every 5%, plus a final 1.0 on success
"""

from __future__ import annotations

import asyncio
import collections
import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from caption_export.config import (
    AUDIO_EXTRACT_TIMEOUT_S,
    EXPORT_FPS,
    FFMPEG_BIN,
    FFMPEG_TIMEOUT_S,
    FFPROBE_BIN,
    PROBE_TIMEOUT_S,
)
from caption_export.core.ir import CanvasSize
from caption_export.core.planner import frame_count
from caption_export.errors import ExternalToolError

logger = logging.getLogger(__name__)

VIDEO_FRAME_PATTERN = "video-frame-%06d.jpg"
OVERLAY_FRAME_PATTERN = "overlay-%06d.png"

PROGRESS_STEP = 0.05
_STDERR_TAIL_LINES = 20
_FRAME_RE = re.compile(r"frame=\s*(\d+)")

ProgressFn = Callable[[float], object]


def overlay_frame_path(directory: Path, index: int) -> Path:
    return directory / (OVERLAY_FRAME_PATTERN % index)


def video_frame_path(directory: Path, index: int) -> Path:
    return directory / (VIDEO_FRAME_PATTERN % index)


def parse_frame_number(line: str) -> Optional[int]:
    """Extract N from an ffmpeg ``frame=N`` progress line."""
    match = _FRAME_RE.search(line)
    return int(match.group(1)) if match else None


class FrameProgress:
    """Turn ffmpeg frame counters into rate-limited fractional progress."""

    def __init__(
        self,
        total_frames: int,
        on_progress: Optional[ProgressFn],
        step: float = PROGRESS_STEP,
    ) -> None:
        self.total_frames = total_frames
        self.on_progress = on_progress
        self.step = step
        self._last = 0.0

    def feed(self, line: str) -> None:
        if self.on_progress is None or self.total_frames <= 0:
            return
        frame = parse_frame_number(line)
        if frame is None:
            return
        fraction = min(frame / self.total_frames, 1.0)
        if fraction >= self._last + self.step or (fraction >= 1.0 > self._last):
            self._last = fraction
            self.on_progress(fraction)

    def finish(self) -> None:
        if self.on_progress is not None:
            self._last = 1.0
            self.on_progress(1.0)


async def run_tool(
    args: List[str],
    timeout_s: float,
    on_line: Optional[Callable[[str], None]] = None,
) -> str:
    """Run an external tool and return its stdout.

    RULES:
    - args[0] is the binary; no shell is involved
    - stdout lines are passed to on_line as they arrive
    - Non-zero exit, timeout, or a missing binary raise ExternalToolError
    - On timeout the process is killed and reaped before raising
    """
    tool = Path(args[0]).name
    logger.debug("Running %s", " ".join(args))
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ExternalToolError(tool, None, "executable not found: {}".format(args[0])) from exc

    stdout_lines: List[str] = []
    stderr_tail: collections.deque = collections.deque(maxlen=_STDERR_TAIL_LINES)

    async def read_stdout() -> None:
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip()
            stdout_lines.append(line)
            if on_line is not None:
                on_line(line)

    async def read_stderr() -> None:
        async for raw in process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                stderr_tail.append(line)

    try:
        await asyncio.wait_for(
            asyncio.gather(read_stdout(), read_stderr(), process.wait()),
            timeout=timeout_s,
        )
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise ExternalToolError(tool, None, "timed out after {:.0f}s".format(timeout_s)) from None
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    if process.returncode != 0:
        raise ExternalToolError(tool, process.returncode, "\n".join(stderr_tail))
    return "\n".join(stdout_lines)


# ---------------------------------------------------------------------------
# Probe
# ---------------------------------------------------------------------------


async def probe_duration(video_path: Path) -> float:
    """Return the container duration of a media file in seconds."""
    output = await run_tool(
        [
            FFPROBE_BIN,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            str(video_path),
        ],
        timeout_s=PROBE_TIMEOUT_S,
    )
    try:
        duration = float(json.loads(output)["format"]["duration"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ExternalToolError(
            Path(FFPROBE_BIN).name, 0, "no duration reported for {}".format(video_path.name)
        ) from exc
    return duration


# ---------------------------------------------------------------------------
# Frame extraction
# ---------------------------------------------------------------------------


@dataclass
class FrameExtractionResult:
    """Where extracted frames live and how many the job renders."""

    frames_dir: Path
    total_frames: int
    duration_s: float
    fps: float
    pattern: str = VIDEO_FRAME_PATTERN


def _video_filter(fps: float, canvas: Optional[CanvasSize]) -> str:
    chain = ["fps={}".format(fps)]
    if canvas is not None:
        # Cover-fit the source onto the caption canvas
        chain.append(
            "scale={w}:{h}:force_original_aspect_ratio=increase".format(
                w=canvas.width, h=canvas.height
            )
        )
        chain.append("crop={}:{}".format(canvas.width, canvas.height))
        chain.append("setsar=1")
    return ",".join(chain)


async def extract_frames(
    video_path: Path,
    output_dir: Path,
    fps: float = EXPORT_FPS,
    canvas: Optional[CanvasSize] = None,
    on_progress: Optional[ProgressFn] = None,
    duration_s: Optional[float] = None,
) -> FrameExtractionResult:
    """Decode video_path into sequentially numbered JPEG frames at fps.

    When canvas is given, frames are scaled and centre-cropped to it so
    overlays composite 1:1.
    """
    if duration_s is None:
        duration_s = await probe_duration(video_path)
    total = frame_count(duration_s, fps)
    output_dir.mkdir(parents=True, exist_ok=True)

    progress = FrameProgress(total, on_progress)
    await run_tool(
        [
            FFMPEG_BIN,
            "-hide_banner", "-loglevel", "error", "-nostats",
            "-y",
            "-i", str(video_path),
            "-vf", _video_filter(fps, canvas),
            "-start_number", "0",
            "-q:v", "2",
            "-progress", "pipe:1",
            str(output_dir / VIDEO_FRAME_PATTERN),
        ],
        timeout_s=FFMPEG_TIMEOUT_S,
        on_line=progress.feed,
    )
    progress.finish()

    logger.info(
        "Extracted frames from %s: %.2fs at %s fps -> %d frames",
        video_path.name, duration_s, fps, total,
    )
    return FrameExtractionResult(
        frames_dir=output_dir,
        total_frames=total,
        duration_s=duration_s,
        fps=fps,
    )


# ---------------------------------------------------------------------------
# Audio extraction
# ---------------------------------------------------------------------------


async def extract_audio(video_path: Path, output_path: Path) -> Path:
    """Extract the audio track as 16 kHz mono PCM WAV for transcription."""
    await run_tool(
        [
            FFMPEG_BIN,
            "-hide_banner", "-loglevel", "error", "-nostats",
            "-y",
            "-i", str(video_path),
            "-vn",
            "-acodec", "pcm_s16le",
            "-ar", "16000",
            "-ac", "1",
            "-f", "wav",
            str(output_path),
        ],
        timeout_s=AUDIO_EXTRACT_TIMEOUT_S,
    )
    return output_path


# ---------------------------------------------------------------------------
# Composition
# ---------------------------------------------------------------------------


def compose_args(
    video_frames_dir: Path,
    overlay_frames_dir: Path,
    audio_source: Path,
    output_path: Path,
    fps: float,
) -> List[str]:
    """The ffmpeg argument list that burns overlays onto video frames."""
    return [
        FFMPEG_BIN,
        "-hide_banner", "-loglevel", "error", "-nostats",
        "-y",
        "-framerate", str(fps),
        "-start_number", "0",
        "-i", str(video_frames_dir / VIDEO_FRAME_PATTERN),
        "-framerate", str(fps),
        "-start_number", "0",
        "-i", str(overlay_frames_dir / OVERLAY_FRAME_PATTERN),
        "-i", str(audio_source),
        "-filter_complex", "[0:v][1:v]overlay=0:0:shortest=1[out]",
        "-map", "[out]",
        "-map", "2:a:0?",
        "-c:v", "libx264",
        "-preset", "medium",
        "-crf", "23",
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-b:a", "192k",
        "-shortest",
        "-movflags", "+faststart",
        "-progress", "pipe:1",
        str(output_path),
    ]


async def compose_video(
    video_frames_dir: Path,
    overlay_frames_dir: Path,
    audio_source: Path,
    output_path: Path,
    fps: float,
    total_frames: int,
    on_progress: Optional[ProgressFn] = None,
) -> Path:
    """Overlay caption frames on video frames, mux audio, encode to MP4."""
    progress = FrameProgress(total_frames, on_progress)
    await run_tool(
        compose_args(video_frames_dir, overlay_frames_dir, audio_source, output_path, fps),
        timeout_s=FFMPEG_TIMEOUT_S,
        on_line=progress.feed,
    )
    progress.finish()
    logger.info("Composed %s (%d frames at %s fps)", output_path.name, total_frames, fps)
    return output_path
