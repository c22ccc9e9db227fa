"""Command-line interface for caption export.

WHY: Editors and scripts need to burn captions into a clip, or get a first
caption payload from a clip's speech, without running the HTTP service.
The CLI wires the same pipelines the service uses behind three
subcommands.

HOW: argparse with subcommands:
  render VIDEO --payload P     burn a caption payload into VIDEO
  transcribe VIDEO             transcribe VIDEO and write a ready-to-render payload
  serve                        run the HTTP API with uvicorn
Async pipelines run via asyncio.run(). Status messages go to stderr; output
files are saved next to the source unless --output is given.

RULES:
- Validates the input file before any external process starts
- Output naming: {stem}-captioned.mp4 / {stem}-captions.json, numeric
  suffix on conflict (-captioned-2.mp4)
- Status output goes to stderr (not stdout)
- Exit code 1 on any error, 130 on Ctrl-C
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import List, Optional

from caption_export.api.client import TranscriptionAPIError
from caption_export.config import (
    CAPTION_RENDERER,
    DEFAULT_CANVAS_HEIGHT,
    DEFAULT_CANVAS_WIDTH,
    EXPORT_FPS,
    RENDER_CONCURRENCY,
)
from caption_export.core.ir import CanvasSize, StyleSpec
from caption_export.core.payload import build_payload, load_payload, payload_to_dict
from caption_export.core.progress import ProgressState, ProgressStore
from caption_export.errors import CaptionExportError
from caption_export.pipeline.exporter import run_export
from caption_export.pipeline.transcribe import transcribe_video
from caption_export.rasterizers import RASTERIZERS

_PROGRESS_PRINT_STEP = 5.0


def _status(msg: str) -> None:
    """Print a status message to stderr, flushed immediately."""
    print(msg, file=sys.stderr, flush=True)


def _resolve_output_path(stem: str, suffix: str, output_dir: Path) -> Path:
    """Return {stem}{suffix} in output_dir, adding -2, -3, ... on conflict."""
    base_path = output_dir / "{}{}".format(stem, suffix)
    if not base_path.exists():
        return base_path

    # "-captioned.mp4" -> ("-captioned", ".mp4")
    dot_idx = suffix.rfind(".")
    if dot_idx > 0:
        suffix_name, suffix_ext = suffix[:dot_idx], suffix[dot_idx:]
    else:
        suffix_name, suffix_ext = suffix, ""

    counter = 2
    while True:
        candidate = output_dir / "{}{}-{}{}".format(stem, suffix_name, counter, suffix_ext)
        if not candidate.exists():
            return candidate
        counter += 1


def _parse_canvas(value: str) -> CanvasSize:
    """argparse type for WIDTHxHEIGHT."""
    try:
        width, height = (int(part) for part in value.lower().split("x", 1))
    except ValueError:
        raise argparse.ArgumentTypeError(
            "Canvas must be WIDTHxHEIGHT, e.g. 1080x1920 (got '{}')".format(value)
        ) from None
    if width < 2 or height < 2:
        raise argparse.ArgumentTypeError("Canvas dimensions must be at least 2 pixels")
    return CanvasSize(width=width, height=height)


class _ProgressPrinter:
    """Print progress updates when the stage changes or every few percent."""

    def __init__(self, step: float = _PROGRESS_PRINT_STEP) -> None:
        self.step = step
        self._last_stage = None
        self._last_percent = -step

    def __call__(self, state: ProgressState) -> None:
        if state.stage != self._last_stage or state.percent >= self._last_percent + self.step:
            self._last_stage = state.stage
            self._last_percent = state.percent
            _status("  [{:5.1f}%] {}{}".format(
                state.percent,
                state.stage.value,
                ": {}".format(state.message) if state.message else "",
            ))


# ---------------------------------------------------------------------------
# render
# ---------------------------------------------------------------------------


async def _run_render(args: argparse.Namespace) -> None:
    input_path = Path(args.video).resolve()
    if not input_path.is_file():
        print("Error: File not found: {}".format(input_path), file=sys.stderr)
        sys.exit(1)

    payload = load_payload(Path(args.payload))
    if args.output:
        output_path = Path(args.output).resolve()
    else:
        output_path = _resolve_output_path(input_path.stem, "-captioned.mp4", input_path.parent)

    job_id = payload.export_id or uuid.uuid4().hex
    _status("Rendering {} captions onto {} with the {} renderer...".format(
        len(payload.captions), input_path.name, args.renderer
    ))

    progress = ProgressStore()
    progress.subscribe(job_id, _ProgressPrinter())
    try:
        result = await run_export(
            job_id,
            input_path,
            payload,
            output_path,
            progress,
            renderer=args.renderer,
            fps=args.fps,
            concurrency=args.concurrency,
        )
    finally:
        progress.close()

    _status("")
    _status("Done! {} frames ({:.2f}s) saved to {}".format(
        result.total_frames, result.duration_s, result.output_path
    ))


# ---------------------------------------------------------------------------
# transcribe
# ---------------------------------------------------------------------------


async def _run_transcribe(args: argparse.Namespace) -> None:
    input_path = Path(args.video).resolve()
    if not input_path.is_file():
        print("Error: File not found: {}".format(input_path), file=sys.stderr)
        sys.exit(1)

    outcome = await transcribe_video(input_path, on_status=_status)
    _status("  {} captions from {:.2f}s of audio".format(len(outcome.captions), outcome.duration_s))

    style = StyleSpec(
        font_family=args.font_family,
        font_size=args.font_size,
        color=args.color,
    )
    payload = build_payload(outcome.captions, style, args.canvas, duration_s=outcome.duration_s)

    if args.output:
        output_path = Path(args.output).resolve()
    else:
        output_path = _resolve_output_path(input_path.stem, "-captions.json", input_path.parent)
    output_path.write_text(
        json.dumps(payload_to_dict(payload, source="cli"), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )
    _status("Saved caption payload: {}".format(output_path))


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def _run_command(args: argparse.Namespace) -> None:
    try:
        if args.command == "render":
            await _run_render(args)
        else:
            await _run_transcribe(args)
    except (CaptionExportError, TranscriptionAPIError, ValueError) as e:
        # ValueError covers configuration errors such as a missing API key
        print("Error: {}".format(e), file=sys.stderr)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser (separate from main() so tests can inspect it)."""
    parser = argparse.ArgumentParser(
        prog="caption_export",
        description="Burn animated, word-timed captions into video.",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log pipeline details to stderr.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    render = subparsers.add_parser("render", help="Burn a caption payload into a video.")
    render.add_argument("video", help="Path to the source video.")
    render.add_argument(
        "--payload",
        required=True,
        help="Path to the caption payload JSON.",
    )
    render.add_argument(
        "--output",
        default=None,
        help="Output MP4 path (default: {stem}-captioned.mp4 next to the video).",
    )
    render.add_argument(
        "--renderer",
        choices=sorted(RASTERIZERS),
        default=CAPTION_RENDERER,
        help="Overlay rasterizer backend (default: %(default)s).",
    )
    render.add_argument(
        "--fps",
        type=float,
        default=EXPORT_FPS,
        help="Export frame rate (default: %(default)s).",
    )
    render.add_argument(
        "--concurrency",
        type=int,
        default=RENDER_CONCURRENCY,
        help="Parallel overlay workers (default: %(default)s).",
    )

    transcribe = subparsers.add_parser(
        "transcribe",
        help="Transcribe a short clip into a ready-to-render caption payload.",
    )
    transcribe.add_argument("video", help="Path to the video to transcribe.")
    transcribe.add_argument(
        "--output",
        default=None,
        help="Payload JSON path (default: {stem}-captions.json next to the video).",
    )
    transcribe.add_argument(
        "--canvas",
        type=_parse_canvas,
        default=CanvasSize(DEFAULT_CANVAS_WIDTH, DEFAULT_CANVAS_HEIGHT),
        help="Output canvas as WIDTHxHEIGHT (default: {}x{}).".format(
            DEFAULT_CANVAS_WIDTH, DEFAULT_CANVAS_HEIGHT
        ),
    )
    transcribe.add_argument(
        "--font-family",
        default=StyleSpec.font_family,
        help="Caption font family (default: %(default)s).",
    )
    transcribe.add_argument(
        "--font-size",
        type=int,
        default=StyleSpec.font_size,
        help="Caption font size in pixels (default: %(default)s).",
    )
    transcribe.add_argument(
        "--color",
        default=StyleSpec.color,
        help="Caption text color (default: %(default)s).",
    )

    serve = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address (default: %(default)s).")
    serve.add_argument("--port", type=int, default=8000, help="Port (default: %(default)s).")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for ``python -m caption_export`` and the console script.

    argv=None means use sys.argv; explicit argv is for testing.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose or args.command == "serve":
        logging.basicConfig(
            level=logging.DEBUG if args.verbose else logging.INFO,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

    if args.command == "serve":
        from caption_export.server.app import run_api
        run_api(host=args.host, port=args.port)
        return

    try:
        asyncio.run(_run_command(args))
    except KeyboardInterrupt:
        _status("\nCancelled by user.")
        sys.exit(130)


if __name__ == "__main__":
    main()
