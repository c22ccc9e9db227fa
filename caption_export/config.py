"""Configuration constants, rendering defaults, and .env loading.

WHY: Centralizes every tunable value (binary paths, frame rate, worker
count, timeouts, visual correction factors, transcription service) so they
are easy to find and override per deployment without touching logic.

HOW: python-dotenv loads the .env file on import. Constants are
module-level values read from the environment with documented defaults.
load_api_key() gives a clear error when the transcription key is missing.

RULES:
- Every constant can be overridden via an environment variable of the same name
- Timeouts are in seconds
- BACKGROUND_OPACITY_BOOST and LINE_HEIGHT_RATIO are empirically tuned so the
  two rasterizer backends match visually; change them only with a visual check
- The API key is loaded from the environment, never hardcoded
"""

from __future__ import annotations

import os

from dotenv import load_dotenv

# Load .env from the project root (where the script is run from)
load_dotenv()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


# ---------------------------------------------------------------------------
# External tools
# ---------------------------------------------------------------------------

FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")

FFMPEG_TIMEOUT_S = _env_float("FFMPEG_TIMEOUT_S", 600.0)
PROBE_TIMEOUT_S = _env_float("PROBE_TIMEOUT_S", 30.0)
AUDIO_EXTRACT_TIMEOUT_S = _env_float("AUDIO_EXTRACT_TIMEOUT_S", 60.0)

# ---------------------------------------------------------------------------
# Export rendering
# ---------------------------------------------------------------------------

EXPORT_FPS = _env_float("EXPORT_FPS", 30.0)
RENDER_CONCURRENCY = _env_int("RENDER_CONCURRENCY", 4)
CAPTION_RENDERER = os.getenv("CAPTION_RENDERER", "canvas")
"""Rasterizer backend key: "canvas" (Pillow) or "document" (headless Chromium)."""

FRAME_TIMEOUT_S = _env_float("FRAME_TIMEOUT_S", 30.0)
RENDERER_READY_TIMEOUT_S = _env_float("RENDERER_READY_TIMEOUT_S", 60.0)

DEFAULT_CANVAS_WIDTH = _env_int("DEFAULT_CANVAS_WIDTH", 1080)
DEFAULT_CANVAS_HEIGHT = _env_int("DEFAULT_CANVAS_HEIGHT", 1920)

CAPTION_FONTS_DIR = os.getenv("CAPTION_FONTS_DIR", "")
"""Directory holding TTF/OTF files named after their family and weight."""

BACKGROUND_OPACITY_BOOST = _env_float("BACKGROUND_OPACITY_BOOST", 1.15)
"""Applied to the box opacity by the direct-drawing backend (capped at 1.0)."""

LINE_HEIGHT_RATIO = _env_float("LINE_HEIGHT_RATIO", 1.153)
"""Line height as a multiple of the font size, matching the browser's normal line height."""

# ---------------------------------------------------------------------------
# Job lifecycle
# ---------------------------------------------------------------------------

PROGRESS_RETENTION_S = _env_float("PROGRESS_RETENTION_S", 600.0)
DOWNLOAD_GRACE_S = _env_float("DOWNLOAD_GRACE_S", 5.0)
JOB_TTL_S = _env_int("JOB_TTL_S", 3600)
MAX_EXPORT_JOBS = _env_int("MAX_EXPORT_JOBS", 20)

# ---------------------------------------------------------------------------
# Transcription
# ---------------------------------------------------------------------------

MAX_TRANSCRIPTION_DURATION_S = _env_float("MAX_TRANSCRIPTION_DURATION_S", 60.0)
TRANSCRIPTION_BASE_URL = os.getenv(
    "TRANSCRIPTION_BASE_URL", "https://api.groq.com/openai/v1"
)
TRANSCRIPTION_MODEL = os.getenv("TRANSCRIPTION_MODEL", "whisper-large-v3-turbo")
TRANSCRIPTION_LANGUAGE = os.getenv("TRANSCRIPTION_LANGUAGE", "en")

SUPPORTED_VIDEO_FORMATS: set[str] = {".mp4", ".mov", ".m4v", ".webm", ".mkv"}
"""Upload extensions accepted by the HTTP service (lowercase, with dot)."""


def load_api_key() -> str:
    """Load the transcription service API key from the environment.

    RULES:
    - Raises ValueError if TRANSCRIPTION_API_KEY is missing or empty
    - Never returns a default/placeholder value
    """
    key = os.getenv("TRANSCRIPTION_API_KEY", "").strip()
    if not key:
        raise ValueError(
            "Transcription API key not configured. "
            "Add TRANSCRIPTION_API_KEY to the .env file."
        )
    return key
