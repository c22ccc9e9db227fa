"""Intermediate representation dataclasses for caption export jobs.

WHY: Every stage of an export (segmentation, visibility scoring, frame
rasterization, compositing) works on the same captions, words, and style.
A single, well-typed intermediate form keeps those stages decoupled: the
segmenter produces it, the payload loader parses it, and the rasterizers
consume it without knowing where it came from.

HOW: Plain dataclasses form a hierarchy:
  Word          - one word with its start/end time and optional states
  WordState     - derived animation timestamps for one word
  Position      - normalized caption anchor on the frame
  Caption       - one display segment (text, span, words, position)
  StyleSpec     - immutable visual style for the whole job
  CanvasSize    - output frame size in pixels
  CaptionPayload - everything a rasterizer needs for one job
  FrameJob      - one unit of rasterization work (index + timestamp)

RULES:
- All times are float seconds, suffixed with _s
- A Word always satisfies end_s - start_s >= MIN_WORD_DURATION_S after ingestion
- A normalized Caption satisfies end_s - start_s >= MIN_SEGMENT_DURATION_S
- StyleSpec and FrameJob are frozen; a job's style never changes mid-export
"""

from __future__ import annotations

from dataclasses import dataclass, field

MIN_WORD_DURATION_S = 0.05
"""Shortest time a single word may be on screen."""

MIN_SEGMENT_DURATION_S = 0.2
"""Shortest time a caption may be on screen."""


@dataclass
class WordState:
    """Animation timestamps for one word.

    WHY: The visual state of a word (dim, about to appear, highlighted,
    recently spoken) is a function of where the playback time falls
    relative to these four instants.

    RULES:
    - appear_s <= active_start_s <= active_end_s <= fade_s in well-formed input
    - fade_s is normally the end of the owning caption
    """

    appear_s: float
    active_start_s: float
    active_end_s: float
    fade_s: float


@dataclass
class Word:
    """A single timed word."""

    text: str
    start_s: float
    end_s: float
    states: WordState | None = None

    @property
    def duration_s(self) -> float:
        return self.end_s - self.start_s


@dataclass
class Position:
    """Normalized anchor of the caption centre, as fractions of the frame."""

    x_pct: float = 0.5
    y_pct: float = 0.9


@dataclass
class Caption:
    """One display segment.

    WHY: Captions are the unit the viewer sees: a short group of words that
    appears, animates word by word, and disappears.

    RULES:
    - words is None for plain-text captions (no word-level timing)
    - text is the words joined by single spaces when words are present
    - id is stable for the life of the job (used for layout caching)
    """

    id: str
    text: str
    start_s: float
    end_s: float
    words: list[Word] | None = None
    position: Position = field(default_factory=Position)

    @property
    def duration_s(self) -> float:
        return self.end_s - self.start_s

    @property
    def has_word_timing(self) -> bool:
        return bool(self.words)


@dataclass(frozen=True)
class StyleSpec:
    """Visual style shared by every caption of an export job.

    RULES:
    - font_weight is numeric (400 regular … 700 bold)
    - background_opacity is 0.0–1.0 before any backend correction
    - stroke_width is in pixels; stroke is ignored when stroke_enabled is False
    """

    font_family: str = "Inter"
    font_size: int = 48
    font_weight: int = 600
    color: str = "#ffffff"
    background_enabled: bool = True
    background_color: str = "#000000"
    background_opacity: float = 0.6
    stroke_enabled: bool = False
    stroke_color: str = "#000000"
    stroke_width: float = 2.0


@dataclass(frozen=True)
class CanvasSize:
    """Output frame size in pixels."""

    width: int
    height: int


@dataclass
class CaptionPayload:
    """Everything a rasterizer needs for one export job.

    WHY: The rasterizer backend contract receives the caption set, the
    style, and the canvas size once per job, then answers timestamp
    queries. Bundling them keeps that contract a single object.

    RULES:
    - captions are ordered by start_s
    - duration_s is the clip duration when known, else None
    - export_id ties the payload to a job; it is informational only
    """

    captions: list[Caption]
    style: StyleSpec
    canvas: CanvasSize
    export_id: str = ""
    duration_s: float | None = None
    version: str = "1.0"


@dataclass(frozen=True)
class FrameJob:
    """One unit of rasterization work.

    RULES:
    - index determines the output file name and ordering
    - timestamp_s determines the content (index / fps)
    """

    index: int
    timestamp_s: float
