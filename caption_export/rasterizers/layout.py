"""Caption layout shared by every rasterizer backend.

WHY: Two very different backends (direct drawing with Pillow, a headless
browser page) must place captions identically. If each backend did its
own text layout, wrapping and spacing would drift apart. Instead the
geometry is computed once, in Python, from the same font metrics, and the
backends only paint what this module tells them.

HOW: CaptionLayoutEngine measures each word with a caller-supplied
measure function, wraps words greedily into lines no wider than 90% of
the frame, and centres the box on the caption's normalized anchor.
Layouts are cached per caption id. resolve_frame() combines a layout with
the visibility model to produce the FrameState for one timestamp.

RULES:
- Word slots are measured at the style's own weight; a word painted at a
  different phase weight is centred in its slot, so lines never reflow
- Word gap is 0.3em, line height is font size x LINE_HEIGHT_RATIO
- Box padding is 10px vertical / 16px horizontal, corner radius 8px
- The box is centred on (x_pct x width, y_pct x height)
- Words in the GONE phase are omitted from the FrameState
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from PIL import ImageColor

from caption_export.config import BACKGROUND_OPACITY_BOOST, LINE_HEIGHT_RATIO
from caption_export.core.ir import CanvasSize, Caption, CaptionPayload, StyleSpec
from caption_export.core.visibility import (
    TIMING_BUFFER_S,
    WordPhase,
    classify_word,
    lookahead,
    select_caption,
    word_state,
)

# ---------------------------------------------------------------------------
# Geometry constants
# ---------------------------------------------------------------------------

MAX_WIDTH_RATIO = 0.9
WORD_GAP_EM = 0.3
BOX_PADDING_X = 16
BOX_PADDING_Y = 10
BOX_RADIUS = 8
SHADOW_BLUR = 8
SHADOW_OFFSET_Y = 2
SHADOW_OPACITY = 0.3

MeasureFn = Callable[[str, int], float]
"""measure(text, font_weight) -> advance width in pixels at the style's font size."""


def parse_color(color: str, opacity: float = 1.0) -> Tuple[int, int, int, int]:
    """Parse a CSS-style color into RGBA, scaling its alpha by opacity."""
    rgb = ImageColor.getrgb(color)
    alpha = rgb[3] if len(rgb) == 4 else 255
    alpha = int(round(alpha * min(max(opacity, 0.0), 1.0)))
    return rgb[0], rgb[1], rgb[2], alpha


def boosted_opacity(opacity: float, boost: float = BACKGROUND_OPACITY_BOOST) -> float:
    """Background opacity corrected for the direct-drawing backend, capped at 1."""
    return min(1.0, opacity * boost)


@dataclass(frozen=True)
class WordSlot:
    """Where one word sits inside a caption box."""

    index: int
    text: str
    x: float
    y: float
    width: float
    line: int

    @property
    def center_x(self) -> float:
        return self.x + self.width / 2


@dataclass(frozen=True)
class CaptionLayout:
    """Resolved geometry of one caption."""

    caption_id: str
    left: float
    top: float
    width: float
    height: float
    line_height: float
    slots: Tuple[WordSlot, ...]

    @property
    def right(self) -> float:
        return self.left + self.width

    @property
    def bottom(self) -> float:
        return self.top + self.height


@dataclass(frozen=True)
class PaintedWord:
    """A word slot with the opacity and weight to paint it at."""

    slot: WordSlot
    opacity: float
    font_weight: int
    phase: Optional[WordPhase] = None


@dataclass(frozen=True)
class FrameState:
    """Everything a backend paints for one frame."""

    caption: Caption
    layout: CaptionLayout
    words: Tuple[PaintedWord, ...]

    def to_dict(self) -> dict:
        """Plain-data form handed to the document backend's page script."""
        layout = self.layout
        return {
            "box": {
                "left": layout.left,
                "top": layout.top,
                "width": layout.width,
                "height": layout.height,
            },
            "lineHeight": layout.line_height,
            "words": [
                {
                    "text": w.slot.text,
                    "left": w.slot.x,
                    "top": w.slot.y,
                    "width": w.slot.width,
                    "opacity": w.opacity,
                    "weight": w.font_weight,
                }
                for w in self.words
            ],
        }


class CaptionLayoutEngine:
    """Compute and cache caption layouts for one style and canvas.

    WHY: Layout only depends on the caption text and the job's style, never
    on the timestamp, so a caption visible for 60 frames is laid out once.

    HOW: Words are measured at the style weight, wrapped greedily within the
    available width, and each line is centred on the anchor's x.

    RULES:
    - One engine per rasterizer instance (never shared across workers)
    - A single word wider than the available width gets its own line
    """

    def __init__(
        self,
        style: StyleSpec,
        canvas: CanvasSize,
        measure: MeasureFn,
        line_height_ratio: float = LINE_HEIGHT_RATIO,
    ) -> None:
        self.style = style
        self.canvas = canvas
        self._measure = measure
        self.line_height = style.font_size * line_height_ratio
        self.word_gap = style.font_size * WORD_GAP_EM
        self.max_text_width = canvas.width * MAX_WIDTH_RATIO - 2 * BOX_PADDING_X
        self._cache: Dict[str, CaptionLayout] = {}

    def layout(self, caption: Caption) -> CaptionLayout:
        cached = self._cache.get(caption.id)
        if cached is None:
            cached = self._compute(caption)
            self._cache[caption.id] = cached
        return cached

    def _wrap(self, texts: List[str]) -> List[List[Tuple[int, str, float]]]:
        lines: List[List[Tuple[int, str, float]]] = []
        current: List[Tuple[int, str, float]] = []
        current_width = 0.0
        for index, text in enumerate(texts):
            width = self._measure(text, self.style.font_weight)
            needed = width if not current else current_width + self.word_gap + width
            if current and needed > self.max_text_width:
                lines.append(current)
                current = []
                needed = width
            current.append((index, text, width))
            current_width = needed
        if current:
            lines.append(current)
        return lines

    def _line_width(self, line: List[Tuple[int, str, float]]) -> float:
        return sum(w for _, _, w in line) + self.word_gap * (len(line) - 1)

    def _compute(self, caption: Caption) -> CaptionLayout:
        if caption.words:
            texts = [w.text for w in caption.words]
        else:
            texts = caption.text.split()

        lines = self._wrap(texts)
        text_width = max((self._line_width(line) for line in lines), default=0.0)
        text_height = self.line_height * len(lines)
        box_width = text_width + 2 * BOX_PADDING_X
        box_height = text_height + 2 * BOX_PADDING_Y

        center_x = caption.position.x_pct * self.canvas.width
        center_y = caption.position.y_pct * self.canvas.height
        left = center_x - box_width / 2
        top = center_y - box_height / 2

        slots = []
        for line_no, line in enumerate(lines):
            x = center_x - self._line_width(line) / 2
            y = top + BOX_PADDING_Y + line_no * self.line_height
            for index, text, width in line:
                slots.append(WordSlot(index=index, text=text, x=x, y=y, width=width, line=line_no))
                x += width + self.word_gap

        return CaptionLayout(
            caption_id=caption.id,
            left=left,
            top=top,
            width=box_width,
            height=box_height,
            line_height=self.line_height,
            slots=tuple(slots),
        )


def resolve_frame(
    payload: CaptionPayload,
    timestamp_s: float,
    layout_for: Callable[[Caption], CaptionLayout],
    buffer_s: float = TIMING_BUFFER_S,
) -> FrameState | None:
    """Work out what to paint at a frame timestamp.

    Returns None when no caption is visible, including the tail frames
    where a word-timed caption still wins selection but all of its words
    have faded (an empty box would flash otherwise).
    """
    t = lookahead(timestamp_s, buffer_s)
    caption = select_caption(payload.captions, t, buffer_s)
    if caption is None:
        return None

    layout = layout_for(caption)
    painted = []
    if caption.words:
        for slot in layout.slots:
            word = caption.words[slot.index]
            phase = classify_word(word_state(word, caption, buffer_s), t, buffer_s)
            if phase is WordPhase.GONE:
                continue
            painted.append(PaintedWord(slot, phase.opacity, phase.font_weight, phase))
        if not painted:
            return None
    else:
        for slot in layout.slots:
            painted.append(PaintedWord(slot, 1.0, payload.style.font_weight))

    return FrameState(caption=caption, layout=layout, words=tuple(painted))
