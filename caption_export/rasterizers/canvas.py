"""Direct-drawing rasterizer built on Pillow.

WHY: Launching a browser per export is heavy. Drawing the caption box and
words directly with Pillow gives the same overlay with no external process
and works anywhere Pillow's FreeType support is available.

HOW: For each frame the shared layout yields a FrameState. Painting happens
on a region just large enough for the box plus its blur margin, then the
region is composited onto a transparent full-size frame and encoded as PNG.
Layers, bottom to top:
  1. drop shadow   - box shape, 30% black, offset 2px down, blurred 8px
  2. background    - rounded box at the boosted background opacity
  3. border        - rounded outline in the stroke color
  4. outer glow    - words in the stroke color, blurred 2 x stroke width
  5. inner glow    - words in the stroke color, blurred 1 x stroke width
  6. fill          - words in the text color
Each word uses the opacity and weight of its phase.

RULES:
- Drawing runs in a worker thread (asyncio.to_thread) so the event loop
  keeps serving other workers
- A blur of b pixels is a Gaussian with sigma b / 2
- Frames without a visible caption are fully transparent
"""

from __future__ import annotations

import asyncio
import io
import math

from PIL import Image, ImageDraw, ImageFilter

from caption_export.rasterizers.base import BaseRasterizer
from caption_export.rasterizers.layout import (
    BOX_RADIUS,
    SHADOW_BLUR,
    SHADOW_OFFSET_Y,
    SHADOW_OPACITY,
    FrameState,
    boosted_opacity,
    parse_color,
)

PNG_COMPRESS_LEVEL = 1


class CanvasRasterizer(BaseRasterizer):
    """Rasterize caption frames with Pillow."""

    _blank: bytes | None = None

    @property
    def name(self) -> str:
        return "Pillow canvas"

    async def open(self) -> None:
        self._ready = True

    async def render(self, timestamp_s: float) -> bytes:
        self._ensure_ready()
        return await asyncio.to_thread(self.render_sync, timestamp_s)

    def render_sync(self, timestamp_s: float) -> bytes:
        """Render one frame on the calling thread."""
        state = self.frame_state(timestamp_s)
        if state is None:
            return self._blank_frame()
        return _encode(self.paint(state))

    def _blank_frame(self) -> bytes:
        if self._blank is None:
            canvas = self.payload.canvas
            self._blank = _encode(Image.new("RGBA", (canvas.width, canvas.height), (0, 0, 0, 0)))
        return self._blank

    # ------------------------------------------------------------------
    # Painting
    # ------------------------------------------------------------------

    def _margin(self) -> int:
        style = self.payload.style
        stroke = style.stroke_width if style.stroke_enabled else 0.0
        sigma = max(SHADOW_BLUR / 2, stroke)
        return int(math.ceil(3 * sigma + stroke + SHADOW_OFFSET_Y)) + 1

    def paint(self, state: FrameState) -> Image.Image:
        """Paint a FrameState onto a transparent full-size RGBA image."""
        canvas = self.payload.canvas
        frame = Image.new("RGBA", (canvas.width, canvas.height), (0, 0, 0, 0))

        layout = state.layout
        margin = self._margin()
        x0 = max(0, int(math.floor(layout.left)) - margin)
        y0 = max(0, int(math.floor(layout.top)) - margin)
        x1 = min(canvas.width, int(math.ceil(layout.right)) + margin)
        y1 = min(canvas.height, int(math.ceil(layout.bottom)) + margin)
        if x1 <= x0 or y1 <= y0:
            return frame

        region = Image.new("RGBA", (x1 - x0, y1 - y0), (0, 0, 0, 0))
        box = (layout.left - x0, layout.top - y0, layout.right - x0, layout.bottom - y0)
        self._paint_box(region, box)
        self._paint_words(region, state, (-x0, -y0))

        frame.alpha_composite(region, dest=(x0, y0))
        return frame

    def _paint_box(self, region: Image.Image, box: tuple) -> None:
        style = self.payload.style
        if style.background_enabled:
            shadow = Image.new("RGBA", region.size, (0, 0, 0, 0))
            left, top, right, bottom = box
            ImageDraw.Draw(shadow).rounded_rectangle(
                (left, top + SHADOW_OFFSET_Y, right, bottom + SHADOW_OFFSET_Y),
                radius=BOX_RADIUS,
                fill=(0, 0, 0, int(round(255 * SHADOW_OPACITY))),
            )
            region.alpha_composite(shadow.filter(ImageFilter.GaussianBlur(SHADOW_BLUR / 2)))

            background = Image.new("RGBA", region.size, (0, 0, 0, 0))
            ImageDraw.Draw(background).rounded_rectangle(
                box,
                radius=BOX_RADIUS,
                fill=parse_color(
                    style.background_color,
                    boosted_opacity(style.background_opacity),
                ),
            )
            region.alpha_composite(background)

        if style.stroke_enabled and style.stroke_width > 0:
            border = Image.new("RGBA", region.size, (0, 0, 0, 0))
            ImageDraw.Draw(border).rounded_rectangle(
                box,
                radius=BOX_RADIUS,
                outline=parse_color(style.stroke_color),
                width=max(1, int(round(style.stroke_width))),
            )
            region.alpha_composite(border)

    def _draw_words(
        self,
        size: tuple,
        state: FrameState,
        offset: tuple,
        color: str,
    ) -> Image.Image:
        style = self.payload.style
        layer = Image.new("RGBA", size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        dx, dy = offset
        for word in state.words:
            font = self.fonts.font(style.font_family, word.font_weight, style.font_size)
            width = font.getlength(word.slot.text)
            x = word.slot.x + (word.slot.width - width) / 2 + dx
            y = word.slot.y + state.layout.line_height / 2 + dy
            draw.text(
                (x, y),
                word.slot.text,
                font=font,
                fill=parse_color(color, word.opacity),
                anchor="lm",
            )
        return layer

    def _paint_words(self, region: Image.Image, state: FrameState, offset: tuple) -> None:
        if not state.words:
            return
        style = self.payload.style
        if style.stroke_enabled and style.stroke_width > 0:
            glow = self._draw_words(region.size, state, offset, style.stroke_color)
            # Outer glow (blur 2w) under inner glow (blur w)
            region.alpha_composite(glow.filter(ImageFilter.GaussianBlur(style.stroke_width)))
            region.alpha_composite(glow.filter(ImageFilter.GaussianBlur(style.stroke_width / 2)))
        region.alpha_composite(self._draw_words(region.size, state, offset, style.color))


def _encode(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG", compress_level=PNG_COMPRESS_LEVEL)
    return buffer.getvalue()
