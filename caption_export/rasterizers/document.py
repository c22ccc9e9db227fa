"""Headless-browser rasterizer built on Playwright (Chromium).

WHY: Caption styles are authored in a browser, and CSS text rendering
(subpixel positioning, font hinting, text-shadow glow) is what the author
saw. Rendering the overlay with the same engine gives the closest match
to the preview.

HOW: One Chromium process is launched per export job (the shared
``backend``); each worker opens its own page sized to the canvas. The page
holds a box element and an empty word container. For every timestamp the
FrameState is computed in Python (the same layout and word phases the
Pillow backend uses) and handed to ``window.applyFrame``, which positions
absolutely placed word spans. The page is then captured with a transparent
background.

RULES:
- One page per worker, never shared; the browser is closed by the backend
  context after every worker has closed its page
- Fonts are embedded as data: URIs so the page measures with the same
  files as the layout engine
- The page signals readiness through window.captionRendererReady once
  document fonts have loaded
- Background opacity is the configured value; CSS compositing needs no boost
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from string import Template
from typing import Any, List

from playwright.async_api import Browser, Page, async_playwright

from caption_export.config import RENDERER_READY_TIMEOUT_S
from caption_export.core.ir import CaptionPayload
from caption_export.rasterizers.base import BaseRasterizer
from caption_export.rasterizers.layout import (
    BOX_RADIUS,
    SHADOW_BLUR,
    SHADOW_OFFSET_Y,
    SHADOW_OPACITY,
    parse_color,
)

logger = logging.getLogger(__name__)

_PHASE_WEIGHTS = (400, 500, 600, 700)

_BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
]

_PAGE_TEMPLATE = Template("""<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<style>
$font_faces
html, body {
  margin: 0;
  padding: 0;
  width: ${width}px;
  height: ${height}px;
  overflow: hidden;
  background: transparent;
}
#box {
  display: none;
  position: absolute;
  box-sizing: border-box;
  border-radius: ${radius}px;
  background: $background;
  border: $border;
  box-shadow: $box_shadow;
}
.word {
  position: absolute;
  display: block;
  white-space: nowrap;
  text-align: center;
  font-family: $font_family;
  font-size: ${font_size}px;
  color: $color;
  text-shadow: $text_shadow;
}
</style>
</head>
<body>
<div id="box"></div>
<div id="words"></div>
<script>
(function () {
  var BOX_VISIBLE = $box_visible;
  var box = document.getElementById("box");
  var words = document.getElementById("words");

  window.applyFrame = function (state) {
    words.textContent = "";
    if (!state) {
      box.style.display = "none";
      return;
    }
    if (BOX_VISIBLE) {
      box.style.display = "block";
      box.style.left = state.box.left + "px";
      box.style.top = state.box.top + "px";
      box.style.width = state.box.width + "px";
      box.style.height = state.box.height + "px";
    }
    state.words.forEach(function (w) {
      var span = document.createElement("span");
      span.className = "word";
      span.textContent = w.text;
      span.style.left = w.left + "px";
      span.style.top = w.top + "px";
      span.style.width = w.width + "px";
      span.style.height = state.lineHeight + "px";
      span.style.lineHeight = state.lineHeight + "px";
      span.style.opacity = w.opacity;
      span.style.fontWeight = w.weight;
      words.appendChild(span);
    });
  };

  document.fonts.ready.then(function () {
    window.captionRendererReady = true;
  });
})();
</script>
</body>
</html>
""")


def _css_rgba(color: str, opacity: float = 1.0) -> str:
    red, green, blue, alpha = parse_color(color, opacity)
    return "rgba({}, {}, {}, {:.3f})".format(red, green, blue, alpha / 255)


class DocumentRasterizer(BaseRasterizer):
    """Rasterize caption frames in a headless Chromium page."""

    @property
    def name(self) -> str:
        return "Chromium document"

    @classmethod
    @asynccontextmanager
    async def backend(cls, payload: CaptionPayload) -> AsyncIterator[Browser]:
        """Launch one headless Chromium for all workers of a job."""
        async with async_playwright() as playwright:
            browser = await playwright.chromium.launch(headless=True, args=_BROWSER_ARGS)
            logger.info("Launched Chromium for export %s", payload.export_id)
            try:
                yield browser
            finally:
                await browser.close()

    def __init__(self, payload: CaptionPayload, shared: Any = None, fonts: Any = None) -> None:
        super().__init__(payload, shared, fonts)
        self._page: Page | None = None

    def build_html(self) -> str:
        """The page document for this job's style and canvas."""
        style = self.payload.style
        canvas = self.payload.canvas

        faces: List[str] = []
        for weight in sorted(set(_PHASE_WEIGHTS) | {style.font_weight}):
            uri = self.fonts.data_uri(style.font_family, weight)
            if uri is None:
                continue
            faces.append(
                '@font-face {{ font-family: {}; src: url("{}"); font-weight: {}; }}'.format(
                    json.dumps(style.font_family), uri, weight
                )
            )

        stroke = style.stroke_enabled and style.stroke_width > 0
        if stroke:
            glow_color = _css_rgba(style.stroke_color)
            text_shadow = "0 0 {w}px {c}, 0 0 {w2}px {c}".format(
                w=style.stroke_width, w2=2 * style.stroke_width, c=glow_color
            )
            border = "{}px solid {}".format(style.stroke_width, glow_color)
        else:
            text_shadow = "none"
            border = "none"

        if style.background_enabled:
            background = _css_rgba(style.background_color, style.background_opacity)
            box_shadow = "0 {}px {}px rgba(0, 0, 0, {})".format(
                SHADOW_OFFSET_Y, SHADOW_BLUR, SHADOW_OPACITY
            )
        else:
            background = "transparent"
            box_shadow = "none"

        return _PAGE_TEMPLATE.substitute(
            font_faces="\n".join(faces),
            width=canvas.width,
            height=canvas.height,
            radius=BOX_RADIUS,
            background=background,
            border=border,
            box_shadow=box_shadow,
            font_family="{}, sans-serif".format(json.dumps(style.font_family)),
            font_size=style.font_size,
            color=_css_rgba(style.color),
            text_shadow=text_shadow,
            box_visible="true" if (style.background_enabled or stroke) else "false",
        )

    async def open(self) -> None:
        if self.shared is None:
            raise RuntimeError(
                "DocumentRasterizer needs the browser from DocumentRasterizer.backend()"
            )
        canvas = self.payload.canvas
        self._page = await self.shared.new_page(
            viewport={"width": canvas.width, "height": canvas.height},
            device_scale_factor=1,
        )
        await self._page.set_content(self.build_html())
        await self._page.wait_for_function(
            "window.captionRendererReady === true",
            timeout=RENDERER_READY_TIMEOUT_S * 1000,
        )
        self._ready = True

    async def render(self, timestamp_s: float) -> bytes:
        self._ensure_ready()
        state = self.frame_state(timestamp_s)
        await self._page.evaluate(
            "state => window.applyFrame(state)",
            state.to_dict() if state is not None else None,
        )
        return await self._page.screenshot(type="png", omit_background=True)

    async def close(self) -> None:
        await super().close()
        if self._page is not None:
            page = self._page
            self._page = None
            await page.close()
