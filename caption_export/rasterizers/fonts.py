"""Font lookup and measurement for caption rasterizers.

WHY: Both backends must measure and paint text with the same font files,
otherwise word slots computed by the layout engine would not match the
glyphs a browser draws. Caption styles name a family and a numeric
weight; the files on disk are named after both.

HOW: FontBook indexes CAPTION_FONTS_DIR once, resolving
"<Family>-<WeightName>.ttf|.otf" (spaces removed, case-insensitive) to a
path. Pillow FreeType fonts are cached per (path, size). When no file
matches, the nearest available weight of the family is used, then
Pillow's bundled default font.

RULES:
- One FontBook per rasterizer; FreeType objects are not shared across threads
- Weight fallback picks the closest weight, preferring heavier on ties
- data_uri() returns None when the family has no file (browser falls back
  to its own font of that name)
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

from PIL import ImageFont

from caption_export.config import CAPTION_FONTS_DIR

logger = logging.getLogger(__name__)

WEIGHT_NAMES = {
    100: "thin",
    200: "extralight",
    300: "light",
    400: "regular",
    500: "medium",
    600: "semibold",
    700: "bold",
    800: "extrabold",
    900: "black",
}

_FONT_SUFFIXES = (".ttf", ".otf")


def _family_key(family: str) -> str:
    return family.replace(" ", "").lower()


class FontBook:
    """Resolve, load, and measure caption fonts."""

    def __init__(self, fonts_dir: str | Path | None = None) -> None:
        directory = fonts_dir if fonts_dir is not None else CAPTION_FONTS_DIR
        self.fonts_dir = Path(directory) if directory else None
        self._index: Dict[Tuple[str, int], Path] = {}
        self._fonts: Dict[Tuple[Optional[Path], int], ImageFont.ImageFont] = {}
        self._warned: set = set()
        self._scan()

    def _scan(self) -> None:
        if self.fonts_dir is None or not self.fonts_dir.is_dir():
            return
        names = {name: weight for weight, name in WEIGHT_NAMES.items()}
        for path in sorted(self.fonts_dir.iterdir()):
            if path.suffix.lower() not in _FONT_SUFFIXES:
                continue
            family, _, weight_name = path.stem.rpartition("-")
            weight = names.get(weight_name.lower())
            if not family or weight is None:
                continue
            self._index[(_family_key(family), weight)] = path

    def font_path(self, family: str, weight: int) -> Optional[Path]:
        """Path of the file closest to (family, weight), or None."""
        key = _family_key(family)
        exact = self._index.get((key, weight))
        if exact is not None:
            return exact
        available = [w for (fam, w) in self._index if fam == key]
        if not available:
            if key not in self._warned:
                self._warned.add(key)
                logger.warning("No font files for family %r; using default font", family)
            return None
        nearest = min(available, key=lambda w: (abs(w - weight), -w))
        return self._index[(key, nearest)]

    def font(self, family: str, weight: int, size: int) -> ImageFont.ImageFont:
        """Return a Pillow font for (family, weight) at size pixels."""
        path = self.font_path(family, weight)
        cache_key = (path, size)
        font = self._fonts.get(cache_key)
        if font is None:
            if path is not None:
                font = ImageFont.truetype(str(path), size)
            else:
                font = ImageFont.load_default(size=size)
            self._fonts[cache_key] = font
        return font

    def measure(self, text: str, family: str, weight: int, size: int) -> float:
        """Advance width of text in pixels."""
        return float(self.font(family, weight, size).getlength(text))

    def data_uri(self, family: str, weight: int) -> Optional[str]:
        """Font file as a data: URI for CSS @font-face, or None."""
        path = self.font_path(family, weight)
        if path is None:
            return None
        mime = "font/otf" if path.suffix.lower() == ".otf" else "font/ttf"
        encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        return "data:{};base64,{}".format(mime, encoded)
