"""Frame rasterizer registry: interchangeable caption overlay backends.

WHY: The export pipeline, CLI, and HTTP service pick a backend by name from
configuration. A central dict keeps that choice a lookup rather than an
inheritance decision.

HOW: RASTERIZERS maps string keys to rasterizer *classes* (not instances).
Workers instantiate as needed: ``RASTERIZERS["canvas"](payload, shared)``.

RULES:
- Keys are lowercase identifiers (used in CLI flags and CAPTION_RENDERER)
- Values are BaseRasterizer subclasses (not instances)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from caption_export.rasterizers.canvas import CanvasRasterizer
from caption_export.rasterizers.document import DocumentRasterizer

if TYPE_CHECKING:
    from caption_export.rasterizers.base import BaseRasterizer

RASTERIZERS: dict[str, type[BaseRasterizer]] = {
    "canvas": CanvasRasterizer,
    "document": DocumentRasterizer,
}


def get_rasterizer(key: str) -> type[BaseRasterizer]:
    """Look up a rasterizer class by key, raising ValueError if unknown."""
    try:
        return RASTERIZERS[key]
    except KeyError:
        raise ValueError(
            "Unknown renderer '{}'. Available: {}".format(key, ", ".join(sorted(RASTERIZERS)))
        ) from None
