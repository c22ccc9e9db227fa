"""Abstract base rasterizer.

WHY: The overlay worker pool must not care which backend turns a caption
frame into pixels. Every backend answers the same question: "give me a
transparent PNG of the caption overlay at time t".

HOW: BaseRasterizer is an ABC. A backend provides a ``name``, an
``open()`` that prepares its per-worker rendering context, a
``render(timestamp_s)`` returning PNG bytes, and a ``close()``. Backends
that need an expensive process shared by all workers of a job (a browser)
override the ``backend(payload)`` async context manager; its value is
passed to every instance of that job.

RULES:
- One instance per worker; an instance is never used by two workers
- ``ready`` is True between a successful open() and close()
- render() before open() raises RuntimeError
- Instances are async context managers: ``async with cls(payload, shared) as r:``
- Layout and word states come from rasterizers.layout, never recomputed here

To add a new backend:
1. Create a new file in rasterizers/
2. Subclass BaseRasterizer
3. Implement name, open(), render(), and optionally close()/backend()
4. Register it in RASTERIZERS in rasterizers/__init__.py
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from caption_export.core.ir import CaptionPayload
from caption_export.rasterizers.fonts import FontBook
from caption_export.rasterizers.layout import (
    CaptionLayoutEngine,
    FrameState,
    resolve_frame,
)


class BaseRasterizer(ABC):
    """Abstract base for all caption frame rasterizers."""

    def __init__(
        self,
        payload: CaptionPayload,
        shared: Any = None,
        fonts: FontBook | None = None,
    ) -> None:
        self.payload = payload
        self.shared = shared
        self.fonts = fonts or FontBook()
        style = payload.style
        self.layout_engine = CaptionLayoutEngine(
            style,
            payload.canvas,
            lambda text, weight: self.fonts.measure(
                text, style.font_family, weight, style.font_size
            ),
        )
        self._ready = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name, e.g. 'Pillow canvas'."""

    @classmethod
    @asynccontextmanager
    async def backend(cls, payload: CaptionPayload) -> AsyncIterator[Any]:
        """Job-scoped shared resource. The default backend needs none."""
        yield None

    @property
    def ready(self) -> bool:
        return self._ready

    @abstractmethod
    async def open(self) -> None:
        """Prepare the per-worker rendering context and set ready."""

    @abstractmethod
    async def render(self, timestamp_s: float) -> bytes:
        """Render the overlay at timestamp_s as transparent PNG bytes."""

    async def close(self) -> None:
        self._ready = False

    def frame_state(self, timestamp_s: float) -> FrameState | None:
        return resolve_frame(self.payload, timestamp_s, self.layout_engine.layout)

    def _ensure_ready(self) -> None:
        if not self._ready:
            raise RuntimeError(
                "{} must be opened before rendering: "
                "async with Rasterizer(payload, shared) as r: ...".format(type(self).__name__)
            )

    async def __aenter__(self) -> BaseRasterizer:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        await self.close()
