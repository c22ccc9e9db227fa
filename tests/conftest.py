"""Shared test fixtures for the caption_export test suite.

WHY: Segmenter, visibility, rasterizer, pipeline and API tests all need
the same small caption set and payload document. Centralizing them keeps
the expected values in one place.

RULES:
- Timings are exact two-decimal seconds so assertions can compare floats directly
- The canvas is tiny (160x90) so real Pillow rendering stays fast
- No fixture needs ffmpeg, Chromium, or network access
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List

import pytest

from caption_export.core.ir import CanvasSize, Caption, CaptionPayload, StyleSpec, Word


# ---------------------------------------------------------------------------
# Word timestamps
# ---------------------------------------------------------------------------

HI_THERE_FRIEND: List[Dict[str, Any]] = [
    {"word": "hi", "start": 0.00, "end": 0.30},
    {"word": "there", "start": 0.32, "end": 0.60},
    {"word": "friend", "start": 1.10, "end": 1.40},
]

PAYLOAD_DOCUMENT: Dict[str, Any] = {
    "version": "1.0",
    "subtitles": [
        {
            "id": "caption-0",
            "text": "hi there",
            "start": 0.0,
            "end": 0.6,
            "position": {"xPct": 0.5, "yPct": 0.8},
            "words": [
                {"word": "hi", "start": 0.0, "end": 0.3},
                {"word": "there", "start": 0.32, "end": 0.6},
            ],
        },
        {
            "id": "caption-1",
            "text": "friend",
            "start": 1.1,
            "end": 1.4,
            "words": None,
        },
    ],
    "style": {
        "fontFamily": "Inter",
        "fontSize": 24,
        "fontWeight": "semibold",
        "color": "#ffffff",
        "backgroundEnabled": True,
        "backgroundColor": "#000000",
        "backgroundOpacity": 0.6,
    },
    "metadata": {
        "exportId": "export-123",
        "source": "dashboard",
        "duration": 2.0,
        "canvas": {"width": 160, "height": 90},
    },
}


@pytest.fixture
def word_dicts():
    """Three words: two close together, then a long pause."""
    return copy.deepcopy(HI_THERE_FRIEND)


@pytest.fixture
def words():
    return [Word(text=w["word"], start_s=w["start"], end_s=w["end"]) for w in HI_THERE_FRIEND]


@pytest.fixture
def payload_document():
    """A schema-valid camelCase payload document."""
    return copy.deepcopy(PAYLOAD_DOCUMENT)


@pytest.fixture
def captions():
    """One word-timed caption and one plain caption."""
    return [
        Caption(
            id="caption-0",
            text="hi there",
            start_s=0.0,
            end_s=0.6,
            words=[
                Word(text="hi", start_s=0.0, end_s=0.3),
                Word(text="there", start_s=0.32, end_s=0.6),
            ],
        ),
        Caption(id="caption-1", text="friend", start_s=1.1, end_s=1.4),
    ]


@pytest.fixture
def payload(captions):
    """A small CaptionPayload on a 160x90 canvas."""
    return CaptionPayload(
        captions=captions,
        style=StyleSpec(font_size=24),
        canvas=CanvasSize(width=160, height=90),
        export_id="export-123",
        duration_s=2.0,
    )
