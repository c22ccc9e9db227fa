"""Tests for the shared caption layout and per-frame state.

HOW: The layout engine takes a measure function, so these tests use a
fixed-width fake (10px per character) and check the geometry by hand.
"""

from __future__ import annotations

import pytest

from caption_export.core.ir import CanvasSize, Caption, Position, StyleSpec, Word, WordState
from caption_export.core.visibility import WordPhase
from caption_export.rasterizers.layout import (
    BOX_PADDING_X,
    BOX_PADDING_Y,
    CaptionLayoutEngine,
    boosted_opacity,
    parse_color,
    resolve_frame,
)


def _measure(text, weight):
    return 10.0 * len(text)


@pytest.fixture
def engine():
    return CaptionLayoutEngine(StyleSpec(font_size=24), CanvasSize(160, 90), _measure)


class TestColors:

    def test_parse_hex(self):
        assert parse_color("#ff0000") == (255, 0, 0, 255)

    def test_opacity_scales_alpha(self):
        assert parse_color("#000000", 0.5) == (0, 0, 0, 128)

    def test_opacity_is_clamped(self):
        assert parse_color("white", 3.0)[3] == 255
        assert parse_color("white", -1.0)[3] == 0

    def test_boost_is_capped(self):
        assert boosted_opacity(0.6) == pytest.approx(0.69)
        assert boosted_opacity(0.95) == 1.0


class TestCaptionLayoutEngine:

    def test_single_line_is_centred_on_anchor(self, engine, captions):
        layout = engine.layout(captions[0])
        # "hi" (20) + gap (7.2) + "there" (50)
        text_width = 20 + 0.3 * 24 + 50
        assert layout.width == pytest.approx(text_width + 2 * BOX_PADDING_X)
        assert layout.height == pytest.approx(engine.line_height + 2 * BOX_PADDING_Y)
        assert (layout.left + layout.right) / 2 == pytest.approx(80.0)
        assert (layout.top + layout.bottom) / 2 == pytest.approx(0.9 * 90)
        assert [s.text for s in layout.slots] == ["hi", "there"]
        assert {s.line for s in layout.slots} == {0}

    def test_slots_follow_each_other_with_word_gap(self, engine, captions):
        first, second = engine.layout(captions[0]).slots
        assert second.x == pytest.approx(first.x + first.width + engine.word_gap)

    def test_wraps_when_line_is_too_wide(self, engine):
        caption = Caption(id="w", text="aaaaaa bbbbbb", start_s=0.0, end_s=1.0)
        layout = engine.layout(caption)
        assert [s.line for s in layout.slots] == [0, 1]
        assert all(s.center_x == pytest.approx(80.0) for s in layout.slots)
        assert layout.slots[1].y == pytest.approx(layout.slots[0].y + engine.line_height)

    def test_overlong_word_gets_its_own_line(self, engine):
        caption = Caption(id="w", text="a " + "x" * 20 + " b", start_s=0.0, end_s=1.0)
        layout = engine.layout(caption)
        assert [s.line for s in layout.slots] == [0, 1, 2]

    def test_plain_caption_splits_text(self, engine, captions):
        layout = engine.layout(captions[1])
        assert [s.text for s in layout.slots] == ["friend"]

    def test_position_moves_box(self, engine):
        caption = Caption(
            id="top-left",
            text="hi",
            start_s=0.0,
            end_s=1.0,
            position=Position(x_pct=0.25, y_pct=0.25),
        )
        layout = engine.layout(caption)
        assert (layout.left + layout.right) / 2 == pytest.approx(40.0)
        assert (layout.top + layout.bottom) / 2 == pytest.approx(22.5)

    def test_layout_is_cached_per_caption(self, engine, captions):
        assert engine.layout(captions[0]) is engine.layout(captions[0])


class TestResolveFrame:

    def test_nothing_visible(self, payload, engine):
        assert resolve_frame(payload, 5.0, engine.layout) is None

    def test_word_phases_are_painted(self, payload, engine):
        state = resolve_frame(payload, 0.1, engine.layout)
        assert state.caption.id == "caption-0"
        hi, there = state.words
        assert (hi.phase, hi.opacity, hi.font_weight) == (WordPhase.ACTIVE, 1.0, 700)
        assert (there.phase, there.opacity, there.font_weight) == (WordPhase.BEFORE, 0.3, 400)

    def test_plain_caption_uses_style_weight(self, payload, engine):
        state = resolve_frame(payload, 1.2, engine.layout)
        assert state.caption.id == "caption-1"
        assert [(w.opacity, w.font_weight) for w in state.words] == [(1.0, 600)]

    def test_gone_words_are_omitted(self, payload, engine):
        payload.captions[0].words[0] = Word(
            text="hi",
            start_s=0.0,
            end_s=0.3,
            states=WordState(appear_s=0.0, active_start_s=0.0, active_end_s=0.1, fade_s=0.2),
        )
        state = resolve_frame(payload, 0.3, engine.layout)
        assert [w.slot.text for w in state.words] == ["there"]

    def test_caption_with_every_word_gone_is_not_painted(self, payload, engine):
        # Just past the end the caption still scores for its recent word,
        # but both words are past their fade time
        assert resolve_frame(payload, payload.captions[0].end_s, engine.layout) is None

    def test_to_dict(self, payload, engine):
        data = resolve_frame(payload, 0.1, engine.layout).to_dict()
        assert set(data) == {"box", "lineHeight", "words"}
        assert set(data["box"]) == {"left", "top", "width", "height"}
        assert [w["text"] for w in data["words"]] == ["hi", "there"]
        assert data["words"][0]["weight"] == 700
        assert data["words"][1]["opacity"] == 0.3
