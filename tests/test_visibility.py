"""Tests for caption selection and word phases."""

from __future__ import annotations

import pytest

from caption_export.core.ir import Caption, Word, WordState
from caption_export.core.visibility import (
    ABOUT_TO_APPEAR_SCORE,
    ACTIVE_CAPTION_BONUS,
    ACTIVE_WORD_SCORE,
    PLAIN_ABOUT_TO_START_SCORE,
    PLAIN_IN_RANGE_SCORE,
    RECENT_START_BONUS,
    TIMING_BUFFER_S,
    WordPhase,
    classify_word,
    lookahead,
    score_caption,
    select_caption,
    word_state,
)


def _timed(caption_id, spans, end=None):
    words = [Word(text="w{}".format(i), start_s=s, end_s=e) for i, (s, e) in enumerate(spans)]
    return Caption(
        id=caption_id,
        text=" ".join(w.text for w in words),
        start_s=spans[0][0],
        end_s=end if end is not None else spans[-1][1],
        words=words,
    )


# ---------------------------------------------------------------------------
# Word phases
# ---------------------------------------------------------------------------


class TestWordPhase:

    @pytest.fixture
    def state(self):
        caption = _timed("c", [(1.0, 1.5)], end=2.0)
        return word_state(caption.words[0], caption)

    def test_derived_state(self, state):
        assert state == WordState(
            appear_s=1.0 - TIMING_BUFFER_S,
            active_start_s=1.0,
            active_end_s=1.5,
            fade_s=2.0,
        )

    def test_explicit_states_win(self):
        explicit = WordState(appear_s=0.0, active_start_s=0.5, active_end_s=0.7, fade_s=3.0)
        word = Word(text="x", start_s=1.0, end_s=1.2, states=explicit)
        caption = Caption(id="c", text="x", start_s=1.0, end_s=1.2, words=[word])
        assert word_state(word, caption) is explicit

    @pytest.mark.parametrize("t, phase", [
        (0.5, WordPhase.BEFORE),
        (0.97, WordPhase.ABOUT_TO_APPEAR),
        (1.0, WordPhase.ACTIVE),
        (1.2, WordPhase.ACTIVE),
        (1.5, WordPhase.ACTIVE),
        (1.7, WordPhase.RECENT),
        (2.0, WordPhase.RECENT),
        (2.5, WordPhase.GONE),
    ])
    def test_classify(self, state, t, phase):
        assert classify_word(state, t) == phase

    def test_phase_styles(self):
        assert (WordPhase.ACTIVE.opacity, WordPhase.ACTIVE.font_weight) == (1.0, 700)
        assert (WordPhase.RECENT.opacity, WordPhase.RECENT.font_weight) == (0.7, 600)
        assert (WordPhase.ABOUT_TO_APPEAR.opacity, WordPhase.ABOUT_TO_APPEAR.font_weight) == (0.5, 500)
        assert (WordPhase.BEFORE.opacity, WordPhase.BEFORE.font_weight) == (0.3, 400)
        assert WordPhase.GONE.opacity == 0.0

    def test_lookahead(self):
        assert lookahead(1.0) == pytest.approx(1.0 + TIMING_BUFFER_S)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class TestScoreCaption:

    def test_word_timed_active(self):
        caption = _timed("c", [(1.0, 1.5), (1.6, 2.0)])
        candidate = score_caption(caption, 1.2)
        assert candidate.has_active_word
        assert candidate.active_word_count == 1
        assert candidate.score == ACTIVE_WORD_SCORE + ACTIVE_CAPTION_BONUS + RECENT_START_BONUS

    def test_word_timed_outside_window_scores_zero(self):
        caption = _timed("c", [(1.0, 1.5), (1.6, 2.0)])
        assert score_caption(caption, 2.2).score == 0
        assert score_caption(caption, 0.5).score == 0

    def test_word_timed_about_to_appear(self):
        caption = _timed("c", [(1.0, 1.5)])
        candidate = score_caption(caption, 0.97)
        assert not candidate.has_active_word
        assert candidate.score == ABOUT_TO_APPEAR_SCORE + RECENT_START_BONUS

    def test_plain_in_range(self):
        caption = Caption(id="p", text="plain", start_s=1.0, end_s=2.0)
        candidate = score_caption(caption, 1.5)
        assert candidate.has_active_word
        assert candidate.score == PLAIN_IN_RANGE_SCORE

    def test_plain_about_to_start(self):
        caption = Caption(id="p", text="plain", start_s=1.0, end_s=2.0)
        assert score_caption(caption, 0.97).score == PLAIN_ABOUT_TO_START_SCORE

    def test_plain_outside(self):
        caption = Caption(id="p", text="plain", start_s=1.0, end_s=2.0)
        assert score_caption(caption, 2.5).score == 0


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class TestSelectCaption:

    def test_active_caption_beats_upcoming_one(self):
        current = _timed("a", [(1.9, 2.1)])
        upcoming = _timed("b", [(2.03, 2.3)])
        assert select_caption([current, upcoming], 2.0) is current
        assert select_caption([upcoming, current], 2.0) is current

    def test_nothing_visible(self, captions):
        assert select_caption(captions, 5.0) is None

    def test_plain_caption_in_range(self, captions):
        assert select_caption(captions, 1.2).id == "caption-1"

    def test_ties_keep_payload_order(self):
        first = Caption(id="first", text="a", start_s=0.0, end_s=1.0)
        second = Caption(id="second", text="b", start_s=0.0, end_s=1.0)
        assert select_caption([first, second], 0.5) is first

    def test_at_most_one_caption(self, captions):
        for step in range(0, 200):
            t = step / 100
            selected = select_caption(captions, t)
            assert selected is None or selected in captions
