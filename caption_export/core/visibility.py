"""Decide which caption is on screen and how each of its words looks.

WHY: Captions produced from noisy timestamps can overlap by a few frames,
and a plain "show everything in range" rule would stack two captions on
top of each other. The export shows exactly one caption per frame, chosen
by an explicit score, and animates its words through a fixed set of
visual phases.

HOW: score_caption() rates one caption at a (buffered) time, either from
its word timings or, for plain captions, from its overall span.
select_caption() ranks the candidates and returns the winner.
classify_word() maps a word and a time onto a WordPhase, which carries
the opacity and font weight the rasterizers paint with.

RULES:
- Times passed in already include the lookahead buffer (see lookahead())
- At most one caption is returned for any time
- Ranking: has an active word, then score, then most recent earliest start
- Word phase checks run in a fixed order; the active test wins
"""

from __future__ import annotations

import enum
import math
from collections.abc import Sequence
from dataclasses import dataclass

from caption_export.core.ir import Caption, Word, WordState

TIMING_BUFFER_S = 0.05
"""Captions and words are evaluated this far ahead of the frame time."""

RECENT_WORD_WINDOW_S = 0.1
RECENT_CAPTION_WINDOW_S = 0.5

ACTIVE_WORD_SCORE = 10
ABOUT_TO_APPEAR_SCORE = 5
RECENT_WORD_SCORE = 2
ACTIVE_CAPTION_BONUS = 100
RECENT_START_BONUS = 20
PLAIN_IN_RANGE_SCORE = 50
PLAIN_ABOUT_TO_START_SCORE = 10


class WordPhase(str, enum.Enum):
    """Visual phase of a word at a point in time.

    RULES:
    - before: not yet spoken, dimmed (0.3, regular)
    - about_to_appear: within the buffer before its start (0.5, medium)
    - active: being spoken (1.0, bold)
    - recent: already spoken, caption still up (0.7, semibold)
    - gone: not painted (0.0)
    """

    BEFORE = "before"
    ABOUT_TO_APPEAR = "about_to_appear"
    ACTIVE = "active"
    RECENT = "recent"
    GONE = "gone"

    @property
    def opacity(self) -> float:
        return _PHASE_STYLE[self][0]

    @property
    def font_weight(self) -> int:
        return _PHASE_STYLE[self][1]


_PHASE_STYLE = {
    WordPhase.BEFORE: (0.3, 400),
    WordPhase.ABOUT_TO_APPEAR: (0.5, 500),
    WordPhase.ACTIVE: (1.0, 700),
    WordPhase.RECENT: (0.7, 600),
    WordPhase.GONE: (0.0, 400),
}


def lookahead(timestamp_s: float, buffer_s: float = TIMING_BUFFER_S) -> float:
    """Shift a frame timestamp by the lookahead buffer."""
    return timestamp_s + buffer_s


def word_state(word: Word, caption: Caption, buffer_s: float = TIMING_BUFFER_S) -> WordState:
    """Return the word's animation timestamps, deriving them when absent.

    Derived states appear one buffer before the word starts, are active for
    the word's own span, and fade with the caption.
    """
    if word.states is not None:
        return word.states
    return WordState(
        appear_s=word.start_s - buffer_s,
        active_start_s=word.start_s,
        active_end_s=word.end_s,
        fade_s=caption.end_s,
    )


def classify_word(state: WordState, t: float, buffer_s: float = TIMING_BUFFER_S) -> WordPhase:
    """Classify a word at buffered time t.

    RULES:
    - active:          active_start <= t <= active_end
    - about_to_appear: active_start - buffer <= t < active_start
    - recent:          t >= active_start and t <= fade
    - before:          t < active_start
    - gone:            none of the above
    """
    start = state.active_start_s
    if start <= t <= state.active_end_s:
        return WordPhase.ACTIVE
    if start - buffer_s <= t < start:
        return WordPhase.ABOUT_TO_APPEAR
    if t >= start and t <= state.fade_s:
        return WordPhase.RECENT
    if t < start:
        return WordPhase.BEFORE
    return WordPhase.GONE


@dataclass
class CaptionCandidate:
    """One caption's score at a point in time."""

    caption: Caption
    score: float
    has_active_word: bool = False
    active_word_count: int = 0
    earliest_start_s: float = -math.inf
    latest_end_s: float = -math.inf

    def sort_key(self) -> tuple:
        return (not self.has_active_word, -self.score, -self.earliest_start_s)


def _score_word_timed(caption: Caption, t: float, buffer_s: float) -> CaptionCandidate:
    score = 0.0
    active_count = 0
    earliest = math.inf
    latest = -math.inf

    for word in caption.words or ():
        if word.start_s <= t <= word.end_s:
            active_count += 1
            score += ACTIVE_WORD_SCORE
        elif word.start_s - buffer_s <= t < word.start_s:
            score += ABOUT_TO_APPEAR_SCORE
        elif t >= word.start_s and t - word.end_s <= RECENT_WORD_WINDOW_S:
            score += RECENT_WORD_SCORE
        earliest = min(earliest, word.start_s)
        latest = max(latest, word.end_s)

    has_active = active_count > 0
    if not (earliest - buffer_s <= t <= latest + RECENT_WORD_WINDOW_S):
        score = 0.0
    else:
        if has_active:
            score += ACTIVE_CAPTION_BONUS
        since_start = t - earliest
        if -buffer_s <= since_start < RECENT_CAPTION_WINDOW_S:
            score += RECENT_START_BONUS

    return CaptionCandidate(
        caption=caption,
        score=score,
        has_active_word=has_active,
        active_word_count=active_count,
        earliest_start_s=earliest,
        latest_end_s=latest,
    )


def score_caption(caption: Caption, t: float, buffer_s: float = TIMING_BUFFER_S) -> CaptionCandidate:
    """Score one caption at buffered time t.

    WHY: Selecting a caption by score rather than by "first in range" keeps
    the choice deterministic when captions overlap and favours the caption
    whose words are actually being spoken.

    HOW: Word-timed captions add per-word points (10 active, 5 about to
    appear, 2 ended within 0.1s) plus bonuses (100 for any active word, 20
    when the first word started within the last 0.5s). A word-timed caption
    is disqualified outside [earliest - buffer, latest + 0.1]. Plain captions
    score 50 inside their span (counted as active) and 10 in the buffer
    before it.
    """
    if caption.has_word_timing:
        return _score_word_timed(caption, t, buffer_s)

    if caption.start_s <= t <= caption.end_s:
        return CaptionCandidate(
            caption=caption,
            score=PLAIN_IN_RANGE_SCORE,
            has_active_word=True,
            earliest_start_s=caption.start_s,
            latest_end_s=caption.end_s,
        )
    if caption.start_s - buffer_s <= t < caption.start_s:
        return CaptionCandidate(
            caption=caption,
            score=PLAIN_ABOUT_TO_START_SCORE,
            earliest_start_s=caption.start_s,
            latest_end_s=caption.end_s,
        )
    return CaptionCandidate(caption=caption, score=0.0)


def select_caption(
    captions: Sequence[Caption],
    t: float,
    buffer_s: float = TIMING_BUFFER_S,
) -> Caption | None:
    """Return the single caption to show at buffered time t, or None."""
    candidates = [score_caption(c, t, buffer_s) for c in captions]
    candidates = [c for c in candidates if c.score > 0]
    if not candidates:
        return None
    # Stable sort: equal keys keep payload order
    candidates.sort(key=CaptionCandidate.sort_key)
    return candidates[0].caption
