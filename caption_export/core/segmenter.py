"""Group raw word timestamps into display captions.

WHY: Speech recognizers return one timestamp pair per word, often noisy:
missing ends, zero-length words, overlapping neighbours. Captions need
short, readable groups of words that never overlap and never flash on
screen for less than a readable minimum. This module turns the raw stream
into that caption stream.

HOW: Four steps, each a pure function:
  sanitize_word            - round, repair, and pad one word's timing
  estimate_timing_threshold - pick a pause threshold from the speech tempo
  group_words              - greedy grouping on punctuation, pauses, size
  normalize_segments       - sort, de-overlap, clamp, and bound words
segments_from_transcription() accepts the transcription service's
response shapes (flat words, pre-grouped segments, or plain text) and runs
the right combination of the steps.

RULES:
- All output times are rounded to 2 decimals
- Every output caption lasts at least MIN_SEGMENT_DURATION_S
- Output captions are sorted by start and pairwise non-overlapping
- Every output word lasts at least MIN_WORD_DURATION_S and lies inside its caption
- The last word of a caption always ends exactly at the caption end
- normalize_segments(normalize_segments(x)) == normalize_segments(x)
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from caption_export.core.ir import (
    MIN_SEGMENT_DURATION_S,
    MIN_WORD_DURATION_S,
    Caption,
    Position,
    Word,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Grouping constants
# ---------------------------------------------------------------------------

FAST_SPEECH_THRESHOLD_S = 0.06
FASTER_THAN_NORMAL_THRESHOLD_S = 0.08
NORMAL_SPEECH_THRESHOLD_S = 0.12
SLOW_SPEECH_THRESHOLD_S = 0.20
DEFAULT_AVERAGE_GAP_S = 0.1
TEMPO_SAMPLE_BOUNDARIES = 10

MAX_GROUP_DURATION_S = 0.6
MAX_WORDS_PER_GROUP = 4
MIN_WORDS_PER_GROUP = 1

_SENTENCE_END_RE = re.compile(r"[.!?;:]")
_EPSILON = 1e-6


def _round2(value: float) -> float:
    return round(value, 2)


def _as_seconds(value: Any) -> float | None:
    """Coerce a raw timestamp to a finite float, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds):
        return None
    return seconds


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


# ---------------------------------------------------------------------------
# Step 1: sanitize
# ---------------------------------------------------------------------------


def sanitize_word(text: str, start: Any, end: Any) -> Word:
    """Return a Word with repaired, rounded timing.

    RULES:
    - start/end are rounded to 2 decimals
    - A missing or non-finite start becomes 0.0
    - A missing or non-finite end becomes start + MIN_WORD_DURATION_S
    - A word shorter than MIN_WORD_DURATION_S is extended at the end
    """
    start_s = _as_seconds(start)
    start_s = 0.0 if start_s is None else _round2(start_s)

    end_s = _as_seconds(end)
    if end_s is None:
        end_s = start_s + MIN_WORD_DURATION_S
    word = Word(text=text or "", start_s=start_s, end_s=_round2(end_s))
    if word.duration_s < MIN_WORD_DURATION_S - _EPSILON:
        word.end_s = _round2(start_s + MIN_WORD_DURATION_S)
    return word


def words_from_dicts(
    items: Iterable[Mapping[str, Any]],
    fallback_start: Any = None,
    fallback_end: Any = None,
) -> list[Word]:
    """Parse transcription word objects into sanitized Words.

    Accepts both ``{"word": ...}`` (OpenAI/Groq verbose_json) and
    ``{"text": ...}`` keys. Missing times fall back to the owning
    segment's span when one is given.
    """
    words = []
    for item in items:
        text = item.get("word")
        if text is None:
            text = item.get("text", "")
        start = item.get("start")
        if _as_seconds(start) is None:
            start = fallback_start
        end = item.get("end")
        if _as_seconds(end) is None:
            end = fallback_end
        words.append(sanitize_word(str(text).strip(), start, end))
    return words


# ---------------------------------------------------------------------------
# Step 2: tempo
# ---------------------------------------------------------------------------


def estimate_timing_threshold(words: Sequence[Word]) -> float:
    """Choose the pause threshold that separates caption groups.

    WHY: A fast talker leaves 30ms between words, a slow one 300ms. A single
    fixed threshold would either split every word of a slow speaker into its
    own caption or merge a fast speaker's sentences together.

    HOW: Averages the positive gaps across the first TEMPO_SAMPLE_BOUNDARIES
    word boundaries and maps the average onto four tempo classes.

    RULES:
    - No positive gap in the sample means an average of 0.1s
    - average < 0.05 -> 0.06, < 0.10 -> 0.08, > 0.25 -> 0.20, else 0.12
    """
    total = 0.0
    count = 0
    for index in range(min(len(words) - 1, TEMPO_SAMPLE_BOUNDARIES)):
        gap = _round2(words[index + 1].start_s - words[index].end_s)
        if gap > 0:
            total += gap
            count += 1

    average = total / count if count else DEFAULT_AVERAGE_GAP_S

    if average < 0.05:
        return FAST_SPEECH_THRESHOLD_S
    if average < 0.10:
        return FASTER_THAN_NORMAL_THRESHOLD_S
    if average > 0.25:
        return SLOW_SPEECH_THRESHOLD_S
    return NORMAL_SPEECH_THRESHOLD_S


# ---------------------------------------------------------------------------
# Step 3: greedy grouping
# ---------------------------------------------------------------------------


def _caption_from_group(group: list[Word], index: int) -> Caption:
    first = group[0]
    last = group[-1]
    return Caption(
        id="caption-{}".format(index),
        text=" ".join(w.text for w in group),
        start_s=first.start_s,
        end_s=_round2(max(last.end_s, first.start_s + MIN_SEGMENT_DURATION_S)),
        words=list(group),
        position=Position(),
    )


def group_words(words: Sequence[Word]) -> list[Caption]:
    """Greedily group words into captions.

    WHY: Captions read best when they break at sentence ends and natural
    pauses and stay short (a few words, well under a second of speech).

    HOW: Walks the sanitized words once, appending each to the current
    group, then decides whether the group ends after this word.

    RULES:
    - Force end: word contains one of . ! ? ; :
    - Force end: gap to the next word > 2 x threshold, or no next word
    - Soft end: word contains a comma and the group has >= 2 words
    - Soft end: group spans >= MAX_GROUP_DURATION_S
    - Soft end: group has >= MAX_WORDS_PER_GROUP words
    - Soft end: gap to the next word > threshold (group >= MIN_WORDS_PER_GROUP)
    - Caption span is [first.start, max(last.end, first.start + MIN_SEGMENT_DURATION_S)]
    """
    sanitized = [sanitize_word(w.text, w.start_s, w.end_s) for w in words]
    if not sanitized:
        return []

    threshold = estimate_timing_threshold(sanitized)
    captions: list[Caption] = []
    group: list[Word] = []

    for index, word in enumerate(sanitized):
        group.append(word)
        next_word = sanitized[index + 1] if index + 1 < len(sanitized) else None

        force_end = False
        soft_end = False

        if _SENTENCE_END_RE.search(word.text):
            force_end = True
        elif "," in word.text and len(group) >= 2:
            soft_end = True

        if _round2(word.end_s - group[0].start_s) >= MAX_GROUP_DURATION_S - _EPSILON:
            soft_end = True
        if len(group) >= MAX_WORDS_PER_GROUP:
            soft_end = True

        if next_word is None:
            force_end = True
        else:
            gap = _round2(next_word.start_s - word.end_s)
            if gap > threshold * 2 + _EPSILON:
                force_end = True
            elif gap > threshold + _EPSILON and len(group) >= MIN_WORDS_PER_GROUP:
                soft_end = True

        if force_end or soft_end:
            captions.append(_caption_from_group(group, len(captions)))
            group = []

    logger.debug(
        "Grouped %d words into %d captions (threshold %.2fs)",
        len(sanitized), len(captions), threshold,
    )
    return captions


# ---------------------------------------------------------------------------
# Step 4: normalization
# ---------------------------------------------------------------------------


def _sanitize_caption(caption: Caption) -> Caption:
    start = _as_seconds(caption.start_s)
    start = 0.0 if start is None else _round2(max(start, 0.0))
    end = _as_seconds(caption.end_s)
    end = start if end is None else _round2(end)

    words = None
    if caption.words:
        words = []
        for word in caption.words:
            word_start = _as_seconds(word.start_s)
            word_start = start if word_start is None else _round2(word_start)
            word_end = _as_seconds(word.end_s)
            word_end = word_start if word_end is None else _round2(word_end)
            repaired = Word(text=word.text, start_s=word_start, end_s=word_end)
            if repaired.duration_s < MIN_WORD_DURATION_S - _EPSILON:
                repaired.end_s = _round2(word_start + MIN_WORD_DURATION_S)
            words.append(repaired)

    sanitized = Caption(
        id=caption.id,
        text=caption.text,
        start_s=start,
        end_s=end,
        words=words,
        position=caption.position,
    )
    if sanitized.duration_s < MIN_SEGMENT_DURATION_S - _EPSILON:
        sanitized.end_s = _round2(start + MIN_SEGMENT_DURATION_S)
    return sanitized


def _bound_words(words: list[Word], start: float, end: float) -> list[Word]:
    """Clamp words into [start, end], dropping those with no room left."""
    bounded = []
    for word in words:
        word_start = _round2(_clamp(word.start_s, start, end))
        if word_start + MIN_WORD_DURATION_S > end + _EPSILON:
            continue
        word_end = _round2(_clamp(word.end_s, word_start + MIN_WORD_DURATION_S, end))
        bounded.append(Word(text=word.text, start_s=word_start, end_s=word_end))

    if bounded:
        bounded[-1].end_s = end
    return bounded


def normalize_segments(
    captions: Sequence[Caption],
    duration_s: float | None = None,
) -> list[Caption]:
    """Make a caption list sorted, non-overlapping, and duration-safe.

    WHY: Both freshly grouped captions and pre-grouped segments from the
    transcription service can overlap, run past the end of the clip, or
    carry words outside their own span. Renderers assume none of that.

    HOW: Sanitizes each caption, sorts by start, then sweeps left to right
    with a cursor holding the previous caption's end.

    RULES:
    - start is pushed forward to the cursor
    - end >= start + MIN_SEGMENT_DURATION_S
    - end is capped at the next caption's start when that still leaves the
      minimum duration; otherwise the next caption is pushed forward instead
    - With a known duration, captions are kept inside [0, duration]; a
      caption that would overrun is pulled back against the cursor, and
      dropped when there is no room for its minimum duration
    - Words are clamped into the caption, shorter-than-minimum words are
      extended, words with no room before the end are dropped, and the
      last word's end is set to the caption end
    """
    limit = _as_seconds(duration_s)
    if limit is not None:
        limit = math.floor(max(limit, 0.0) * 100 + _EPSILON) / 100

    ordered = sorted((_sanitize_caption(c) for c in captions), key=lambda c: c.start_s)
    normalized: list[Caption] = []
    cursor = 0.0

    for index, caption in enumerate(ordered):
        start = max(caption.start_s, cursor)
        end = _round2(max(caption.end_s, start + MIN_SEGMENT_DURATION_S))

        if index + 1 < len(ordered):
            next_start = ordered[index + 1].start_s
            if next_start >= start + MIN_SEGMENT_DURATION_S - _EPSILON:
                end = min(end, next_start)

        if limit is not None and end > limit:
            end = limit
            start = max(cursor, min(start, _round2(end - MIN_SEGMENT_DURATION_S)))
            if end - start < MIN_SEGMENT_DURATION_S - _EPSILON:
                logger.debug(
                    "Dropping caption %s: no room before clip end %.2fs",
                    caption.id, limit,
                )
                continue

        start = _round2(start)
        end = _round2(end)
        cursor = end

        words = None
        if caption.words:
            words = _bound_words(caption.words, start, end) or None

        normalized.append(Caption(
            id=caption.id,
            text=caption.text,
            start_s=start,
            end_s=end,
            words=words,
            position=caption.position,
        ))

    return normalized


# ---------------------------------------------------------------------------
# Transcription response shapes
# ---------------------------------------------------------------------------


def segments_from_transcription(
    response: Mapping[str, Any],
    duration_s: float | None = None,
) -> list[Caption]:
    """Build normalized captions from a transcription response.

    WHY: The transcription service returns either flat word timestamps, or
    pre-grouped segments (each optionally carrying its own words), or only
    the recognized text. All three must end up as the same caption stream.

    HOW: Words found anywhere in the response are grouped with
    group_words(). Segments without words become plain-text captions only
    when the response carries no word timings at all. A text-only response
    becomes one plain caption that spans the clip. Everything is then passed
    through normalize_segments().

    RULES:
    - Segment words missing a time inherit the segment's start/end
    - Word timings win: once any segment or the top level carries words,
      segments without words are dropped (they repeat the same speech)
    - Empty or whitespace-only text produces no caption
    """
    words: list[Word] = []
    plain: list[Caption] = []

    segments = response.get("segments")
    if isinstance(segments, list):
        for segment in segments:
            segment_words = segment.get("words")
            if isinstance(segment_words, list) and segment_words:
                words.extend(words_from_dicts(
                    segment_words,
                    fallback_start=segment.get("start"),
                    fallback_end=segment.get("end"),
                ))
                continue
            text = str(segment.get("text") or "").strip()
            if text:
                plain.append(Caption(
                    id="segment-{}".format(len(plain)),
                    text=text,
                    start_s=_as_seconds(segment.get("start")) or 0.0,
                    end_s=_as_seconds(segment.get("end")) or 0.0,
                ))

    top_level_words = response.get("words")
    if not words and isinstance(top_level_words, list) and top_level_words:
        words = words_from_dicts(top_level_words)
    if words:
        plain = []
    elif not plain:
        text = str(response.get("text") or "").strip()
        if text:
            plain.append(Caption(
                id="segment-0",
                text=text,
                start_s=0.0,
                end_s=_as_seconds(duration_s) or 0.0,
            ))

    captions = group_words(words) + plain
    normalized = normalize_segments(captions, duration_s)
    logger.info(
        "Built %d captions from %d words and %d plain segments",
        len(normalized), len(words), len(plain),
    )
    return normalized
