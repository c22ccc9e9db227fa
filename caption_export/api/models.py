"""Transcription service response dataclasses.

WHY: The OpenAI-compatible ``/audio/transcriptions`` endpoint returns
``verbose_json`` with optional ``words`` and ``segments`` arrays. Typed
dataclasses make the shape explicit while the raw dict is kept for the
segmenter, which accepts every shape the service may return.

RULES:
- Times are float seconds, as the service reports them
- ``words`` and ``segments`` are empty lists when the service omits them
- ``raw`` is the untouched response body
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class TranscribedWord:
    """One word with its start/end time in seconds."""

    word: str
    start: float
    end: float

    @classmethod
    def from_dict(cls, data: dict) -> TranscribedWord:
        return cls(
            word=str(data.get("word", data.get("text", ""))),
            start=float(data.get("start", 0.0)),
            end=float(data.get("end", 0.0)),
        )


@dataclass
class TranscribedSegment:
    """A phrase-level segment; ``words`` is set only when the service grouped words."""

    id: int | None
    text: str
    start: float
    end: float
    words: list[TranscribedWord] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> TranscribedSegment:
        return cls(
            id=data.get("id"),
            text=str(data.get("text", "")).strip(),
            start=float(data.get("start", 0.0)),
            end=float(data.get("end", 0.0)),
            words=[TranscribedWord.from_dict(w) for w in data.get("words") or []],
        )


@dataclass
class TranscriptionResult:
    """Parsed verbose_json response.

    RULES:
    - text is the full transcript (may be empty for silent audio)
    - duration is the audio duration reported by the service, if any
    """

    text: str
    language: str | None = None
    duration: float | None = None
    words: list[TranscribedWord] = field(default_factory=list)
    segments: list[TranscribedSegment] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> TranscriptionResult:
        duration = data.get("duration")
        return cls(
            text=str(data.get("text", "")).strip(),
            language=data.get("language"),
            duration=float(duration) if duration is not None else None,
            words=[TranscribedWord.from_dict(w) for w in data.get("words") or []],
            segments=[TranscribedSegment.from_dict(s) for s in data.get("segments") or []],
            raw=data,
        )
