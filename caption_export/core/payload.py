"""Load, validate, and serialize caption export payloads.

WHY: Export requests arrive as JSON (uploaded by the dashboard, written by
the `transcribe` command, or passed on the command line). A malformed
payload must be rejected before any frame is extracted, with a message
that points at the offending field.

HOW: The JSON document is validated with jsonschema against
caption_payload.schema.json, then converted into the CaptionPayload IR.
payload_to_dict() is the inverse, used to write payloads back out.

RULES:
- Field names on the wire are camelCase; the IR uses snake_case
- Any schema violation or unparsable JSON raises ValidationError
- Missing style fields fall back to StyleSpec defaults
- Colors must be parseable by ImageColor; a bad one names its field
- Word text may be given as "word" or "text"
- Captions are sorted by start on load
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import jsonschema
from PIL import ImageColor

from caption_export.core.ir import (
    CanvasSize,
    Caption,
    CaptionPayload,
    Position,
    StyleSpec,
    Word,
    WordState,
)
from caption_export.errors import ValidationError

PAYLOAD_VERSION = "1.0"

_SCHEMA_PATH = Path(__file__).resolve().parent / "caption_payload.schema.json"

_CACHED_SCHEMA: Optional[dict] = None

_NAMED_WEIGHTS = {
    "thin": 100,
    "light": 300,
    "normal": 400,
    "regular": 400,
    "medium": 500,
    "semibold": 600,
    "bold": 700,
    "extrabold": 800,
    "black": 900,
}


def _get_schema() -> dict:
    """Load and cache the caption payload JSON schema."""
    global _CACHED_SCHEMA
    if _CACHED_SCHEMA is None:
        with open(_SCHEMA_PATH, encoding="utf-8") as f:
            _CACHED_SCHEMA = json.load(f)
    return _CACHED_SCHEMA


def _parse_weight(value: Any) -> int:
    if value is None:
        return StyleSpec.font_weight
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip().lower()
    if text.isdigit():
        return int(text)
    if text in _NAMED_WEIGHTS:
        return _NAMED_WEIGHTS[text]
    raise ValidationError("Unknown font weight: {!r}".format(value))


def validate_payload(data: Any) -> None:
    """Validate a decoded payload document against the schema.

    Raises ValidationError naming the first offending field.
    """
    try:
        jsonschema.validate(instance=data, schema=_get_schema())
    except jsonschema.ValidationError as exc:
        location = "/".join(str(p) for p in exc.absolute_path) or "payload"
        raise ValidationError(
            "Invalid caption payload at {}: {}".format(location, exc.message)
        ) from exc


def _color_field(data: Mapping[str, Any], key: str, default: str) -> str:
    value = data.get(key, default)
    try:
        ImageColor.getrgb(value)
    except ValueError as exc:
        raise ValidationError(
            "Invalid caption payload at style/{}: unknown color {!r}".format(key, value)
        ) from exc
    return value


def _style_from_dict(data: Mapping[str, Any]) -> StyleSpec:
    defaults = StyleSpec()
    return StyleSpec(
        font_family=data.get("fontFamily") or defaults.font_family,
        font_size=int(round(data["fontSize"])),
        font_weight=_parse_weight(data.get("fontWeight")),
        color=_color_field(data, "color", defaults.color),
        background_enabled=data.get("backgroundEnabled", defaults.background_enabled),
        background_color=_color_field(data, "backgroundColor", defaults.background_color),
        background_opacity=float(data.get("backgroundOpacity", defaults.background_opacity)),
        stroke_enabled=data.get("strokeEnabled", defaults.stroke_enabled),
        stroke_color=_color_field(data, "strokeColor", defaults.stroke_color),
        stroke_width=float(data.get("strokeWidth", defaults.stroke_width)),
    )


def _word_from_dict(data: Mapping[str, Any]) -> Word:
    states = data.get("states")
    return Word(
        text=str(data.get("word", data.get("text", ""))).strip(),
        start_s=float(data["start"]),
        end_s=float(data["end"]),
        states=WordState(
            appear_s=float(states["appear"]),
            active_start_s=float(states["activeStart"]),
            active_end_s=float(states["activeEnd"]),
            fade_s=float(states["fade"]),
        ) if states else None,
    )


def _caption_from_dict(data: Mapping[str, Any]) -> Caption:
    position = data.get("position") or {}
    words = data.get("words") or None
    return Caption(
        id=str(data["id"]),
        text=data["text"],
        start_s=float(data["start"]),
        end_s=float(data["end"]),
        words=[_word_from_dict(w) for w in words] if words else None,
        position=Position(
            x_pct=float(position.get("xPct", 0.5)),
            y_pct=float(position.get("yPct", 0.9)),
        ),
    )


def payload_from_dict(data: Any) -> CaptionPayload:
    """Validate a decoded payload document and convert it to the IR."""
    validate_payload(data)
    metadata = data["metadata"]
    canvas = metadata["canvas"]
    captions = [_caption_from_dict(s) for s in data["subtitles"]]
    captions.sort(key=lambda c: c.start_s)
    duration = metadata.get("duration")
    return CaptionPayload(
        captions=captions,
        style=_style_from_dict(data["style"]),
        canvas=CanvasSize(width=int(canvas["width"]), height=int(canvas["height"])),
        export_id=metadata["exportId"],
        duration_s=float(duration) if duration is not None else None,
        version=data["version"],
    )


def load_payload(source: str | bytes | Path) -> CaptionPayload:
    """Parse a payload from a JSON string/bytes or a path to a JSON file."""
    if isinstance(source, Path):
        try:
            source = source.read_text(encoding="utf-8")
        except OSError as exc:
            raise ValidationError("Cannot read payload file {}: {}".format(source, exc)) from exc
    try:
        data = json.loads(source)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Caption payload is not valid JSON: {}".format(exc)) from exc
    return payload_from_dict(data)


def build_payload(
    captions: Sequence[Caption],
    style: StyleSpec,
    canvas: CanvasSize,
    export_id: str | None = None,
    duration_s: float | None = None,
) -> CaptionPayload:
    """Assemble a payload from already-normalized captions."""
    return CaptionPayload(
        captions=list(captions),
        style=style,
        canvas=canvas,
        export_id=export_id or uuid.uuid4().hex,
        duration_s=duration_s,
        version=PAYLOAD_VERSION,
    )


def _word_to_dict(word: Word) -> dict:
    data: dict = {"word": word.text, "start": word.start_s, "end": word.end_s}
    if word.states is not None:
        data["states"] = {
            "appear": word.states.appear_s,
            "activeStart": word.states.active_start_s,
            "activeEnd": word.states.active_end_s,
            "fade": word.states.fade_s,
        }
    return data


def payload_to_dict(payload: CaptionPayload, source: str = "api") -> dict:
    """Serialize a payload to its camelCase wire form.

    The result validates against the payload schema.
    """
    style = payload.style
    canvas = payload.canvas
    metadata: dict = {
        "exportId": payload.export_id,
        "source": source,
        "requestedAt": datetime.now(timezone.utc).isoformat(),
        "canvas": {"width": canvas.width, "height": canvas.height},
    }
    if payload.duration_s is not None:
        metadata["duration"] = payload.duration_s

    return {
        "version": payload.version,
        "subtitles": [
            {
                "id": caption.id,
                "text": caption.text,
                "start": caption.start_s,
                "end": caption.end_s,
                "position": {
                    "xPct": caption.position.x_pct,
                    "yPct": caption.position.y_pct,
                    "xPx": round(caption.position.x_pct * canvas.width),
                    "yPx": round(caption.position.y_pct * canvas.height),
                },
                "words": [_word_to_dict(w) for w in caption.words] if caption.words else None,
            }
            for caption in payload.captions
        ],
        "style": {
            "fontFamily": style.font_family,
            "fontSize": style.font_size,
            "fontWeight": style.font_weight,
            "color": style.color,
            "backgroundColor": style.background_color,
            "backgroundOpacity": style.background_opacity,
            "backgroundEnabled": style.background_enabled,
            "strokeColor": style.stroke_color,
            "strokeWidth": style.stroke_width,
            "strokeEnabled": style.stroke_enabled,
        },
        "metadata": metadata,
    }
