"""Video -> normalized caption segments via the transcription service.

HOW: probe the clip, reject it if longer than the transcription cap,
extract 16 kHz mono audio into a scoped work directory, send it to the
TranscriptionClient, and turn whatever shape comes back into normalized
captions with segments_from_transcription().

RULES:
- Duration over MAX_TRANSCRIPTION_DURATION_S raises ValidationError before
  any audio is extracted or uploaded
- Captions are bounded by the probed clip duration
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from caption_export.api.client import TranscriptionClient
from caption_export.config import MAX_TRANSCRIPTION_DURATION_S
from caption_export.core.ir import Caption
from caption_export.core.segmenter import segments_from_transcription
from caption_export.errors import ValidationError
from caption_export.media.ffmpeg import extract_audio, probe_duration
from caption_export.pipeline.exporter import scoped_work_dir

logger = logging.getLogger(__name__)


@dataclass
class TranscriptionOutcome:
    captions: List[Caption]
    duration_s: float
    text: str
    language: Optional[str] = None


async def transcribe_video(
    video_path: Path,
    client: Optional[TranscriptionClient] = None,
    max_duration_s: float = MAX_TRANSCRIPTION_DURATION_S,
    on_status: Optional[Callable[[str], None]] = None,
) -> TranscriptionOutcome:
    """Transcribe a clip and return display-ready caption segments.

    When ``client`` is None a TranscriptionClient is created from config
    (and closed) for this call.
    """
    video_path = Path(video_path)
    if not video_path.is_file():
        raise ValidationError("No video file at {}".format(video_path))

    duration_s = await probe_duration(video_path)
    if duration_s > max_duration_s:
        raise ValidationError(
            "Video is {:.1f}s long; transcription is limited to {:.0f}s".format(
                duration_s, max_duration_s
            )
        )

    with scoped_work_dir(prefix="transcribe_") as work:
        if on_status:
            on_status("Extracting audio...")
        audio_path = await extract_audio(video_path, work / "audio.wav")
        if client is None:
            async with TranscriptionClient() as owned:
                result = await owned.transcribe(audio_path, on_status=on_status)
        else:
            result = await client.transcribe(audio_path, on_status=on_status)

    captions = segments_from_transcription(result.raw, duration_s)
    logger.info("Transcribed %s into %d captions", video_path.name, len(captions))
    return TranscriptionOutcome(
        captions=captions,
        duration_s=duration_s,
        text=result.text,
        language=result.language,
    )
