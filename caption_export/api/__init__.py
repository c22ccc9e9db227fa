"""Transcription API client package: async HTTP interface to the speech-to-text service.

RULES:
- All HTTP calls to the service go through TranscriptionClient
- Authentication is via Bearer token from config
"""

from caption_export.api.client import TranscriptionAPIError, TranscriptionClient
from caption_export.api.models import TranscriptionResult

__all__ = ["TranscriptionAPIError", "TranscriptionClient", "TranscriptionResult"]
