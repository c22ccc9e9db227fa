"""Async HTTP client for an OpenAI-compatible speech-to-text endpoint.

WHY: Caption authoring starts from word timestamps. The transcription
service does the speech recognition; this module hides the HTTP details so
the pipeline, server and CLI only see a TranscriptionResult.

HOW: Uses httpx.AsyncClient for non-blocking HTTP. TranscriptionClient is an
async context manager. Enter it to get an authenticated client, exit to
close the connection pool. transcribe() uploads the audio as multipart form
data and asks for ``verbose_json`` with word and segment timestamps.

RULES:
- Always use the async context manager (async with TranscriptionClient() as client:)
- api_key defaults to load_api_key() from .env
- Non-2xx responses raise TranscriptionAPIError with the status and body
- The client never retries; callers decide what a failure means
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

import httpx

from caption_export.api.models import TranscriptionResult
from caption_export.config import (
    TRANSCRIPTION_BASE_URL,
    TRANSCRIPTION_LANGUAGE,
    TRANSCRIPTION_MODEL,
    load_api_key,
)

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT_S = 120.0
_CONNECT_TIMEOUT_S = 30.0


class TranscriptionAPIError(Exception):
    """Raised when the transcription service returns an error response.

    RULES:
    - Always include status_code and message
    - message is the response body text or a summary
    """

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Transcription API error {status_code}: {message}")


class TranscriptionClient:
    """Async client for ``POST {base_url}/audio/transcriptions``.

    RULES:
    - Use as: async with TranscriptionClient() as client: ...
    - base_url, model and language default to the config values
    - transport is only for tests (httpx.MockTransport)
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        language: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key or load_api_key()
        self._base_url = (base_url or TRANSCRIPTION_BASE_URL).rstrip("/")
        self._model = model or TRANSCRIPTION_MODEL
        self._language = language if language is not None else TRANSCRIPTION_LANGUAGE
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> TranscriptionClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout=httpx.Timeout(_REQUEST_TIMEOUT_S, connect=_CONNECT_TIMEOUT_S),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Return the active httpx client, raising if not in context manager."""
        if self._client is None:
            raise RuntimeError(
                "TranscriptionClient must be used as an async context manager: "
                "async with TranscriptionClient() as client: ..."
            )
        return self._client

    async def transcribe(
        self,
        audio_path: Path,
        on_status: Callable[[str], None] | None = None,
    ) -> TranscriptionResult:
        """Upload an audio file and return its timed transcript.

        RULES:
        - Requests response_format=verbose_json with word and segment granularity
        - An empty language setting lets the service detect the language
        - Raises TranscriptionAPIError on non-2xx responses or a non-JSON body
        """
        client = self._ensure_client()
        if on_status:
            on_status("Uploading audio for transcription...")

        data: dict[str, str | list[str]] = {
            "model": self._model,
            "response_format": "verbose_json",
            "timestamp_granularities[]": ["word", "segment"],
        }
        if self._language:
            data["language"] = self._language

        audio_path = Path(audio_path)
        with open(audio_path, "rb") as f:
            resp = await client.post(
                "/audio/transcriptions",
                data=data,
                files={"file": (audio_path.name, f, "audio/wav")},
            )

        if resp.status_code != 200:
            raise TranscriptionAPIError(resp.status_code, resp.text)

        try:
            body = resp.json()
        except ValueError as exc:
            raise TranscriptionAPIError(resp.status_code, "response is not JSON") from exc
        if not isinstance(body, dict):
            raise TranscriptionAPIError(resp.status_code, "unexpected response shape")

        result = TranscriptionResult.from_dict(body)
        logger.info(
            "Transcribed %s: %d words, %d segments",
            audio_path.name, len(result.words), len(result.segments),
        )
        if on_status:
            on_status("Transcription complete.")
        return result
