"""Pydantic response models for the HTTP API.

WHY: The FastAPI endpoints need typed schemas for response serialization
and automatic OpenAPI documentation.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- Response models never expose internal paths
- Python 3.9+ compatible (no PEP 604 unions, use Optional from typing)
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class ProgressInfo(BaseModel):
    """Latest aggregated progress of an export."""

    progress: float = Field(description="Overall percentage, 0-100, never decreasing.")
    stage: str = Field(description="init, frames, captions, encode, finalize, complete or error.")
    message: Optional[str] = Field(default=None, description="Human-readable stage message.")


class ExportCreatedResponse(BaseModel):
    """Response returned when a new export job is submitted."""

    id: str = Field(description="Export job identifier for status, events and download.")
    status: str = Field(description="Initial job status (always 'pending').")
    filename: str = Field(description="Sanitized uploaded video filename.")

    model_config = {"json_schema_extra": {
        "examples": [
            {
                "id": "b7f1c0de5a2e4c1f9d3a6e8b0c2d4f6a",
                "status": "pending",
                "filename": "clip.mp4",
            }
        ]
    }}


class ExportResponse(BaseModel):
    """Export job status response."""

    id: str = Field(description="Export job identifier.")
    status: str = Field(description="pending, running, completed or failed.")
    filename: str = Field(description="Uploaded video filename.")
    renderer: str = Field(description="Rasterizer backend used for the overlays.")
    created_at: float = Field(description="Job creation timestamp (Unix epoch seconds).")
    caption_count: int = Field(description="Number of captions in the payload.")
    progress: Optional[ProgressInfo] = Field(
        default=None,
        description="Latest progress, absent before the first update or after retention expiry.",
    )
    error: Optional[str] = Field(
        default=None,
        description="Error message, only present when status is 'failed'.",
    )
    download_url: Optional[str] = Field(
        default=None,
        description="Relative download URL, only present when status is 'completed'.",
    )


class CaptionSegment(BaseModel):
    """One normalized caption produced by transcription."""

    id: str = Field(description="Caption identifier.")
    text: str = Field(description="Caption text.")
    start: float = Field(description="Start time in seconds.")
    end: float = Field(description="End time in seconds.")
    words: Optional[List[dict]] = Field(
        default=None,
        description="Word timings ({word, start, end}) when the caption is word-timed.",
    )


class TranscriptionResponse(BaseModel):
    """Captions segmented from a transcribed clip."""

    duration: float = Field(description="Probed clip duration in seconds.")
    text: str = Field(description="Full transcript text.")
    language: Optional[str] = Field(default=None, description="Detected or requested language.")
    segments: List[CaptionSegment] = Field(description="Normalized display segments.")


class ErrorResponse(BaseModel):
    """Standard error response body."""

    detail: str = Field(description="Human-readable error description.")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service health status.", json_schema_extra={"example": "ok"})
    version: str = Field(description="API version string.", json_schema_extra={"example": "0.1.0"})
    renderers: List[str] = Field(description="Available rasterizer backends.")
