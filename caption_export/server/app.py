"""FastAPI application: caption export jobs, progress streams, transcription.

WHY: The caption editor (and curl, n8n, scripts) needs an HTTP API to
upload a video with its caption payload, follow the export's progress, and
download the finished MP4, plus a quick way to turn a short clip into
caption segments.

HOW: POST /exports stores the upload in a job directory, validates the
payload, and runs the export pipeline in the background. Progress lives in
a ProgressStore shared with the pipeline; GET /exports/{id}/events streams
it as server-sent events until the terminal record. Downloads schedule the
job for deletion after a short grace period.

RULES:
- All endpoints have OpenAPI descriptions on every parameter and response
- Error responses use a consistent ErrorResponse schema
- Background exports use FastAPI BackgroundTasks
- The job store and progress store are singletons created at import
- Uploads are validated by extension against SUPPORTED_VIDEO_FORMATS
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, AsyncIterator, Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse, Response, StreamingResponse

from caption_export import __version__
from caption_export.api.client import TranscriptionAPIError
from caption_export.config import (
    CAPTION_RENDERER,
    DOWNLOAD_GRACE_S,
    EXPORT_FPS,
    RENDER_CONCURRENCY,
    SUPPORTED_VIDEO_FORMATS,
)
from caption_export.core.payload import load_payload
from caption_export.core.progress import ProgressState, ProgressStore, Stage
from caption_export.errors import CaptionExportError, ValidationError
from caption_export.pipeline.exporter import run_export, scoped_work_dir
from caption_export.pipeline.transcribe import transcribe_video
from caption_export.rasterizers import RASTERIZERS, get_rasterizer
from caption_export.server.jobs import (
    ExportJob,
    ExportStatus,
    JobExistsError,
    JobLimitError,
    JobStore,
)
from caption_export.server.models import (
    CaptionSegment,
    ErrorResponse,
    ExportCreatedResponse,
    ExportResponse,
    HealthResponse,
    ProgressInfo,
    TranscriptionResponse,
)

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_S = 300
SSE_KEEPALIVE_S = 15.0

# ---------------------------------------------------------------------------
# App and store setup
# ---------------------------------------------------------------------------

job_store = JobStore()
progress_store = ProgressStore()


async def _periodic_cleanup() -> None:
    """Run job and progress cleanup every 5 minutes."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_S)
        job_store.cleanup_expired()
        progress_store.cleanup_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start periodic cleanup on startup; cancel it and release jobs on shutdown."""
    task = asyncio.create_task(_periodic_cleanup())
    yield
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    job_store.close()
    progress_store.close()


app = FastAPI(
    lifespan=lifespan,
    title="Caption Export API",
    description=(
        "REST API for burning animated, word-timed captions into video. "
        "Submit a video with its caption payload, follow progress as "
        "server-sent events, and download the encoded MP4."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _job_progress(job: ExportJob) -> Optional[ProgressState]:
    """Latest progress for a job, synthesized from its status once retention expired."""
    state = progress_store.get(job.id)
    if state is not None:
        return state
    if job.status == ExportStatus.COMPLETED:
        return ProgressState(percent=100.0, stage=Stage.COMPLETE, message="Export complete")
    if job.status == ExportStatus.FAILED:
        return ProgressState(percent=100.0, stage=Stage.ERROR, message=job.error)
    return None


def _job_to_response(job: ExportJob) -> ExportResponse:
    state = _job_progress(job)
    return ExportResponse(
        id=job.id,
        status=job.status.value,
        filename=job.filename,
        renderer=job.config.get("renderer", CAPTION_RENDERER),
        created_at=job.created_at,
        caption_count=len(job.payload.captions) if job.payload else 0,
        progress=ProgressInfo(**state.to_dict()) if state is not None else None,
        error=job.error,
        download_url=(
            "/exports/{}/download".format(job.id)
            if job.status == ExportStatus.COMPLETED else None
        ),
    )


def _get_job_or_404(job_id: str) -> ExportJob:
    job = job_store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Export not found: {}".format(job_id))
    return job


def _validate_file_extension(filename: str) -> None:
    """Raise HTTPException if the file extension is not supported."""
    ext = Path(filename).suffix.lower()
    if ext not in SUPPORTED_VIDEO_FORMATS:
        raise HTTPException(
            status_code=400,
            detail="Unsupported file type '{}'. Supported formats: {}".format(
                ext, ", ".join(sorted(SUPPORTED_VIDEO_FORMATS))
            ),
        )


async def _run_export_job(job_id: str, store: JobStore, progress: ProgressStore) -> None:
    """Run the export pipeline for a stored job and record the outcome.

    The pipeline itself publishes progress (including the terminal record);
    this runner only moves the job through its statuses.
    """
    job = store.get_job(job_id)
    if job is None:
        return

    store.update_job(job_id, status=ExportStatus.RUNNING)
    output_path = job.work_dir / "{}-captioned.mp4".format(Path(job.filename).stem)
    try:
        await run_export(
            job.id,
            job.input_path,
            job.payload,
            output_path,
            progress,
            renderer=job.config.get("renderer", CAPTION_RENDERER),
            fps=job.config.get("fps", EXPORT_FPS),
            concurrency=job.config.get("concurrency", RENDER_CONCURRENCY),
            work_parent=job.work_dir,
        )
    except Exception as exc:
        logger.warning("Export job %s failed: %s", job_id, exc)
        store.update_job(job_id, status=ExportStatus.FAILED, error=str(exc))
        return

    store.update_job(job_id, status=ExportStatus.COMPLETED, output_path=output_path)


def _run_export_sync(job_id: str, store: JobStore, progress: ProgressStore) -> None:
    """Synchronous wrapper for the async export pipeline.

    WHY: FastAPI BackgroundTasks run synchronous callables in a worker
    thread. This wraps the async pipeline with asyncio.run().
    """
    asyncio.run(_run_export_job(job_id, store, progress))


def _format_event(state: ProgressState) -> str:
    return "data: {}\n\n".format(json.dumps(state.to_dict()))


async def _progress_events(job: ExportJob) -> AsyncIterator[str]:
    """Server-sent events for one job, ending with the progress=100 record."""
    current = _job_progress(job)
    if current is not None and current.is_terminal:
        yield _format_event(current)
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def on_update(state: ProgressState) -> None:
        # Updates arrive from the export's thread
        loop.call_soon_threadsafe(queue.put_nowait, state)

    unsubscribe = progress_store.subscribe(job.id, on_update)
    try:
        while True:
            try:
                state = await asyncio.wait_for(queue.get(), SSE_KEEPALIVE_S)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield _format_event(state)
            if state.is_terminal:
                break
    finally:
        unsubscribe()


# ---------------------------------------------------------------------------
# Endpoints: Exports
# ---------------------------------------------------------------------------


@app.post(
    "/exports",
    response_model=ExportCreatedResponse,
    status_code=202,
    tags=["exports"],
    summary="Submit a caption export",
    description=(
        "Upload a video and its caption payload (JSON). Returns the export id "
        "immediately; rendering runs in the background. Follow progress with "
        "GET /exports/{id}/events or poll GET /exports/{id}."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Invalid video, payload or options"},
        409: {"model": ErrorResponse, "description": "An export with this id already exists"},
        429: {"model": ErrorResponse, "description": "Too many concurrent exports"},
    },
)
async def create_export(
    background_tasks: BackgroundTasks,
    video: Annotated[
        UploadFile,
        File(description="Source video to burn captions into"),
    ],
    payload: Annotated[
        str,
        Form(description="Caption payload JSON (version, subtitles, style, metadata)."),
    ],
    renderer: Annotated[
        Optional[str],
        Form(description="Rasterizer backend: 'canvas' or 'document'. Defaults to config."),
    ] = None,
    fps: Annotated[
        Optional[float],
        Form(description="Export frame rate. Defaults to config (30)."),
    ] = None,
    concurrency: Annotated[
        Optional[int],
        Form(description="Number of parallel overlay workers. Defaults to config (4)."),
    ] = None,
) -> ExportCreatedResponse:
    # Sanitize filename to prevent path traversal
    filename = Path(video.filename or "upload.mp4").name
    _validate_file_extension(filename)

    try:
        caption_payload = load_payload(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    renderer = renderer or CAPTION_RENDERER
    try:
        get_rasterizer(renderer)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if fps is not None and fps <= 0:
        raise HTTPException(status_code=400, detail="fps must be positive")
    if concurrency is not None and concurrency < 1:
        raise HTTPException(status_code=400, detail="concurrency must be at least 1")

    config = {
        "renderer": renderer,
        "fps": fps or EXPORT_FPS,
        "concurrency": concurrency or RENDER_CONCURRENCY,
    }

    try:
        job = job_store.create_job(
            filename=filename,
            payload=caption_payload,
            config=config,
            job_id=caption_payload.export_id,
        )
    except JobLimitError as exc:
        raise HTTPException(status_code=429, detail=str(exc))
    except JobExistsError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    content = await video.read()
    job.input_path.write_bytes(content)

    background_tasks.add_task(_run_export_sync, job.id, job_store, progress_store)

    return ExportCreatedResponse(id=job.id, status=job.status.value, filename=job.filename)


@app.get(
    "/exports/{job_id}",
    response_model=ExportResponse,
    tags=["exports"],
    summary="Get export status",
    description="Current status, latest progress, and the download URL once completed.",
    responses={404: {"model": ErrorResponse, "description": "Export not found"}},
)
async def get_export(job_id: str) -> ExportResponse:
    return _job_to_response(_get_job_or_404(job_id))


@app.get(
    "/exports/{job_id}/events",
    tags=["exports"],
    summary="Stream export progress",
    description=(
        "text/event-stream of {progress, stage, message} records. The stream "
        "ends after the record with progress 100 (stage 'complete' or 'error')."
    ),
    responses={404: {"model": ErrorResponse, "description": "Export not found"}},
)
async def stream_export_events(job_id: str) -> StreamingResponse:
    job = _get_job_or_404(job_id)
    return StreamingResponse(
        _progress_events(job),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get(
    "/exports/{job_id}/download",
    tags=["exports"],
    summary="Download the captioned video",
    description=(
        "Returns the encoded MP4 of a completed export. The job and its files "
        "are deleted shortly after the download starts."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Export or output not found"},
        409: {"model": ErrorResponse, "description": "Export not yet completed"},
    },
)
async def download_export(job_id: str) -> FileResponse:
    job = _get_job_or_404(job_id)
    if job.status != ExportStatus.COMPLETED:
        raise HTTPException(
            status_code=409,
            detail="Export is not completed (current status: {}).".format(job.status.value),
        )
    if job.output_path is None or not job.output_path.exists():
        raise HTTPException(status_code=404, detail="Output for export {} not found.".format(job_id))

    job_store.schedule_deletion(job_id, DOWNLOAD_GRACE_S)
    return FileResponse(
        job.output_path,
        media_type="video/mp4",
        filename=job.output_path.name,
    )


@app.delete(
    "/exports/{job_id}",
    status_code=204,
    tags=["exports"],
    summary="Delete an export",
    description="Delete an export job, its progress, and all its files.",
    responses={404: {"model": ErrorResponse, "description": "Export not found"}},
)
async def delete_export(job_id: str) -> Response:
    if not job_store.delete_job(job_id):
        raise HTTPException(status_code=404, detail="Export not found: {}".format(job_id))
    # Open event streams still get their terminal record
    progress_store.fail(job_id, "Export deleted")
    progress_store.discard(job_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Endpoints: Transcriptions
# ---------------------------------------------------------------------------


@app.post(
    "/transcriptions",
    response_model=TranscriptionResponse,
    tags=["transcriptions"],
    summary="Transcribe a short clip into caption segments",
    description=(
        "Upload a short video; its audio is transcribed and segmented into "
        "display-ready captions with word timings."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Invalid or too long video"},
        502: {"model": ErrorResponse, "description": "Transcription service error"},
        503: {"model": ErrorResponse, "description": "Transcription service not configured"},
    },
)
async def create_transcription(
    video: Annotated[
        UploadFile,
        File(description="Video clip to transcribe"),
    ],
) -> TranscriptionResponse:
    filename = Path(video.filename or "upload.mp4").name
    _validate_file_extension(filename)

    with scoped_work_dir(prefix="upload_") as work:
        video_path = work / filename
        video_path.write_bytes(await video.read())
        try:
            outcome = await transcribe_video(video_path)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        except TranscriptionAPIError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        except ValueError as exc:
            # Missing API key
            raise HTTPException(status_code=503, detail=str(exc))
        except CaptionExportError as exc:
            raise HTTPException(status_code=500, detail=str(exc))

    return TranscriptionResponse(
        duration=outcome.duration_s,
        text=outcome.text,
        language=outcome.language,
        segments=[
            CaptionSegment(
                id=caption.id,
                text=caption.text,
                start=caption.start_s,
                end=caption.end_s,
                words=[
                    {"word": w.text, "start": w.start_s, "end": w.end_s}
                    for w in caption.words
                ] if caption.words else None,
            )
            for caption in outcome.captions
        ],
    )


# ---------------------------------------------------------------------------
# Endpoints: Health
# ---------------------------------------------------------------------------


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
    description="Liveness check for load balancers and orchestrators.",
)
async def health_check() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__, renderers=sorted(RASTERIZERS))


def run_api(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Entry point for the caption-export-api console script."""
    import uvicorn
    uvicorn.run(app, host=host, port=port)
