"""Tests for the FastAPI caption export API.

WHY: Validates that every API endpoint behaves correctly: happy paths,
error cases, and edge cases. Uses FastAPI TestClient for synchronous
in-process testing with the export pipeline and transcription mocked.

HOW: Each test function exercises one endpoint behavior. The background
export runner is patched out; tests that need a completed or failed job
set its state directly through the stores. The runner itself is tested
separately with run_export patched.

RULES:
- All tests use the FastAPI TestClient (synchronous)
- ffmpeg, browsers and the transcription service are never called
- Each test is independent: both stores are cleared before and after
- Tests cover: happy paths, 404 not found, 409 conflict, 400 bad request
"""

from __future__ import annotations

import asyncio
import io
import json
import threading
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from caption_export.api.client import TranscriptionAPIError
from caption_export.core.ir import Caption, Word
from caption_export.core.progress import Stage
from caption_export.errors import RenderBackendError, ValidationError
from caption_export.pipeline.transcribe import TranscriptionOutcome
from caption_export.server import app as app_module
from caption_export.server.app import _run_export_job, app, job_store, progress_store
from caption_export.server.jobs import ExportStatus


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_stores():
    """Clear all jobs and progress before and after each test."""
    job_store.close()
    progress_store.close()
    yield
    job_store.close()
    progress_store.close()


@pytest.fixture
def client():
    """TestClient with the background export runner patched out."""
    with patch(
        "caption_export.server.app._run_export_sync",
        new=lambda job_id, store, progress: None,
    ):
        yield TestClient(app)


def _video_file(name: str = "clip.mp4", content: bytes = b"fake video data"):
    return ("video", (name, io.BytesIO(content), "video/mp4"))


def _submit(client, payload_document, name="clip.mp4", **data):
    form = {"payload": json.dumps(payload_document)}
    form.update(data)
    return client.post("/exports", files=[_video_file(name)], data=form)


def _complete(job_id: str) -> None:
    job = job_store.get_job(job_id)
    output = job.work_dir / "clip-captioned.mp4"
    output.write_bytes(b"encoded mp4")
    job_store.update_job(job_id, status=ExportStatus.COMPLETED, output_path=output)
    progress_store.complete(job_id)


# ---------------------------------------------------------------------------
# POST /exports
# ---------------------------------------------------------------------------


class TestCreateExport:

    def test_submit_returns_202(self, client, payload_document):
        resp = _submit(client, payload_document)
        assert resp.status_code == 202
        assert resp.json() == {"id": "export-123", "status": "pending", "filename": "clip.mp4"}

    def test_saves_upload_and_config(self, client, payload_document):
        _submit(client, payload_document, renderer="document", fps="24", concurrency="2")
        job = job_store.get_job("export-123")
        assert job.input_path.read_bytes() == b"fake video data"
        assert job.config == {"renderer": "document", "fps": 24.0, "concurrency": 2}
        assert [c.id for c in job.payload.captions] == ["caption-0", "caption-1"]

    def test_default_config(self, client, payload_document):
        _submit(client, payload_document)
        config = job_store.get_job("export-123").config
        assert config["renderer"] == app_module.CAPTION_RENDERER
        assert config["fps"] == app_module.EXPORT_FPS
        assert config["concurrency"] == app_module.RENDER_CONCURRENCY

    def test_filename_is_sanitized(self, client, payload_document):
        resp = _submit(client, payload_document, name="../../etc/clip.mp4")
        assert resp.json()["filename"] == "clip.mp4"

    def test_reject_unsupported_file_type(self, client, payload_document):
        resp = _submit(client, payload_document, name="notes.txt")
        assert resp.status_code == 400
        assert "Unsupported file type" in resp.json()["detail"]

    def test_reject_invalid_payload(self, client, payload_document):
        del payload_document["metadata"]
        resp = _submit(client, payload_document)
        assert resp.status_code == 400
        assert "metadata" in resp.json()["detail"]
        assert job_store.list_jobs() == []

    def test_reject_payload_that_is_not_json(self, client):
        resp = client.post("/exports", files=[_video_file()], data={"payload": "{oops"})
        assert resp.status_code == 400

    def test_reject_unknown_renderer(self, client, payload_document):
        resp = _submit(client, payload_document, renderer="svg")
        assert resp.status_code == 400
        assert "Unknown renderer" in resp.json()["detail"]

    @pytest.mark.parametrize("field, value", [("fps", "0"), ("concurrency", "0")])
    def test_reject_bad_options(self, client, payload_document, field, value):
        resp = _submit(client, payload_document, **{field: value})
        assert resp.status_code == 400

    def test_duplicate_export_id_conflicts(self, client, payload_document):
        assert _submit(client, payload_document).status_code == 202
        resp = _submit(client, payload_document)
        assert resp.status_code == 409

    def test_unsafe_export_id_rejected(self, client, payload_document):
        payload_document["metadata"]["exportId"] = "../escape"
        assert _submit(client, payload_document).status_code == 400

    def test_too_many_jobs(self, client, payload_document, monkeypatch):
        monkeypatch.setattr(job_store, "max_jobs", 1)
        assert _submit(client, payload_document).status_code == 202
        payload_document["metadata"]["exportId"] = "export-456"
        assert _submit(client, payload_document).status_code == 429


# ---------------------------------------------------------------------------
# GET /exports/{id}
# ---------------------------------------------------------------------------


class TestGetExport:

    def test_pending_export(self, client, payload_document):
        _submit(client, payload_document)
        body = client.get("/exports/export-123").json()
        assert body["status"] == "pending"
        assert body["caption_count"] == 2
        assert body["progress"] is None
        assert body["download_url"] is None

    def test_running_export_shows_progress(self, client, payload_document):
        _submit(client, payload_document)
        job_store.update_job("export-123", status=ExportStatus.RUNNING)
        progress_store.set("export-123", 42.0, Stage.CAPTIONS, "Rendering captions")
        body = client.get("/exports/export-123").json()
        assert body["status"] == "running"
        assert body["progress"] == {
            "progress": 42.0, "stage": "captions", "message": "Rendering captions",
        }

    def test_completed_export_has_download_url(self, client, payload_document):
        _submit(client, payload_document)
        _complete("export-123")
        body = client.get("/exports/export-123").json()
        assert body["status"] == "completed"
        assert body["download_url"] == "/exports/export-123/download"
        assert body["progress"]["progress"] == 100.0

    def test_failed_export_after_progress_expired(self, client, payload_document):
        _submit(client, payload_document)
        job_store.update_job("export-123", status=ExportStatus.FAILED, error="ffmpeg exited with status 1")
        body = client.get("/exports/export-123").json()
        assert body["error"] == "ffmpeg exited with status 1"
        assert body["progress"] == {
            "progress": 100.0, "stage": "error", "message": "ffmpeg exited with status 1",
        }

    def test_nonexistent_export(self, client):
        resp = client.get("/exports/nope")
        assert resp.status_code == 404
        assert "not found" in resp.json()["detail"]


# ---------------------------------------------------------------------------
# GET /exports/{id}/events
# ---------------------------------------------------------------------------


def _events(resp):
    return [
        json.loads(line[len("data: "):])
        for line in resp.text.splitlines()
        if line.startswith("data: ")
    ]


class TestExportEvents:

    def test_finished_export_sends_terminal_record(self, client, payload_document):
        _submit(client, payload_document)
        _complete("export-123")
        resp = client.get("/exports/export-123/events")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert _events(resp) == [
            {"progress": 100.0, "stage": "complete", "message": "Export complete"},
        ]

    def test_stream_follows_updates_until_terminal(self, client, payload_document):
        _submit(client, payload_document)
        progress_store.set("export-123", 40.0, Stage.CAPTIONS)

        def finish():
            progress_store.set("export-123", 70.0, Stage.ENCODE)
            progress_store.fail("export-123", "Worker 2 timed out")

        timer = threading.Timer(0.5, finish)
        timer.start()
        try:
            events = _events(client.get("/exports/export-123/events"))
        finally:
            timer.join()

        assert [e["progress"] for e in events] == [40.0, 70.0, 100.0]
        assert events[-1] == {"progress": 100.0, "stage": "error", "message": "Worker 2 timed out"}

    def test_deleting_export_ends_open_stream(self, client, payload_document):
        _submit(client, payload_document)
        progress_store.set("export-123", 40.0, Stage.CAPTIONS)

        def delete():
            asyncio.run(app_module.delete_export("export-123"))

        timer = threading.Timer(0.5, delete)
        timer.start()
        try:
            events = _events(client.get("/exports/export-123/events"))
        finally:
            timer.join()

        assert events[0]["progress"] == 40.0
        assert events[-1] == {"progress": 100.0, "stage": "error", "message": "Export deleted"}
        assert job_store.get_job("export-123") is None
        assert progress_store.get("export-123") is None

    def test_nonexistent_export(self, client):
        assert client.get("/exports/nope/events").status_code == 404


# ---------------------------------------------------------------------------
# GET /exports/{id}/download
# ---------------------------------------------------------------------------


class TestDownloadExport:

    def test_download_completed_export(self, client, payload_document):
        _submit(client, payload_document)
        _complete("export-123")
        with patch.object(job_store, "schedule_deletion") as schedule:
            resp = client.get("/exports/export-123/download")
        assert resp.status_code == 200
        assert resp.content == b"encoded mp4"
        assert resp.headers["content-type"] == "video/mp4"
        assert "clip-captioned.mp4" in resp.headers["content-disposition"]
        schedule.assert_called_once_with("export-123", app_module.DOWNLOAD_GRACE_S)

    def test_download_not_completed(self, client, payload_document):
        _submit(client, payload_document)
        resp = client.get("/exports/export-123/download")
        assert resp.status_code == 409
        assert "pending" in resp.json()["detail"]

    def test_download_output_missing(self, client, payload_document):
        _submit(client, payload_document)
        _complete("export-123")
        job_store.get_job("export-123").output_path.unlink()
        assert client.get("/exports/export-123/download").status_code == 404

    def test_download_nonexistent_export(self, client):
        assert client.get("/exports/nope/download").status_code == 404


# ---------------------------------------------------------------------------
# DELETE /exports/{id}
# ---------------------------------------------------------------------------


class TestDeleteExport:

    def test_delete_export(self, client, payload_document):
        _submit(client, payload_document)
        work_dir = job_store.get_job("export-123").work_dir
        progress_store.set("export-123", 10.0, Stage.FRAMES)

        resp = client.delete("/exports/export-123")
        assert resp.status_code == 204
        assert job_store.get_job("export-123") is None
        assert progress_store.get("export-123") is None
        assert not work_dir.exists()
        assert client.get("/exports/export-123").status_code == 404

    def test_delete_nonexistent_export(self, client):
        assert client.delete("/exports/nope").status_code == 404


# ---------------------------------------------------------------------------
# Background runner
# ---------------------------------------------------------------------------


class TestExportRunner:

    def test_success_marks_completed(self, payload):
        job = job_store.create_job("clip.mp4", payload=payload, config={"renderer": "canvas"})
        with patch.object(app_module, "run_export", new=AsyncMock()) as run:
            asyncio.run(_run_export_job(job.id, job_store, progress_store))

        assert job.status == ExportStatus.COMPLETED
        assert job.output_path == job.work_dir / "clip-captioned.mp4"
        kwargs = run.await_args.kwargs
        assert kwargs["renderer"] == "canvas"
        assert kwargs["work_parent"] == job.work_dir
        assert run.await_args.args[1] == job.input_path

    def test_failure_marks_failed(self, payload):
        job = job_store.create_job("clip.mp4", payload=payload)
        failing = AsyncMock(side_effect=RenderBackendError("Worker 0 timed out rendering frame 3 after 30s"))
        with patch.object(app_module, "run_export", new=failing):
            asyncio.run(_run_export_job(job.id, job_store, progress_store))

        assert job.status == ExportStatus.FAILED
        assert "timed out rendering frame 3" in job.error

    def test_missing_job_is_ignored(self):
        with patch.object(app_module, "run_export", new=AsyncMock()) as run:
            asyncio.run(_run_export_job("gone", job_store, progress_store))
        run.assert_not_called()


# ---------------------------------------------------------------------------
# POST /transcriptions
# ---------------------------------------------------------------------------


class TestTranscriptions:

    def test_returns_segments(self, client):
        outcome = TranscriptionOutcome(
            captions=[
                Caption(
                    id="caption-0", text="hi there", start_s=0.0, end_s=0.6,
                    words=[Word("hi", 0.0, 0.3), Word("there", 0.32, 0.6)],
                ),
                Caption(id="segment-0", text="plain", start_s=1.0, end_s=1.5),
            ],
            duration_s=2.0,
            text="hi there plain",
            language="english",
        )
        with patch.object(app_module, "transcribe_video", new=AsyncMock(return_value=outcome)):
            resp = client.post("/transcriptions", files=[_video_file()])

        assert resp.status_code == 200
        body = resp.json()
        assert body["duration"] == 2.0
        assert body["language"] == "english"
        first, second = body["segments"]
        assert first["words"] == [
            {"word": "hi", "start": 0.0, "end": 0.3},
            {"word": "there", "start": 0.32, "end": 0.6},
        ]
        assert second["words"] is None

    @pytest.mark.parametrize("error, status", [
        (ValidationError("Video is 90.0s long; transcription is limited to 60s"), 400),
        (TranscriptionAPIError(401, "invalid api key"), 502),
        (ValueError("Transcription API key not configured."), 503),
    ])
    def test_error_mapping(self, client, error, status):
        with patch.object(app_module, "transcribe_video", new=AsyncMock(side_effect=error)):
            resp = client.post("/transcriptions", files=[_video_file()])
        assert resp.status_code == status

    def test_reject_unsupported_file_type(self, client):
        resp = client.post("/transcriptions", files=[_video_file("audio.mp3")])
        assert resp.status_code == 400


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------


class TestHealth:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["renderers"] == ["canvas", "document"]
