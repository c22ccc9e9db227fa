"""HTTP service: export jobs, progress streams, and transcription endpoints."""
