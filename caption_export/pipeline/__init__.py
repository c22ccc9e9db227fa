"""Export and transcription pipelines built on the core and media layers."""
