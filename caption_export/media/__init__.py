"""ffmpeg/ffprobe co-process wrappers."""
