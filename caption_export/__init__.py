"""Caption Export: burn animated, word-timed captions into video.

WHY: Captions authored in the browser editor (word timings, per-word
highlight animation, box and glow styling) must end up pixel-stable in a
delivered MP4. This package turns a caption payload and a source video into
that MP4.

HOW: Four stages: segment (word timestamps into display captions),
resolve (which caption and which word states are visible at a time),
rasterize (transparent overlay frames, rendered in parallel by a pluggable
backend), compose (ffmpeg overlays, muxes audio, encodes). A progress
store aggregates the stages into one percentage per job.

RULES:
- Both rasterizer backends consume the same CaptionPayload and layout
- Adding a backend = one new rasterizer module registered in RASTERIZERS
- The payload IR is the stable contract between editor, service and renderer
"""

__version__ = "0.1.0"
