"""PIPELINE — Stages and orchestrator.

- Trim: clap onset detection and cut-point trimming
- Denoise: bandpass + engine filters or spectral subtraction
- Loudness: two-pass / single-pass EBU R128 normalization
- Dynamics: compressor + limiter
- Mix: voices, BGM, endscene, export
- Silence: interior-pause compaction
- Processor: orchestration, workspace, progress, engine recovery
"""

from podmix.pipeline.processor import PodcastProcessor, process_podcast

__all__ = [
    "PodcastProcessor",
    "process_podcast",
]
