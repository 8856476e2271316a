"""PODMIX global configuration."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Process-wide settings loaded from environment variables."""

    # Engine
    engine_backend: str = "native"  # native | ffmpeg
    ffmpeg_binary: str = "ffmpeg"
    work_dir: Path | None = None  # parent of per-engine buffer directories
    log_engine_lines: bool = False

    # Pipeline limits
    onset_detect_window: float = 300.0  # seconds decoded for clap detection
    max_segments_per_pass: int = 100

    model_config = {"env_prefix": "PODMIX_"}


settings = Settings()
