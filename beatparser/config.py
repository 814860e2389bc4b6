"""Application configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings with env var overrides."""

    # Audio
    sample_rate: int = 44100
    frame_size: int = 2048
    hop_size: int = 512
    enable_normalization: bool = True
    enable_filtering: bool = False
    filter_cutoff: float = 60.0

    # Detection
    min_tempo: float = 60.0
    max_tempo: float = 200.0
    onset_weight: float = 0.4
    tempo_weight: float = 0.4
    spectral_weight: float = 0.2
    multi_pass: bool = True
    genre_adaptive: bool = True
    confidence_threshold: float = 0.6
    parallel_detection: bool = True

    # Selection
    target_count: int = 16
    selection_strategy: str = "adaptive"
    min_spacing: float = 0.05  # seconds between selected beats

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    max_upload_mb: int = 50

    model_config = {"env_prefix": "BEATPARSER_"}


settings = Settings()
