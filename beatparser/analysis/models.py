"""Core data models for beat parsing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from beatparser.errors import ConfigurationError

if TYPE_CHECKING:
    from beatparser.config import Settings

SOURCES = ("onset", "tempo", "spectral", "hybrid")
STRATEGIES = ("energy", "regular", "musical", "adaptive")


@dataclass(frozen=True)
class AudioFeatures:
    """Frequency-domain descriptors of a signal (or an average over frames)."""
    spectral_centroid: float  # Hz
    spectral_rolloff: float  # Hz
    spectral_bandwidth: float  # Hz
    zero_crossing_rate: float
    rms: float
    dynamic_range: float  # dB
    mfcc: tuple[float, ...]
    chroma: tuple[float, ...] | None
    duration: float  # seconds


@dataclass(frozen=True)
class Onset:
    """A detected onset."""
    time: float
    strength: float  # 0.0-1.0
    confidence: float  # 0.0-1.0


@dataclass(frozen=True)
class BeatCandidate:
    """A provisional beat before fusion and selection."""
    timestamp: float
    confidence: float
    strength: float
    source: str  # one of SOURCES
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class Beat:
    """A single beat of the final output."""
    timestamp: float
    confidence: float
    strength: float
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def interpolated(self) -> bool:
        return bool(self.metadata.get("interpolated", False))


@dataclass(frozen=True)
class TimeSignature:
    numerator: int
    denominator: int = 4
    confidence: float = 0.0

    @property
    def label(self) -> str:
        return f"{self.numerator}/{self.denominator}"


@dataclass(frozen=True)
class TempoCurvePoint:
    """A point on the tempo-over-time curve."""
    time: float
    bpm: float
    confidence: float = 0.0


@dataclass(frozen=True)
class Tempo:
    """Global tempo estimate."""
    bpm: float
    confidence: float
    phase: float = 0.0  # seconds, first beat of the grid
    time_signature: TimeSignature | None = None
    tempo_curve: tuple[TempoCurvePoint, ...] = ()
    alternatives: tuple[tuple[float, float], ...] = ()  # (bpm, confidence)

    @property
    def beat_interval(self) -> float:
        return 60.0 / self.bpm if self.bpm > 0 else 0.0


@dataclass(frozen=True)
class GenreProfile:
    """Reference characteristics used for genre-adaptive detection."""
    name: str
    tempo_range: tuple[float, float]
    onset_sensitivity: float
    spectral_emphasis: float
    rhythm_complexity: float


@dataclass(frozen=True)
class DetectionConfig:
    """Immutable configuration threaded through every detection stage.

    The tuning constants below are empirical. They are kept as named fields
    so callers can override them without touching the pipeline.
    """
    sample_rate: int = 44100
    frame_size: int = 2048
    hop_size: int = 512
    min_tempo: float = 60.0
    max_tempo: float = 200.0
    onset_weight: float = 0.4
    tempo_weight: float = 0.4
    spectral_weight: float = 0.2
    multi_pass: bool = True
    genre_adaptive: bool = True
    confidence_threshold: float = 0.6
    parallel: bool = True

    # Fusion and refinement
    cluster_window: float = 0.05  # seconds
    min_candidate_spacing: float = 0.02  # seconds
    outlier_tolerance: float = 0.5  # fraction of the median interval
    spectral_flux_threshold: float = 0.1
    energy_window: float = 0.02  # seconds, centred on the candidate
    energy_boost_scale: float = 5.0
    energy_boost_cap: float = 0.3
    smoothing_radius: int = 3
    smoothing_factor: float = 0.3

    # Feature extraction
    frame_feature_threshold: int = 8192  # samples
    # centroid, dynamics, energy, zero crossings
    genre_score_weights: tuple[float, float, float, float] = (0.3, 0.3, 0.2, 0.2)

    # Tempo tracking
    tempo_window: float = 10.0  # seconds
    use_dynamic_programming: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> DetectionConfig:
        return cls(
            sample_rate=settings.sample_rate,
            frame_size=settings.frame_size,
            hop_size=settings.hop_size,
            min_tempo=settings.min_tempo,
            max_tempo=settings.max_tempo,
            onset_weight=settings.onset_weight,
            tempo_weight=settings.tempo_weight,
            spectral_weight=settings.spectral_weight,
            multi_pass=settings.multi_pass,
            genre_adaptive=settings.genre_adaptive,
            confidence_threshold=settings.confidence_threshold,
            parallel=settings.parallel_detection,
        )

    def validate(self) -> DetectionConfig:
        """Raise ConfigurationError for contradictory values, else return self."""
        if self.sample_rate <= 0:
            raise ConfigurationError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.frame_size <= 0 or self.hop_size <= 0:
            raise ConfigurationError("frame_size and hop_size must be positive")
        if self.min_tempo <= 0:
            raise ConfigurationError(f"min_tempo must be positive, got {self.min_tempo}")
        if self.min_tempo >= self.max_tempo:
            raise ConfigurationError(
                f"min_tempo ({self.min_tempo}) must be below max_tempo ({self.max_tempo})"
            )
        for name in ("onset_weight", "tempo_weight", "spectral_weight"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ConfigurationError(
                f"confidence_threshold must lie in [0, 1], got {self.confidence_threshold}"
            )
        if self.cluster_window <= 0 or self.min_candidate_spacing < 0:
            raise ConfigurationError("cluster_window must be positive and spacing non-negative")
        if len(self.genre_score_weights) != 4:
            raise ConfigurationError("genre_score_weights needs exactly four entries")
        return self

    def weight_for(self, source: str) -> float:
        if source == "onset":
            return self.onset_weight
        if source == "tempo":
            return self.tempo_weight
        if source == "spectral":
            return self.spectral_weight
        # Already fused candidates count with the mean source weight
        return (self.onset_weight + self.tempo_weight + self.spectral_weight) / 3.0


@dataclass(frozen=True)
class SelectionConfig:
    """Parameters of the beat selector."""
    strategy: str = "adaptive"
    energy_weight: float = 0.3
    regularity_weight: float = 0.3
    musical_weight: float = 0.4
    min_spacing: float = 0.05  # seconds
    snap_tolerance: float | None = None  # seconds, default quarter of the grid slot
    synthetic_confidence_ratio: float = 0.9

    @classmethod
    def from_settings(cls, settings: Settings) -> SelectionConfig:
        return cls(strategy=settings.selection_strategy, min_spacing=settings.min_spacing)

    def validate(self) -> SelectionConfig:
        if self.strategy not in STRATEGIES:
            raise ConfigurationError(
                f"Unknown selection strategy '{self.strategy}'. Use: {', '.join(STRATEGIES)}"
            )
        if self.min_spacing <= 0:
            raise ConfigurationError(f"min_spacing must be positive, got {self.min_spacing}")
        if min(self.energy_weight, self.regularity_weight, self.musical_weight) < 0:
            raise ConfigurationError("selection weights must not be negative")
        if not 0.0 < self.synthetic_confidence_ratio <= 1.0:
            raise ConfigurationError("synthetic_confidence_ratio must lie in (0, 1]")
        return self


@dataclass
class SelectionQuality:
    """How well a selection covers the signal."""
    coverage: float  # span of the beats relative to the duration
    diversity: float  # spread of strengths
    spacing: float  # regularity of inter-beat intervals
    overall: float


@dataclass
class SelectionResult:
    """Output of the beat selector."""
    beats: list[Beat]
    requested_count: int
    clamped: bool = False
    strategy_used: str = "adaptive"
    synthesized: int = 0
    quality: SelectionQuality | None = None


@dataclass
class HybridAnalysis:
    """Everything the hybrid detector computed for one signal."""
    candidates: list[BeatCandidate]
    tempo: Tempo
    features: AudioFeatures
    genre: GenreProfile | None
    config: DetectionConfig  # effective config after genre adaptation


@dataclass
class ParseResult:
    """Complete result of parsing one signal."""
    beats: list[Beat]
    tempo: Tempo
    duration: float
    candidate_count: int
    genre: str | None = None
    selection: SelectionResult | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
