"""Pydantic response models for API."""

from pydantic import BaseModel


class BeatResponse(BaseModel):
    timestamp: float
    confidence: float
    strength: float
    interpolated: bool = False
    source: str | None = None


class TimeSignatureResponse(BaseModel):
    numerator: int
    denominator: int
    confidence: float


class TempoCurvePointResponse(BaseModel):
    time: float
    bpm: float
    confidence: float = 0.0


class TempoResponse(BaseModel):
    bpm: float
    confidence: float
    phase: float = 0.0
    time_signature: TimeSignatureResponse | None = None
    tempo_curve: list[TempoCurvePointResponse] = []


class SelectionQualityResponse(BaseModel):
    coverage: float
    diversity: float
    spacing: float
    overall: float


class AnalysisResponse(BaseModel):
    beats: list[BeatResponse]
    tempo: TempoResponse
    duration: float = 0.0
    requested_count: int
    clamped: bool = False
    strategy: str = "adaptive"
    genre: str | None = None
    candidate_count: int = 0
    quality: SelectionQualityResponse | None = None
    processing_time: float = 0.0
