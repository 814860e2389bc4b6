"""Hybrid beat detection - fuses onset, tempo and spectral-flux candidates.

The detector is a pipeline of pure stages. Each stage takes the candidate
list produced by the previous one and returns a new list, so one detector
instance can serve concurrent calls.
"""

import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

import numpy as np
import librosa

from beatparser.analysis.features import (
    average_features,
    dynamic_range_db,
    extract_features,
    extract_frame_features,
    local_energy,
    rms_energy,
    zero_crossing_rate,
)
from beatparser.analysis.genre import adapt_config, detect_genre
from beatparser.analysis.models import (
    SOURCES,
    AudioFeatures,
    BeatCandidate,
    DetectionConfig,
    HybridAnalysis,
    Tempo,
)
from beatparser.analysis.onset import detect_onsets
from beatparser.analysis.tempo import detect_tempo
from beatparser.audio.preprocessing import validate_signal
from beatparser.config import settings
from beatparser.errors import AlgorithmError, BeatParserError, DetectionCancelled

logger = logging.getLogger(__name__)

# Final confidence adjustment
SOURCE_BOOST = 1.1  # tempo and hybrid candidates
STRONG_ONSET_BOOST = 1.2
STRONG_ONSET_STRENGTH = 0.8
WIDE_DYNAMICS_DB = 20.0
WIDE_DYNAMICS_BOOST = 1.1
QUIET_RMS = 0.01
QUIET_PENALTY = 0.8


def _candidate_order(c: BeatCandidate) -> tuple:
    return (c.timestamp, SOURCES.index(c.source), -c.confidence, -c.strength)


def _ensure_finite(stage: str, candidates: list[BeatCandidate]) -> list[BeatCandidate]:
    for c in candidates:
        if not (np.isfinite(c.timestamp) and np.isfinite(c.confidence) and np.isfinite(c.strength)):
            raise AlgorithmError(stage, f"non-finite candidate at {c.timestamp!r}")
    return candidates


def _clamp(value: float) -> float:
    return float(min(1.0, max(0.0, value)))


# ---------------------------------------------------------------------------
# Detection passes
# ---------------------------------------------------------------------------

def onset_candidates(audio: np.ndarray, config: DetectionConfig) -> list[BeatCandidate]:
    onsets = detect_onsets(audio, config.sample_rate, hop_length=config.hop_size)
    return [
        BeatCandidate(
            timestamp=o.time,
            confidence=_clamp(o.confidence),
            strength=_clamp(o.strength),
            source="onset",
        )
        for o in onsets
    ]


def tempo_candidates(
    audio: np.ndarray, config: DetectionConfig,
) -> tuple[Tempo, list[BeatCandidate]]:
    """Tempo estimate plus one candidate per beat of its phase-aligned grid."""
    tempo = detect_tempo(
        audio,
        config.sample_rate,
        min_bpm=config.min_tempo,
        max_bpm=config.max_tempo,
        window_size=config.tempo_window,
        use_dynamic_programming=config.use_dynamic_programming,
        hop_length=config.hop_size,
    )
    if tempo.confidence <= 0 or tempo.beat_interval <= 0:
        return tempo, []

    duration = len(audio) / config.sample_rate
    times = np.arange(tempo.phase, duration, tempo.beat_interval)
    candidates = [
        BeatCandidate(
            timestamp=float(t),
            confidence=_clamp(tempo.confidence),
            strength=_clamp(tempo.confidence),
            source="tempo",
            metadata={"bpm": tempo.bpm, "beat_index": i},
        )
        for i, t in enumerate(times)
    ]
    return tempo, candidates


def spectral_flux_candidates(audio: np.ndarray, config: DetectionConfig) -> list[BeatCandidate]:
    """Candidates at local peaks of normalized spectral flux above the threshold.

    Flux of frame t is the summed positive magnitude change from frame t-1,
    divided by the total magnitude of frame t, so it lies in [0, 1].
    """
    magnitude = np.abs(librosa.stft(audio, n_fft=config.frame_size, hop_length=config.hop_size))
    if magnitude.shape[1] < 2:
        return []
    totals = magnitude.sum(axis=0)
    loudest = float(totals.max())
    if loudest <= 0:
        return []
    eps = 1e-3 * loudest

    increase = np.maximum(0.0, np.diff(magnitude, axis=1)).sum(axis=0)
    flux = np.concatenate([[0.0], increase / (totals[1:] + eps)])

    candidates = []
    for t in range(1, len(flux)):
        value = flux[t]
        if value <= config.spectral_flux_threshold:
            continue
        if value < flux[t - 1] or (t + 1 < len(flux) and value < flux[t + 1]):
            continue
        candidates.append(
            BeatCandidate(
                timestamp=float(librosa.frames_to_time(t, sr=config.sample_rate, hop_length=config.hop_size)),
                confidence=_clamp(value),
                strength=_clamp(totals[t] / loudest),
                source="spectral",
                metadata={"flux": round(float(value), 4)},
            )
        )
    return candidates


# ---------------------------------------------------------------------------
# Fusion and refinement stages
# ---------------------------------------------------------------------------

def _merge_cluster(cluster: list[BeatCandidate], config: DetectionConfig) -> BeatCandidate:
    if len(cluster) == 1:
        return cluster[0]

    weights = np.array([config.weight_for(c.source) for c in cluster])
    confidences = np.array([c.confidence for c in cluster])
    times = np.array([c.timestamp for c in cluster])
    scores = weights * confidences
    total = float(scores.sum())

    timestamp = float(np.sum(times * scores) / total) if total > 0 else float(np.mean(times))
    confidence = _clamp(total / len(cluster))
    dominant = cluster[int(np.argmax(scores))]

    return BeatCandidate(
        timestamp=timestamp,
        confidence=confidence,
        strength=confidence,
        source="hybrid",
        metadata={
            "sources": [c.source for c in cluster],
            "confidences": [round(c.confidence, 4) for c in cluster],
            "weights": [round(float(w), 4) for w in weights],
            "dominant_source": dominant.source,
        },
    )


def fuse_candidates(candidates: list[BeatCandidate], config: DetectionConfig) -> list[BeatCandidate]:
    """Greedily cluster candidates within ``cluster_window`` of the earliest one.

    Multi-member clusters collapse into one ``hybrid`` candidate at the
    weight*confidence weighted mean time; singletons pass through unchanged.
    """
    ordered = sorted(candidates, key=_candidate_order)
    fused = []
    i = 0
    while i < len(ordered):
        anchor = ordered[i].timestamp
        j = i + 1
        while j < len(ordered) and ordered[j].timestamp - anchor <= config.cluster_window + 1e-9:
            j += 1
        fused.append(_merge_cluster(ordered[i:j], config))
        i = j
    return fused


def remove_interval_outliers(candidates: list[BeatCandidate], tolerance: float = 0.5) -> list[BeatCandidate]:
    """Drop interior candidates whose intervals on both sides stray from the median.

    An interval strays when it differs from the median interval by more than
    ``tolerance`` times the median. The first and last candidates always stay.
    """
    if len(candidates) < 3:
        return list(candidates)
    times = np.array([c.timestamp for c in candidates])
    intervals = np.diff(times)
    median = float(np.median(intervals))
    if median <= 0:
        return list(candidates)

    off = np.abs(intervals - median) > tolerance * median
    kept = [candidates[0]]
    for i in range(1, len(candidates) - 1):
        if not (off[i - 1] and off[i]):
            kept.append(candidates[i])
    kept.append(candidates[-1])
    return kept


def enhance_with_energy(
    candidates: list[BeatCandidate], audio: np.ndarray, config: DetectionConfig,
) -> list[BeatCandidate]:
    """Boost confidence and strength by the signal energy around each candidate."""
    enhanced = []
    for c in candidates:
        energy = local_energy(audio, config.sample_rate, c.timestamp, config.energy_window)
        boost = min(energy * config.energy_boost_scale, config.energy_boost_cap)
        enhanced.append(
            dataclasses.replace(
                c,
                confidence=_clamp(c.confidence + boost),
                strength=_clamp(c.strength + boost),
            )
        )
    return enhanced


def smooth_confidences(candidates: list[BeatCandidate], radius: int = 3, factor: float = 0.3) -> list[BeatCandidate]:
    """Blend each interior confidence with the mean of its neighbourhood."""
    if len(candidates) < 3:
        return list(candidates)
    original = np.array([c.confidence for c in candidates])
    smoothed = [candidates[0]]
    for i in range(1, len(candidates) - 1):
        window = original[max(0, i - radius):i + radius + 1]
        value = original[i] * (1.0 - factor) + factor * float(np.mean(window))
        smoothed.append(dataclasses.replace(candidates[i], confidence=_clamp(value)))
    smoothed.append(candidates[-1])
    return smoothed


def adjust_confidences(candidates: list[BeatCandidate], features: AudioFeatures) -> list[BeatCandidate]:
    """Reward agreeing sources and clear dynamics, penalize near-silence."""
    adjusted = []
    for c in candidates:
        confidence = c.confidence
        if c.source in ("tempo", "hybrid"):
            confidence *= SOURCE_BOOST
        elif c.source == "onset" and c.strength > STRONG_ONSET_STRENGTH:
            confidence *= STRONG_ONSET_BOOST
        if features.dynamic_range > WIDE_DYNAMICS_DB:
            confidence *= WIDE_DYNAMICS_BOOST
        if features.rms < QUIET_RMS:
            confidence *= QUIET_PENALTY
        adjusted.append(dataclasses.replace(c, confidence=_clamp(confidence), strength=_clamp(c.strength)))
    return adjusted


def finalize_candidates(
    candidates: list[BeatCandidate],
    threshold: float,
    min_spacing: float,
    duration: float | None = None,
) -> list[BeatCandidate]:
    """Threshold, sort and enforce minimum spacing (earlier candidate wins)."""
    passing = [c for c in candidates if c.confidence >= threshold]
    if duration is not None:
        passing = [c for c in passing if 0.0 <= c.timestamp <= duration]
    final = []
    for c in sorted(passing, key=_candidate_order):
        if final and c.timestamp - final[-1].timestamp < min_spacing:
            continue
        final.append(c)
    return final


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------

class HybridDetector:
    """Runs the detectors, fuses their candidates and scores the result."""

    def __init__(self, config: DetectionConfig | None = None):
        self.config = (config or DetectionConfig.from_settings(settings)).validate()

    def detect_beats(self, audio: np.ndarray, cancel_event: threading.Event | None = None) -> list[BeatCandidate]:
        return self.analyze(audio, cancel_event=cancel_event).candidates

    def analyze(self, audio: np.ndarray, cancel_event: threading.Event | None = None) -> HybridAnalysis:
        """Run every stage on one signal and return candidates with context."""
        audio = validate_signal(audio, min_length=self.config.frame_size)
        config = self.config
        duration = len(audio) / config.sample_rate
        logger.info(f"Detecting beats in {duration:.1f}s of audio at {config.sample_rate}Hz")

        # Step 1: Features
        _checkpoint(cancel_event, "feature_extraction")
        logger.info("Step 1: Feature extraction")
        features = _run_stage("feature_extraction", self._features, audio, config)

        # Step 2: Genre detection and config adaptation
        genre = None
        if config.genre_adaptive:
            _checkpoint(cancel_event, "genre_detection")
            logger.info("Step 2: Genre detection")
            genre, _ = _run_stage("genre_detection", detect_genre, features, config.genre_score_weights)
            config = _run_stage("config_adaptation", adapt_config, config, genre).validate()
            logger.info(f"  Genre: {genre.name}, tempo range {config.min_tempo:.0f}-{config.max_tempo:.0f} BPM, "
                        f"threshold {config.confidence_threshold:.3f}")

        # Step 3: Detection passes
        _checkpoint(cancel_event, "detection")
        logger.info("Step 3: Onset, tempo and spectral-flux detection")
        onsets, (tempo, beats), spectral = self._detect(audio, config)
        logger.info(f"  onset: {len(onsets)}, tempo: {len(beats)} ({tempo.bpm:.1f} BPM), spectral: {len(spectral)}")

        # Step 4: Fusion
        _checkpoint(cancel_event, "fusion")
        logger.info("Step 4: Weighted fusion")
        candidates = _run_stage("fusion", fuse_candidates, onsets + beats + spectral, config)

        # Step 5: Refinement
        if config.multi_pass and candidates:
            _checkpoint(cancel_event, "refinement")
            logger.info("Step 5: Multi-pass refinement")
            candidates = _run_stage("outlier_removal", remove_interval_outliers, candidates, config.outlier_tolerance)
            candidates = _run_stage("energy_enhancement", enhance_with_energy, candidates, audio, config)
            candidates = _run_stage(
                "temporal_smoothing", smooth_confidences, candidates, config.smoothing_radius, config.smoothing_factor,
            )

        # Step 6: Scoring and final filtering
        _checkpoint(cancel_event, "scoring")
        logger.info("Step 6: Confidence scoring")
        candidates = _run_stage("confidence_adjustment", adjust_confidences, candidates, features)
        candidates = _run_stage(
            "finalization", finalize_candidates, candidates,
            config.confidence_threshold, config.min_candidate_spacing, duration,
        )
        logger.info(f"  {len(candidates)} candidates above threshold")

        return HybridAnalysis(candidates=candidates, tempo=tempo, features=features, genre=genre, config=config)

    def _features(self, audio: np.ndarray, config: DetectionConfig) -> AudioFeatures:
        duration = len(audio) / config.sample_rate
        if len(audio) > config.frame_feature_threshold:
            frames = extract_frame_features(audio, config.frame_size, config.hop_size, config.sample_rate)
            features = average_features(frames, duration=duration)
        else:
            features = extract_features(audio, config.sample_rate)
        # Level measures come from the whole signal, not the frame average
        return dataclasses.replace(
            features,
            rms=rms_energy(audio),
            zero_crossing_rate=zero_crossing_rate(audio),
            dynamic_range=dynamic_range_db(audio, config.frame_size, config.hop_size),
        )

    def _detect(self, audio: np.ndarray, config: DetectionConfig):
        passes: list[tuple[str, Callable]] = [
            ("onset_detection", onset_candidates),
            ("tempo_tracking", tempo_candidates),
            ("spectral_flux", spectral_flux_candidates),
        ]
        if config.parallel:
            with ThreadPoolExecutor(max_workers=len(passes)) as pool:
                futures = [pool.submit(_run_stage, name, fn, audio, config) for name, fn in passes]
                return [f.result() for f in futures]
        return [_run_stage(name, fn, audio, config) for name, fn in passes]


def _checkpoint(cancel_event: threading.Event | None, stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise DetectionCancelled(stage)


def _run_stage(stage: str, fn: Callable, *args):
    """Call one stage, wrapping unexpected failures with the stage name."""
    try:
        result = fn(*args)
    except BeatParserError:
        raise
    except Exception as e:
        raise AlgorithmError(stage, str(e) or type(e).__name__) from e

    if isinstance(result, tuple) and len(result) == 2 and isinstance(result[1], list):
        _ensure_finite(stage, result[1])
    elif isinstance(result, list):
        _ensure_finite(stage, result)
    return result
