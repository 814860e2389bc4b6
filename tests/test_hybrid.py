"""Tests for the hybrid detector and its pipeline stages."""

import dataclasses
import threading

import numpy as np
import pytest

from beatparser.analysis import hybrid
from beatparser.analysis.genre import GENRE_PROFILES, adapt_config, detect_genre, get_profile
from beatparser.analysis.hybrid import (
    HybridDetector,
    adjust_confidences,
    enhance_with_energy,
    finalize_candidates,
    fuse_candidates,
    remove_interval_outliers,
    smooth_confidences,
)
from beatparser.analysis.models import AudioFeatures, BeatCandidate, DetectionConfig, Onset
from beatparser.errors import AlgorithmError, ConfigurationError, DetectionCancelled, InputError
from tests.conftest import SR, generate_click_track


def _candidate(t, source="onset", confidence=0.8, strength=0.8):
    return BeatCandidate(timestamp=t, confidence=confidence, strength=strength, source=source)


def _features(**overrides):
    values = dict(
        spectral_centroid=1000.0,
        spectral_rolloff=2000.0,
        spectral_bandwidth=500.0,
        zero_crossing_rate=0.05,
        rms=0.1,
        dynamic_range=10.0,
        mfcc=(0.0,) * 13,
        chroma=None,
        duration=10.0,
    )
    values.update(overrides)
    return AudioFeatures(**values)


# -- fusion -------------------------------------------------------------------

def test_fusion_scenario():
    candidates = [
        _candidate(1.00), _candidate(1.05), _candidate(2.00),
        _candidate(1.02, "tempo"), _candidate(2.01, "tempo"),
        _candidate(1.50, "spectral"),
    ]
    fused = fuse_candidates(candidates, DetectionConfig())

    assert len(fused) == 3
    first, middle, last = fused
    assert first.source == "hybrid"
    assert first.timestamp == pytest.approx(1.01, abs=0.02)
    assert middle.source == "spectral"
    assert middle.timestamp == pytest.approx(1.50)
    assert last.source == "hybrid"
    assert last.timestamp == pytest.approx(2.005, abs=0.005)


def test_fusion_is_order_independent():
    candidates = [_candidate(1.0), _candidate(1.02, "tempo"), _candidate(1.5, "spectral"), _candidate(3.0)]
    config = DetectionConfig()
    assert fuse_candidates(candidates, config) == fuse_candidates(list(reversed(candidates)), config)


def test_singleton_keeps_source_and_values():
    single = _candidate(0.7, "spectral", confidence=0.42, strength=0.33)
    fused = fuse_candidates([single], DetectionConfig())
    assert fused == [single]
    assert fused[0].source == "spectral"


def test_cluster_metadata_and_weighting():
    config = DetectionConfig(onset_weight=0.4, tempo_weight=0.4)
    fused = fuse_candidates(
        [_candidate(1.0, "onset", confidence=1.0), _candidate(1.04, "tempo", confidence=0.5)], config,
    )
    assert len(fused) == 1
    merged = fused[0]
    assert merged.metadata["sources"] == ["onset", "tempo"]
    assert merged.metadata["dominant_source"] == "onset"
    # weighted towards the more confident onset
    assert merged.timestamp == pytest.approx((1.0 * 0.4 + 1.04 * 0.2) / 0.6)
    assert merged.confidence == pytest.approx((0.4 + 0.2) / 2)
    assert merged.strength == merged.confidence


def test_cluster_window_anchors_on_earliest():
    fused = fuse_candidates([_candidate(t) for t in (1.00, 1.04, 1.08, 1.12)], DetectionConfig())
    assert len(fused) == 2


# -- refinement -----------------------------------------------------------------

def test_outlier_removal():
    times = [0.0, 0.5, 1.0, 1.1, 2.0, 2.5, 3.0]
    kept = remove_interval_outliers([_candidate(t) for t in times], tolerance=0.5)
    assert [c.timestamp for c in kept] == [0.0, 0.5, 1.0, 2.0, 2.5, 3.0]


def test_outlier_removal_keeps_endpoints():
    times = [0.0, 2.0, 2.5, 3.0, 3.5, 5.0]
    kept = remove_interval_outliers([_candidate(t) for t in times])
    assert kept[0].timestamp == 0.0
    assert kept[-1].timestamp == 5.0


def test_outlier_removal_short_lists_untouched():
    pair = [_candidate(0.0), _candidate(3.0)]
    assert remove_interval_outliers(pair) == pair


def test_energy_boost_is_capped():
    config = DetectionConfig(sample_rate=1000)
    loud = np.ones(2000, dtype=np.float32)
    boosted = enhance_with_energy([_candidate(1.0, confidence=0.5, strength=0.9)], loud, config)
    assert boosted[0].confidence == pytest.approx(0.8)
    assert boosted[0].strength == 1.0

    quiet = enhance_with_energy([_candidate(1.0, confidence=0.5)], np.zeros(2000), config)
    assert quiet[0].confidence == pytest.approx(0.5)


def test_smoothing_blends_interior_only():
    candidates = [_candidate(float(i), confidence=c) for i, c in enumerate([1.0, 0.0, 1.0, 0.0, 1.0])]
    smoothed = smooth_confidences(candidates, radius=3, factor=0.3)
    assert smoothed[0].confidence == 1.0
    assert smoothed[-1].confidence == 1.0
    assert smoothed[1].confidence == pytest.approx(0.3 * 0.6)
    assert smoothed[2].confidence == pytest.approx(0.7 + 0.3 * 0.6)


def test_confidence_adjustment():
    wide = _features(dynamic_range=30.0, rms=0.1)
    narrow = _features(dynamic_range=10.0, rms=0.1)
    quiet = _features(dynamic_range=10.0, rms=0.001)

    assert adjust_confidences([_candidate(1.0, "tempo", 0.5)], wide)[0].confidence == pytest.approx(0.605)
    assert adjust_confidences([_candidate(1.0, "onset", 0.5, 0.9)], narrow)[0].confidence == pytest.approx(0.6)
    assert adjust_confidences([_candidate(1.0, "onset", 0.5, 0.5)], narrow)[0].confidence == pytest.approx(0.5)
    assert adjust_confidences([_candidate(1.0, "spectral", 0.5)], quiet)[0].confidence == pytest.approx(0.4)
    assert adjust_confidences([_candidate(1.0, "hybrid", 0.95)], wide)[0].confidence == 1.0


def test_finalize_thresholds_and_spaces():
    candidates = [
        _candidate(0.20, confidence=0.9),
        _candidate(0.10, confidence=0.9),
        _candidate(0.11, confidence=0.9),
        _candidate(0.13, confidence=0.9),
        _candidate(0.50, confidence=0.1),
    ]
    final = finalize_candidates(candidates, threshold=0.5, min_spacing=0.02)
    assert [c.timestamp for c in final] == [0.10, 0.13, 0.20]


# -- genre ----------------------------------------------------------------------

def test_genre_scenario_electronic():
    features = _features(spectral_centroid=4500.0, dynamic_range=60.0, rms=0.2, zero_crossing_rate=0.2)
    genre, scores = detect_genre(features)
    assert genre.name == "electronic"
    assert set(scores) == {p.name for p in GENRE_PROFILES}

    base = DetectionConfig()
    adapted = adapt_config(base, genre)
    assert (adapted.min_tempo, adapted.max_tempo) == (120.0, 140.0)
    assert adapted.onset_weight == pytest.approx(0.4 * 0.8)
    assert adapted.spectral_weight == pytest.approx(0.2 * 0.9)
    assert adapted.confidence_threshold == pytest.approx(0.6 * (1 - 0.7 * 0.2))
    # base config untouched
    assert (base.min_tempo, base.max_tempo) == (60.0, 200.0)


def test_dark_signal_prefers_low_emphasis_profile():
    features = _features(spectral_centroid=1500.0, dynamic_range=0.0, rms=0.1, zero_crossing_rate=0.0)
    genre, _ = detect_genre(features)
    assert genre.name == "classical"


def test_get_profile():
    assert get_profile("jazz").tempo_range == (80.0, 120.0)
    with pytest.raises(KeyError):
        get_profile("polka")


# -- detector -------------------------------------------------------------------

def test_rejection_scenario():
    detector = HybridDetector()
    with pytest.raises(InputError, match="too short"):
        detector.detect_beats(np.zeros(10, dtype=np.float32))
    with pytest.raises(InputError, match="invalid values"):
        detector.detect_beats(np.full(SR, np.nan, dtype=np.float32))
    with pytest.raises(InputError):
        detector.detect_beats(np.array([], dtype=np.float32))
    with pytest.raises(InputError, match="invalid values"):
        detector.detect_beats(np.concatenate([np.zeros(SR), [np.inf]]))


def test_contradictory_config_rejected():
    with pytest.raises(ConfigurationError):
        HybridDetector(DetectionConfig(min_tempo=150, max_tempo=100))
    with pytest.raises(ConfigurationError):
        HybridDetector(DetectionConfig(confidence_threshold=1.5))


def test_detects_beats_in_click_track(click_120):
    detector = HybridDetector(DetectionConfig(confidence_threshold=0.3))
    analysis = detector.analyze(click_120)
    candidates = analysis.candidates

    assert len(candidates) >= 10
    times = [c.timestamp for c in candidates]
    assert all(b - a >= 0.02 for a, b in zip(times, times[1:]))
    assert all(0.0 <= t <= 10.0 for t in times)
    for c in candidates:
        assert 0.0 <= c.confidence <= 1.0
        assert 0.0 <= c.strength <= 1.0
        assert c.confidence >= analysis.config.confidence_threshold
    assert analysis.tempo.bpm > 0
    assert analysis.genre is not None


def test_detection_is_deterministic(click_120):
    detector = HybridDetector(DetectionConfig(confidence_threshold=0.3))
    first = detector.detect_beats(click_120)
    second = detector.detect_beats(click_120)
    assert [(c.timestamp, c.confidence, c.strength, c.source) for c in first] == \
        [(c.timestamp, c.confidence, c.strength, c.source) for c in second]


def test_parallel_and_sequential_match(click_120):
    parallel = HybridDetector(DetectionConfig(confidence_threshold=0.3, parallel=True)).detect_beats(click_120)
    sequential = HybridDetector(DetectionConfig(confidence_threshold=0.3, parallel=False)).detect_beats(click_120)
    assert [(c.timestamp, c.confidence) for c in parallel] == [(c.timestamp, c.confidence) for c in sequential]


def test_genre_adaptation_leaves_detector_config_alone(click_120):
    base = DetectionConfig(confidence_threshold=0.3)
    detector = HybridDetector(base)
    analysis = detector.analyze(click_120)
    assert detector.config == base
    lo, hi = analysis.genre.tempo_range
    assert (analysis.config.min_tempo, analysis.config.max_tempo) == (lo, hi)


def test_without_genre_or_multipass(click_120):
    config = DetectionConfig(genre_adaptive=False, multi_pass=False, confidence_threshold=0.0)
    analysis = HybridDetector(config).analyze(click_120)
    assert analysis.genre is None
    assert analysis.config == config
    assert analysis.candidates


def test_cancellation_between_stages(click_120):
    event = threading.Event()
    event.set()
    with pytest.raises(DetectionCancelled):
        HybridDetector().detect_beats(click_120, cancel_event=event)


def test_stage_failure_is_wrapped(click_120, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(hybrid, "detect_onsets", broken)
    with pytest.raises(AlgorithmError) as info:
        HybridDetector(DetectionConfig(parallel=False)).detect_beats(click_120)
    assert info.value.stage == "onset_detection"
    assert "boom" in str(info.value)


def test_non_finite_stage_output_is_rejected(click_120, monkeypatch):
    monkeypatch.setattr(
        hybrid, "detect_onsets", lambda *a, **k: [Onset(time=float("nan"), strength=0.5, confidence=0.5)],
    )
    with pytest.raises(AlgorithmError) as info:
        HybridDetector().detect_beats(click_120)
    assert info.value.stage == "onset_detection"


def test_quiet_signal_returns_no_error():
    audio = generate_click_track(bpm=90, duration_seconds=4) * 0.001
    config = dataclasses.replace(DetectionConfig(), confidence_threshold=0.0)
    candidates = HybridDetector(config).detect_beats(audio)
    assert all(0.0 <= c.confidence <= 1.0 for c in candidates)
