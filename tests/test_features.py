"""Tests for spectral feature extraction."""

import numpy as np
import pytest

from beatparser.analysis.features import (
    average_features,
    dynamic_range_db,
    extract_features,
    extract_frame_features,
    local_energy,
    next_power_of_two,
)

# 8192 samples at 8192 Hz puts every integer frequency exactly on an FFT bin
SR = 8192


def _sine(freq: float, n: int = SR, sr: int = SR, amplitude: float = 1.0) -> np.ndarray:
    return amplitude * np.sin(2 * np.pi * freq * np.arange(n) / sr)


def test_next_power_of_two():
    assert next_power_of_two(1) == 1
    assert next_power_of_two(1000) == 1024
    assert next_power_of_two(1024) == 1024
    assert next_power_of_two(1025) == 2048


def test_pure_tone_descriptors():
    features = extract_features(_sine(512), SR)

    assert features.spectral_centroid == pytest.approx(512, abs=1.0)
    assert features.spectral_rolloff == pytest.approx(512, abs=1.0)
    assert features.spectral_bandwidth < 5.0
    assert features.rms == pytest.approx(1 / np.sqrt(2), abs=1e-3)
    assert features.zero_crossing_rate == pytest.approx(0.125, abs=0.01)
    assert features.duration == pytest.approx(1.0)


def test_brighter_signal_has_higher_centroid():
    low = extract_features(_sine(300), SR)
    high = extract_features(_sine(3000), SR)
    assert high.spectral_centroid > low.spectral_centroid
    assert high.spectral_rolloff > low.spectral_rolloff


def test_mfcc_and_chroma_shapes():
    features = extract_features(_sine(440), SR)
    assert len(features.mfcc) == 13
    assert len(features.chroma) == 12
    assert sum(features.chroma) == pytest.approx(1.0)
    # A4 is pitch class 9
    assert int(np.argmax(features.chroma)) == 9


def test_custom_mfcc_count_and_no_chroma():
    features = extract_features(_sine(440), SR, n_mfcc=20, include_chroma=False)
    assert len(features.mfcc) == 20
    assert features.chroma is None


def test_silence_is_finite():
    features = extract_features(np.zeros(4096), SR)
    assert features.spectral_centroid == 0.0
    assert features.rms == 0.0
    assert features.dynamic_range == 0.0
    assert all(np.isfinite(features.mfcc))
    assert sum(features.chroma) == pytest.approx(1.0)


def test_extraction_is_deterministic():
    rng = np.random.default_rng(0)
    noise = rng.standard_normal(5000)
    assert extract_features(noise, SR) == extract_features(noise, SR)


def test_frame_features_count():
    signal = _sine(440, n=10000)
    frames = extract_frame_features(signal, frame_size=1000, hop_size=512, sample_rate=SR)
    # frame size rounds up to 1024
    assert len(frames) == (10000 - 1024) // 512 + 1
    assert all(f.duration == pytest.approx(1024 / SR) for f in frames)


def test_frame_features_short_signal_gives_single_frame():
    frames = extract_frame_features(_sine(440, n=500), frame_size=1024, hop_size=256, sample_rate=SR)
    assert len(frames) == 1


def test_average_features():
    frames = extract_frame_features(_sine(440, n=20000), 2048, 1024, SR)
    avg = average_features(frames, duration=20000 / SR)
    assert avg.spectral_centroid == pytest.approx(np.mean([f.spectral_centroid for f in frames]))
    assert avg.duration == pytest.approx(20000 / SR)
    assert sum(avg.chroma) == pytest.approx(1.0)


def test_average_features_rejects_empty():
    with pytest.raises(ValueError):
        average_features([])


def test_dynamic_range_of_loud_and_quiet_halves():
    signal = np.concatenate([_sine(440, n=SR * 2), _sine(440, n=SR * 2, amplitude=0.01)])
    assert 38.0 < dynamic_range_db(signal) < 42.0


def test_dynamic_range_silence():
    assert dynamic_range_db(np.zeros(SR)) == 0.0


def test_local_energy():
    audio = np.ones(1000)
    assert local_energy(audio, 1000, 0.5, window=0.02) == pytest.approx(1.0)
    assert local_energy(np.zeros(1000), 1000, 0.5) == 0.0
    assert local_energy(audio, 1000, 5.0) == 0.0
