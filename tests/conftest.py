"""Shared test fixtures for beat parser tests."""

import numpy as np
import pytest
from fastapi.testclient import TestClient

from beatparser.main import app

SR = 44100


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(app)


def generate_click_track(
    bpm: float,
    beats_per_bar: int = 4,
    duration_seconds: float = 10.0,
    sr: int = SR,
    accent_ratio: float = 2.0,
) -> np.ndarray:
    """Generate a synthetic click track with accented downbeats.

    Returns mono float32 audio at the given sample rate, peak-normalized.
    """
    n_samples = int(duration_seconds * sr)
    audio = np.zeros(n_samples, dtype=np.float32)

    beat_interval = 60.0 / bpm
    click_samples = int(0.02 * sr)  # 20ms click

    # Short sine burst with exponential decay
    t_click = np.arange(click_samples) / sr
    click = np.sin(2 * np.pi * 1000 * t_click) * np.exp(-t_click * 100)

    beat = 0
    time = 0.0
    while time < duration_seconds:
        sample_pos = int(time * sr)
        amplitude = accent_ratio if beat % beats_per_bar == 0 else 1.0

        end = min(sample_pos + click_samples, n_samples)
        length = end - sample_pos
        if length > 0:
            audio[sample_pos:end] += click[:length] * amplitude

        time += beat_interval
        beat += 1

    peak = np.max(np.abs(audio))
    if peak > 0:
        audio = audio / peak

    return audio


def click_times(bpm: float, duration_seconds: float) -> np.ndarray:
    """Onset times of the clicks produced by generate_click_track."""
    return np.arange(0.0, duration_seconds, 60.0 / bpm)


@pytest.fixture
def click_120():
    """Click track in 4/4 at 120 BPM."""
    return generate_click_track(bpm=120, beats_per_bar=4, duration_seconds=10)


@pytest.fixture
def click_100():
    """Click track in 3/4 at 100 BPM."""
    return generate_click_track(bpm=100, beats_per_bar=3, duration_seconds=10)
