"""Onset detection using librosa."""

import logging

import numpy as np
import librosa
from scipy.ndimage import uniform_filter1d

from beatparser.analysis.models import Onset

logger = logging.getLogger(__name__)

ONSET_METHODS = ("spectral_flux", "energy", "combined")
SILENCE_RMS = 0.001


def _normalize(env: np.ndarray) -> np.ndarray:
    peak = env.max() if len(env) else 0.0
    if peak <= 0:
        return np.zeros_like(env)
    return env / peak


def onset_envelope(
    audio: np.ndarray,
    sr: int,
    hop_length: int = 512,
    method: str = "combined",
) -> np.ndarray:
    """Return an onset strength envelope normalized to [0, 1].

    ``spectral_flux`` uses librosa's onset strength, ``energy`` the positive
    frame-to-frame RMS difference and ``combined`` the mean of both.
    """
    if method not in ONSET_METHODS:
        raise ValueError(f"Unknown onset method '{method}'. Use: {', '.join(ONSET_METHODS)}")

    audio = np.asarray(audio, dtype=np.float32)
    flux = None
    energy = None
    if method in ("spectral_flux", "combined"):
        flux = _normalize(librosa.onset.onset_strength(y=audio, sr=sr, hop_length=hop_length))
    if method in ("energy", "combined"):
        rms = librosa.feature.rms(y=audio, frame_length=hop_length * 4, hop_length=hop_length)[0]
        energy = _normalize(np.maximum(0.0, np.diff(rms, prepend=rms[0])))

    if flux is None:
        return energy
    if energy is None:
        return flux
    n = min(len(flux), len(energy))
    return _normalize((flux[:n] + energy[:n]) / 2.0)


def detect_onsets(
    audio: np.ndarray,
    sr: int,
    hop_length: int = 512,
    method: str = "combined",
    delta: float = 0.07,
    min_interval: float = 0.05,
) -> list[Onset]:
    """Detect onsets by peak picking against an adaptive threshold.

    The threshold at each frame is the local envelope mean plus ``delta``.
    Strength is the envelope value at the peak; confidence is how far the
    peak clears its local threshold, relative to the peak height.
    Peaks closer than ``min_interval`` seconds are suppressed.
    """
    if len(audio) == 0 or np.sqrt(np.mean(np.square(audio, dtype=np.float64))) < SILENCE_RMS:
        return []

    env = onset_envelope(audio, sr, hop_length=hop_length, method=method)
    if not np.any(env > 0):
        return []

    frames_per_second = sr / hop_length
    pre_max = max(1, int(0.03 * frames_per_second))
    avg_span = max(1, int(0.10 * frames_per_second))
    wait = max(1, int(round(min_interval * frames_per_second)))

    peaks = librosa.util.peak_pick(
        env,
        pre_max=pre_max,
        post_max=1,
        pre_avg=avg_span,
        post_avg=avg_span + 1,
        delta=delta,
        wait=wait,
    )
    local_mean = uniform_filter1d(env, size=2 * avg_span + 1, mode="nearest")
    times = librosa.frames_to_time(peaks, sr=sr, hop_length=hop_length)

    onsets = []
    for frame, t in zip(peaks, times):
        peak = float(env[frame])
        if peak <= 0:
            continue
        threshold = float(local_mean[frame]) + delta
        confidence = float(np.clip((peak - threshold) / peak, 0.0, 1.0))
        onsets.append(Onset(time=float(t), strength=float(np.clip(peak, 0.0, 1.0)), confidence=confidence))

    logger.debug(f"  {len(onsets)} onsets ({method}, {len(env)} frames)")
    return onsets
