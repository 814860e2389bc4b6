"""Audio validation and preprocessing utilities."""

from __future__ import annotations

import numpy as np
from scipy.signal import butter, sosfilt

from beatparser.errors import InputError


def validate_signal(audio: np.ndarray, min_length: int = 1) -> np.ndarray:
    """Check that audio is a usable mono float signal and return it as an array.

    Raises
    ------
    InputError
        If the signal is empty, shorter than ``min_length`` samples, not
        one-dimensional or contains NaN/Infinity.
    """
    if audio is None:
        raise InputError("Audio signal is empty")
    try:
        audio = np.asarray(audio, dtype=np.float32)
    except (TypeError, ValueError) as exc:
        raise InputError(f"Audio signal is not numeric: {exc}") from exc
    if audio.ndim != 1:
        raise InputError(f"Audio signal must be mono (1-D), got shape {audio.shape}")
    if audio.size == 0:
        raise InputError("Audio signal is empty")
    if audio.size < min_length:
        raise InputError(
            f"Audio signal too short: {audio.size} samples, need at least {min_length}"
        )
    if not np.all(np.isfinite(audio)):
        raise InputError("Audio signal contains invalid values (NaN or Infinity)")
    return audio


def normalize(audio: np.ndarray) -> np.ndarray:
    """Peak-normalize audio to the range [-1, 1].

    If the audio is silent (all zeros), it is returned unchanged.
    """
    peak = np.max(np.abs(audio))
    if peak == 0:
        return audio
    return audio / peak


def high_pass_filter(
    audio: np.ndarray,
    sr: int,
    cutoff: float = 60.0,
) -> np.ndarray:
    """Apply a 4th-order Butterworth high-pass filter (removes rumble and DC)."""
    sos = butter(N=4, Wn=cutoff, btype="high", fs=sr, output="sos")
    return sosfilt(sos, audio).astype(np.float32)


def preprocess(
    audio: np.ndarray,
    sr: int,
    normalize_audio: bool = True,
    filter_audio: bool = False,
    cutoff: float = 60.0,
) -> np.ndarray:
    """Apply the enabled preprocessing steps; returns a new array."""
    out = np.array(audio, dtype=np.float32, copy=True)
    if filter_audio and cutoff < sr / 2:
        out = high_pass_filter(out, sr, cutoff)
    if normalize_audio:
        out = normalize(out)
    return out
