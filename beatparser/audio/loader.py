"""Audio file loading utilities."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Union

import librosa
import numpy as np

from beatparser.errors import InputError


def load_audio(
    file_path_or_buffer: Union[str, Path, BytesIO],
    sr: int = 44100,
) -> tuple[np.ndarray, int]:
    """Load an audio file or buffer, convert to mono and resample.

    Parameters
    ----------
    file_path_or_buffer:
        Path to an audio file or a BytesIO buffer containing audio data.
    sr:
        Target sample rate. Defaults to 44100 Hz.

    Returns
    -------
    tuple[np.ndarray, int]
        A tuple of (audio_array, sample_rate).

    Raises
    ------
    InputError
        If the file is missing or cannot be decoded.
    """
    if isinstance(file_path_or_buffer, (str, Path)) and not Path(file_path_or_buffer).is_file():
        raise InputError(f"Audio file not found: {file_path_or_buffer}")
    try:
        audio, sample_rate = librosa.load(file_path_or_buffer, sr=sr, mono=True)
    except Exception as e:
        raise InputError(f"Could not decode audio: {e}") from e
    return audio, sample_rate
