"""Spectral feature extraction from raw samples."""

import numpy as np
import librosa

from beatparser.analysis.models import AudioFeatures

ROLLOFF_PERCENT = 0.85
DYNAMIC_RANGE_CEILING_DB = 120.0
_SILENCE_FLOOR = 1e-5  # -100 dBFS


def next_power_of_two(n: int) -> int:
    return 1 << max(0, int(n) - 1).bit_length()


def zero_crossing_rate(signal: np.ndarray) -> float:
    """Sign changes divided by the number of samples."""
    if len(signal) < 2:
        return 0.0
    crossings = np.count_nonzero(np.signbit(signal[1:]) != np.signbit(signal[:-1]))
    return float(crossings / len(signal))


def rms_energy(signal: np.ndarray) -> float:
    if len(signal) == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(signal, dtype=np.float64))))


def local_energy(audio: np.ndarray, sample_rate: int, timestamp: float, window: float = 0.02) -> float:
    """Mean squared amplitude in a window centred on ``timestamp``."""
    half = max(1, int(round(window * sample_rate / 2)))
    centre = int(round(timestamp * sample_rate))
    segment = audio[max(0, centre - half):min(len(audio), centre + half)]
    if len(segment) == 0:
        return 0.0
    return float(np.mean(np.square(segment, dtype=np.float64)))


def dynamic_range_db(
    signal: np.ndarray,
    frame_length: int = 2048,
    hop_length: int = 512,
) -> float:
    """Loudness spread between the loudest frame and the quiet floor, in dB.

    The floor is the 10th percentile of frame RMS, bounded below at -100 dBFS
    so that digital silence does not produce an infinite range.
    """
    if len(signal) == 0:
        return 0.0
    frame_length = min(frame_length, next_power_of_two(len(signal)))
    hop_length = max(1, min(hop_length, frame_length // 2))
    frames = librosa.feature.rms(
        y=np.asarray(signal, dtype=np.float32),
        frame_length=frame_length,
        hop_length=hop_length,
    )[0]
    loud = float(np.max(frames))
    if loud < _SILENCE_FLOOR:
        return 0.0
    floor = max(float(np.percentile(frames, 10)), _SILENCE_FLOOR)
    return float(np.clip(20.0 * np.log10(loud / floor), 0.0, DYNAMIC_RANGE_CEILING_DB))


def _band_log_energies(power: np.ndarray, n_bands: int) -> tuple[float, ...]:
    """Log energy of n equal-width bands of a power spectrum."""
    edges = np.linspace(0, len(power), n_bands + 1).astype(int)
    energies = []
    for lo, hi in zip(edges[:-1], edges[1:]):
        band = power[lo:max(hi, lo + 1)]
        energies.append(float(np.log(np.sum(band) + 1e-10)))
    return tuple(energies)


def _chroma(power: np.ndarray, freqs: np.ndarray) -> tuple[float, ...]:
    """Fold spectral energy into 12 pitch classes (MIDI note mod 12)."""
    audible = freqs >= 20.0
    chroma = np.zeros(12)
    if np.any(audible):
        midi = 69.0 + 12.0 * np.log2(freqs[audible] / 440.0)
        pitch_class = np.mod(np.round(midi).astype(int), 12)
        np.add.at(chroma, pitch_class, power[audible])
    total = chroma.sum()
    if total <= 0:
        return tuple([1.0 / 12] * 12)
    return tuple(float(c) for c in chroma / total)


def extract_features(
    signal: np.ndarray,
    sample_rate: int,
    n_mfcc: int = 13,
    include_chroma: bool = True,
) -> AudioFeatures:
    """Compute spectral descriptors from one FFT of the whole signal.

    The signal is zero-padded up to the next power of two. The MFCC vector is
    a simplified one: log energy of ``n_mfcc`` equal-width spectral bands.
    """
    signal = np.asarray(signal, dtype=np.float64)
    n_fft = next_power_of_two(max(len(signal), 2))
    magnitude = np.abs(np.fft.rfft(signal, n=n_fft))
    power = magnitude ** 2
    freqs = np.fft.rfftfreq(n_fft, d=1.0 / sample_rate)

    mag_total = magnitude.sum()
    if mag_total > 0:
        centroid = float(np.sum(freqs * magnitude) / mag_total)
        bandwidth = float(np.sqrt(np.sum(((freqs - centroid) ** 2) * magnitude) / mag_total))
    else:
        centroid = 0.0
        bandwidth = 0.0

    cumulative = np.cumsum(power)
    if cumulative[-1] > 0:
        rolloff_idx = int(np.searchsorted(cumulative, ROLLOFF_PERCENT * cumulative[-1]))
        rolloff = float(freqs[min(rolloff_idx, len(freqs) - 1)])
    else:
        rolloff = 0.0

    return AudioFeatures(
        spectral_centroid=centroid,
        spectral_rolloff=rolloff,
        spectral_bandwidth=bandwidth,
        zero_crossing_rate=zero_crossing_rate(signal),
        rms=rms_energy(signal),
        dynamic_range=dynamic_range_db(signal),
        mfcc=_band_log_energies(power, n_mfcc),
        chroma=_chroma(power, freqs) if include_chroma else None,
        duration=len(signal) / sample_rate,
    )


def extract_frame_features(
    signal: np.ndarray,
    frame_size: int,
    hop_size: int,
    sample_rate: int,
    n_mfcc: int = 13,
    include_chroma: bool = True,
) -> list[AudioFeatures]:
    """Extract features over a sliding window.

    ``frame_size`` is rounded up to a power of two. Signals shorter than one
    frame yield a single frame covering the whole signal.
    """
    frame_size = next_power_of_two(frame_size)
    if hop_size <= 0:
        raise ValueError(f"hop_size must be positive, got {hop_size}")
    if len(signal) <= frame_size:
        return [extract_features(signal, sample_rate, n_mfcc, include_chroma)]

    frames = []
    for start in range(0, len(signal) - frame_size + 1, hop_size):
        frame = signal[start:start + frame_size]
        frames.append(extract_features(frame, sample_rate, n_mfcc, include_chroma))
    return frames


def average_features(frames: list[AudioFeatures], duration: float | None = None) -> AudioFeatures:
    """Element-wise mean of per-frame features."""
    if not frames:
        raise ValueError("Cannot average an empty list of features")

    def mean(attr: str) -> float:
        return float(np.mean([getattr(f, attr) for f in frames]))

    mfcc = tuple(float(v) for v in np.mean([f.mfcc for f in frames], axis=0))
    chroma = None
    if all(f.chroma is not None for f in frames):
        avg = np.mean([f.chroma for f in frames], axis=0)
        chroma = tuple(float(v) for v in avg / avg.sum())

    return AudioFeatures(
        spectral_centroid=mean("spectral_centroid"),
        spectral_rolloff=mean("spectral_rolloff"),
        spectral_bandwidth=mean("spectral_bandwidth"),
        zero_crossing_rate=mean("zero_crossing_rate"),
        rms=mean("rms"),
        dynamic_range=mean("dynamic_range"),
        mfcc=mfcc,
        chroma=chroma,
        duration=duration if duration is not None else mean("duration"),
    )
