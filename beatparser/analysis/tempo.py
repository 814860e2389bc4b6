"""Tempo tracking by autocorrelation of the onset envelope."""

import logging

import numpy as np
import librosa

from beatparser.analysis.models import Tempo, TempoCurvePoint, TimeSignature
from beatparser.errors import ConfigurationError

logger = logging.getLogger(__name__)

FALLBACK_BPM = 120.0
DP_JUMP_PENALTY = 1.0  # per octave of tempo change between windows
MAX_ALTERNATIVES = 3


def tempo_envelope(audio: np.ndarray, sr: int, hop_length: int = 512) -> np.ndarray:
    """Spectral-flux onset envelope normalized to [0, 1]."""
    env = librosa.onset.onset_strength(y=np.asarray(audio, dtype=np.float32), sr=sr, hop_length=hop_length)
    peak = env.max() if len(env) else 0.0
    return env / peak if peak > 0 else np.zeros_like(env)


def normalized_autocorrelation(env: np.ndarray) -> np.ndarray:
    """Autocorrelation of the mean-removed envelope, 1.0 at lag zero."""
    centered = env - np.mean(env)
    ac = librosa.autocorrelate(centered)
    if len(ac) == 0 or ac[0] <= 1e-12:
        return np.zeros_like(ac)
    return ac / ac[0]


def _lag_bounds(fps: float, min_bpm: float, max_bpm: float, n: int) -> tuple[int, int]:
    # Widened to whole frames so tempos right at the bounds stay reachable
    lo = max(1, int(np.floor(60.0 * fps / max_bpm)))
    hi = min(int(np.ceil(60.0 * fps / min_bpm)), n - 2)
    return lo, hi


def _refine_peak(ac: np.ndarray, k: int) -> tuple[float, float]:
    """Parabolic interpolation around integer lag k."""
    if k <= 0 or k >= len(ac) - 1:
        return float(k), float(ac[k])
    a, b, c = ac[k - 1], ac[k], ac[k + 1]
    denom = a - 2 * b + c
    if denom >= 0:
        return float(k), float(b)
    offset = float(np.clip(0.5 * (a - c) / denom, -0.5, 0.5))
    return k + offset, float(b - 0.25 * (a - c) * offset)


def _peak_sharpness(ac: np.ndarray, lag: float, height: float) -> float:
    """How much the peak stands out from the other lobes around it.

    Compares against the largest value in [0.5*lag, 1.5*lag] outside the
    peak's own lobe. 1.0 means nothing else in that neighbourhood.
    """
    if height <= 0:
        return 0.0
    exclude = max(3.0, 0.15 * lag)
    lags = np.arange(len(ac))
    mask = (lags >= 0.5 * lag) & (lags <= 1.5 * lag) & (np.abs(lags - lag) > exclude)
    if not np.any(mask):
        return 1.0
    neighbour = max(0.0, float(np.max(ac[mask])))
    return float(np.clip(1.0 - neighbour / height, 0.0, 1.0))


def _confidence(ac: np.ndarray, lag: float, height: float) -> float:
    sharpness = _peak_sharpness(ac, lag, height)
    return float(np.clip(max(height, 0.0) * (0.5 + 0.5 * sharpness), 0.0, 1.0))


def _local_maxima(ac: np.ndarray, lo: int, hi: int) -> list[int]:
    maxima = []
    for k in range(lo, hi + 1):
        left = ac[k - 1] if k > 0 else -np.inf
        right = ac[k + 1] if k + 1 < len(ac) else -np.inf
        if ac[k] > 0 and ac[k] >= left and ac[k] >= right:
            maxima.append(k)
    return maxima


def _windowed_scores(
    env: np.ndarray, fps: float, window_size: float, lags: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Per-window autocorrelation scores at the candidate lags.

    Returns (window centre times, scores with shape [windows, lags]).
    """
    win = max(int(window_size * fps), int(lags[-1]) + 2)
    if len(env) <= win:
        starts = [0]
        win = len(env)
    else:
        hop = max(1, win // 2)
        starts = list(range(0, len(env) - win + 1, hop))
        if starts[-1] + win < len(env):
            starts.append(len(env) - win)

    centres = []
    scores = []
    for start in starts:
        ac = normalized_autocorrelation(env[start:start + win])
        scores.append(np.clip(ac[lags], 0.0, None))
        centres.append((start + win / 2.0) / fps)
    return np.array(centres), np.array(scores)


def _viterbi_lags(scores: np.ndarray, lags: np.ndarray, penalty: float = DP_JUMP_PENALTY) -> np.ndarray:
    """Most likely lag per window, penalizing tempo jumps between windows."""
    transition = penalty * np.abs(np.log2(lags[:, None] / lags[None, :]))
    acc = scores[0].copy()
    back = []
    for frame_scores in scores[1:]:
        total = acc[:, None] - transition
        best_prev = np.argmax(total, axis=0)
        acc = total[best_prev, np.arange(len(lags))] + frame_scores
        back.append(best_prev)

    path = [int(np.argmax(acc))]
    for pointers in reversed(back):
        path.append(int(pointers[path[-1]]))
    path.reverse()
    return lags[np.array(path)]


def estimate_phase(env: np.ndarray, period: float) -> int:
    """Frame offset whose beat grid collects the most envelope energy."""
    best_offset = 0
    best_score = -1.0
    for offset in range(max(1, int(np.ceil(period)))):
        positions = np.round(np.arange(offset, len(env), period)).astype(int)
        positions = positions[positions < len(env)]
        if len(positions) == 0:
            continue
        score = float(np.mean(env[positions]))
        if score > best_score:
            best_score = score
            best_offset = offset
    return best_offset


def estimate_time_signature(
    env: np.ndarray,
    period: float,
    phase_frame: int,
) -> TimeSignature | None:
    """Estimate beats per bar from the accent pattern of beat energies.

    Given the envelope energy at each beat position, autocorrelates the
    sequence at lags of 2, 3 and 4 beats. A period whose multiples also
    peak is treated as the fundamental bar length.
    """
    positions = np.round(np.arange(phase_frame, len(env), period)).astype(int)
    positions = positions[positions < len(env)]
    if len(positions) < 8:
        return None

    energies = np.array([env[max(0, p - 2):p + 3].max() for p in positions])
    energies = energies - np.mean(energies)
    norm = float(np.sum(energies ** 2))
    if norm < 1e-10:
        return None

    n = len(energies)
    ac = np.correlate(energies, energies, mode="full")[n - 1:] / norm

    peaks = {bpb: float(ac[bpb]) for bpb in (2, 3, 4) if bpb < n and ac[bpb] > 0.02}
    if not peaks:
        return None
    # A peak at 2 beats is usually the first half of a 4-beat bar
    if 2 in peaks and 4 in peaks and peaks[4] >= 0.5 * peaks[2]:
        peaks[4] *= 1.4
        peaks[2] *= 0.5

    total = sum(peaks.values())
    numerator = max(peaks, key=peaks.get)
    return TimeSignature(numerator=numerator, denominator=4, confidence=round(peaks[numerator] / total, 3))


def _fallback(min_bpm: float, max_bpm: float) -> Tempo:
    return Tempo(bpm=float(np.clip(FALLBACK_BPM, min_bpm, max_bpm)), confidence=0.0, phase=0.0)


def detect_tempo(
    audio: np.ndarray,
    sr: int,
    min_bpm: float = 60.0,
    max_bpm: float = 200.0,
    window_size: float = 10.0,
    use_dynamic_programming: bool = True,
    hop_length: int = 512,
) -> Tempo:
    """Estimate global tempo, beat phase and a tempo curve.

    The strongest autocorrelation peak of the onset envelope between
    ``min_bpm`` and ``max_bpm`` sets the tempo. With dynamic programming,
    windowed estimates are smoothed with a penalty on tempo jumps and the
    global tempo follows the median of the smoothed path. Silent or
    arrhythmic input returns a fallback tempo with zero confidence.
    """
    if min_bpm <= 0 or min_bpm >= max_bpm:
        raise ConfigurationError(f"Invalid tempo bounds: [{min_bpm}, {max_bpm}]")

    fps = sr / hop_length
    env = tempo_envelope(audio, sr, hop_length)
    ac = normalized_autocorrelation(env)
    lo, hi = _lag_bounds(fps, min_bpm, max_bpm, len(ac))
    if hi < lo or not np.any(ac[lo:hi + 1] > 0):
        logger.debug("  No periodicity in tempo range, using fallback")
        return _fallback(min_bpm, max_bpm)

    lags = np.arange(lo, hi + 1)
    centres, scores = _windowed_scores(env, fps, window_size, lags)
    if use_dynamic_programming:
        path = _viterbi_lags(scores, lags)
    else:
        path = lags[np.argmax(scores, axis=1)]

    if use_dynamic_programming and len(path) > 1:
        target = float(np.median(path))
        search = lags[(lags >= 0.9 * target) & (lags <= 1.1 * target)]
        best = int(search[np.argmax(ac[search])]) if len(search) else int(lags[np.argmax(ac[lags])])
    else:
        best = int(lags[np.argmax(ac[lags])])

    lag, height = _refine_peak(ac, best)
    if height <= 0 or lag <= 0:
        return _fallback(min_bpm, max_bpm)

    bpm = float(np.clip(60.0 * fps / lag, min_bpm, max_bpm))
    confidence = _confidence(ac, lag, height)

    phase_frame = estimate_phase(env, lag)
    phase = float(librosa.frames_to_time(phase_frame, sr=sr, hop_length=hop_length))

    curve = tuple(
        TempoCurvePoint(
            time=round(float(t), 3),
            bpm=round(60.0 * fps / float(k), 2),
            confidence=round(float(s[int(k) - lo]), 3),
        )
        for t, k, s in zip(centres, path, scores)
    )

    alternatives = []
    for k in sorted(_local_maxima(ac, lo, hi), key=lambda k: -ac[k]):
        if abs(k - best) <= 1:
            continue
        alt_lag, alt_height = _refine_peak(ac, k)
        alternatives.append((round(60.0 * fps / alt_lag, 2), round(_confidence(ac, alt_lag, alt_height), 3)))
        if len(alternatives) >= MAX_ALTERNATIVES:
            break

    logger.debug(f"  Tempo {bpm:.1f} BPM (confidence {confidence:.2f}, phase {phase:.3f}s)")
    return Tempo(
        bpm=round(bpm, 2),
        confidence=round(confidence, 3),
        phase=phase,
        time_signature=estimate_time_signature(env, lag, phase_frame),
        tempo_curve=curve,
        alternatives=tuple(alternatives),
    )
