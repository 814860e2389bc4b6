"""Beat selection - resize a candidate list to an exact number of beats.

Strategies pick genuine candidates first. When there are not enough of them
the remaining beats are synthesized on the tempo grid, then on an even grid
over the signal, and as a last resort by snapping to an even grid, which
always yields the requested count.
"""

import bisect
import logging
import math
from typing import Sequence, Union

import numpy as np

from beatparser.analysis.features import local_energy
from beatparser.analysis.models import (
    STRATEGIES,
    Beat,
    BeatCandidate,
    SelectionConfig,
    SelectionQuality,
    SelectionResult,
    Tempo,
)
from beatparser.errors import ConfigurationError

logger = logging.getLogger(__name__)

STRATEGY_DESCRIPTIONS = {
    "energy": "Select beats with the highest strength and confidence",
    "regular": "Distribute beats evenly across the signal duration",
    "musical": "Select beats by energy, beat-grid alignment and musical context",
    "adaptive": "Pick a strategy from the ratio of candidates to requested beats",
}

ENERGY_RATIO = 2.0  # candidates per requested beat above which adaptive prunes by energy
REGULAR_RATIO = 0.5  # ... and below which it fills an even grid
PROMINENCE_WINDOW = 1.0  # seconds
SYNTHETIC_STRENGTH_RATIO = 0.7
DEFAULT_SYNTHETIC_CONFIDENCE = 0.5
_EPS = 1e-9

BeatLike = Union[Beat, BeatCandidate]


def available_strategies() -> dict[str, str]:
    return dict(STRATEGY_DESCRIPTIONS)


def to_beat(candidate: BeatLike) -> Beat:
    """Convert a detector candidate into an output beat, keeping its source."""
    if isinstance(candidate, Beat):
        return candidate
    metadata = dict(candidate.metadata)
    metadata["source"] = candidate.source
    return Beat(
        timestamp=float(candidate.timestamp),
        confidence=float(candidate.confidence),
        strength=float(candidate.strength),
        metadata=metadata,
    )


def analyze_selection(beats: Sequence[Beat], duration: float | None = None) -> SelectionQuality:
    """Coverage, strength diversity and spacing regularity of a selection."""
    if not beats:
        return SelectionQuality(coverage=0.0, diversity=0.0, spacing=0.0, overall=0.0)

    times = np.sort(np.array([b.timestamp for b in beats]))
    coverage = 1.0
    if duration and duration > 0:
        coverage = float(min(1.0, (times[-1] - times[0]) / duration))

    strengths = np.array([b.strength for b in beats])
    top = float(strengths.max())
    diversity = 1.0 - (top - float(strengths.min())) / top if top > 0 else 0.0

    spacing = 1.0
    if len(times) > 1:
        intervals = np.diff(times)
        mean_interval = float(intervals.mean())
        spacing = max(0.0, 1.0 - float(intervals.std()) / mean_interval) if mean_interval > 0 else 0.0

    overall = (coverage + diversity + spacing) / 3.0
    return SelectionQuality(
        coverage=round(coverage, 4),
        diversity=round(diversity, 4),
        spacing=round(spacing, 4),
        overall=round(overall, 4),
    )


class _Timeline:
    """Sorted beat times with a minimum-spacing check."""

    def __init__(self, min_spacing: float):
        self.min_spacing = min_spacing
        self.times: list[float] = []
        self.beats: list[Beat] = []

    def __len__(self) -> int:
        return len(self.times)

    def gap(self, t: float) -> float:
        """Distance from t to the closest beat already placed."""
        i = bisect.bisect_left(self.times, t)
        nearest = math.inf
        if i < len(self.times):
            nearest = self.times[i] - t
        if i > 0:
            nearest = min(nearest, t - self.times[i - 1])
        return nearest

    def fits(self, t: float) -> bool:
        return self.gap(t) >= self.min_spacing - _EPS

    def add(self, beat: Beat) -> None:
        i = bisect.bisect_left(self.times, beat.timestamp)
        self.times.insert(i, beat.timestamp)
        self.beats.insert(i, beat)


class BeatSelector:
    """Returns exactly the requested number of chronologically ordered beats."""

    def __init__(self, config: SelectionConfig | None = None):
        self.config = (config or SelectionConfig()).validate()

    def select(
        self,
        candidates: Sequence[BeatLike],
        count: int,
        strategy: str | None = None,
        duration: float | None = None,
        tempo: Tempo | None = None,
        audio: np.ndarray | None = None,
        sample_rate: int | None = None,
    ) -> SelectionResult:
        """Select ``count`` beats from the candidates.

        ``duration`` defaults to the audio length when audio is given, else
        to the latest candidate. If ``count`` exceeds what the minimum
        spacing allows over the duration, it is clamped and the result is
        flagged with ``clamped=True``.
        """
        strategy = strategy or self.config.strategy
        if strategy not in STRATEGIES:
            raise ConfigurationError(f"Unknown selection strategy '{strategy}'. Use: {', '.join(STRATEGIES)}")
        if isinstance(count, bool) or not isinstance(count, (int, np.integer)) or count < 1:
            raise ConfigurationError(f"count must be a positive integer, got {count!r}")
        if audio is not None and not sample_rate:
            raise ConfigurationError("sample_rate is required when audio is given")

        beats = sorted((to_beat(c) for c in candidates), key=lambda b: (b.timestamp, -b.confidence))
        duration = self._resolve_duration(duration, beats, audio, sample_rate)
        beats = [b for b in beats if 0.0 <= b.timestamp <= duration]

        spacing = self.config.min_spacing
        max_count = max(1, int(math.floor(duration / spacing + _EPS)))
        n = int(min(count, max_count))
        clamped = n < count
        if clamped:
            logger.warning(
                f"Requested {count} beats but {duration:.2f}s at {spacing * 1000:.0f}ms spacing "
                f"allows {max_count}; returning {n}"
            )

        resolved = self._resolve_strategy(strategy, len(beats), n)
        logger.debug(f"  Selecting {n} of {len(beats)} candidates ({strategy} -> {resolved})")

        if resolved == "regular":
            selected = self._regular(beats, n, duration)
        else:
            scores = self._scores(resolved, beats, n, duration, tempo)
            selected = self._pick(beats, scores, n)
            if len(selected) < n:
                selected = self._fill(selected, n, duration, tempo)

        selected = self._assign_synthetic_confidence(selected, audio, sample_rate)
        synthesized = sum(1 for b in selected if b.interpolated)
        if synthesized:
            logger.info(f"  Synthesized {synthesized} of {n} beats")

        return SelectionResult(
            beats=selected,
            requested_count=int(count),
            clamped=clamped,
            strategy_used=resolved,
            synthesized=synthesized,
            quality=analyze_selection(selected, duration),
        )

    @staticmethod
    def _resolve_duration(duration, beats, audio, sample_rate) -> float:
        if duration is not None:
            if duration < 0 or not math.isfinite(duration):
                raise ConfigurationError(f"duration must be a finite non-negative number, got {duration}")
            return float(duration)
        if audio is not None:
            return len(audio) / sample_rate
        if beats:
            return max(0.0, beats[-1].timestamp)
        raise ConfigurationError("Cannot select beats without candidates, audio or a duration")

    @staticmethod
    def _resolve_strategy(strategy: str, available: int, n: int) -> str:
        if strategy != "adaptive":
            return strategy
        ratio = available / n
        if ratio >= ENERGY_RATIO:
            return "energy"
        if ratio <= REGULAR_RATIO:
            return "regular"
        return "adaptive"

    # -- scoring ------------------------------------------------------------

    def _scores(self, strategy: str, beats: list[Beat], n: int, duration: float, tempo: Tempo | None) -> list[float]:
        if not beats:
            return []
        if strategy == "energy":
            return [b.strength * b.confidence for b in beats]

        cfg = self.config
        energy = self._energy_scores(beats)
        context = self._context_scores(beats, tempo)
        if strategy == "musical" and tempo is not None and tempo.bpm > 0:
            grid = [self._tempo_alignment(b.timestamp, tempo) for b in beats]
        else:
            grid = [self._slot_alignment(b.timestamp, n, duration) for b in beats]
        return [
            cfg.energy_weight * e + cfg.regularity_weight * g + cfg.musical_weight * c
            for e, g, c in zip(energy, grid, context)
        ]

    @staticmethod
    def _energy_scores(beats: list[Beat]) -> list[float]:
        max_strength = max(b.strength for b in beats)
        max_confidence = max(b.confidence for b in beats)
        scores = []
        for b in beats:
            s = b.strength / max_strength if max_strength > 0 else 0.0
            c = b.confidence / max_confidence if max_confidence > 0 else 0.0
            scores.append((s + c) / 2.0)
        return scores

    @staticmethod
    def _tempo_alignment(t: float, tempo: Tempo) -> float:
        interval = tempo.beat_interval
        offset = (t - tempo.phase) / interval
        distance = abs(offset - round(offset)) * interval
        return max(0.0, 1.0 - distance / (interval / 2.0))

    @staticmethod
    def _slot_alignment(t: float, n: int, duration: float) -> float:
        if duration <= 0:
            return 1.0
        slot = duration / n
        position = t / slot - 0.5
        distance = abs(position - round(position)) * slot
        return max(0.0, 1.0 - distance / (slot / 2.0))

    @staticmethod
    def _context_scores(beats: list[Beat], tempo: Tempo | None) -> list[float]:
        """Local prominence plus a bonus for downbeats when the meter is known."""
        times = np.array([b.timestamp for b in beats])
        strengths = np.array([b.strength for b in beats])
        signature = tempo.time_signature if tempo is not None and tempo.bpm > 0 else None

        scores = []
        for b in beats:
            nearby = strengths[np.abs(times - b.timestamp) <= PROMINENCE_WINDOW]
            top = float(nearby.max()) if len(nearby) else 0.0
            prominence = b.strength / top if top > 0 else 0.0
            score = 0.6 * prominence
            if signature is not None:
                beat_number = int(round((b.timestamp - tempo.phase) / tempo.beat_interval))
                if beat_number % signature.numerator == 0:
                    score += 0.4
                elif signature.numerator % 2 == 0 and beat_number % 2 == 0:
                    score += 0.2
            else:
                score += 0.2
            scores.append(min(1.0, score))
        return scores

    # -- picking and synthesis ------------------------------------------------

    def _pick(self, beats: list[Beat], scores: list[float], n: int) -> list[Beat]:
        """Greedy top-n by score, skipping beats too close to one already kept."""
        timeline = _Timeline(self.config.min_spacing)
        order = sorted(range(len(beats)), key=lambda i: (-scores[i], beats[i].timestamp))
        for i in order:
            if len(timeline) >= n:
                break
            if timeline.fits(beats[i].timestamp):
                timeline.add(beats[i])
        return timeline.beats

    def _fill(self, selected: list[Beat], n: int, duration: float, tempo: Tempo | None) -> list[Beat]:
        timeline = _Timeline(self.config.min_spacing)
        for b in selected:
            timeline.add(b)

        grids = []
        if tempo is not None and tempo.bpm > 0 and tempo.confidence > 0:
            grids.append(("tempo", _tempo_grid(tempo, duration)))
        grids.append(("regular", _regular_grid(n, duration)))

        for name, points in grids:
            # Widest gaps first
            for t in sorted(points, key=lambda p: (-timeline.gap(p), p)):
                if len(timeline) >= n:
                    return timeline.beats
                if timeline.fits(t):
                    timeline.add(_synthetic_beat(t, name))
        if len(timeline) >= n:
            return timeline.beats

        # Kept beats block the grids; snap to an even grid instead
        genuine = [b for b in timeline.beats if not b.interpolated]
        return self._regular(genuine, n, duration)

    def _regular(self, beats: list[Beat], n: int, duration: float) -> list[Beat]:
        """One beat per slot centre, snapped to the nearest candidate when close enough.

        The snap tolerance never exceeds half the slack between the slot width
        and the minimum spacing, so neighbouring beats always stay far enough apart.
        """
        slot = duration / n if n else 0.0
        tolerance = self.config.snap_tolerance if self.config.snap_tolerance is not None else slot / 4.0
        tolerance = max(0.0, min(tolerance, (slot - self.config.min_spacing) / 2.0))

        times = [b.timestamp for b in beats]
        selected = []
        for t in _regular_grid(n, duration):
            i = bisect.bisect_left(times, t)
            nearest = None
            for j in (i - 1, i):
                if 0 <= j < len(beats) and abs(times[j] - t) <= tolerance:
                    if nearest is None or abs(times[j] - t) < abs(times[nearest] - t):
                        nearest = j
            selected.append(beats[nearest] if nearest is not None else _synthetic_beat(t, "regular"))
        return selected

    def _assign_synthetic_confidence(
        self, beats: list[Beat], audio: np.ndarray | None, sample_rate: int | None,
    ) -> list[Beat]:
        """Confidence for synthesized beats from local energy, capped below genuine neighbours."""
        genuine = [i for i, b in enumerate(beats) if not b.interpolated]
        result = []
        for i, b in enumerate(beats):
            if not b.interpolated:
                result.append(b)
                continue
            if audio is not None:
                confidence = min(1.0, local_energy(audio, sample_rate, b.timestamp) * 5.0)
            else:
                confidence = DEFAULT_SYNTHETIC_CONFIDENCE

            k = bisect.bisect_left(genuine, i)
            neighbours = [beats[j] for j in (genuine[k - 1] if k > 0 else None,
                                             genuine[k] if k < len(genuine) else None) if j is not None]
            strength = confidence
            if neighbours:
                cap = self.config.synthetic_confidence_ratio * min(nb.confidence for nb in neighbours)
                confidence = min(confidence, cap)
                strength = SYNTHETIC_STRENGTH_RATIO * float(np.mean([nb.strength for nb in neighbours]))

            result.append(Beat(
                timestamp=b.timestamp,
                confidence=float(np.clip(confidence, 0.0, 1.0)),
                strength=float(np.clip(strength, 0.0, 1.0)),
                metadata=b.metadata,
            ))
        return result


def _regular_grid(n: int, duration: float) -> list[float]:
    slot = duration / n
    return [(i + 0.5) * slot for i in range(n)]


def _tempo_grid(tempo: Tempo, duration: float) -> list[float]:
    interval = tempo.beat_interval
    start = tempo.phase - math.floor(tempo.phase / interval) * interval
    return [float(t) for t in np.arange(start, duration + _EPS, interval) if t <= duration]


def _synthetic_beat(t: float, grid: str) -> Beat:
    return Beat(
        timestamp=float(t),
        confidence=0.0,
        strength=0.0,
        metadata={"interpolated": True, "grid": grid},
    )
