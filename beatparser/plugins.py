"""Plugin interface for pre- and post-processing around beat detection."""

import numpy as np

from beatparser.analysis.models import Beat


class BeatParserPlugin:
    """Base class for plugins.

    Subclasses override either hook. ``process_audio`` runs right before
    detection and ``process_beats`` right after selection. The defaults
    return their input unchanged.
    """

    name: str = "plugin"
    version: str = "0.0.0"

    def process_audio(self, audio: np.ndarray, sample_rate: int) -> np.ndarray:
        return audio

    def process_beats(self, beats: list[Beat]) -> list[Beat]:
        return beats

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, version={self.version!r})"
