"""Beat parsing orchestrator - detection, selection and plugins in one call."""

import dataclasses
import logging
import threading
import time
from typing import Iterable

import numpy as np

from beatparser.analysis.hybrid import HybridDetector
from beatparser.analysis.models import Beat, DetectionConfig, ParseResult, SelectionConfig
from beatparser.analysis.selector import BeatSelector, to_beat
from beatparser.audio.loader import load_audio
from beatparser.audio.preprocessing import preprocess, validate_signal
from beatparser.config import Settings, settings as default_settings
from beatparser.errors import ConfigurationError, DetectionCancelled, InputError, PluginError
from beatparser.plugins import BeatParserPlugin

logger = logging.getLogger(__name__)


class BeatParser:
    """Parses audio into an exact number of beats.

    The parser holds only immutable configuration and the plugin list, so a
    single instance can serve several threads as long as the plugin list is
    not changed while calls are in flight.
    """

    def __init__(
        self,
        config: DetectionConfig | None = None,
        selection: SelectionConfig | None = None,
        plugins: Iterable[BeatParserPlugin] = (),
        settings: Settings | None = None,
    ):
        self.settings = settings or default_settings
        self.config = (config or DetectionConfig.from_settings(self.settings)).validate()
        self.selection = (selection or SelectionConfig.from_settings(self.settings)).validate()
        self.plugins: list[BeatParserPlugin] = []
        for plugin in plugins:
            self.add_plugin(plugin)

    def add_plugin(self, plugin: BeatParserPlugin) -> None:
        if not isinstance(plugin, BeatParserPlugin):
            raise ConfigurationError(f"{plugin!r} is not a BeatParserPlugin")
        if any(p.name == plugin.name for p in self.plugins):
            raise ConfigurationError(f"Plugin '{plugin.name}' is already registered")
        self.plugins.append(plugin)
        logger.info(f"Registered plugin {plugin.name} v{plugin.version}")

    def remove_plugin(self, name: str) -> bool:
        before = len(self.plugins)
        self.plugins = [p for p in self.plugins if p.name != name]
        return len(self.plugins) < before

    def parse_file(
        self,
        file_path: str,
        target_count: int | None = None,
        strategy: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ParseResult:
        """Load an audio file and parse it."""
        audio, sr = load_audio(file_path, sr=self.config.sample_rate)
        return self.parse_audio(audio, sr, target_count=target_count, strategy=strategy, cancel_event=cancel_event)

    def parse_audio(
        self,
        audio: np.ndarray,
        sample_rate: int | None = None,
        target_count: int | None = None,
        strategy: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ParseResult:
        """Detect beats in pre-loaded audio and select ``target_count`` of them."""
        started = time.perf_counter()
        config = self.config
        if sample_rate is not None and sample_rate != config.sample_rate:
            config = dataclasses.replace(config, sample_rate=int(sample_rate)).validate()
        sr = config.sample_rate
        count = target_count if target_count is not None else self.settings.target_count
        strategy = strategy or self.selection.strategy
        if isinstance(count, bool) or not isinstance(count, (int, np.integer)) or count < 1:
            raise ConfigurationError(f"target_count must be a positive integer, got {count!r}")
        dataclasses.replace(self.selection, strategy=strategy).validate()

        audio = validate_signal(audio, min_length=config.frame_size)
        duration = len(audio) / sr
        logger.info(f"Parsing {duration:.1f}s of audio at {sr}Hz into {count} beats ({strategy})")

        # Step 1: Preprocessing
        logger.info("Step 1: Preprocessing")
        audio = preprocess(
            audio,
            sr,
            normalize_audio=self.settings.enable_normalization,
            filter_audio=self.settings.enable_filtering,
            cutoff=self.settings.filter_cutoff,
        )

        # Step 2: Audio plugins
        if self.plugins:
            logger.info("Step 2: Audio plugins")
            audio = self._apply_audio_plugins(audio, sr, config.frame_size)

        # Step 3: Detection
        logger.info("Step 3: Hybrid detection")
        analysis = HybridDetector(config).analyze(audio, cancel_event=cancel_event)

        # Step 4: Selection
        if cancel_event is not None and cancel_event.is_set():
            raise DetectionCancelled("selection")
        logger.info("Step 4: Beat selection")
        selection = BeatSelector(self.selection).select(
            [to_beat(c) for c in analysis.candidates],
            count,
            strategy=strategy,
            duration=duration,
            tempo=analysis.tempo,
            audio=audio,
            sample_rate=sr,
        )

        # Step 5: Beat plugins
        beats = selection.beats
        if self.plugins:
            logger.info("Step 5: Beat plugins")
            beats = self._apply_beat_plugins(beats)

        elapsed = time.perf_counter() - started
        logger.info(f"Parsed {len(beats)} beats in {elapsed:.2f}s")
        return ParseResult(
            beats=beats,
            tempo=analysis.tempo,
            duration=duration,
            candidate_count=len(analysis.candidates),
            genre=analysis.genre.name if analysis.genre else None,
            selection=selection,
            metadata={
                "processing_time": round(elapsed, 4),
                "samples_processed": len(audio),
                "sample_rate": sr,
                "strategy": selection.strategy_used,
                "plugins_used": [p.name for p in self.plugins],
            },
        )

    def _apply_audio_plugins(self, audio: np.ndarray, sr: int, min_length: int) -> np.ndarray:
        for plugin in self.plugins:
            try:
                audio = plugin.process_audio(audio, sr)
            except Exception as e:
                raise PluginError(plugin.name, "process_audio", str(e) or type(e).__name__) from e
            try:
                audio = validate_signal(audio, min_length=min_length)
            except InputError as e:
                raise PluginError(plugin.name, "process_audio", f"returned unusable audio: {e}") from e
        return audio

    def _apply_beat_plugins(self, beats: list[Beat]) -> list[Beat]:
        for plugin in self.plugins:
            try:
                beats = plugin.process_beats(list(beats))
            except Exception as e:
                raise PluginError(plugin.name, "process_beats", str(e) or type(e).__name__) from e
            if not isinstance(beats, list) or not all(isinstance(b, Beat) for b in beats):
                raise PluginError(plugin.name, "process_beats", "must return a list of Beat")
        return beats
