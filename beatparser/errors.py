"""Error types raised by the beat parsing pipeline.

Every error is terminal for the call that raised it. Nothing is retried
internally; callers decide whether to try again.
"""


class BeatParserError(Exception):
    """Base class for all pipeline failures."""


class InputError(BeatParserError, ValueError):
    """The audio signal is empty, too short or contains non-finite samples."""


class ConfigurationError(BeatParserError, ValueError):
    """Contradictory or out-of-range configuration values."""


class AlgorithmError(BeatParserError):
    """An internal detection stage failed or produced non-finite output."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"{stage}: {message}")


class PluginError(BeatParserError):
    """A plugin hook raised while processing audio or beats."""

    def __init__(self, plugin: str, hook: str, message: str):
        self.plugin = plugin
        self.hook = hook
        super().__init__(f"plugin '{plugin}' failed in {hook}: {message}")


class DetectionCancelled(BeatParserError):
    """The caller signalled cancellation between two pipeline stages."""

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"detection cancelled before {stage}")
