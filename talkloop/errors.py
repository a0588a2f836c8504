"""Fatal error taxonomy for the talk loop.

Anything raised from here aborts the process from ``voice_loop.main``; soft
outcomes (empty transcripts, missing cache file, rejected wake phrase) never
raise.
"""

from __future__ import annotations


class TalkLoopError(Exception):
    """Base class for unrecoverable talk loop failures."""


class ConfigError(TalkLoopError):
    """Raised when configuration is invalid."""


class EngineLoadError(TalkLoopError):
    """Raised when the generation or recognition model cannot be loaded."""


class DecodeError(TalkLoopError):
    """Raised when the generation engine fails a forward step."""


class SessionCacheError(TalkLoopError):
    """Raised when an existing session file cannot be read or written."""


class AudioInitError(TalkLoopError):
    """Raised when the capture device cannot be opened."""


class ContextOverflowError(TalkLoopError):
    """Raised when the initial prompt alone does not fit the context."""
