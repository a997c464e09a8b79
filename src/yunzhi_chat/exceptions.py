"""Domain exception hierarchy for the Yun-Zhi chat client."""

from __future__ import annotations


class YunZhiError(RuntimeError):
    """Base class for all domain-level chat errors."""


class ProviderError(YunZhiError):
    """Base class for completion provider failures."""


class ProviderConnectionError(ProviderError):
    """Raised when the completion provider cannot be reached mid-turn."""


class ModelNotFoundError(ProviderError):
    """Raised when the selected model is unavailable."""


class ProviderStreamingError(ProviderError):
    """Raised when streaming fails for non-connectivity reasons."""


class StoreError(YunZhiError):
    """Base class for document store failures."""


class StoreWriteError(StoreError):
    """Raised when a session snapshot could not be written."""


class StoreReadError(StoreError):
    """Raised when a session snapshot could not be read."""


class SessionNotFoundError(StoreError):
    """Raised when a session id has no remote record."""


class AttachmentReadError(YunZhiError):
    """Raised when a selected file cannot be read or encoded."""


class AttachmentTooLargeError(AttachmentReadError):
    """Raised when a selected file exceeds the configured size cap."""


class PlaybackError(YunZhiError):
    """Base class for speech playback failures."""


class SpeechSynthesisError(PlaybackError):
    """Raised when the speech-synthesis provider fails."""


class AudioDecodeError(PlaybackError):
    """Raised when returned audio cannot be decoded or scheduled."""


class TimelineError(YunZhiError):
    """Raised when a timeline mutation would break ordering invariants."""


class InvalidTransitionError(YunZhiError):
    """Raised when a state machine is asked for an undeclared transition."""


class ConfigValidationError(YunZhiError):
    """Raised when configuration cannot be validated safely."""
