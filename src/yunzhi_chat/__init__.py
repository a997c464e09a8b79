"""Top-level package for yunzhi-chat."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .app import ConsoleApp
    from .chat import OllamaCompletionProvider
    from .config import ensure_config_dir, load_config
    from .engine import ChatEngine
    from .exceptions import (
        ConfigValidationError,
        ProviderError,
        StoreError,
        YunZhiError,
    )
    from .models import Message, Session, SessionSummary
    from .persistence import InMemoryDocumentStore, MongoDocumentStore
    from .timeline import MessageTimeline

__all__ = [
    "ChatEngine",
    "ConfigValidationError",
    "ConsoleApp",
    "InMemoryDocumentStore",
    "Message",
    "MessageTimeline",
    "MongoDocumentStore",
    "OllamaCompletionProvider",
    "ProviderError",
    "Session",
    "SessionSummary",
    "StoreError",
    "YunZhiError",
    "ensure_config_dir",
    "load_config",
]


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``--version`` stays cheap."""
    if name == "ChatEngine":
        from .engine import ChatEngine

        return ChatEngine
    if name == "ConsoleApp":
        from .app import ConsoleApp

        return ConsoleApp
    if name == "OllamaCompletionProvider":
        from .chat import OllamaCompletionProvider

        return OllamaCompletionProvider
    if name in {"ensure_config_dir", "load_config"}:
        from .config import ensure_config_dir, load_config

        return {"ensure_config_dir": ensure_config_dir, "load_config": load_config}[name]
    if name in {"ConfigValidationError", "ProviderError", "StoreError", "YunZhiError"}:
        from . import exceptions

        return getattr(exceptions, name)
    if name in {"Message", "Session", "SessionSummary"}:
        from . import models

        return getattr(models, name)
    if name in {"InMemoryDocumentStore", "MongoDocumentStore"}:
        from . import persistence

        return getattr(persistence, name)
    if name == "MessageTimeline":
        from .timeline import MessageTimeline

        return MessageTimeline
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
