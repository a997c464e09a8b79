"""Manager classes for the separate concerns of a chat session.

Available managers:
- AttachmentManager: Staged file encoding and preview handle ownership
- ConversationManager: Remote session snapshots and the live session list
- SpeechManager: Text-to-speech requests and exclusive playback
- StreamManager: Streaming response handling
"""

from __future__ import annotations

from .attachment import AttachmentManager
from .conversation import ConversationManager
from .speech import SpeechManager
from .stream import StreamManager

__all__ = [
    "AttachmentManager",
    "ConversationManager",
    "SpeechManager",
    "StreamManager",
]
