"""Chat message synchronization and presence engine."""

from .config import SyncConfig, load_sync_config_from_env
from .directory import ConversationDirectory
from .errors import (
    InvalidPayload,
    MediaUploadFailed,
    NotFound,
    PermissionDenied,
    StoreError,
    StoreUnavailable,
)
from .message_log import MessageLog
from .models import ChangeEvent, Conversation, EventKind, Message, PresenceRecord, Profile
from .presence import PresenceHeartbeat, PresenceState, PresenceTracker
from .read_state import ReadStateReconciler, unread_count
from .remote_store import RemoteStore
from .server import main, simulate
from .session import ChatSession, InboxSession
from .store import DataStore, InMemoryStore

__all__ = [
    "ChangeEvent",
    "ChatSession",
    "Conversation",
    "ConversationDirectory",
    "DataStore",
    "EventKind",
    "InMemoryStore",
    "InboxSession",
    "InvalidPayload",
    "MediaUploadFailed",
    "Message",
    "MessageLog",
    "NotFound",
    "PermissionDenied",
    "PresenceHeartbeat",
    "PresenceRecord",
    "PresenceState",
    "PresenceTracker",
    "Profile",
    "ReadStateReconciler",
    "RemoteStore",
    "StoreError",
    "StoreUnavailable",
    "SyncConfig",
    "load_sync_config_from_env",
    "main",
    "simulate",
    "unread_count",
]
