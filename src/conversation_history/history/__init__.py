from conversation_history.history.cache import MessageCache
from conversation_history.history.checkpoints import CheckpointAdapter
from conversation_history.history.errors import HistoryError, SessionNotFoundError
from conversation_history.history.manager import ConversationHistoryManager
from conversation_history.history.models import (
    SUMMARY_MARKER,
    ConversationMessage,
    MessageBody,
    SessionMetadata,
    is_summary_message,
)
from conversation_history.history.pruning import prune_sessions
from conversation_history.history.recovery import ContextRecoveryEngine, find_last_summary_index
from conversation_history.history.store import SessionStore

__all__ = [
    "SUMMARY_MARKER",
    "CheckpointAdapter",
    "ContextRecoveryEngine",
    "ConversationHistoryManager",
    "ConversationMessage",
    "HistoryError",
    "MessageBody",
    "MessageCache",
    "SessionMetadata",
    "SessionNotFoundError",
    "SessionStore",
    "find_last_summary_index",
    "is_summary_message",
    "prune_sessions",
]
