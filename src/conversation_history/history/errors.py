from __future__ import annotations


class HistoryError(Exception):
    """Base class for conversation history failures."""


class SessionNotFoundError(HistoryError):
    def __init__(self, session_id: str):
        super().__init__(f"Session does not exist: {session_id}")
        self.session_id = session_id
