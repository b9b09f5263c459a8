from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from .models import ChatMessage, MessagePart

logger = logging.getLogger("dashboard.history")

DEFAULT_HISTORY_LIMIT = 20


def make_message(role: str, text: str, timestamp: Optional[int] = None) -> ChatMessage:
    """Build a single-part ChatMessage stamped with epoch milliseconds."""
    return ChatMessage(
        role=role,
        parts=[MessagePart(text=text or "")],
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
    )


class HistoryStore:
    """Bounded, append-only conversation log keyed by conversation id."""

    def __init__(self, path: Optional[Path] = None, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        """Purpose: Initialize the history store and hydrate from disk if available.
        Inputs/Outputs: Inputs are an optional JSON file path and the per-conversation cap.
        Side Effects / State: Loads persisted conversations into memory.
        Dependencies: Calls _load; relies on the ChatMessage model.
        Failure Modes: JSON decode errors leave an empty cache; invalid messages are skipped.
        If Removed: The model loses conversational context and history endpoints break.
        Testing Notes: Persist, build a second store on the same path, and compare histories.
        """
        # Keep configuration, per-conversation locks, and preload persisted history.
        if limit <= 0:
            raise ValueError("history limit must be positive")
        self._path = path
        self._limit = limit
        self._conversations: Dict[str, List[ChatMessage]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._file_lock = threading.Lock()
        self._load()

    @property
    def limit(self) -> int:
        return self._limit

    def _lock_for(self, conversation_id: str) -> threading.Lock:
        # Lazily create one lock per conversation; the guard keeps creation race-free.
        with self._locks_guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[conversation_id] = lock
            return lock

    def _load(self) -> None:
        """Purpose: Load persisted conversation history from disk into memory.
        Inputs/Outputs: Reads from self._path; no return value.
        Side Effects / State: Populates _conversations, truncated to the limit.
        Dependencies: Uses json.loads and ChatMessage validation.
        Failure Modes: Missing file or JSONDecodeError results in an empty cache; messages
            that fail ChatMessage validation are skipped with a warning.
        If Removed: History is lost on every restart.
        Testing Notes: Corrupt JSON should not crash; valid JSON should hydrate the cache.
        """
        # Read and decode persisted JSON if present.
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("history file %s is not valid JSON; starting empty", self._path)
            return
        conversations = data.get("conversations", {}) if isinstance(data, dict) else {}
        for conversation_id, messages in conversations.items():
            if not isinstance(messages, list):
                continue
            loaded: List[ChatMessage] = []
            for message in messages:
                if not isinstance(message, dict):
                    continue
                try:
                    loaded.append(ChatMessage(**message))
                except ValidationError as exc:
                    logger.warning(
                        "history file %s: skipping invalid message in conversation=%s (%d errors)",
                        self._path,
                        conversation_id,
                        exc.error_count(),
                    )
            self._conversations[conversation_id] = loaded[-self._limit :]

    def _persist(self) -> None:
        """Purpose: Persist in-memory conversations to disk.
        Inputs/Outputs: Writes to self._path; no return value.
        Side Effects / State: Rewrites the JSON file with every conversation.
        Dependencies: Uses json.dumps and Path.write_text.
        Failure Modes: IO errors raise exceptions (not caught here).
        If Removed: Appends are never saved across restarts.
        Testing Notes: Ensure the file is created and matches the ChatMessage shape.
        """
        # Serialize a snapshot of the cache; no-op for memory-only stores.
        if not self._path:
            return
        with self._file_lock:
            snapshot = {
                conversation_id: [message.model_dump() for message in messages]
                for conversation_id, messages in list(self._conversations.items())
            }
            payload = {"conversations": snapshot}
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")

    def get(self, conversation_id: str) -> List[ChatMessage]:
        """Purpose: Retrieve the stored messages of a conversation, oldest first.
        Inputs/Outputs: Input is conversation_id; output is a copy of the message list.
        Side Effects / State: None.
        Dependencies: Uses the in-memory cache.
        Failure Modes: Unknown conversation returns an empty list.
        If Removed: Prompt composition and the history endpoint have nothing to read.
        Testing Notes: Query a known conversation and verify order.
        """
        # Copy under the conversation lock so a concurrent append is never half-visible.
        with self._lock_for(conversation_id):
            return list(self._conversations.get(conversation_id, []))

    def append(self, conversation_id: str, messages: Iterable[ChatMessage]) -> None:
        """Purpose: Append messages (a user/model pair) to a conversation as one unit.
        Inputs/Outputs: Inputs are conversation_id and messages; no return value.
        Side Effects / State: Extends the log, drops the oldest entries past the limit, persists.
        Dependencies: Uses the per-conversation lock and _persist.
        Failure Modes: Persist can raise IO errors.
        If Removed: Follow-up commands lose earlier context.
        Testing Notes: Append 25 pairs and verify only the newest 20 messages remain.
        """
        # Concurrent requests on one conversation serialize here; order is by lock acquisition.
        batch = list(messages)
        with self._lock_for(conversation_id):
            existing = self._conversations.get(conversation_id, [])
            self._conversations[conversation_id] = (existing + batch)[-self._limit :]
        self._persist()

    def clear(self, conversation_id: str) -> None:
        """Drop a conversation's history entirely."""
        with self._lock_for(conversation_id):
            self._conversations.pop(conversation_id, None)
        self._persist()

    def list_conversations(self) -> List[str]:
        return list(self._conversations.keys())
