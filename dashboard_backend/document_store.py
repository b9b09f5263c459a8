from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Tuple

from .documents import StructuredDocument

logger = logging.getLogger("dashboard.documents")


class DocumentStore:
    """Per-conversation map of uploaded filename -> StructuredDocument."""

    def __init__(self) -> None:
        """Purpose: Initialize an empty in-process document session store.
        Inputs/Outputs: No inputs; no return value.
        Side Effects / State: Creates the conversation map and its guard lock.
        Dependencies: None.
        Failure Modes: None.
        If Removed: Charts and document analysis cannot see uploaded files.
        Testing Notes: Put two files in one conversation and list both filenames.
        """
        # One lock guards the whole map; operations are short dict updates.
        self._lock = threading.Lock()
        self._documents: Dict[str, Dict[str, StructuredDocument]] = {}

    def put(self, conversation_id: str, filename: str, document: StructuredDocument) -> None:
        """Purpose: Add (or replace by filename) a document in a conversation.
        Inputs/Outputs: Inputs are conversation id, filename, document; no return value.
        Side Effects / State: Augments the conversation's document map; other files stay.
        Dependencies: None.
        Failure Modes: None.
        If Removed: Uploads would never become visible to the tools.
        Testing Notes: Upload a.csv then b.csv and verify both resolve.
        """
        # Augment rather than replace the conversation's document set.
        with self._lock:
            self._documents.setdefault(conversation_id, {})[filename] = document
        logger.info(
            "conversation=%s document=%s fields=%d rows=%d",
            conversation_id,
            filename,
            len(document.fields),
            document.row_count,
        )

    def get(self, conversation_id: str, filename: Optional[str]) -> Optional[Tuple[str, StructuredDocument]]:
        """Resolve a filename (exact, then case-insensitive) to ``(stored_name, document)``."""
        if not filename:
            return None
        with self._lock:
            documents = dict(self._documents.get(conversation_id, {}))
        if filename in documents:
            return filename, documents[filename]
        wanted = filename.strip().lower()
        for stored_name, document in documents.items():
            if stored_name.lower() == wanted:
                return stored_name, document
        return None

    def filenames(self, conversation_id: str) -> List[str]:
        with self._lock:
            return list(self._documents.get(conversation_id, {}).keys())

    def clear(self, conversation_id: str) -> None:
        with self._lock:
            self._documents.pop(conversation_id, None)
