from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import PersistenceError
from .models import SessionSummary, StoredMessage

logger = logging.getLogger("chatcart.session_store")

NEW_SESSION_TITLE = "New Chat"
TITLE_MAX_CHARS = 48


class SessionStore:
    """JSON-file store for the message log, session summaries, cart snapshots and tickets."""

    def __init__(self, path: Optional[Path] = None, max_sessions: Optional[int] = None) -> None:
        """Purpose: Open the store and restore whatever the backing file holds.
        Inputs/Outputs: Inputs are the JSON file path (None keeps everything in
            memory) and an optional cap on retained sessions; no return value.
        Side Effects / State: Reads the file once; pruning on load rewrites it.
        Dependencies: _restore; StoredMessage and SessionSummary for validation.
        Failure Modes: An undecodable file is logged and the store starts empty.
        If Removed: Carts, transcripts and tickets vanish on restart.
        Testing Notes: Reopen a store on the same file and compare contents.
        """
        self._path = path
        self._max_sessions = max_sessions
        self._lock = threading.RLock()
        self._messages: Dict[str, List[StoredMessage]] = {}
        self._summaries: Dict[str, SessionSummary] = {}
        self._carts: Dict[str, Dict[str, Any]] = {}
        self._tickets: Dict[str, Dict[str, Any]] = {}
        self._restore()

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring unreadable session file %s: %s", self._path, exc)
            return
        self._messages = {
            session_id: [StoredMessage(**item) for item in items]
            for session_id, items in raw.get("sessions", {}).items()
        }
        self._summaries = {
            session_id: SessionSummary(**item) for session_id, item in raw.get("summaries", {}).items()
        }
        self._carts = {
            session_id: snapshot
            for session_id, snapshot in (raw.get("carts") or {}).items()
            if isinstance(snapshot, dict)
        }
        self._tickets = dict(raw.get("tickets") or {})
        if self._prune_sessions():
            self._flush()

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "sessions": {
                session_id: [item.model_dump() for item in items] for session_id, items in self._messages.items()
            },
            "summaries": {session_id: item.model_dump() for session_id, item in self._summaries.items()},
            "carts": self._carts,
            "tickets": self._tickets,
        }

    def _flush(self) -> None:
        """Purpose: Write the full store to its JSON file.
        Inputs/Outputs: No inputs; no return value.
        Side Effects / State: Creates the parent directory and overwrites the file.
        Dependencies: _snapshot, json.dumps.
        Failure Modes: Any OSError becomes PersistenceError; memory keeps the new
            state, so the current reply is still correct.
        If Removed: Writes never reach disk.
        Testing Notes: Use a regular file as the parent directory to force a failure.
        """
        if self._path is None:
            return
        body = json.dumps(self._snapshot(), ensure_ascii=False, indent=2)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(body, encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"cannot write {self._path}: {exc}") from exc

    def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Purpose: Log one chat turn for a session.
        Inputs/Outputs: Inputs are the session, role ("user" or "assistant"), the
            text and optional metadata such as the routed intent.
        Side Effects / State: Appends to the log, titles new sessions with the
            first line of their first message, and flushes to disk.
        Dependencies: _prune_sessions, _flush.
        Failure Modes: PersistenceError when the file cannot be written.
        If Removed: Transcripts and the session list stay empty.
        Testing Notes: The session title is the first line, cut to 48 characters.
        """
        now = time.time()
        with self._lock:
            self._messages.setdefault(session_id, []).append(
                StoredMessage(role=role, content=content, timestamp=now, meta=meta)
            )
            summary = self._summaries.get(session_id)
            if summary is None:
                first_line = next(iter(content.strip().splitlines()), "")
                self._summaries[session_id] = SessionSummary(
                    session_id=session_id,
                    title=first_line[:TITLE_MAX_CHARS] or NEW_SESSION_TITLE,
                    updated_at=now,
                )
            else:
                summary.updated_at = now
            self._prune_sessions()
            self._flush()

    def list_sessions(self) -> List[SessionSummary]:
        """Session summaries, most recently active first."""
        with self._lock:
            return sorted(self._summaries.values(), key=_recency, reverse=True)

    def get_messages(self, session_id: str) -> List[StoredMessage]:
        with self._lock:
            return list(self._messages.get(session_id, ()))

    def load_cart(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            snapshot = self._carts.get(session_id)
            # Round-trip through JSON so callers cannot mutate the stored snapshot.
            return None if snapshot is None else json.loads(json.dumps(snapshot))

    def save_cart(self, session_id: str, snapshot: Dict[str, Any]) -> None:
        """Replace the session's cart snapshot (last write wins) and flush."""
        with self._lock:
            self._carts[session_id] = snapshot
            self._mark_active(session_id)
            self._flush()

    def delete_cart(self, session_id: str) -> None:
        with self._lock:
            if self._carts.pop(session_id, None) is not None:
                self._flush()

    def create_ticket(self, record: Dict[str, Any]) -> str:
        """Purpose: File a support ticket.
        Inputs/Outputs: Input is the ticket record; output is its new uuid4 id.
        Side Effects / State: Stores the record with id and created_at, then flushes.
        Dependencies: uuid, _flush.
        Failure Modes: PersistenceError when the file cannot be written; the
            pipeline then answers with a locally generated id.
        If Removed: Escalations leave no trace for the support team.
        Testing Notes: Two tickets get distinct ids.
        """
        ticket_id = str(uuid.uuid4())
        with self._lock:
            self._tickets[ticket_id] = dict(record, id=ticket_id, created_at=time.time())
            self._flush()
        return ticket_id

    def get_ticket(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            ticket = self._tickets.get(ticket_id)
            return None if ticket is None else dict(ticket)

    def _mark_active(self, session_id: str) -> None:
        # Cart-only sessions still appear in the session list.
        summary = self._summaries.get(session_id)
        if summary is not None:
            summary.updated_at = time.time()
            return
        self._summaries[session_id] = SessionSummary(
            session_id=session_id, title=NEW_SESSION_TITLE, updated_at=time.time()
        )
        self._prune_sessions()

    def _prune_sessions(self) -> bool:
        """Purpose: Keep at most max_sessions sessions, dropping the least recently active.
        Inputs/Outputs: No inputs; returns True when something was dropped.
        Side Effects / State: Removes the log, summary and cart of each dropped
            session; tickets are never pruned.
        Dependencies: SessionSummary.updated_at.
        Failure Modes: None; no cap or a non-positive cap disables pruning.
        If Removed: The session file grows without bound.
        Testing Notes: With max_sessions=2, a third session evicts the oldest one.
        """
        cap = self._max_sessions
        if not cap or cap <= 0 or len(self._summaries) <= cap:
            return False
        ranked = sorted(self._summaries.values(), key=_recency, reverse=True)
        stale = [summary.session_id for summary in ranked[cap:]]
        for session_id in stale:
            del self._summaries[session_id]
            self._messages.pop(session_id, None)
            self._carts.pop(session_id, None)
        logger.info("Pruned %d stale sessions", len(stale))
        return True


def _recency(summary: SessionSummary) -> float:
    return summary.updated_at
