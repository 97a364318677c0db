"""Per-conversation bookkeeping on the executor.

The initiator owns the conversation id. The executor maps it to the id it
passes to the backend CLI; that backend id rotates on clear and compact so
the next turn starts from a fresh backend context.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional


@dataclass
class SessionRecord:
    session_id: str
    backend_session_id: str
    initialized: bool = False
    active: bool = True
    pending_summary: Optional[str] = None
    compact_notified: bool = False


class SessionRegistry:
    def __init__(self):
        self._sessions: Dict[str, SessionRecord] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._sessions.get(session_id)

    def ensure(self, session_id: str) -> SessionRecord:
        rec = self._sessions.get(session_id)
        if rec is None:
            # the initiator's id is a fresh UUID, usable as the first backend id
            rec = SessionRecord(session_id=session_id, backend_session_id=session_id)
            self._sessions[session_id] = rec
        rec.active = True
        return rec

    def mark_initialized(self, session_id: str):
        rec = self._sessions.get(session_id)
        if rec is not None:
            rec.initialized = True

    def _rotate(self, rec: SessionRecord):
        rec.backend_session_id = str(uuid.uuid4())
        rec.initialized = False
        rec.compact_notified = False

    def clear(self, session_id: str) -> Optional[SessionRecord]:
        rec = self._sessions.get(session_id)
        if rec is None:
            return None
        self._rotate(rec)
        rec.pending_summary = None
        rec.active = False
        return rec

    def compact(self, session_id: str, summary: str) -> SessionRecord:
        rec = self.ensure(session_id)
        self._rotate(rec)
        rec.pending_summary = summary
        return rec

    def end(self, session_id: str) -> Optional[SessionRecord]:
        return self._sessions.pop(session_id, None)

    def take_summary(self, session_id: str) -> Optional[str]:
        rec = self._sessions.get(session_id)
        if rec is None:
            return None
        summary, rec.pending_summary = rec.pending_summary, None
        return summary

    def active_ids(self) -> List[str]:
        return [sid for sid, rec in self._sessions.items() if rec.active and rec.initialized]
