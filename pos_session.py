"""
POS session state machine on top of the remote `pos.session` model.

    opening_control -> opened -> closing_control -> closed

Only the user who owns a session may move it out of opened/closing_control;
for anyone else the guard answers PERMISSION_DENIED before any
state-changing request is made. Every state-changing call is followed by a
read-back and the outcome reports the state actually observed, which may
differ from the one asked for.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pos_errors import CoreError, ErrorKind

log = logging.getLogger(__name__)

SESSION_FIELDS = ["id", "name", "config_id", "user_id", "start_at", "stop_at", "state"]


class SessionState(str, Enum):
    OPENING_CONTROL = "opening_control"
    OPENED = "opened"
    CLOSING_CONTROL = "closing_control"
    CLOSED = "closed"


ACTIVE_STATES = [SessionState.OPENING_CONTROL.value, SessionState.OPENED.value,
                 SessionState.CLOSING_CONTROL.value]


def _m2o_id(value: Any) -> Optional[int]:
    if isinstance(value, (list, tuple)):
        value = value[0] if value else None
    return value if isinstance(value, int) and not isinstance(value, bool) else None


@dataclass
class POSSession:
    id: int
    owner_user_id: Optional[int]
    state: SessionState
    name: str = ""
    config_id: Optional[int] = None

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "POSSession":
        return cls(
            id=rec["id"],
            owner_user_id=_m2o_id(rec.get("user_id")),
            state=SessionState(rec.get("state") or SessionState.OPENING_CONTROL.value),
            name=rec.get("name") or f"Session {rec['id']}",
            config_id=_m2o_id(rec.get("config_id")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner_user_id": self.owner_user_id,
            "state": self.state.value,
            "config_id": self.config_id,
        }


@dataclass
class SessionOutcome:
    ok: bool
    session: Optional[POSSession] = None
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    verified: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "session": self.session.to_dict() if self.session else None,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "verified": self.verified,
        }


SessionRef = Union[POSSession, int]


class SessionLifecycle:
    def __init__(self, transport: Any, user_id: Optional[int] = None):
        self.transport = transport
        self.user_id = user_id

    def _caller(self, caller_id: Optional[int]) -> Optional[int]:
        return self.user_id if caller_id is None else caller_id

    def _search(self, domain: List[Any], limit: Optional[int] = None) -> List[Dict[str, Any]]:
        kwargs = {"limit": limit} if limit else {}
        rows = self.transport.call_kw("pos.session", "search_read", [domain, SESSION_FIELDS], kwargs)
        return [r for r in (rows or []) if isinstance(r, dict) and "id" in r]

    def _read(self, session_id: int) -> Optional[POSSession]:
        rows = self._search([["id", "=", session_id]], limit=1)
        return POSSession.from_record(rows[0]) if rows else None

    def _resolve(self, session: SessionRef) -> Optional[POSSession]:
        return session if isinstance(session, POSSession) else self._read(int(session))

    def _verify(self, last_known: POSSession, expected: SessionState, action: str) -> SessionOutcome:
        try:
            observed = self._read(last_known.id)
        except CoreError as exc:
            log.warning("Could not read back session %s after %s: %s", last_known.id, action, exc)
            observed = None
        if observed is None:
            return SessionOutcome(False, last_known, ErrorKind.INVALID_STATE,
                                  f"{action}: state of session {last_known.id} could not be verified")
        if observed.state != expected:
            log.warning("Session %s is %s after %s, expected %s",
                        observed.id, observed.state.value, action, expected.value)
            return SessionOutcome(False, observed, ErrorKind.INVALID_STATE,
                                  f"{action}: session is {observed.state.value}", verified=True)
        return SessionOutcome(True, observed, verified=True)

    def _guard(self, session: POSSession, caller_id: Optional[int], action: str) -> Optional[SessionOutcome]:
        caller = self._caller(caller_id)
        if session.owner_user_id is None or caller != session.owner_user_id:
            log.warning("User %s may not %s session %s owned by user %s",
                        caller, action, session.id, session.owner_user_id)
            return SessionOutcome(False, session, ErrorKind.PERMISSION_DENIED,
                                  f"Only the user who opened session {session.id} can {action} it")
        return None

    # ---------- queries ----------
    def active_sessions(self, caller_id: Optional[int] = None) -> List[Dict[str, Any]]:
        caller = self._caller(caller_id)
        out = []
        for rec in self._search([["state", "in", ACTIVE_STATES]]):
            owned = _m2o_id(rec.get("user_id")) == caller
            out.append(dict(rec, owned_by_caller=owned, can_close=owned))
        log.info("Found %d active sessions, %d owned by user %s",
                 len(out), sum(1 for s in out if s["owned_by_caller"]), caller)
        return out

    def find_existing(self, config_id: int, caller_id: Optional[int] = None) -> Optional[POSSession]:
        """The caller's non-closed session for a configuration, if any."""
        caller = self._caller(caller_id)
        configs = self.transport.call_kw(
            "pos.config", "read", [[config_id], ["current_session_id", "current_session_state", "name"]]
        ) or []
        current_id = _m2o_id(configs[0].get("current_session_id")) if configs else None
        if current_id:
            rows = self._search([["id", "=", current_id], ["user_id", "=", caller]], limit=1)
            if rows and rows[0].get("state") != SessionState.CLOSED.value:
                return POSSession.from_record(rows[0])
        rows = self._search([
            ["config_id", "=", config_id],
            ["state", "!=", SessionState.CLOSED.value],
            ["user_id", "=", caller],
        ], limit=1)
        return POSSession.from_record(rows[0]) if rows else None

    def details(self, session_id: int) -> Optional[Dict[str, Any]]:
        rows = self.transport.call_kw("pos.session", "read", [[session_id]]) or []
        if not rows:
            log.warning("No details found for session %s", session_id)
            return None
        return rows[0]

    # ---------- transitions ----------
    def ensure_open(self, config_id: int, caller_id: Optional[int] = None) -> SessionOutcome:
        existing = self.find_existing(config_id, caller_id)
        if existing is not None:
            log.info("Found session %s (%s) for config %s", existing.id, existing.state.value, config_id)
            if existing.state == SessionState.OPENED:
                return SessionOutcome(True, existing, verified=True)
            return self.open(existing, caller_id)
        return self.create(config_id, caller_id)

    def create(self, config_id: int, caller_id: Optional[int] = None) -> SessionOutcome:
        caller = self._caller(caller_id)
        log.info("Creating POS session for config %s as user %s", config_id, caller)
        try:
            session_id = self.transport.call_kw("pos.session", "create",
                                                [{"config_id": config_id, "user_id": caller}])
        except CoreError as exc:
            return SessionOutcome(False, None, exc.kind, f"Failed to create session: {exc}")
        session_id = _m2o_id(session_id)
        if session_id is None:
            return SessionOutcome(False, None, ErrorKind.REMOTE, "Failed to create session: no id returned")
        created = POSSession(session_id, caller, SessionState.OPENING_CONTROL,
                             f"Session {session_id}", config_id)
        return self.open(created, caller_id)

    def open(self, session: SessionRef, caller_id: Optional[int] = None) -> SessionOutcome:
        current = self._resolve(session)
        if current is None:
            return SessionOutcome(False, None, ErrorKind.NOT_FOUND, f"Session {session} not found")
        if current.state == SessionState.CLOSED:
            return SessionOutcome(False, current, ErrorKind.INVALID_STATE,
                                  f"Session {current.id} is closed and cannot be reopened")
        denied = self._guard(current, caller_id, "open")
        if denied:
            return denied
        if current.state == SessionState.OPENED:
            return SessionOutcome(True, current)
        if current.state == SessionState.CLOSING_CONTROL:
            return SessionOutcome(False, current, ErrorKind.INVALID_STATE,
                                  f"Session {current.id} is already closing")
        try:
            self.transport.call_kw("pos.session", "action_pos_session_open", [[current.id]])
        except CoreError as exc:
            log.warning("Opening session %s failed: %s", current.id, exc)
            outcome = self._verify(current, SessionState.OPENED, "open")
            if not outcome.ok:
                outcome.kind, outcome.message = exc.kind, str(exc)
            return outcome
        return self._verify(current, SessionState.OPENED, "open")

    reopen = open

    def close(self, session: SessionRef, caller_id: Optional[int] = None) -> SessionOutcome:
        """Close a session owned by the caller.

        Given a POSSession, a non-owner is refused before any request is made.
        Given a bare id, the session is read first to learn its owner, so the
        refusal costs that one read and nothing more.
        """
        current = self._resolve(session)
        if current is None:
            return SessionOutcome(False, None, ErrorKind.NOT_FOUND, f"Session {session} not found")
        denied = self._guard(current, caller_id, "close")
        if denied:
            return denied
        if current.state == SessionState.CLOSED:
            return SessionOutcome(True, current)
        log.info("Closing session %s", current.id)
        try:
            if current.state != SessionState.CLOSING_CONTROL:
                self.transport.call_kw("pos.session", "action_pos_session_closing_control", [[current.id]])
            self.transport.call_kw("pos.session", "action_pos_session_close", [[current.id]])
        except CoreError as exc:
            log.warning("Closing session %s failed: %s", current.id, exc)
            outcome = self._verify(current, SessionState.CLOSED, "close")
            if not outcome.ok:
                outcome.kind, outcome.message = exc.kind, str(exc)
            return outcome
        return self._verify(current, SessionState.CLOSED, "close")

    def close_all(self, caller_id: Optional[int] = None) -> Dict[str, Any]:
        owned = [s for s in self.active_sessions(caller_id) if s["owned_by_caller"]]
        results = {"closed": 0, "failed": 0, "sessions": []}
        for rec in owned:
            outcome = self.close(POSSession.from_record(rec), caller_id)
            results["closed" if outcome.ok else "failed"] += 1
            results["sessions"].append(outcome.to_dict())
        log.info("Session closing complete: %d closed, %d failed", results["closed"], results["failed"])
        return results

    def set_opening_control(self, session_id: int, cash_amount: float = 0, notes: str = "") -> bool:
        if not session_id:
            log.error("set_opening_control called without a session id")
            return False
        try:
            self.transport.call_kw("pos.session", "set_opening_control",
                                   [session_id, cash_amount, notes or ""])
        except CoreError as exc:
            log.error("Opening control for session %s failed: %s", session_id, exc)
            return False
        return True
