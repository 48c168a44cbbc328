from __future__ import annotations

import logging
import time
from threading import RLock
from typing import Callable, Dict, Optional
from uuid import uuid4

from services.call_session import CallSession, event_for_call_status
from shared.config import get_voice_settings

logger = logging.getLogger(__name__)

_sessions: Dict[str, CallSession] = {}
_last_seen: Dict[str, float] = {}
_lock = RLock()


def _now() -> float:
    return time.monotonic()


def _touch(session: CallSession) -> None:
    _last_seen[session.session_id] = _now()


def prune_idle_sessions(max_idle_seconds: int, now: Optional[float] = None) -> int:
    """Drop sessions without a live call that have been quiet longer than max_idle_seconds."""
    cutoff = (_now() if now is None else now) - max_idle_seconds
    with _lock:
        stale = [
            session_id
            for session_id, session in _sessions.items()
            if not session.is_active and _last_seen.get(session_id, 0.0) < cutoff
        ]
        for session_id in stale:
            _sessions.pop(session_id, None)
            _last_seen.pop(session_id, None)
    if stale:
        logger.info("Pruned %s idle dialer sessions", len(stale))
    return len(stale)


def create_session(user_id: str, on_dial: Optional[Callable[[CallSession], None]] = None) -> CallSession:
    safe_user = str(user_id or "").strip()
    if not safe_user:
        raise ValueError("userId is required")
    prune_idle_sessions(get_voice_settings()["token_ttl_seconds"])
    session = CallSession(session_id=uuid4().hex, user_id=safe_user, on_dial=on_dial)
    with _lock:
        _sessions[session.session_id] = session
        _touch(session)
    logger.info("Dialer session created session=%s user=%s", session.session_id, safe_user)
    return session


def get_session(session_id: str, user_id: Optional[str] = None) -> Optional[CallSession]:
    with _lock:
        session = _sessions.get(str(session_id or ""))
    if session is None:
        return None
    if user_id is not None and session.user_id != str(user_id):
        return None
    return session


def find_by_call_sid(call_sid: str) -> Optional[CallSession]:
    safe_sid = str(call_sid or "").strip()
    if not safe_sid:
        return None
    with _lock:
        for session in _sessions.values():
            if session.call_sid == safe_sid:
                return session
    return None


def apply_event(session: CallSession, event: str, payload: Optional[dict] = None) -> dict:
    with _lock:
        try:
            session.apply(event, payload)
        finally:
            _touch(session)
        snapshot = session.to_dict()
        pending = session.take_pending_dial()
    # on_dial writes to the database; keep it off the registry lock.
    session.account_dial(pending)
    return snapshot


def bind_call(session_id: str, call_sid: str, user_id: Optional[str] = None) -> Optional[CallSession]:
    """Attach the Twilio CallSid seen by the voice webhook to its dialer session."""
    session = get_session(session_id, user_id)
    if session is None:
        return None
    with _lock:
        session.call_created(call_sid)
        _touch(session)
        pending = session.take_pending_dial()
    session.account_dial(pending)
    return session


def apply_call_status(call_sid: str, call_status: str) -> Optional[dict]:
    """Feed a Twilio status callback into the session that owns the call, if any."""
    event = event_for_call_status(call_status)
    if not event:
        return None
    session = find_by_call_sid(call_sid)
    if session is None:
        return None
    with _lock:
        session.apply(event, {"message": f"Call {call_status}"})
        _touch(session)
        snapshot = session.to_dict()
        pending = session.take_pending_dial()
    session.account_dial(pending)
    return snapshot


def discard_session(session_id: str) -> bool:
    safe_id = str(session_id or "")
    with _lock:
        _last_seen.pop(safe_id, None)
        return _sessions.pop(safe_id, None) is not None


def reset_sessions_for_tests() -> None:
    with _lock:
        _sessions.clear()
        _last_seen.clear()
