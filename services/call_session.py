from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    REQUESTING_TOKEN = "requesting-token"
    READY = "ready"
    DIALING = "dialing"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = {
    SessionState.DISCONNECTED,
    SessionState.REJECTED,
    SessionState.CANCELLED,
    SessionState.FAILED,
}
ACTIVE_STATES = {SessionState.DIALING, SessionState.CONNECTED}
PRE_DEVICE_STATES = {SessionState.IDLE, SessionState.REQUESTING_TOKEN}

# Twilio call statuses mapped onto the Voice SDK call events they correspond to.
STATUS_EVENTS = {
    "in-progress": "accept",
    "answered": "accept",
    "completed": "disconnect",
    "busy": "reject",
    "no-answer": "reject",
    "canceled": "cancel",
    "cancelled": "cancel",
    "failed": "error",
}


class InvalidTransitionError(Exception):
    pass


def format_elapsed(seconds: int) -> str:
    total = max(0, int(seconds or 0))
    return f"{total // 60:02d}:{total % 60:02d}"


def event_for_call_status(call_status: Optional[str]) -> Optional[str]:
    return STATUS_EVENTS.get(str(call_status or "").strip().lower())


@dataclass
class CallSession:
    """
    Dialer lifecycle for one browser device: token, registration, and one
    call attempt at a time. Each connect() starts a fresh attempt.
    """

    session_id: str
    user_id: str
    identity: str = ""
    state: SessionState = SessionState.IDLE
    to_number: str = ""
    caller_id: str = ""
    record: bool = False
    lead_id: Optional[str] = None
    campaign_id: Optional[str] = None
    lead_name: Optional[str] = None
    call_sid: Optional[str] = None
    elapsed_seconds: int = 0
    muted: bool = False
    sent_digits: str = ""
    error: str = ""
    attempt: int = 0
    dial_accounted: bool = False
    device_failed: bool = False
    on_dial: Optional[Callable[["CallSession"], None]] = field(default=None, repr=False, compare=False)
    _pending_dial: Optional["CallSession"] = field(default=None, init=False, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def elapsed_display(self) -> str:
        return format_elapsed(self.elapsed_seconds)

    def _reject(self, action: str) -> None:
        raise InvalidTransitionError(f"cannot {action} while {self.state.value}")

    # Device lifecycle

    def request_token(self) -> None:
        if self.state != SessionState.IDLE:
            self._reject("request a token")
        self.state = SessionState.REQUESTING_TOKEN

    def registered(self, identity: str = "") -> None:
        if self.state != SessionState.REQUESTING_TOKEN:
            self._reject("register")
        self.identity = identity or self.identity
        self.error = ""
        self.state = SessionState.READY

    def registration_failed(self, message: str = "") -> None:
        if self.state not in (SessionState.REQUESTING_TOKEN, SessionState.READY):
            self._reject("fail registration")
        self.device_failed = True
        self.error = message or "Device registration failed"
        self._finish(SessionState.FAILED)

    # Call lifecycle

    def connect(
        self,
        to_number: str,
        caller_id: str = "",
        record: Optional[bool] = None,
        lead_id: Optional[str] = None,
        campaign_id: Optional[str] = None,
        lead_name: Optional[str] = None,
    ) -> None:
        if not str(to_number or "").strip():
            raise ValueError("Please enter a phone number")
        if self.device_failed or self.state in PRE_DEVICE_STATES:
            raise InvalidTransitionError("Device not ready. Please refresh the page.")
        if self.is_active:
            self._reject("dial")

        self.attempt += 1
        self.dial_accounted = False
        self.call_sid = None
        self.elapsed_seconds = 0
        self.muted = False
        self.sent_digits = ""
        self.error = ""
        self.to_number = str(to_number).strip()
        self.caller_id = str(caller_id or "").strip()
        self.record = self.record if record is None else bool(record)
        self.lead_id = lead_id or None
        self.campaign_id = campaign_id or None
        self.lead_name = lead_name or None
        self.state = SessionState.DIALING

    def call_created(self, call_sid: Optional[str] = None) -> bool:
        """
        The remote call object exists. Marks the dial accounted once per
        attempt and queues a snapshot for on_dial; returns True only for the
        call that did the accounting.
        """
        if self.state in PRE_DEVICE_STATES or self.state == SessionState.READY:
            self._reject("create a call")
        if self.state in TERMINAL_STATES:
            return False
        if call_sid and not self.call_sid:
            self.call_sid = call_sid
        if self.dial_accounted:
            return False
        self.dial_accounted = True
        self._pending_dial = replace(self)
        return True

    def take_pending_dial(self) -> Optional["CallSession"]:
        pending, self._pending_dial = self._pending_dial, None
        return pending

    def account_dial(self, pending: Optional["CallSession"]) -> bool:
        """Run on_dial for a snapshot taken by take_pending_dial(). Errors are logged only."""
        if pending is None or self.on_dial is None:
            return False
        try:
            self.on_dial(pending)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Dial accounting failed for session=%s: %s", self.session_id, exc)
            return False
        return True

    def flush_pending_dial(self) -> bool:
        return self.account_dial(self.take_pending_dial())

    def accept(self) -> bool:
        if self.state == SessionState.CONNECTED:
            return False
        if self.state in TERMINAL_STATES:
            return False
        if self.state != SessionState.DIALING:
            self._reject("accept")
        self.call_created()
        self.elapsed_seconds = 0
        self.state = SessionState.CONNECTED
        return True

    def disconnect(self) -> bool:
        if self.state in TERMINAL_STATES:
            return False
        if not self.is_active:
            self._reject("disconnect")
        self._finish(SessionState.DISCONNECTED)
        return True

    def reject(self) -> bool:
        return self._transport_end(SessionState.REJECTED, "Call was rejected")

    def cancel(self) -> bool:
        return self._transport_end(SessionState.CANCELLED)

    def fail(self, message: str = "") -> bool:
        return self._transport_end(SessionState.FAILED, message or "Call failed")

    def _transport_end(self, state: SessionState, message: str = "") -> bool:
        if self.state in PRE_DEVICE_STATES:
            self._reject(f"move to {state.value}")
        if self.state in TERMINAL_STATES:
            return False
        if message:
            self.error = message
        self._finish(state)
        return True

    def _finish(self, state: SessionState) -> None:
        self.state = state
        self.call_sid = None
        self.record = False
        self.muted = False
        self.elapsed_seconds = 0

    # In-call controls

    def tick(self) -> int:
        if self.state == SessionState.CONNECTED:
            self.elapsed_seconds += 1
        return self.elapsed_seconds

    def toggle_recording(self) -> bool:
        if self.is_active:
            self._reject("change recording")
        self.record = not self.record
        return self.record

    def set_muted(self, muted: bool) -> bool:
        if not self.is_active:
            self._reject("mute")
        self.muted = bool(muted)
        return self.muted

    def send_digits(self, digits: str) -> str:
        if not self.is_active:
            self._reject("send digits")
        self.sent_digits += "".join(ch for ch in str(digits or "") if ch in "0123456789*#")
        return self.sent_digits

    def apply(self, event: str, payload: Optional[dict] = None) -> bool:
        """Dispatch a named device/transport event; returns whether state changed."""
        payload = payload or {}
        name = str(event or "").strip().lower().replace("-", "_")
        before = (self.state, self.dial_accounted, self.record, self.muted, self.elapsed_seconds)
        if name == "request_token":
            self.request_token()
        elif name == "registered":
            self.registered(str(payload.get("identity") or ""))
        elif name == "registration_failed":
            self.registration_failed(str(payload.get("message") or ""))
        elif name == "connect":
            record = payload.get("record")
            self.connect(
                str(payload.get("to") or payload.get("To") or ""),
                caller_id=str(payload.get("callerId") or ""),
                record=None if record is None else str(record).strip().lower() in {"1", "true", "yes"},
                lead_id=payload.get("leadId"),
                campaign_id=payload.get("campaignId"),
                lead_name=payload.get("leadName"),
            )
        elif name == "call_created":
            self.call_created(payload.get("callSid"))
        elif name == "accept":
            self.accept()
        elif name in ("disconnect", "hangup"):
            self.disconnect()
        elif name == "reject":
            self.reject()
        elif name == "cancel":
            self.cancel()
        elif name == "error":
            self.fail(str(payload.get("message") or ""))
        elif name == "tick":
            self.tick()
        elif name == "toggle_recording":
            self.toggle_recording()
        elif name == "mute":
            self.set_muted(str(payload.get("muted", True)).strip().lower() in {"1", "true", "yes"})
        elif name == "digits":
            self.send_digits(str(payload.get("digits") or ""))
        else:
            raise ValueError(f"unknown event: {event}")
        return before != (self.state, self.dial_accounted, self.record, self.muted, self.elapsed_seconds)

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "identity": self.identity,
            "state": self.state.value,
            "to": self.to_number,
            "callerId": self.caller_id,
            "record": self.record,
            "leadId": self.lead_id,
            "campaignId": self.campaign_id,
            "callSid": self.call_sid,
            "elapsedSeconds": self.elapsed_seconds,
            "elapsed": self.elapsed_display,
            "muted": self.muted,
            "error": self.error,
            "attempt": self.attempt,
            "dialAccounted": self.dial_accounted,
            "deviceFailed": self.device_failed,
        }
