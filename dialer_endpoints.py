from __future__ import annotations

import logging

import azure.functions as func

from dialer_shared import json_response, parse_json_body, require_user_id
from function_app import app
from services import session_registry
from services.call_service import record_dial
from services.call_session import CallSession, InvalidTransitionError
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _account_dial(session: CallSession) -> None:
    """Persist the one dial event of a session attempt."""
    db = SessionLocal()
    try:
        record_dial(
            db,
            session_id=f"{session.session_id}:{session.attempt}",
            user_id=session.user_id,
            lead_id=session.lead_id,
            campaign_id=session.campaign_id,
            to_number=session.to_number,
            twilio_call_sid=session.call_sid,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _create_session_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req)
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response
    session = session_registry.create_session(user_id, on_dial=_account_dial)
    return json_response(session.to_dict(), 201, cors)


def _session_event_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req)
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response
    session = session_registry.get_session(req.route_params.get("sessionId"), user_id)
    if session is None:
        return json_response({"error": "session not found"}, 404, cors)
    event = str(body.get("event") or "").strip()
    if not event:
        return json_response({"error": "event is required"}, 400, cors)

    try:
        snapshot = session_registry.apply_event(session, event, body)
    except InvalidTransitionError as exc:
        return json_response({"error": str(exc), "session": session.to_dict()}, 409, cors)
    except ValueError as exc:
        return json_response({"error": str(exc)}, 400, cors)
    return json_response(snapshot, 200, cors)


def _session_detail_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    user_id, error_response = require_user_id(req, None, cors)
    if error_response:
        return error_response
    session = session_registry.get_session(req.route_params.get("sessionId"), user_id)
    if session is None:
        return json_response({"error": "session not found"}, 404, cors)
    return json_response(session.to_dict(), 200, cors)


def _discard_session_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    user_id, error_response = require_user_id(req, None, cors)
    if error_response:
        return error_response
    session_id = req.route_params.get("sessionId")
    if session_registry.get_session(session_id, user_id) is None:
        return json_response({"error": "session not found"}, 404, cors)
    session_registry.discard_session(session_id)
    logger.info("Dialer session discarded session=%s user=%s", session_id, user_id)
    return json_response({"success": True}, 200, cors)


@app.function_name(name="DialerSessions")
@app.route(route="dialer/sessions", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def dialer_sessions(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _create_session_response(req, cors)


@app.function_name(name="DialerSessionEvents")
@app.route(route="dialer/sessions/{sessionId}/events", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def dialer_session_events(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _session_event_response(req, cors)


@app.function_name(name="DialerSessionDetail")
@app.route(route="dialer/sessions/{sessionId}", methods=["GET", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def dialer_session_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    if req.method == "DELETE":
        return _discard_session_response(req, cors)
    return _session_detail_response(req, cors)
