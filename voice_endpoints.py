from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

import azure.functions as func

from dialer_shared import (
    json_response,
    parse_json_body,
    parse_twilio_form,
    require_user_id,
    validate_twilio_signature,
    xml_response,
)
from function_app import app
from services import session_registry
from services.call_log_store import build_status_patch, list_call_logs, upsert_call_log
from services.call_session import InvalidTransitionError
from services.credentials_service import (
    CredentialsError,
    auth_token_for,
    caller_id_options,
    find_credentials_by_number,
    get_credentials,
    list_phone_numbers,
    normalize_phone,
    require_credentials,
    resolve_caller_id,
)
from services.voice_service import (
    FALLBACK_MESSAGE,
    FORWARD_FAILED_MESSAGE,
    build_bridge_twiml,
    build_forward_twiml,
    build_greeting_twiml,
    build_say_twiml,
    mint_access_token,
    public_api_url,
    recording_callback_url,
    sanitize_dial_number,
    twilio_client_for,
)
from shared.config import get_voice_settings
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)

TRUTHY = {"1", "true", "yes", "on"}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _voice_token_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req) if req.method == "POST" else {}
    identity = str(body.get("identity") or req.params.get("identity") or "").strip()
    user_id = str(
        body.get("userId") or req.params.get("userId") or req.headers.get("x-user-id") or ""
    ).strip()
    if not identity or not user_id:
        return json_response({"error": "Identity and userId are required"}, 400, cors)

    db = SessionLocal()
    try:
        credentials = require_credentials(db, user_id)
        token = mint_access_token(credentials, identity)
        options = caller_id_options(db, user_id, credentials)
        caller_id = options[0] if options else normalize_phone(get_voice_settings()["fallback_caller_id"])
    except CredentialsError as exc:
        logger.warning("Voice token refused for user=%s: %s", user_id, exc)
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Voice token mint failed for user=%s: %s", user_id, exc)
        return json_response({"error": "unable to mint token"}, 500, cors)
    finally:
        db.close()

    logger.info("Voice token minted for identity=%s user=%s", identity, user_id)
    return json_response(
        {
            "token": token,
            "identity": identity,
            "expiresIn": get_voice_settings()["token_ttl_seconds"],
            "callerId": caller_id,
            "callerIdOptions": options,
        },
        200,
        cors,
    )


def _bind_dialer_session(form: dict, user_id: str) -> None:
    session_id = str(form.get("SessionId") or "").strip()
    call_sid = str(form.get("CallSid") or "").strip()
    if not session_id or not call_sid:
        return
    try:
        session = session_registry.bind_call(session_id, call_sid, user_id or None)
    except InvalidTransitionError as exc:
        logger.warning("Dialer session %s not bound to %s: %s", session_id, call_sid, exc)
        return
    if session is None:
        logger.warning("Voice webhook referenced unknown dialer session %s", session_id)


def _voice_twiml_response(req: func.HttpRequest) -> func.HttpResponse:
    """
    Decide the bridge for a browser-originated call. Every failure past the
    signature check answers with a spoken fallback so Twilio never gets a 5xx.
    """
    form = parse_twilio_form(req)
    user_id = str(form.get("UserId") or "").strip()
    db = SessionLocal()
    try:
        credentials = get_credentials(db, user_id) if user_id else None
        auth_token = auth_token_for(credentials) if credentials else None
        if not validate_twilio_signature(req, form, auth_token):
            return json_response({"error": "invalid twilio signature"}, 403, {})

        to_number = sanitize_dial_number(form.get("To"))
        if not to_number:
            logger.warning("Voice webhook without a To number for user=%s", user_id or "-")
            return xml_response(build_say_twiml(FALLBACK_MESSAGE))

        caller_id = resolve_caller_id(
            db,
            user_id or None,
            form.get("callerId") or form.get("CallerId"),
            fallback=get_voice_settings()["fallback_caller_id"],
        )
        record = str(form.get("Record") or "").strip().lower() in TRUTHY
        callback_url = None
        if record:
            callback_url = recording_callback_url(
                user_id=user_id,
                to_number=to_number,
                lead_id=form.get("LeadId"),
                campaign_id=form.get("CampaignId"),
                lead_name=form.get("LeadName"),
            )
        twiml = build_bridge_twiml(caller_id, to_number, record=record, callback_url=callback_url)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Voice webhook failed for user=%s: %s", user_id or "-", exc)
        return xml_response(build_say_twiml(FALLBACK_MESSAGE))
    finally:
        db.close()

    call_sid = str(form.get("CallSid") or "").strip()
    # The bridge is decided; log and bind failures still return it.
    if user_id and call_sid:
        try:
            upsert_call_log(
                user_id,
                call_sid,
                {
                    "status": "initiated",
                    "direction": "outbound",
                    "to": to_number,
                    "from": caller_id,
                    "record": record,
                    "leadId": str(form.get("LeadId") or ""),
                    "campaignId": str(form.get("CampaignId") or ""),
                    "startedAt": _utc_now_iso(),
                },
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Call log write failed sid=%s user=%s: %s", call_sid, user_id, exc)
    try:
        _bind_dialer_session(form, user_id)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Dialer session bind failed sid=%s: %s", call_sid or "-", exc)
    logger.info("Bridge issued user=%s to=%s record=%s", user_id or "-", to_number, record)
    return xml_response(twiml)


def _voice_incoming_response(req: func.HttpRequest) -> func.HttpResponse:
    form = parse_twilio_form(req)
    db = SessionLocal()
    try:
        credentials = find_credentials_by_number(db, form.get("To") or form.get("Called"))
        if not validate_twilio_signature(req, form, auth_token_for(credentials) if credentials else None):
            return json_response({"error": "invalid twilio signature"}, 403, {})
        if not credentials or not credentials.forward_to_number:
            logger.warning("Inbound call to %s has no forwarding target", form.get("To") or "-")
            return xml_response(build_say_twiml(FORWARD_FAILED_MESSAGE))
        twiml = build_forward_twiml(credentials.phone_number, credentials.forward_to_number)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Inbound forward failed: %s", exc)
        return xml_response(build_say_twiml(FORWARD_FAILED_MESSAGE))
    finally:
        db.close()
    return xml_response(twiml)


def _create_call_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req)
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response
    to_number = sanitize_dial_number(body.get("to") or body.get("phoneNumber"))
    if not to_number:
        return json_response({"error": "Phone number is required"}, 400, cors)

    db = SessionLocal()
    try:
        credentials = require_credentials(db, user_id)
        from_number = resolve_caller_id(
            db,
            user_id,
            body.get("from"),
            fallback=get_voice_settings()["fallback_caller_id"],
        )
        callback_url = str(body.get("callbackUrl") or "").strip()
        create_kwargs = {
            "to": to_number,
            "from_": from_number,
            "status_callback": f"{public_api_url('/voice/status')}?userId={quote(user_id, safe='')}",
            "status_callback_event": ["initiated", "ringing", "answered", "completed"],
            "status_callback_method": "POST",
        }
        if callback_url:
            create_kwargs["url"] = callback_url
        else:
            create_kwargs["twiml"] = build_greeting_twiml()
        call = twilio_client_for(credentials).calls.create(**create_kwargs)
    except CredentialsError as exc:
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Outbound call creation failed for user=%s: %s", user_id, exc)
        return json_response({"error": "call creation failed", "details": str(exc)[:500]}, 500, cors)
    finally:
        db.close()

    status = str(call.status or "queued")
    try:
        upsert_call_log(
            user_id,
            str(call.sid),
            {
                "status": status,
                "direction": "outbound-api",
                "to": to_number,
                "from": from_number,
                "startedAt": _utc_now_iso(),
            },
        )
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Call log write failed sid=%s user=%s: %s", call.sid, user_id, exc)
    logger.info("Outbound call created sid=%s user=%s", call.sid, user_id)
    return json_response(
        {"success": True, "callSid": str(call.sid), "status": status, "from": from_number, "to": to_number},
        200,
        cors,
    )


def _call_details_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    call_sid = str(req.route_params.get("callSid") or "").strip()
    user_id, error_response = require_user_id(req, None, cors)
    if error_response:
        return error_response
    if not call_sid:
        return json_response({"error": "Call SID is required"}, 400, cors)

    db = SessionLocal()
    try:
        credentials = require_credentials(db, user_id)
        call = twilio_client_for(credentials).calls(call_sid).fetch()
    except CredentialsError as exc:
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Call fetch failed sid=%s: %s", call_sid, exc)
        return json_response({"error": "unable to fetch call"}, 500, cors)
    finally:
        db.close()

    return json_response(
        {
            "sid": str(call.sid),
            "status": call.status,
            "duration": call.duration,
            "from": call.from_,
            "to": call.to,
            "startTime": _iso(call.start_time),
            "endTime": _iso(call.end_time),
        },
        200,
        cors,
    )


def _hangup_call_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req)
    call_sid = str(req.route_params.get("callSid") or body.get("callSid") or "").strip()
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response
    if not call_sid:
        return json_response({"error": "Call SID is required"}, 400, cors)

    db = SessionLocal()
    try:
        credentials = require_credentials(db, user_id)
        call = twilio_client_for(credentials).calls(call_sid).update(status="completed")
    except CredentialsError as exc:
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Hangup failed sid=%s: %s", call_sid, exc)
        return json_response({"error": "unable to end call"}, 500, cors)
    finally:
        db.close()

    session_registry.apply_call_status(call_sid, "completed")
    return json_response({"success": True, "status": call.status}, 200, cors)


def _voice_status_response(req: func.HttpRequest) -> func.HttpResponse:
    form = parse_twilio_form(req)
    user_id = str(req.params.get("userId") or form.get("UserId") or "").strip()
    auth_token = None
    if user_id:
        db = SessionLocal()
        try:
            credentials = get_credentials(db, user_id)
            auth_token = auth_token_for(credentials) if credentials else None
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Credential lookup failed for status callback user=%s: %s", user_id, exc)
        finally:
            db.close()
    if not validate_twilio_signature(req, form, auth_token):
        return json_response({"error": "invalid twilio signature"}, 403, {})

    call_sid = str(form.get("CallSid") or "").strip()
    if not call_sid:
        return json_response({"ok": True}, 200, {})
    call_status = str(form.get("CallStatus") or form.get("DialCallStatus") or "").strip().lower()
    if user_id:
        try:
            upsert_call_log(user_id, call_sid, build_status_patch(form))
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Call log update failed sid=%s user=%s: %s", call_sid, user_id, exc)
    else:
        logger.warning("Voice status callback without userId for sid=%s", call_sid)

    snapshot = None
    for sid in (form.get("ParentCallSid"), call_sid):
        if sid:
            snapshot = session_registry.apply_call_status(str(sid), call_status)
        if snapshot:
            break
    return json_response({"ok": True, "session": snapshot}, 200, {})


@app.function_name(name="VoiceToken")
@app.route(route="voice/token", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def voice_token(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _voice_token_response(req, cors)


@app.function_name(name="VoiceTwiml")
@app.route(route="voice/twiml", methods=["POST"], auth_level=func.AuthLevel.ANONYMOUS)
def voice_twiml(req: func.HttpRequest) -> func.HttpResponse:
    return _voice_twiml_response(req)


@app.function_name(name="VoiceIncoming")
@app.route(route="voice/incoming", methods=["POST"], auth_level=func.AuthLevel.ANONYMOUS)
def voice_incoming(req: func.HttpRequest) -> func.HttpResponse:
    return _voice_incoming_response(req)


@app.function_name(name="VoiceCalls")
@app.route(route="voice/calls", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def voice_calls(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _create_call_response(req, cors)


@app.function_name(name="VoiceCallDetails")
@app.route(route="voice/calls/{callSid}", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def voice_call_details(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _call_details_response(req, cors)


@app.function_name(name="VoiceCallHangup")
@app.route(route="voice/calls/{callSid}/hangup", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def voice_call_hangup(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _hangup_call_response(req, cors)


@app.function_name(name="VoiceStatus")
@app.route(route="voice/status", methods=["POST"], auth_level=func.AuthLevel.ANONYMOUS)
def voice_status(req: func.HttpRequest) -> func.HttpResponse:
    return _voice_status_response(req)


@app.function_name(name="VoiceLogs")
@app.route(route="voice/logs", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def voice_logs(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)

    user_id, error_response = require_user_id(req, None, cors)
    if error_response:
        return error_response
    try:
        limit = int(req.params.get("limit") or 25)
    except ValueError:
        limit = 25
    items = list_call_logs(user_id, limit=limit)
    return json_response({"items": items, "count": len(items)}, 200, cors)


@app.function_name(name="VoicePhoneNumber")
@app.route(route="voice/phone-number", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def voice_phone_number(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)

    user_id, error_response = require_user_id(req, None, cors)
    if error_response:
        return error_response
    db = SessionLocal()
    try:
        lines = list_phone_numbers(db, user_id)
        credentials = get_credentials(db, user_id)
    finally:
        db.close()
    if lines:
        return json_response({"phoneNumber": lines[0].phone_number, "friendlyName": lines[0].friendly_name}, 200, cors)
    if credentials and credentials.phone_number:
        return json_response({"phoneNumber": credentials.phone_number, "friendlyName": None}, 200, cors)
    return json_response({"error": "No phone number configured"}, 404, cors)
