from __future__ import annotations

import logging

import azure.functions as func

from dialer_shared import json_response, parse_json_body, parse_twilio_form, require_user_id
from function_app import app
from services.credentials_service import get_credentials
from services.recordings_service import (
    build_library,
    delete_recording,
    find_by_sid,
    get_recording,
    recording_to_dict,
    rename_recording,
    save_completed_recording,
)
from services.voice_service import fetch_recording_audio
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _recording_status_response(req: func.HttpRequest) -> func.HttpResponse:
    """
    Twilio retries non-2xx recording callbacks, so storage failures are
    logged and still acknowledged.
    """
    if req.method == "GET":
        return func.HttpResponse("Recording status webhook is active", status_code=200)
    try:
        form = parse_twilio_form(req)
    except UnicodeDecodeError as exc:
        logger.warning("Malformed recording callback: %s", exc)
        return json_response({"error": "malformed callback body"}, 500, {})

    params = {key: req.params.get(key) for key in ("userId", "leadId", "campaignId", "leadName", "phone")}
    db = SessionLocal()
    try:
        recording = save_completed_recording(db, params=params, form=form)
        db.commit()
        if recording is not None:
            logger.info(
                "Recording saved sid=%s user=%s duration=%s",
                recording.recording_sid,
                recording.user_id,
                recording.duration,
            )
        else:
            logger.info(
                "Recording callback skipped status=%s user=%s",
                form.get("RecordingStatus") or "-",
                params.get("userId") or "-",
            )
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Recording save failed sid=%s: %s", form.get("RecordingSid") or "-", exc)
    finally:
        db.close()
    return func.HttpResponse("OK", status_code=200)


def _list_recordings_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    user_id, error_response = require_user_id(req, None, cors)
    if error_response:
        return error_response
    db = SessionLocal()
    try:
        payload = build_library(db, user_id)
    except Exception as exc:  # pylint: disable=broad-except
        logger.error("Recording list failed for user=%s: %s", user_id, exc)
        return json_response({"error": "Failed to load recordings"}, 500, cors)
    finally:
        db.close()
    return json_response(payload, 200, cors)


def _recording_item_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    body = parse_json_body(req) if req.method == "PATCH" else {}
    user_id, error_response = require_user_id(req, body, cors)
    if error_response:
        return error_response

    db = SessionLocal()
    try:
        recording = get_recording(db, req.route_params.get("recordingId"), user_id)
        if recording is None:
            return json_response({"error": "Recording not found"}, 404, cors)
        if req.method == "DELETE":
            delete_recording(db, recording)
            db.commit()
            return json_response({"success": True}, 200, cors)
        rename_recording(db, recording, body.get("name") or body.get("leadName"))
        db.commit()
        return json_response(recording_to_dict(recording), 200, cors)
    except ValueError as exc:
        db.rollback()
        return json_response({"error": str(exc)}, 400, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Recording update failed: %s", exc)
        return json_response({"error": "Failed to update recording"}, 500, cors)
    finally:
        db.close()


def _recording_audio_response(req: func.HttpRequest, cors: dict) -> func.HttpResponse:
    recording_sid = str(req.params.get("sid") or "").strip()
    if not recording_sid:
        return json_response({"error": "Recording SID is required"}, 400, cors)
    user_id, error_response = require_user_id(req, None, cors)
    if error_response:
        return error_response

    db = SessionLocal()
    try:
        recording = find_by_sid(db, recording_sid, user_id)
        credentials = get_credentials(db, user_id) if recording else None
    finally:
        db.close()
    if recording is None:
        logger.warning("Recording audio refused sid=%s user=%s: not owned", recording_sid, user_id)
        return json_response({"error": "Recording not found"}, 404, cors)
    if credentials is None:
        return json_response({"error": "Twilio credentials not found"}, 404, cors)

    audio, error = fetch_recording_audio(credentials, recording_sid)
    if error:
        status = 400 if error == "Invalid recording SID" else 502
        return json_response({"error": error}, status, cors)
    return func.HttpResponse(
        audio,
        status_code=200,
        mimetype="audio/mpeg",
        headers={**cors, "Cache-Control": "private, max-age=3600"},
    )


@app.function_name(name="RecordingStatus")
@app.route(route="recordings/status", methods=["GET", "POST"], auth_level=func.AuthLevel.ANONYMOUS)
def recording_status(req: func.HttpRequest) -> func.HttpResponse:
    return _recording_status_response(req)


@app.function_name(name="Recordings")
@app.route(route="recordings", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def recordings(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _list_recordings_response(req, cors)


@app.function_name(name="RecordingAudio")
@app.route(route="recordings/audio", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def recording_audio(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _recording_audio_response(req, cors)


@app.function_name(name="RecordingItem")
@app.route(route="recordings/{recordingId:int}", methods=["PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def recording_item(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return _recording_item_response(req, cors)
