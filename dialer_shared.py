from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import azure.functions as func
from twilio.request_validator import RequestValidator

from shared.config import get_public_api_base, get_voice_settings

logger = logging.getLogger(__name__)


def json_response(payload: Any, status_code: int, headers: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(payload),
        status_code=status_code,
        mimetype="application/json",
        headers=headers,
    )


def xml_response(twiml: str) -> func.HttpResponse:
    return func.HttpResponse(twiml, status_code=200, mimetype="text/xml")


def parse_json_body(req: func.HttpRequest) -> dict:
    try:
        body = req.get_json()
    except ValueError:
        body = None
    return body if isinstance(body, dict) else {}


def extract_user_id(req: func.HttpRequest, body: Optional[dict] = None) -> str:
    body = body or {}
    candidates = [
        req.headers.get("x-user-id"),
        req.headers.get("X-User-Id"),
        req.params.get("userId"),
        body.get("userId"),
        body.get("user_id"),
    ]
    for value in candidates:
        cleaned = str(value or "").strip()
        if cleaned:
            return cleaned
    return ""


def require_user_id(
    req: func.HttpRequest, body: Optional[dict], cors: Dict[str, str]
) -> Tuple[str, Optional[func.HttpResponse]]:
    user_id = extract_user_id(req, body)
    if not user_id:
        return "", json_response({"error": "User not authenticated"}, 401, cors)
    return user_id, None


def parse_twilio_form(req: func.HttpRequest) -> dict:
    raw_body = req.get_body().decode("utf-8") if req.get_body() else ""
    parsed = parse_qs(raw_body, keep_blank_values=True)
    return {key: values[0] if values else "" for key, values in parsed.items()}


def validate_twilio_signature(req: func.HttpRequest, form_payload: dict, auth_token: Optional[str]) -> bool:
    if not get_voice_settings()["validate_signature"]:
        return True
    signature = req.headers.get("X-Twilio-Signature")
    if not signature or not auth_token:
        return False
    validator = RequestValidator(auth_token)

    params = {str(k): str(v) for k, v in (form_payload or {}).items()}
    parsed_url = urlparse(req.url)
    candidate_urls = [req.url]
    public_base = (get_public_api_base() or "").rstrip("/")
    if public_base:
        suffix = f"{parsed_url.path}?{parsed_url.query}" if parsed_url.query else parsed_url.path
        candidate_urls.append(f"{public_base}{suffix}")
    for candidate in dict.fromkeys(candidate_urls):
        if validator.validate(candidate, params, signature):
            return True
    logger.warning("Twilio signature rejected for %s", parsed_url.path)
    return False
