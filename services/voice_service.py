from __future__ import annotations

import logging
import re
from typing import Optional, Tuple
from urllib.parse import quote

import requests
from twilio.jwt.access_token import AccessToken
from twilio.jwt.access_token.grants import VoiceGrant
from twilio.rest import Client as TwilioRestClient
from twilio.twiml.voice_response import VoiceResponse

from services.credentials_service import (
    API_CREDENTIALS_MISSING,
    CredentialsError,
    api_secret_for,
    auth_token_for,
)
from shared.config import get_public_api_base, get_voice_settings
from shared.db import TwilioCredential

logger = logging.getLogger(__name__)

RECORDING_SID_PATTERN = re.compile(r"^RE[0-9a-fA-F]{32}$")
FALLBACK_MESSAGE = "An error occurred. Please try again later."
FORWARD_FAILED_MESSAGE = "Sorry, unable to forward your call."
GREETING_MESSAGE = "Hello! This call is from your Horizon CRM system. Please hold while we connect you."


def public_api_url(path: str) -> str:
    base = (get_public_api_base() or "").rstrip("/")
    normalized_path = path if path.startswith("/") else f"/{path}"
    if not normalized_path.startswith("/api/"):
        normalized_path = f"/api{normalized_path}"
    return f"{base}{normalized_path}"


def mint_access_token(credentials: TwilioCredential, identity: str, ttl: Optional[int] = None) -> str:
    """
    Sign a Voice access token for one identity and the account's TwiML app.
    Raises CredentialsError before signing anything if the record is incomplete.
    """
    api_key = str(credentials.api_key or "").strip()
    api_secret = api_secret_for(credentials)
    twiml_app_sid = str(credentials.twiml_app_sid or "").strip()
    if not api_key or not api_secret or not twiml_app_sid:
        raise CredentialsError(API_CREDENTIALS_MISSING)

    token = AccessToken(
        credentials.account_sid,
        api_key,
        api_secret,
        identity=identity,
        ttl=ttl or get_voice_settings()["token_ttl_seconds"],
    )
    token.add_grant(
        VoiceGrant(
            outgoing_application_sid=twiml_app_sid,
            incoming_allow=False,
        )
    )
    jwt = token.to_jwt()
    return jwt.decode("utf-8") if isinstance(jwt, bytes) else str(jwt)


def twilio_client_for(credentials: TwilioCredential) -> TwilioRestClient:
    return TwilioRestClient(credentials.account_sid, auth_token_for(credentials))


def sanitize_display_name(value: Optional[str]) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9]", "_", str(value or "").strip())
    return cleaned or "Unknown"


def sanitize_dial_number(value: Optional[str]) -> str:
    return re.sub(r"[^0-9+]", "", str(value or ""))


def recording_callback_url(
    *,
    user_id: str,
    to_number: str,
    lead_id: Optional[str] = None,
    campaign_id: Optional[str] = None,
    lead_name: Optional[str] = None,
) -> str:
    """
    Recording-status callback carrying the call context. Optional ids that are
    blank are left out so every parameter present has a value.
    """
    if not str(user_id or "").strip():
        raise ValueError("UserId is required to record a call")
    phone = sanitize_dial_number(to_number)
    if not phone:
        raise ValueError("Missing To parameter")
    params = [
        ("userId", str(user_id).strip()),
        ("leadId", str(lead_id or "").strip()),
        ("campaignId", str(campaign_id or "").strip()),
        ("leadName", sanitize_display_name(lead_name)),
        ("phone", phone),
    ]
    query = "&".join(f"{key}={quote(value, safe='')}" for key, value in params if value)
    return f"{public_api_url('/recordings/status')}?{query}"


def build_bridge_twiml(caller_id: str, to_number: str, record: bool = False, callback_url: Optional[str] = None) -> str:
    response = VoiceResponse()
    if record:
        if not callback_url:
            raise ValueError("recording callback URL is required")
        response.dial(
            to_number,
            caller_id=caller_id,
            record="record-from-answer",
            recording_status_callback=callback_url,
            recording_status_callback_method="POST",
        )
    else:
        response.dial(to_number, caller_id=caller_id)
    return str(response)


def build_say_twiml(message: str = FALLBACK_MESSAGE) -> str:
    response = VoiceResponse()
    response.say(message)
    return str(response)


def build_forward_twiml(caller_id: str, forward_to: str) -> str:
    response = VoiceResponse()
    response.dial(forward_to, caller_id=caller_id)
    return str(response)


def build_greeting_twiml() -> str:
    response = VoiceResponse()
    response.say(GREETING_MESSAGE)
    response.pause(length=2)
    return str(response)


def fetch_recording_audio(credentials: TwilioCredential, recording_sid: str) -> Tuple[Optional[bytes], Optional[str]]:
    if not RECORDING_SID_PATTERN.match(str(recording_sid or "")):
        return None, "Invalid recording SID"
    base = get_voice_settings()["twilio_api_base"]
    url = f"{base}/2010-04-01/Accounts/{credentials.account_sid}/Recordings/{recording_sid}.mp3"
    try:
        resp = requests.get(url, auth=(credentials.account_sid, auth_token_for(credentials)), timeout=20)
    except requests.RequestException as exc:
        return None, str(exc)
    if resp.status_code != 200:
        logger.warning("Recording fetch failed sid=%s status=%s", recording_sid, resp.status_code)
        return None, "Failed to fetch recording"
    return resp.content, None
