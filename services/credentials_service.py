from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Optional

from shared.db import TwilioCredential, TwilioPhoneNumber
from utils.token_crypto import decrypt_secret, encrypt_secret

logger = logging.getLogger(__name__)

CREDENTIALS_NOT_FOUND = "Twilio credentials not found. Please configure them in Automations."
API_CREDENTIALS_MISSING = "Missing API credentials. Please add API Key and TwiML App SID in Automations."
REQUIRED_FIELDS_MISSING = "Account SID, Auth Token, and Phone Number are required"


class CredentialsError(Exception):
    """A credential record is missing or incomplete; the message is user-facing."""


def normalize_phone(value) -> str:
    return re.sub(r"[^\d+]", "", str(value or "").strip())


def _clean(value) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def get_credentials(db, user_id: str) -> Optional[TwilioCredential]:
    safe_user = str(user_id or "").strip()
    if not safe_user:
        return None
    return db.query(TwilioCredential).filter_by(user_id=safe_user).one_or_none()


def require_credentials(db, user_id: str) -> TwilioCredential:
    credentials = get_credentials(db, user_id)
    if not credentials:
        raise CredentialsError(CREDENTIALS_NOT_FOUND)
    return credentials


def find_credentials_by_number(db, phone_number: str) -> Optional[TwilioCredential]:
    """Resolve the account that owns a Twilio number (used for inbound forwarding)."""
    number = normalize_phone(phone_number)
    if not number:
        return None
    credentials = db.query(TwilioCredential).filter_by(phone_number=number).first()
    if credentials:
        return credentials
    line = db.query(TwilioPhoneNumber).filter_by(phone_number=number).first()
    if line:
        return get_credentials(db, line.user_id)
    return None


def auth_token_for(credentials: TwilioCredential) -> str:
    return decrypt_secret(credentials.auth_token) or ""


def api_secret_for(credentials: TwilioCredential) -> str:
    return decrypt_secret(credentials.api_secret) or ""


def upsert_credentials(db, user_id: str, payload: dict) -> TwilioCredential:
    """
    Create or update the caller's Twilio settings.
    Blank secrets on update keep the stored value.
    """
    safe_user = str(user_id or "").strip()
    if not safe_user:
        raise ValueError("userId is required")

    existing = get_credentials(db, safe_user)
    account_sid = _clean(payload.get("accountSid") or payload.get("account_sid"))
    auth_token = _clean(payload.get("authToken") or payload.get("auth_token"))
    phone_number = normalize_phone(payload.get("phoneNumber") or payload.get("phone_number"))
    api_secret = _clean(payload.get("apiSecret") or payload.get("api_secret"))

    if existing and not auth_token:
        auth_token = auth_token_for(existing) or None
    if not account_sid or not auth_token or not phone_number:
        raise ValueError(REQUIRED_FIELDS_MISSING)

    now = datetime.utcnow()
    credentials = existing or TwilioCredential(user_id=safe_user, created_at=now)
    credentials.account_sid = account_sid
    credentials.auth_token = encrypt_secret(auth_token)
    credentials.phone_number = phone_number
    credentials.api_key = _clean(payload.get("apiKey") or payload.get("api_key"))
    if api_secret:
        credentials.api_secret = encrypt_secret(api_secret)
    elif not existing:
        credentials.api_secret = None
    credentials.twiml_app_sid = _clean(payload.get("twimlAppSid") or payload.get("twiml_app_sid"))
    credentials.forward_to_number = normalize_phone(
        payload.get("forwardToNumber") or payload.get("forward_to_number")
    ) or None
    credentials.updated_at = now
    if not existing:
        db.add(credentials)
    db.flush()
    logger.info("Twilio credentials %s for user=%s", "updated" if existing else "created", safe_user)
    return credentials


def credentials_to_dict(credentials: Optional[TwilioCredential]) -> Optional[dict]:
    if not credentials:
        return None
    return {
        "userId": credentials.user_id,
        "accountSid": credentials.account_sid,
        "phoneNumber": credentials.phone_number,
        "apiKey": credentials.api_key,
        "twimlAppSid": credentials.twiml_app_sid,
        "forwardToNumber": credentials.forward_to_number,
        "hasAuthToken": bool(credentials.auth_token),
        "hasApiSecret": bool(credentials.api_secret),
        "updatedAt": credentials.updated_at.isoformat() if credentials.updated_at else None,
    }


def list_phone_numbers(db, user_id: str) -> list[TwilioPhoneNumber]:
    return (
        db.query(TwilioPhoneNumber)
        .filter(TwilioPhoneNumber.user_id == str(user_id or "").strip())
        .order_by(
            TwilioPhoneNumber.is_default.desc(),
            TwilioPhoneNumber.created_at.asc(),
            TwilioPhoneNumber.id.asc(),
        )
        .all()
    )


def phone_number_to_dict(line: TwilioPhoneNumber) -> dict:
    return {
        "id": line.id,
        "phoneNumber": line.phone_number,
        "friendlyName": line.friendly_name,
        "isDefault": bool(line.is_default),
        "createdAt": line.created_at.isoformat() if line.created_at else None,
    }


def _set_only_default(db, user_id: str, line_id: int) -> None:
    for line in db.query(TwilioPhoneNumber).filter_by(user_id=user_id).all():
        line.is_default = line.id == line_id


def add_phone_number(
    db,
    user_id: str,
    phone_number: str,
    friendly_name: Optional[str] = None,
    is_default: bool = False,
) -> TwilioPhoneNumber:
    safe_user = str(user_id or "").strip()
    number = normalize_phone(phone_number)
    if not safe_user:
        raise ValueError("userId is required")
    if not number:
        raise ValueError("phoneNumber is required")
    duplicate = db.query(TwilioPhoneNumber).filter_by(user_id=safe_user, phone_number=number).one_or_none()
    if duplicate:
        raise ValueError("phone number already added")

    has_lines = db.query(TwilioPhoneNumber).filter_by(user_id=safe_user).count() > 0
    line = TwilioPhoneNumber(
        user_id=safe_user,
        phone_number=number,
        friendly_name=_clean(friendly_name),
        is_default=False,
        created_at=datetime.utcnow(),
    )
    db.add(line)
    db.flush()
    if is_default or not has_lines:
        _set_only_default(db, safe_user, line.id)
        db.flush()
    return line


def set_default_phone_number(db, user_id: str, line_id: int) -> Optional[TwilioPhoneNumber]:
    line = db.query(TwilioPhoneNumber).filter_by(id=int(line_id), user_id=str(user_id)).one_or_none()
    if not line:
        return None
    _set_only_default(db, line.user_id, line.id)
    db.flush()
    return line


def delete_phone_number(db, user_id: str, line_id: int) -> bool:
    line = db.query(TwilioPhoneNumber).filter_by(id=int(line_id), user_id=str(user_id)).one_or_none()
    if not line:
        return False
    was_default = bool(line.is_default)
    db.delete(line)
    db.flush()
    if was_default:
        remaining = list_phone_numbers(db, user_id)
        if remaining:
            _set_only_default(db, str(user_id), remaining[0].id)
            db.flush()
    return True


def caller_id_options(db, user_id: Optional[str], credentials: Optional[TwilioCredential] = None) -> list[str]:
    """Outbound lines for a user, default line first, then the account number."""
    options: list[str] = []
    if user_id:
        for line in list_phone_numbers(db, user_id):
            number = normalize_phone(line.phone_number)
            if number and number not in options:
                options.append(number)
    if credentials is None and user_id:
        credentials = get_credentials(db, user_id)
    if credentials:
        number = normalize_phone(credentials.phone_number)
        if number and number not in options:
            options.append(number)
    return options


def resolve_caller_id(
    db,
    user_id: Optional[str],
    requested: Optional[str] = None,
    *,
    fallback: str = "",
) -> str:
    """
    Pick the caller-id line for an outbound bridge: the requested line when it
    belongs to the user, else the default line, else the account number,
    else the configured fallback.
    """
    options = caller_id_options(db, user_id)
    requested_number = normalize_phone(requested)
    if requested_number and requested_number in options:
        return requested_number
    if options:
        return options[0]
    return normalize_phone(fallback)
