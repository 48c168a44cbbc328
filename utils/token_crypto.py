import base64
import hashlib
import os
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from shared.config import get_required_setting

SECRET_PREFIX = "v1:"


def _derive_key() -> bytes:
    raw = get_required_setting("CREDENTIALS_ENC_KEY")

    raw_bytes: Optional[bytes] = None
    try:
        padded = raw + "=" * (-len(raw) % 4)
        decoded = base64.urlsafe_b64decode(padded.encode("utf-8"))
        if len(decoded) in (16, 24, 32):
            raw_bytes = decoded
    except ValueError:
        raw_bytes = None

    if not raw_bytes:
        raw_bytes = hashlib.sha256(raw.encode("utf-8")).digest()

    if len(raw_bytes) not in (16, 24, 32):
        raise ValueError("Invalid CREDENTIALS_ENC_KEY length")
    return raw_bytes


def is_encrypted(value: Optional[str]) -> bool:
    return bool(value) and str(value).startswith(SECRET_PREFIX)


def encrypt_secret(secret: str) -> str:
    if secret is None:
        raise ValueError("secret is required")
    key = _derive_key()
    aesgcm = AESGCM(key)
    nonce = os.urandom(12)
    ciphertext = aesgcm.encrypt(nonce, secret.encode("utf-8"), None)
    payload = base64.urlsafe_b64encode(nonce + ciphertext).decode("utf-8").rstrip("=")
    return f"{SECRET_PREFIX}{payload}"


def decrypt_secret(value: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored secret. Rows written before encryption was enabled carry
    no prefix and are returned unchanged.
    """
    if value is None:
        return None
    raw = str(value)
    if not raw.startswith(SECRET_PREFIX):
        return raw
    raw = raw[len(SECRET_PREFIX):]
    padded = raw + "=" * (-len(raw) % 4)
    try:
        blob = base64.urlsafe_b64decode(padded.encode("utf-8"))
    except ValueError as exc:
        raise ValueError("Invalid secret encoding") from exc
    if len(blob) < 13:
        raise ValueError("Invalid secret payload")
    nonce = blob[:12]
    ciphertext = blob[12:]
    aesgcm = AESGCM(_derive_key())
    plaintext = aesgcm.decrypt(nonce, ciphertext, None)
    return plaintext.decode("utf-8")
