import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken
from fastapi import HTTPException

from config.env import BANK_DATA_ENCRYPTION_KEY, JWT_SECRET
from utils.errors import ValidationFailedError


def _build_fernet() -> Fernet:
    seed = (BANK_DATA_ENCRYPTION_KEY or JWT_SECRET or "").strip()
    if not seed:
        raise HTTPException(status_code=500, detail="Bank data encryption key is not configured")
    key = base64.urlsafe_b64encode(hashlib.sha256(seed.encode("utf-8")).digest())
    return Fernet(key)


def encrypt_sensitive_value(value: str) -> str:
    if not value:
        raise ValidationFailedError("Sensitive value missing")
    token = _build_fernet().encrypt(value.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_sensitive_value(token: str) -> str:
    if not token:
        raise ValidationFailedError("Encrypted sensitive value missing")
    try:
        raw = _build_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken:
        raise HTTPException(status_code=500, detail="Stored bank data cannot be decrypted")
    return raw.decode("utf-8")


def mask_account_number(value: str) -> str:
    digits = "".join(ch for ch in value if ch.isalnum())
    return f"****{digits[-4:]}"
