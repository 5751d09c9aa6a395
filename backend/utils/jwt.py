from jose import jwt
from config.env import JWT_SECRET, JWT_ALGORITHM

# Tokens are issued by the identity service; the ledger only verifies them.

def _require_jwt_secret() -> str:
    secret = (JWT_SECRET or "").strip()
    if not secret:
        raise RuntimeError("JWT_SECRET is not configured")
    return secret

def decode_token(token: str) -> dict:
    return jwt.decode(token, _require_jwt_secret(), algorithms=[JWT_ALGORITHM])
