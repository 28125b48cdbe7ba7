# apps/backend/auth/auth_utils.py
from datetime import datetime, timedelta, timezone
from typing import Optional
import os

import bcrypt
import jwt

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
ACCESS_TOKEN_MINUTES = int(os.getenv("ACCESS_TOKEN_MINUTES", str(60 * 24 * 30)))  # 30 days

if not JWT_SECRET:
    # fail at startup instead of signing tokens with nothing
    raise RuntimeError("JWT_SECRET is not set in environment variables")

MIN_PASSWORD_LENGTH = 8
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))


def create_access_token(
    user_id: str,
    email: str,
    role: str = "user",
    expires_minutes: int = ACCESS_TOKEN_MINUTES,
) -> str:
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError:
        return None


def hash_password(password: str) -> str:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    # accounts from a federated sign-in have no password
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False
