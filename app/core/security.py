import hashlib
import json
import time
from datetime import datetime, timedelta
from typing import Optional, Union, Any
from jose import jwt
from passlib.context import CryptContext
from app.core.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

CHAT_ROLES = ("customer", "service_provider")


def create_access_token(subject: Union[str, Any], expires_delta: timedelta = None) -> str:
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {"exp": expire, "sub": str(subject)}
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


# ─── Booking chat tokens ─────────────────────────────────────────────

def _chat_digest(booking_id: str, user_id: str, role: str, issued_at: int) -> str:
    payload = json.dumps(
        {"bookingId": booking_id, "userId": user_id, "role": role, "timestamp": issued_at},
        separators=(",", ":"),
    )
    return hashlib.sha256((payload + settings.SECRET_KEY).encode("utf-8")).hexdigest()[:32]


def generate_chat_token(booking_id: str, user_id: str, role: str, issued_at: Optional[int] = None) -> str:
    """Token granting one party access to a booking's chat room.

    Format: ``{booking_id}:{role}:{issued_at}:{digest}``.
    """
    if role not in CHAT_ROLES:
        raise ValueError(f"Unknown chat role: {role}")
    if issued_at is None:
        issued_at = int(time.time() * 1000)
    digest = _chat_digest(booking_id, user_id, role, issued_at)
    return f"{booking_id}:{role}:{issued_at}:{digest}"


def parse_chat_token(token: str) -> Optional[dict]:
    parts = (token or "").split(":")
    if len(parts) != 4 or parts[1] not in CHAT_ROLES:
        return None
    try:
        issued_at = int(parts[2])
    except ValueError:
        return None
    return {"booking_id": parts[0], "role": parts[1], "issued_at": issued_at}


def verify_chat_token(token: str, booking_id: str, user_id: str, role: str) -> bool:
    parsed = parse_chat_token(token)
    if not parsed or parsed["booking_id"] != booking_id or parsed["role"] != role:
        return False
    return token == generate_chat_token(booking_id, user_id, role, parsed["issued_at"])
