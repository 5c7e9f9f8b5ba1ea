"""
Credentials and field encryption.

Passwords are bcrypt hashes and sessions are short-lived HS256 JWTs. SSNs
read off tax documents are stored Fernet-encrypted, with only the last four
digits kept in clear for display.
"""
import re
import uuid
from datetime import datetime, timedelta, timezone

from cryptography.fernet import Fernet, InvalidToken
from jose import JWTError, jwt
from passlib.context import CryptContext

from taxprep.core.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS = "access"
REFRESH = "refresh"


# ─── Password hashing ──────────────────────────────────
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        # Placeholder hashes on seeded rows are not bcrypt
        return False


# ─── JWT tokens ────────────────────────────────────────
def _issue(data: dict, token_type: str, lifetime: timedelta) -> str:
    claims = {**data, "type": token_type, "exp": datetime.now(timezone.utc) + lifetime}
    if token_type == REFRESH:
        claims["jti"] = uuid.uuid4().hex  # blacklisted on rotation
    return jwt.encode(claims, settings.api_secret_key, algorithm=settings.algorithm)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    return _issue(data, ACCESS, expires_delta or timedelta(minutes=settings.access_token_expire_minutes))


def create_refresh_token(data: dict) -> str:
    return _issue(data, REFRESH, timedelta(days=settings.refresh_token_expire_days))


def decode_token(token: str, expected_type: str | None = None) -> dict | None:
    """Claims of a valid token; None if malformed, expired or of another type."""
    try:
        claims = jwt.decode(token, settings.api_secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    if expected_type is not None and claims.get("type") != expected_type:
        return None
    return claims


# ─── SSNs at rest ──────────────────────────────────────
def get_fernet() -> Fernet:
    return Fernet(settings.encryption_key.encode())


def encrypt_value(value: str) -> str:
    return get_fernet().encrypt(value.encode()).decode()


def decrypt_value(encrypted: str) -> str | None:
    try:
        return get_fernet().decrypt(encrypted.encode()).decode()
    except InvalidToken:
        # Written under a key that has since been rotated out
        return None


def normalize_ssn(value: str | None) -> str | None:
    digits = re.sub(r"\D", "", value or "")
    return digits if len(digits) == 9 else None


def protect_ssn(value: str | None) -> tuple[str, str] | None:
    """(ciphertext, last four) for a well-formed SSN, otherwise None."""
    digits = normalize_ssn(value)
    if digits is None:
        return None
    return encrypt_value(digits), digits[-4:]
