"""Security utilities: password hashing, access JWTs and opaque refresh tokens."""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from convenio.core.config import settings


ACCESS_TOKEN_TYPE = "access"
SELECTION_TOKEN_TYPE = "role_selection"


# =============================================================================
# Password hashing
# =============================================================================

def hash_password(password: str) -> str:
    """Hash a password with bcrypt (salted)."""
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time bcrypt verification. Malformed hashes never verify."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


# =============================================================================
# Access Token (JWT in Authorization header)
# =============================================================================

def create_access_token(user_id: int, role: str) -> str:
    """
    Create signed access JWT.

    Always signs with current secret (JWT_SECRET).
    The active role travels in the token; it is never persisted on the user.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "type": ACCESS_TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRES_MINUTES),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_access_token(token: str) -> dict:
    """
    Decode and verify access JWT.

    Tries current secret first, then previous (for rotation support).
    Expiry is reported as soon as any secret validates the signature.

    Raises:
        jwt.ExpiredSignatureError: Token signature valid but expired
        jwt.InvalidTokenError: Token invalid with all secrets, or not an access token
    """
    last_error: jwt.InvalidTokenError | None = None
    for secret in settings.jwt_secrets:
        try:
            payload = jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            raise
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise jwt.InvalidTokenError("Not an access token")
        return payload
    raise last_error or jwt.InvalidTokenError("No secret configured")


# =============================================================================
# Role selection ticket (returned by login, spent on /select-role)
# =============================================================================

def create_selection_token(user_id: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "type": SELECTION_TOKEN_TYPE,
        "iat": now,
        "exp": now + timedelta(minutes=settings.SELECTION_TOKEN_EXPIRES_MINUTES),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_selection_token(token: str) -> int:
    """
    Return the user id a selection ticket was issued to.

    Raises:
        jwt.InvalidTokenError: bad signature, expired, or not a selection ticket
    """
    last_error: jwt.InvalidTokenError | None = None
    for secret in settings.jwt_secrets:
        try:
            payload = jwt.decode(token, secret, algorithms=["HS256"])
        except jwt.InvalidTokenError as e:
            last_error = e
            continue
        if payload.get("type") != SELECTION_TOKEN_TYPE:
            raise jwt.InvalidTokenError("Not a role selection ticket")
        return int(payload["sub"])
    raise last_error or jwt.InvalidTokenError("No secret configured")


# =============================================================================
# Refresh Token (opaque, stored hashed)
# =============================================================================

def generate_refresh_token() -> tuple[str, str, str, datetime]:
    """
    Generate an opaque refresh token.

    Format is `<selector>.<verifier>`. The selector narrows the candidate rows;
    only the verifier is secret and it is stored as a bcrypt hash.

    Returns:
        (token, selector, verifier, expires_at)
    """
    selector = secrets.token_urlsafe(12)
    verifier = secrets.token_urlsafe(32)
    expires_at = datetime.now(timezone.utc) + timedelta(days=settings.REFRESH_TOKEN_EXPIRES_DAYS)
    return f"{selector}.{verifier}", selector, verifier, expires_at


def split_refresh_token(token: str) -> tuple[str, str] | None:
    """Split a presented refresh token into (selector, verifier)."""
    selector, sep, verifier = (token or "").partition(".")
    if not sep or not selector or not verifier:
        return None
    return selector, verifier


def _prehash(verifier: str) -> bytes:
    # bcrypt only reads the first 72 bytes
    return hashlib.sha256(verifier.encode("utf-8")).hexdigest().encode("ascii")


def hash_refresh_token(verifier: str) -> str:
    """Salted one-way hash of the refresh token verifier."""
    salt = bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    return bcrypt.hashpw(_prehash(verifier), salt).decode("utf-8")


def verify_refresh_token(verifier: str, token_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_prehash(verifier), token_hash.encode("utf-8"))
    except ValueError:
        return False
