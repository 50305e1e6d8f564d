"""
Auth service - login, role selection, refresh rotation and logout.

Tokens are only issued once a role is chosen. The access token carries the
active role; refresh tokens are opaque, stored hashed, and rotated on every
use with a conditional UPDATE so concurrent refreshes have a single winner.
"""

import logging

import jwt
from sqlalchemy.orm import Session

from convenio.core.errors import AuthError, ForbiddenError, ValidationError
from convenio.core.security import (
    create_access_token,
    create_selection_token,
    decode_selection_token,
    generate_refresh_token,
    hash_refresh_token,
    split_refresh_token,
    verify_password,
    verify_refresh_token,
)
from convenio.core.timeutils import utc_now
from convenio.db.enums import ROLE_PRIORITY, Role
from convenio.db.models import RefreshToken, User
from convenio.schemas.auth import TokenResponse
from convenio.services import user_service

logger = logging.getLogger(__name__)

INVALID_REFRESH_TOKEN = "invalid_refresh_token"


# =============================================================================
# Login / role selection
# =============================================================================

def authenticate(db: Session, cpf: str, password: str) -> User:
    """
    Validate CPF + password.

    Unknown CPF and wrong password fail identically.
    """
    try:
        normalized = user_service.normalize_cpf(cpf)
    except ValidationError:
        raise AuthError("Credenciais inválidas", code="INVALID_CREDENTIALS")

    user = user_service.get_user_by_cpf(db, normalized)
    if not user or not verify_password(password or "", user.password_hash):
        logger.info("Failed login (cpf=%s)", user_service.mask_cpf(normalized))
        raise AuthError("Credenciais inválidas", code="INVALID_CREDENTIALS")
    return user


def login(db: Session, cpf: str, password: str) -> tuple[User, bool, str]:
    """
    Validate credentials. No session tokens are issued here.

    The short-lived selection ticket is what /select-role accepts as proof
    of this login.

    Returns:
        (user, needs_role_selection, selection_token)
    """
    user = authenticate(db, cpf, password)
    logger.info("User %s logged in (%d roles)", user.id, len(user.roles or []))
    return user, len(user.roles or []) > 1, create_selection_token(user.id)


def check_selection_token(selection_token: str | None, user_id: int) -> None:
    """
    Raises:
        AuthError: ticket missing, expired, forged or issued to another user
    """
    if not selection_token:
        raise AuthError("Login necessário antes de escolher o papel", code="INVALID_SELECTION_TOKEN")
    try:
        ticket_user_id = decode_selection_token(selection_token)
    except jwt.InvalidTokenError:
        raise AuthError("Sessão de login inválida ou expirada", code="INVALID_SELECTION_TOKEN")
    if ticket_user_id != user_id:
        logger.warning("Selection ticket of user %s presented for user %s", ticket_user_id, user_id)
        raise AuthError("Sessão de login inválida ou expirada", code="INVALID_SELECTION_TOKEN")


def default_role(user: User) -> Role:
    """First held role in priority order."""
    for role in ROLE_PRIORITY:
        if user.has_role(role):
            return role
    raise ForbiddenError("Usuário sem papéis atribuídos", code="ROLE_NOT_ALLOWED")


def _check_role(user: User, role: str) -> Role:
    if not Role.has_value(role) or not user.has_role(role):
        raise ForbiddenError("Papel não permitido para este usuário", code="ROLE_NOT_ALLOWED")
    return Role(role)


def _persist_refresh_token(db: Session, user_id: int, role: Role) -> str:
    """Create and add (not commit) a new refresh row. Returns the plaintext token."""
    token, selector, verifier, expires_at = generate_refresh_token()
    db.add(
        RefreshToken(
            user_id=user_id,
            selector=selector,
            role=role.value,
            token_hash=hash_refresh_token(verifier),
            expires_at=expires_at,
            revoked=False,
        )
    )
    return token


def _token_response(user: User, role: Role, refresh_token: str) -> TokenResponse:
    return TokenResponse(
        access_token=create_access_token(user.id, role.value),
        refresh_token=refresh_token,
        user=user_service.to_user_payload(user, current_role=role.value),
    )


def select_role(db: Session, user_id: int, role: str) -> TokenResponse:
    """
    Issue a token pair for a held role.

    Raises:
        ForbiddenError: role not held by the user
    """
    user = user_service.get_user(db, user_id)
    active_role = _check_role(user, role)

    refresh_token = _persist_refresh_token(db, user.id, active_role)
    db.commit()
    db.refresh(user)

    logger.info("User %s selected role %s", user.id, active_role.value)
    return _token_response(user, active_role, refresh_token)


def switch_role(db: Session, user_id: int, role: str) -> TokenResponse:
    """
    Switch the active role of an authenticated user.

    All prior refresh tokens are revoked in the same transaction that
    stores the new one.
    """
    user = user_service.get_user(db, user_id)
    active_role = _check_role(user, role)

    db.query(RefreshToken).filter(
        RefreshToken.user_id == user.id,
        RefreshToken.revoked.is_(False),
    ).update({"revoked": True}, synchronize_session=False)
    refresh_token = _persist_refresh_token(db, user.id, active_role)
    db.commit()
    db.refresh(user)

    logger.info("User %s switched to role %s", user.id, active_role.value)
    return _token_response(user, active_role, refresh_token)


# =============================================================================
# Refresh rotation
# =============================================================================

def _find_refresh_row(db: Session, presented: str) -> RefreshToken | None:
    """
    Scan candidate rows (non-revoked, unexpired, same selector) and verify
    the presented token against each stored hash.
    """
    parts = split_refresh_token(presented)
    if not parts:
        return None
    selector, verifier = parts

    candidates = (
        db.query(RefreshToken)
        .filter(
            RefreshToken.selector == selector,
            RefreshToken.revoked.is_(False),
            RefreshToken.expires_at > utc_now(),
        )
        .all()
    )
    for row in candidates:
        if verify_refresh_token(verifier, row.token_hash):
            return row
    return None


def refresh(db: Session, presented: str) -> TokenResponse:
    """
    Rotate a refresh token.

    The old row is revoked with `UPDATE ... WHERE revoked = false`; only the
    caller that flips it gets a new pair, any concurrent caller fails.

    The session keeps its active role while the user still holds it;
    otherwise the default role is used.

    Raises:
        AuthError: invalid_refresh_token
    """
    row = _find_refresh_row(db, presented)
    if not row:
        raise AuthError("Refresh token inválido", code=INVALID_REFRESH_TOKEN)

    flipped = (
        db.query(RefreshToken)
        .filter(RefreshToken.id == row.id, RefreshToken.revoked.is_(False))
        .update({"revoked": True}, synchronize_session=False)
    )
    if flipped != 1:
        db.rollback()
        logger.warning("Refresh token %s reused concurrently", row.id)
        raise AuthError("Refresh token inválido", code=INVALID_REFRESH_TOKEN)

    user = db.query(User).filter(User.id == row.user_id).first()
    if not user:
        db.rollback()
        raise AuthError("Refresh token inválido", code=INVALID_REFRESH_TOKEN)

    if Role.has_value(row.role) and user.has_role(row.role):
        active_role = Role(row.role)
    else:
        active_role = default_role(user)

    new_token = _persist_refresh_token(db, user.id, active_role)
    db.commit()
    db.refresh(user)

    logger.info("Refresh token rotated for user %s", user.id)
    return _token_response(user, active_role, new_token)


# =============================================================================
# Logout
# =============================================================================

def logout(db: Session, user_id: int) -> int:
    """Revoke every refresh token of the user. Returns rows revoked."""
    revoked = (
        db.query(RefreshToken)
        .filter(RefreshToken.user_id == user_id, RefreshToken.revoked.is_(False))
        .update({"revoked": True}, synchronize_session=False)
    )
    db.commit()
    logger.info("User %s logged out (%d refresh tokens revoked)", user_id, revoked)
    return revoked
