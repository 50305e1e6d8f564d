"""FastAPI dependencies for authentication, authorization, and database access."""

from typing import Generator

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from convenio.core.security import decode_access_token
from convenio.db.session import SessionLocal


AUTH_HEADER = "Authorization"
BEARER_PREFIX = "bearer "

# Auth failure codes surfaced to clients so they can branch
# (TOKEN_EXPIRED triggers one refresh-then-retry on the client).
NO_TOKEN = "NO_TOKEN"
TOKEN_EXPIRED = "TOKEN_EXPIRED"
INVALID_TOKEN = "INVALID_TOKEN"
USER_NOT_FOUND = "USER_NOT_FOUND"
AUTH_ERROR = "AUTH_ERROR"


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _unauthorized(message: str, code: str) -> HTTPException:
    return HTTPException(status_code=401, detail={"message": message, "code": code})


def get_bearer_token(request: Request) -> str | None:
    """Extract the token from `Authorization: Bearer <token>`."""
    header = request.headers.get(AUTH_HEADER, "")
    if not header.lower().startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


def get_current_session(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Get session context: user_id, active role, held roles.

    This is the PRIMARY auth dependency for most endpoints.
    The user is reloaded on every request so role and subscription
    changes are observed immediately.

    Validates:
    - Bearer token exists
    - JWT is valid and not expired
    - User exists
    - Active role is still held by the user

    Raises:
        HTTPException 401: with code NO_TOKEN, TOKEN_EXPIRED, INVALID_TOKEN,
            USER_NOT_FOUND or AUTH_ERROR
    """
    # Import here to avoid circular imports
    from convenio.db.enums import Role
    from convenio.db.models import User
    from convenio.schemas.auth import UserSession

    token = get_bearer_token(request)
    if not token:
        raise _unauthorized("Token de acesso não fornecido", NO_TOKEN)

    try:
        payload = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expirado", TOKEN_EXPIRED)
    except jwt.InvalidTokenError:
        raise _unauthorized("Token inválido", INVALID_TOKEN)

    try:
        user_id = int(payload["sub"])
        role_value = payload["role"]
    except (KeyError, TypeError, ValueError):
        raise _unauthorized("Token inválido", INVALID_TOKEN)

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise _unauthorized("Usuário não encontrado", USER_NOT_FOUND)

    if not Role.has_value(role_value) or not user.has_role(role_value):
        raise _unauthorized("Papel da sessão não pertence ao usuário", AUTH_ERROR)

    return UserSession(
        user_id=user.id,
        role=Role(role_value),
        roles=list(user.roles),
        name=user.name,
    )


def require_roles(allowed_roles: list):
    """
    Dependency factory for role-based authorization.

    Checks the session's ACTIVE role (from the token), not every role held.

    Usage:
        @router.post("/admin", dependencies=[Depends(require_roles([Role.ADMIN]))])
    """
    def dependency(request: Request, db: Session = Depends(get_db)):
        session = get_current_session(request, db)
        if session.role not in allowed_roles:
            raise HTTPException(
                status_code=403,
                detail={
                    "message": f"Papel '{session.role.value}' não autorizado para esta ação",
                    "code": "FORBIDDEN",
                },
            )
        return session
    return dependency


def require_scheduling_access(request: Request, db: Session = Depends(get_db)):
    """
    Gate for agenda operations: active professional with unexpired scheduling access.

    Raises:
        HTTPException 403: NO_SCHEDULING_ACCESS
    """
    from convenio.db.enums import Role
    from convenio.services import scheduling_access_service

    session = require_roles([Role.PROFESSIONAL])(request, db)
    if not scheduling_access_service.has_access(db, session.user_id):
        raise HTTPException(
            status_code=403,
            detail={
                "message": "scheduling_access_required",
                "code": "NO_SCHEDULING_ACCESS",
            },
        )
    return session
