"""Authentication router - CPF login, role selection and token rotation."""

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from convenio.core.deps import get_current_session, get_db
from convenio.core.rate_limit import AUTH_LIMIT, limiter
from convenio.db.enums import Role
from convenio.schemas.auth import (
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    SelectRoleRequest,
    SwitchRoleRequest,
    TokenResponse,
    UserSession,
)
from convenio.services import auth_service, user_service

router = APIRouter()


# =============================================================================
# Registration / login
# =============================================================================

@router.post("/register", response_model=RegisterResponse, status_code=201, response_model_by_alias=True)
@limiter.limit(AUTH_LIMIT)
def register(request: Request, data: RegisterRequest, db: Session = Depends(get_db)):
    """Create a client account. Subscription starts as pending."""
    user = user_service.register_user(db, data)
    return RegisterResponse(user=user_service.to_user_payload(user))


@router.post("/login", response_model=LoginResponse, response_model_by_alias=True)
@limiter.limit(AUTH_LIMIT)
def login(request: Request, data: LoginRequest, db: Session = Depends(get_db)):
    """
    Validate CPF and password.

    No session tokens here: the client follows up with /select-role, passing
    the returned selectionToken, automatically when the user holds a single role.
    """
    user, needs_role_selection, selection_token = auth_service.login(db, data.cpf, data.password)
    return LoginResponse(
        user=user_service.to_user_payload(user),
        needs_role_selection=needs_role_selection,
        selection_token=selection_token,
    )


@router.post("/select-role", response_model=TokenResponse, response_model_by_alias=True)
@limiter.limit(AUTH_LIMIT)
def select_role(request: Request, data: SelectRoleRequest, db: Session = Depends(get_db)):
    """Exchange the login selection ticket for a token pair in the chosen role."""
    auth_service.check_selection_token(data.selection_token, data.user_id)
    return auth_service.select_role(db, data.user_id, data.role)


# =============================================================================
# Session
# =============================================================================

@router.post("/switch-role", response_model=TokenResponse, response_model_by_alias=True)
def switch_role(
    data: SwitchRoleRequest,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Switch the active role. Every earlier refresh token is revoked."""
    return auth_service.switch_role(db, session.user_id, data.role)


@router.post("/refresh", response_model=TokenResponse, response_model_by_alias=True)
@limiter.limit(AUTH_LIMIT)
def refresh(request: Request, data: RefreshRequest, db: Session = Depends(get_db)):
    """Rotate a refresh token. The presented token is revoked on success."""
    return auth_service.refresh(db, data.refresh_token)


@router.get("/me", response_model=MeResponse, response_model_by_alias=True)
def me(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    user = user_service.get_user(db, session.user_id)
    return MeResponse(user=user_service.to_user_payload(user, current_role=session.role.value))


@router.post("/logout", status_code=204)
def logout(
    data: LogoutRequest | None = None,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    """Revoke all refresh tokens. Admins may log out another user."""
    user_id = data.user_id if data and data.user_id is not None else session.user_id
    if user_id != session.user_id and session.role != Role.ADMIN:
        raise HTTPException(
            status_code=403,
            detail={"message": "Não autorizado", "code": "FORBIDDEN"},
        )
    auth_service.logout(db, user_id)
    return Response(status_code=204)
