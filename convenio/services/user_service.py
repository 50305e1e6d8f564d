"""User service - registration, lookup and dependents."""

import logging
import re
from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from convenio.core.errors import ConflictError, NotFoundError, ValidationError
from convenio.core.security import hash_password
from convenio.db.enums import DEFAULT_ROLE, DEFAULT_SUBSCRIPTION_STATUS
from convenio.db.models import Dependent, User
from convenio.schemas.auth import RegisterRequest, UserPayload

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
_NON_DIGITS = re.compile(r"\D")


def normalize_cpf(raw: str | None) -> str:
    """
    Strip formatting from a CPF and require exactly 11 digits.

    Raises:
        ValidationError: CPF missing or not 11 digits
    """
    digits = _NON_DIGITS.sub("", raw or "")
    if len(digits) != 11:
        raise ValidationError("CPF deve conter 11 dígitos numéricos", code="INVALID_CPF")
    return digits


def mask_cpf(cpf: str) -> str:
    """Log-safe CPF (last two digits only)."""
    return f"*********{cpf[-2:]}" if cpf else ""


def to_user_payload(user: User, current_role: str | None = None) -> UserPayload:
    return UserPayload(
        id=user.id,
        name=user.name,
        cpf=user.cpf,
        email=user.email,
        roles=list(user.roles or []),
        current_role=current_role,
        subscription_status=user.subscription_status,
        subscription_expiry=user.subscription_expiry,
    )


def get_user(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFoundError("Usuário não encontrado", code="USER_NOT_FOUND")
    return user


def get_user_by_cpf(db: Session, cpf: str) -> User | None:
    return db.query(User).filter(User.cpf == cpf).first()


def register_user(db: Session, data: RegisterRequest) -> User:
    """
    Register a new client.

    - CPF normalized to 11 digits and unique
    - Password at least 6 characters
    - Role `client`, subscription `pending`
    """
    cpf = normalize_cpf(data.cpf)
    if len(data.password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Senha deve ter pelo menos {MIN_PASSWORD_LENGTH} caracteres",
            code="WEAK_PASSWORD",
        )
    if not data.name.strip():
        raise ValidationError("Nome é obrigatório", code="NAME_REQUIRED")

    if get_user_by_cpf(db, cpf):
        raise ConflictError("CPF já cadastrado", code="CPF_IN_USE")

    user = User(
        name=data.name.strip(),
        cpf=cpf,
        password_hash=hash_password(data.password),
        email=data.email,
        phone=_NON_DIGITS.sub("", data.phone) if data.phone else None,
        birth_date=data.birth_date,
        address=data.address,
        address_number=data.address_number,
        address_complement=data.address_complement,
        neighborhood=data.neighborhood,
        city=data.city,
        state=data.state,
        roles=[DEFAULT_ROLE.value],
        subscription_status=DEFAULT_SUBSCRIPTION_STATUS.value,
        subscription_active=False,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent registration with the same CPF
        db.rollback()
        raise ConflictError("CPF já cadastrado", code="CPF_IN_USE")
    db.refresh(user)

    logger.info("User %s registered (cpf=%s)", user.id, mask_cpf(cpf))
    return user


# =============================================================================
# Dependents
# =============================================================================

def list_dependents(db: Session, user_id: int) -> list[Dependent]:
    return (
        db.query(Dependent)
        .filter(Dependent.user_id == user_id)
        .order_by(Dependent.created_at, Dependent.id)
        .all()
    )


def get_dependent(db: Session, dependent_id: int) -> Dependent:
    dependent = db.query(Dependent).filter(Dependent.id == dependent_id).first()
    if not dependent:
        raise NotFoundError("Dependente não encontrado", code="DEPENDENT_NOT_FOUND")
    return dependent


def create_dependent(
    db: Session,
    user_id: int,
    name: str,
    cpf: str,
    birth_date: date | None = None,
) -> Dependent:
    """Create a dependent for a titular. Activation requires a separate payment."""
    cpf = normalize_cpf(cpf)
    if not (name or "").strip():
        raise ValidationError("Nome é obrigatório", code="NAME_REQUIRED")

    if db.query(Dependent).filter(Dependent.cpf == cpf).first():
        raise ConflictError("CPF já cadastrado como dependente", code="CPF_IN_USE")

    dependent = Dependent(
        user_id=user_id,
        name=name.strip(),
        cpf=cpf,
        birth_date=birth_date,
        subscription_status=DEFAULT_SUBSCRIPTION_STATUS.value,
        subscription_active=False,
    )
    db.add(dependent)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("CPF já cadastrado como dependente", code="CPF_IN_USE")
    db.refresh(dependent)

    logger.info("Dependent %s created for user %s", dependent.id, user_id)
    return dependent
