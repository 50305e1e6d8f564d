"""Dependents router - the titular's dependents."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from convenio.core.deps import get_db, require_roles
from convenio.db.enums import Role
from convenio.schemas.auth import UserSession
from convenio.schemas.dependents import DependentCreate, DependentRead
from convenio.services import user_service

router = APIRouter()


@router.get("", response_model=list[DependentRead])
def list_dependents(
    session: UserSession = Depends(require_roles([Role.CLIENT])),
    db: Session = Depends(get_db),
):
    return user_service.list_dependents(db, session.user_id)


@router.post("", response_model=DependentRead, status_code=201)
def create_dependent(
    data: DependentCreate,
    session: UserSession = Depends(require_roles([Role.CLIENT])),
    db: Session = Depends(get_db),
):
    """Add a dependent. It stays pending until its activation is paid."""
    return user_service.create_dependent(
        db, session.user_id, data.name, data.cpf, data.birth_date
    )
