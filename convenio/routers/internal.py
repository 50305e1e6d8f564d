"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from an external cron when the worker is not running.
"""

import hmac
import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from convenio.core.config import settings
from convenio.core.deps import get_db
from convenio.services import expiry_service

router = APIRouter(prefix="/internal/scheduled", tags=["internal"])
logger = logging.getLogger(__name__)


def verify_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(
            status_code=501,
            detail={"message": "INTERNAL_SECRET not configured", "code": "NOT_CONFIGURED"},
        )
    if not hmac.compare_digest(x_internal_secret, expected):
        raise HTTPException(
            status_code=403,
            detail={"message": "Invalid internal secret", "code": "FORBIDDEN"},
        )


class ExpirySweepResponse(BaseModel):
    users_expired: int
    dependents_expired: int


@router.post(
    "/expiry-sweep",
    response_model=ExpirySweepResponse,
    dependencies=[Depends(verify_internal_secret)],
)
def run_expiry_sweep(db: Session = Depends(get_db)):
    """Expire subscriptions and dependents whose expiry date has passed."""
    result = expiry_service.run_expiry_sweep(db)
    logger.info("Expiry sweep via internal endpoint: %s", result)
    return result
