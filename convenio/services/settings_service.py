"""System settings service - live-tunable constants with a short read cache."""

import logging
import threading
import time
from decimal import Decimal, InvalidOperation

from sqlalchemy.orm import Session

from convenio.core.config import settings
from convenio.core.errors import NotFoundError, ValidationError
from convenio.db.models import SystemSetting

logger = logging.getLogger(__name__)


# =============================================================================
# Known keys and defaults
# =============================================================================

SUBSCRIPTION_PRICE = "subscription_price"
DEPENDENT_PRICE = "dependent_price"
AGENDA_ACCESS_PRICE = "agenda_access_price"
AGENDA_ACCESS_DAYS = "agenda_access_days"
CONVENIO_SHARE_PERCENTAGE = "convenio_share_percentage"
SUBSCRIPTION_DURATION_DAYS = "subscription_duration_days"

DEFAULT_SETTINGS: dict[str, str] = {
    SUBSCRIPTION_PRICE: "250.00",
    DEPENDENT_PRICE: "50.00",
    AGENDA_ACCESS_PRICE: "24.99",
    AGENDA_ACCESS_DAYS: "30",
    CONVENIO_SHARE_PERCENTAGE: "50",
    SUBSCRIPTION_DURATION_DAYS: "365",
}

SETTING_DESCRIPTIONS: dict[str, str] = {
    SUBSCRIPTION_PRICE: "Preço anual da assinatura do titular",
    DEPENDENT_PRICE: "Preço anual de ativação de dependente",
    AGENDA_ACCESS_PRICE: "Preço do acesso à agenda por período",
    AGENDA_ACCESS_DAYS: "Dias de acesso à agenda por período pago",
    CONVENIO_SHARE_PERCENTAGE: "Percentual de cada consulta do convênio devido ao convênio",
    SUBSCRIPTION_DURATION_DAYS: "Duração da assinatura em dias",
}

_INTEGER_KEYS = {AGENDA_ACCESS_DAYS, SUBSCRIPTION_DURATION_DAYS}

_CENTS = Decimal("0.01")


# =============================================================================
# TTL cache (invalidated on write)
# =============================================================================

_cache: dict[str, tuple[float, str]] = {}
_cache_lock = threading.Lock()


def invalidate_cache(key: str | None = None) -> None:
    """Drop one cached key, or all of them."""
    with _cache_lock:
        if key is None:
            _cache.clear()
        else:
            _cache.pop(key, None)


def _cached(key: str) -> str | None:
    if settings.SETTINGS_CACHE_TTL_SECONDS <= 0:
        return None
    with _cache_lock:
        entry = _cache.get(key)
    if not entry:
        return None
    stored_at, value = entry
    if time.monotonic() - stored_at > settings.SETTINGS_CACHE_TTL_SECONDS:
        return None
    return value


def _store(key: str, value: str) -> None:
    if settings.SETTINGS_CACHE_TTL_SECONDS <= 0:
        return
    with _cache_lock:
        _cache[key] = (time.monotonic(), value)


# =============================================================================
# Reads
# =============================================================================

def get_setting(db: Session, key: str) -> str:
    """Get a setting value, falling back to the built-in default."""
    cached = _cached(key)
    if cached is not None:
        return cached

    row = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    if row:
        value = row.value
    elif key in DEFAULT_SETTINGS:
        value = DEFAULT_SETTINGS[key]
    else:
        raise NotFoundError(f"Configuração '{key}' não encontrada", code="SETTING_NOT_FOUND")

    _store(key, value)
    return value


def get_decimal(db: Session, key: str) -> Decimal:
    raw = get_setting(db, key)
    try:
        return Decimal(raw).quantize(_CENTS)
    except InvalidOperation:
        logger.error("Setting %s has non-numeric value, using default", key)
        return Decimal(DEFAULT_SETTINGS[key]).quantize(_CENTS)


def get_int(db: Session, key: str) -> int:
    raw = get_setting(db, key)
    try:
        return int(raw)
    except ValueError:
        logger.error("Setting %s has non-integer value, using default", key)
        return int(DEFAULT_SETTINGS[key])


def list_settings(db: Session) -> list[dict]:
    """All known settings with their effective values (DB or default)."""
    rows = {row.key: row for row in db.query(SystemSetting).all()}
    result = []
    for key in sorted(set(DEFAULT_SETTINGS) | set(rows)):
        row = rows.get(key)
        result.append(
            {
                "key": key,
                "value": row.value if row else DEFAULT_SETTINGS[key],
                "description": (row.description if row else None) or SETTING_DESCRIPTIONS.get(key),
                "is_default": row is None,
                "updated_at": row.updated_at if row else None,
            }
        )
    return result


# =============================================================================
# Writes
# =============================================================================

def _normalize_value(key: str, value: str) -> str:
    value = str(value).strip()
    if key in _INTEGER_KEYS:
        try:
            parsed = int(value)
        except ValueError:
            raise ValidationError(f"Valor inválido para '{key}'", code="INVALID_SETTING_VALUE")
        if parsed <= 0:
            raise ValidationError(f"Valor inválido para '{key}'", code="INVALID_SETTING_VALUE")
        return str(parsed)

    try:
        parsed_decimal = Decimal(value)
    except InvalidOperation:
        raise ValidationError(f"Valor inválido para '{key}'", code="INVALID_SETTING_VALUE")
    if not parsed_decimal.is_finite() or parsed_decimal < 0:
        raise ValidationError(f"Valor inválido para '{key}'", code="INVALID_SETTING_VALUE")
    if key == CONVENIO_SHARE_PERCENTAGE and parsed_decimal > 100:
        raise ValidationError("Percentual deve estar entre 0 e 100", code="INVALID_SETTING_VALUE")
    return str(parsed_decimal)


def set_setting(db: Session, key: str, value: str, updated_by: int | None = None) -> SystemSetting:
    """
    Upsert a known setting and invalidate the read cache.

    Unknown keys are rejected; numeric keys must parse.
    """
    if key not in DEFAULT_SETTINGS:
        raise NotFoundError(f"Configuração '{key}' não encontrada", code="SETTING_NOT_FOUND")

    normalized = _normalize_value(key, value)

    row = db.query(SystemSetting).filter(SystemSetting.key == key).first()
    if row:
        row.value = normalized
        row.updated_by = updated_by
    else:
        row = SystemSetting(
            key=key,
            value=normalized,
            description=SETTING_DESCRIPTIONS.get(key),
            updated_by=updated_by,
        )
        db.add(row)
    db.commit()
    db.refresh(row)
    invalidate_cache(key)

    logger.info("System setting %s updated by user %s", key, updated_by)
    return row
