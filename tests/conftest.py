"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database with savepoint isolation (rollback after each test)
- Factories for users, services, coupons and scheduling access
- Access-token headers for authenticated requests
- Fake payment gateway installed through dependency overrides
- HTTPX AsyncClient bound to the app
"""
import os

# Must be set before convenio is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"
os.environ["AUTO_CREATE_TABLES"] = "0"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["INTERNAL_SECRET"] = "internal-test-secret"
os.environ["MERCADOPAGO_WEBHOOK_SECRET"] = ""
os.environ["SENTRY_DSN"] = ""
os.environ["RATE_LIMIT_AUTH"] = "1000"
os.environ["RATE_LIMIT_TRACKING"] = "1000"
os.environ["RATE_LIMIT_WEBHOOK"] = "1000"
os.environ["RATE_LIMIT_API"] = "0"

import itertools
from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator, Generator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.orm import Session

from convenio.core.deps import get_db
from convenio.core.errors import PaymentGatewayError
from convenio.core.security import create_access_token, hash_password
from convenio.core.timeutils import utc_now
from convenio.db.base import Base
from convenio.db.enums import Role, SubscriptionStatus
from convenio.db.models import Coupon, PrivatePatient, SchedulingAccess, Service, User
from convenio.db.session import SessionLocal, engine
from convenio.main import app
from convenio.services import settings_service
from convenio.services.payment_gateway import (
    GatewayPayment,
    PreferenceResult,
    get_payment_gateway,
)

TEST_PASSWORD = "senha123"


# =============================================================================
# SQLite savepoint support
# =============================================================================

@event.listens_for(engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


@pytest.fixture(scope="session", autouse=True)
def create_schema() -> Generator[None, None, None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Generator[None, None, None]:
    settings_service.invalidate_cache()
    yield
    settings_service.invalidate_cache()


# =============================================================================
# Database Fixtures (Savepoint pattern)
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Session bound to an outer transaction that is rolled back after the test.

    App code may call commit()/rollback(); those act on savepoints only.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = SessionLocal(bind=connection, join_transaction_mode="create_savepoint")

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# =============================================================================
# Factories
# =============================================================================

_cpf_counter = itertools.count(10000000000)


def next_cpf() -> str:
    return str(next(_cpf_counter))


@pytest.fixture
def make_user(db: Session):
    """Create and commit a user (services may roll back uncommitted rows)."""
    def _make(
        roles: list[str] | None = None,
        name: str = "Maria Silva",
        password: str = TEST_PASSWORD,
        **fields,
    ) -> User:
        user = User(
            name=name,
            cpf=fields.pop("cpf", None) or next_cpf(),
            password_hash=hash_password(password),
            roles=roles or [Role.CLIENT.value],
            subscription_status=fields.pop("subscription_status", SubscriptionStatus.PENDING.value),
            subscription_active=fields.pop("subscription_active", False),
            **fields,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def client_user(make_user) -> User:
    return make_user([Role.CLIENT.value], name="Cliente Teste")


@pytest.fixture
def admin_user(make_user) -> User:
    return make_user([Role.ADMIN.value], name="Admin Teste")


@pytest.fixture
def professional(make_user) -> User:
    return make_user([Role.PROFESSIONAL.value], name="Dra. Ana")


@pytest.fixture
def vendedor(make_user) -> User:
    return make_user([Role.VENDEDOR.value], name="Vendedor Teste")


@pytest.fixture
def active_client(make_user) -> User:
    return make_user(
        [Role.CLIENT.value],
        name="Cliente Ativo",
        subscription_status=SubscriptionStatus.ACTIVE.value,
        subscription_active=True,
        subscription_expiry=(utc_now() + timedelta(days=200)).date(),
    )


@pytest.fixture
def make_service(db: Session):
    def _make(name: str = "Consulta", price: str = "100.00", duration_minutes: int | None = 30) -> Service:
        service = Service(name=name, base_price=Decimal(price), duration_minutes=duration_minutes)
        db.add(service)
        db.commit()
        db.refresh(service)
        return service
    return _make


@pytest.fixture
def make_coupon(db: Session):
    def _make(code: str = "QUIRO70", **fields) -> Coupon:
        coupon = Coupon(
            code=code,
            discount_type=fields.pop("discount_type", "fixed"),
            discount_value=Decimal(str(fields.pop("discount_value", "530.00"))),
            coupon_type=fields.pop("coupon_type", "titular"),
            unlimited_use=fields.pop("unlimited_use", False),
            is_active=fields.pop("is_active", True),
            **fields,
        )
        db.add(coupon)
        db.commit()
        db.refresh(coupon)
        return coupon
    return _make


@pytest.fixture
def grant_access(db: Session):
    def _grant(professional: User, days: int = 30) -> SchedulingAccess:
        access = SchedulingAccess(
            professional_id=professional.id,
            expires_at=utc_now() + timedelta(days=days),
            is_active=True,
            reason="test",
        )
        db.add(access)
        db.commit()
        return access
    return _grant


@pytest.fixture
def private_patient(db: Session, professional: User) -> PrivatePatient:
    patient = PrivatePatient(professional_id=professional.id, name="Paciente Particular")
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient


# =============================================================================
# Auth helpers
# =============================================================================

def make_auth_headers(user: User, role: Role | str) -> dict[str, str]:
    role_value = role.value if isinstance(role, Role) else role
    return {"Authorization": f"Bearer {create_access_token(user.id, role_value)}"}


# =============================================================================
# Payment gateway fake
# =============================================================================

class FakeGateway:
    """In-memory gateway: records preferences, serves canned payments."""

    def __init__(self):
        self.preferences = []
        self.payments: dict[str, GatewayPayment] = {}
        self.fail_preferences = False
        self.fail_payments = False
        self.payment_calls = 0

    async def create_preference(self, request):
        if self.fail_preferences:
            raise PaymentGatewayError("Gateway indisponível")
        self.preferences.append(request)
        number = len(self.preferences)
        return PreferenceResult(
            preference_id=f"pref-{number}",
            init_point=f"https://mp.test/checkout/{number}",
        )

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        self.payment_calls += 1
        if self.fail_payments:
            raise PaymentGatewayError("Gateway indisponível")
        return self.payments[str(payment_id)]

    def set_payment(self, payment_id, external_reference: str, amount="70.00", status: str = "approved"):
        self.payments[str(payment_id)] = GatewayPayment(
            payment_id=str(payment_id),
            status=status,
            external_reference=external_reference,
            transaction_amount=Decimal(str(amount)),
        )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session, gateway: FakeGateway) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient with the test session and the fake gateway injected."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build Authorization headers: auth_headers(user, role)."""
    return make_auth_headers


@pytest.fixture
def user_password() -> str:
    return TEST_PASSWORD
