"""
Tests for subscription checkout and the activation protocol.

Coverage:
- Preference creation for subscription, dependent, agenda and payout
- Free activation when a coupon covers the price
- Activation idempotency and coupon re-check
- Affiliate conversion on activation
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from convenio.core.errors import NotFoundError, ValidationError
from convenio.core.timeutils import local_today
from convenio.db.enums import Role, SubscriptionStatus
from convenio.db.models import AffiliateReferral, CouponUsage, Dependent, Notification, Payment
from convenio.services import settings_service, subscription_service
from convenio.services.payment_intents import DependentIntent, SubscriptionIntent


@pytest.fixture
def priced(db):
    """Scenario prices: subscription 600.00."""
    settings_service.set_setting(db, settings_service.SUBSCRIPTION_PRICE, "600.00")


@pytest.fixture
def dependent(db, client_user) -> Dependent:
    row = Dependent(user_id=client_user.id, name="Filho", cpf="55566677788")
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


# =============================================================================
# Checkout
# =============================================================================

class TestSubscriptionCheckout:
    async def test_preference_with_coupon(
        self, client, db, gateway, priced, make_coupon, client_user, auth_headers
    ):
        coupon = make_coupon("QUIRO70")
        response = await client.post(
            "/api/create-subscription",
            json={"coupon_code": "QUIRO70"},
            headers=auth_headers(client_user, Role.CLIENT),
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["init_point"].startswith("https://mp.test/")
        assert body["amount"] == 70
        assert body["external_reference"] == f"subscription:{client_user.id}:{coupon.id}"

        assert gateway.preferences[0].amount == Decimal("70.00")
        ledger = db.query(Payment).filter(Payment.user_id == client_user.id).one()
        assert ledger.status == "pending"
        assert ledger.preference_id == "pref-1"

    async def test_already_active(self, client, gateway, active_client, auth_headers):
        response = await client.post(
            "/api/create-subscription",
            json={},
            headers=auth_headers(active_client, Role.CLIENT),
        )
        assert response.json()["already_active"] is True
        assert gateway.preferences == []

    async def test_cannot_pay_for_another_user(self, client, client_user, make_user, auth_headers):
        other = make_user()
        response = await client.post(
            "/api/create-subscription",
            json={"user_id": other.id},
            headers=auth_headers(client_user, Role.CLIENT),
        )
        assert response.status_code == 403

    async def test_gateway_failure_persists_nothing(
        self, client, db, gateway, client_user, auth_headers
    ):
        gateway.fail_preferences = True
        response = await client.post(
            "/api/create-subscription",
            json={},
            headers=auth_headers(client_user, Role.CLIENT),
        )
        assert response.status_code == 502
        assert db.query(Payment).count() == 0

    async def test_invalid_coupon_rejected(self, client, client_user, auth_headers):
        response = await client.post(
            "/api/create-subscription",
            json={"coupon_code": "NOPE"},
            headers=auth_headers(client_user, Role.CLIENT),
        )
        assert response.status_code == 404
        assert response.json()["code"] == "COUPON_NOT_FOUND"


class TestFreeActivation:
    async def test_full_discount_activates_without_gateway(
        self, db, gateway, make_coupon, client_user
    ):
        coupon = make_coupon("FREE100", discount_type="percentage", discount_value="100")
        result = await subscription_service.create_subscription_preference(
            db, gateway, client_user.id, "FREE100"
        )
        assert result["activated"] is True
        assert gateway.preferences == []

        db.refresh(client_user)
        assert client_user.subscription_status == SubscriptionStatus.ACTIVE.value
        assert client_user.subscription_expiry == local_today() + timedelta(days=365)

        usage = db.query(CouponUsage).filter(CouponUsage.coupon_id == coupon.id).one()
        assert usage.payment_reference.startswith("free:subscription:")
        ledger = db.query(Payment).filter(Payment.user_id == client_user.id).one()
        assert ledger.status == "approved"
        assert ledger.amount == Decimal("0.00")


class TestOtherCheckouts:
    async def test_dependent_preference(self, db, gateway, client_user, dependent):
        result = await subscription_service.create_dependent_preference(
            db, gateway, client_user.id, dependent.id
        )
        assert result["external_reference"] == f"dependent:{dependent.id}:"
        assert result["amount"] == Decimal("50.00")

    async def test_dependent_of_someone_else(self, db, gateway, make_user, dependent):
        stranger = make_user()
        with pytest.raises(NotFoundError):
            await subscription_service.create_dependent_preference(
                db, gateway, stranger.id, dependent.id
            )

    async def test_agenda_price_per_started_period(self, db):
        assert subscription_service.agenda_price(db) == (30, Decimal("24.99"))
        assert subscription_service.agenda_price(db, 45) == (45, Decimal("49.98"))
        with pytest.raises(ValidationError):
            subscription_service.agenda_price(db, 400)

    async def test_agenda_endpoint(self, client, gateway, professional, auth_headers):
        response = await client.post(
            "/api/professional/create-agenda-payment",
            json={"duration_days": 30},
            headers=auth_headers(professional, Role.PROFESSIONAL),
        )
        assert response.status_code == 200
        assert response.json()["external_reference"] == f"agenda:{professional.id}:30"

    async def test_agenda_endpoint_requires_professional(self, client, client_user, auth_headers):
        response = await client.post(
            "/api/professional/create-agenda-payment",
            json={},
            headers=auth_headers(client_user, Role.CLIENT),
        )
        assert response.status_code == 403

    async def test_payout_requires_positive_amount(self, client, professional, auth_headers):
        response = await client.post(
            "/api/professional/create-payout-payment",
            json={"amount": "0"},
            headers=auth_headers(professional, Role.PROFESSIONAL),
        )
        assert response.status_code == 400


# =============================================================================
# Activation protocol
# =============================================================================

class TestActivation:
    def test_replay_is_idempotent(self, db, priced, make_coupon, client_user):
        coupon = make_coupon("QUIRO70")
        intent = SubscriptionIntent(client_user.id, coupon.id)

        assert subscription_service.activate(db, intent, "mp-1") is True
        db.commit()
        assert subscription_service.activate(db, intent, "mp-1") is False
        db.commit()

        assert db.query(CouponUsage).filter(CouponUsage.coupon_id == coupon.id).count() == 1
        usage = db.query(CouponUsage).one()
        assert usage.discount_applied == Decimal("530.00")
        assert db.query(Notification).filter(Notification.user_id == client_user.id).count() == 1

    def test_inactive_coupon_skipped_but_activation_proceeds(
        self, db, make_coupon, client_user
    ):
        coupon = make_coupon("LATEOFF", is_active=False)
        intent = SubscriptionIntent(client_user.id, coupon.id)
        assert subscription_service.activate(db, intent, "mp-2") is True
        db.commit()

        db.refresh(client_user)
        assert client_user.subscription_status == "active"
        assert db.query(CouponUsage).count() == 0

    def test_coupon_retyped_before_payment_is_not_recorded(self, db, priced, make_coupon, client_user):
        coupon = make_coupon("QUIRO70")
        coupon.coupon_type = "dependente"
        db.commit()

        intent = SubscriptionIntent(client_user.id, coupon.id)
        assert subscription_service.activate(db, intent, "mp-6") is True
        db.commit()

        db.refresh(client_user)
        assert client_user.subscription_status == "active"
        assert db.query(CouponUsage).count() == 0

    def test_titular_coupon_on_dependent_is_not_recorded(self, db, make_coupon, dependent):
        coupon = make_coupon("QUIRO70", coupon_type="titular")
        assert subscription_service.activate(db, DependentIntent(dependent.id, coupon.id), "mp-7") is True
        db.commit()

        db.refresh(dependent)
        assert dependent.subscription_active is True
        assert db.query(CouponUsage).count() == 0

    def test_expired_subscription_is_renewed(self, db, make_user):
        user = make_user(
            subscription_status="expired",
            subscription_expiry=local_today() - timedelta(days=3),
        )
        assert subscription_service.activate(db, SubscriptionIntent(user.id), "mp-3") is True
        db.commit()
        db.refresh(user)
        assert user.subscription_expiry == local_today() + timedelta(days=365)

    def test_marks_linked_referral_converted(self, db, vendedor, client_user):
        referral = AffiliateReferral(
            affiliate_id=vendedor.id,
            visitor_identifier="visitor-1",
            referral_code=str(vendedor.id),
            user_id=client_user.id,
        )
        db.add(referral)
        db.commit()

        subscription_service.activate(db, SubscriptionIntent(client_user.id), "mp-4")
        db.commit()
        db.refresh(referral)
        assert referral.converted is True
        assert referral.converted_at is not None

    def test_dependent_activation(self, db, client_user, dependent):
        assert subscription_service.activate(db, DependentIntent(dependent.id), "mp-5") is True
        db.commit()
        db.refresh(dependent)
        assert dependent.subscription_active is True
        # Titular status is untouched
        db.refresh(client_user)
        assert client_user.subscription_status == "pending"

    async def test_unlimited_dependent_coupon_on_two_dependents(self, db, gateway, make_coupon, client_user, dependent):
        settings_service.set_setting(db, settings_service.DEPENDENT_PRICE, "100.00")
        coupon = make_coupon(
            "REIS60", coupon_type="dependente", discount_value="40.00", unlimited_use=True
        )
        second = Dependent(user_id=client_user.id, name="Filha", cpf="55566677799")
        db.add(second)
        db.commit()

        for index, target in enumerate([dependent, second], start=1):
            result = await subscription_service.create_dependent_preference(
                db, gateway, client_user.id, target.id, "REIS60"
            )
            assert result["amount"] == Decimal("60.00")
            gateway.set_payment(f"dep-{index}", result["external_reference"], "60.00")
            outcome = await subscription_service.handle_payment_notification(db, gateway, f"dep-{index}")
            assert outcome["activated"] is True

        db.refresh(dependent)
        db.refresh(second)
        assert dependent.subscription_status == SubscriptionStatus.ACTIVE.value
        assert second.subscription_status == SubscriptionStatus.ACTIVE.value
        assert db.query(CouponUsage).filter(CouponUsage.coupon_id == coupon.id).count() == 2
