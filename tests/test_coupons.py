"""
Tests for the coupon engine.

Coverage:
- Validation reasons (unknown, inactive, window, type, single use)
- Discount arithmetic
- Idempotent usage recording
- Validation endpoint pricing
- Admin CRUD
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from convenio.core.errors import ConflictError, ValidationError
from convenio.core.timeutils import local_today
from convenio.db.enums import CouponType, Role
from convenio.db.models import Coupon, CouponUsage
from convenio.services import coupon_service, settings_service


# =============================================================================
# Validation
# =============================================================================

class TestValidateCoupon:
    def test_valid_coupon_code_is_case_insensitive(self, db, make_coupon, client_user):
        make_coupon("QUIRO70")
        check = coupon_service.validate_coupon(db, " quiro70 ", CouponType.TITULAR, client_user.id)
        assert check.valid
        assert check.coupon.code == "QUIRO70"

    def test_unknown(self, db, client_user):
        check = coupon_service.validate_coupon(db, "NOPE", CouponType.TITULAR, client_user.id)
        assert not check.valid
        assert check.reason == coupon_service.NOT_FOUND

    def test_inactive(self, db, make_coupon, client_user):
        make_coupon("OFF", is_active=False)
        check = coupon_service.validate_coupon(db, "OFF", CouponType.TITULAR, client_user.id)
        assert check.reason == coupon_service.INACTIVE

    def test_outside_window(self, db, make_coupon, client_user):
        today = local_today()
        make_coupon("FUTURE", valid_from=today + timedelta(days=1))
        make_coupon("PAST", valid_until=today - timedelta(days=1))
        assert coupon_service.validate_coupon(
            db, "FUTURE", CouponType.TITULAR, client_user.id
        ).reason == coupon_service.NOT_YET_VALID
        assert coupon_service.validate_coupon(
            db, "PAST", CouponType.TITULAR, client_user.id
        ).reason == coupon_service.EXPIRED

    def test_type_mismatch(self, db, make_coupon, client_user):
        make_coupon("DEP10", coupon_type="dependente")
        check = coupon_service.validate_coupon(db, "DEP10", CouponType.TITULAR, client_user.id)
        assert check.reason == coupon_service.TYPE_MISMATCH

    def test_single_use_already_used(self, db, make_coupon, client_user):
        coupon = make_coupon("ONCE")
        coupon_service.record_usage(db, coupon, client_user.id, "ref-1", Decimal("10"))
        db.commit()
        check = coupon_service.validate_coupon(db, "ONCE", CouponType.TITULAR, client_user.id)
        assert check.reason == coupon_service.ALREADY_USED
        with pytest.raises(ConflictError):
            check.raise_if_invalid()

    def test_unlimited_use_stays_valid(self, db, make_coupon, client_user):
        coupon = make_coupon("ALWAYS", unlimited_use=True)
        coupon_service.record_usage(db, coupon, client_user.id, "ref-1", Decimal("10"))
        db.commit()
        assert coupon_service.validate_coupon(db, "ALWAYS", CouponType.TITULAR, client_user.id).valid

    def test_invalid_check_raises_validation_error(self, db, make_coupon, client_user):
        make_coupon("OFF", is_active=False)
        check = coupon_service.validate_coupon(db, "OFF", CouponType.TITULAR, client_user.id)
        with pytest.raises(ValidationError):
            check.raise_if_invalid()


# =============================================================================
# Discount arithmetic
# =============================================================================

class TestDiscount:
    def test_fixed_discount(self):
        coupon = Coupon(discount_type="fixed", discount_value=Decimal("530"))
        assert coupon_service.apply_discount(Decimal("600.00"), coupon) == (
            Decimal("530.00"),
            Decimal("70.00"),
        )

    def test_fixed_discount_never_exceeds_base(self):
        coupon = Coupon(discount_type="fixed", discount_value=Decimal("900"))
        discount, final = coupon_service.apply_discount(Decimal("250.00"), coupon)
        assert discount == Decimal("250.00")
        assert final == Decimal("0.00")

    def test_percentage_discount_is_quantized(self):
        coupon = Coupon(discount_type="percentage", discount_value=Decimal("33"))
        discount, final = coupon_service.apply_discount(Decimal("24.99"), coupon)
        assert discount == Decimal("8.25")
        assert final == Decimal("16.74")

    def test_no_coupon(self):
        assert coupon_service.apply_discount(Decimal("50"), None) == (Decimal("0.00"), Decimal("50.00"))


# =============================================================================
# Usage recording
# =============================================================================

class TestRecordUsage:
    def test_replay_returns_existing_row(self, db, make_coupon, client_user):
        coupon = make_coupon("REPLAY", unlimited_use=True)
        first = coupon_service.record_usage(db, coupon, client_user.id, "pay-1", Decimal("5"))
        db.commit()
        again = coupon_service.record_usage(db, coupon, client_user.id, "pay-1", Decimal("5"))
        db.commit()
        assert again.id == first.id
        assert db.query(CouponUsage).filter(CouponUsage.coupon_id == coupon.id).count() == 1

    def test_single_use_second_payment_not_recorded(self, db, make_coupon, client_user):
        coupon = make_coupon("ONCE")
        coupon_service.record_usage(db, coupon, client_user.id, "pay-1", Decimal("5"))
        db.commit()
        assert coupon_service.record_usage(db, coupon, client_user.id, "pay-2", Decimal("5")) is None


# =============================================================================
# Endpoints
# =============================================================================

class TestValidateEndpoint:
    async def test_quotes_discount_against_base_price(
        self, client, db, make_coupon, client_user, auth_headers
    ):
        settings_service.set_setting(db, settings_service.SUBSCRIPTION_PRICE, "600.00")
        make_coupon("QUIRO70")
        response = await client.get(
            "/api/validate-coupon/QUIRO70?type=titular",
            headers=auth_headers(client_user, Role.CLIENT),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is True
        assert body["coupon"]["discount_value"] == 530
        assert body["coupon"]["final_price"] == 70

    async def test_rejection_carries_message(self, client, client_user, auth_headers):
        response = await client.get(
            "/api/validate-coupon/NOPE?type=titular",
            headers=auth_headers(client_user, Role.CLIENT),
        )
        body = response.json()
        assert body["valid"] is False
        assert body["reason"] == "not_found"
        assert body["message"]


class TestAdminCoupons:
    async def test_create_and_duplicate(self, client, admin_user, auth_headers):
        headers = auth_headers(admin_user, Role.ADMIN)
        payload = {"code": "novo10", "discount_type": "percentage", "discount_value": "10"}
        created = await client.post("/api/admin/coupons", json=payload, headers=headers)
        assert created.status_code == 201
        assert created.json()["code"] == "NOVO10"

        duplicate = await client.post("/api/admin/coupons", json=payload, headers=headers)
        assert duplicate.status_code == 409

    async def test_percentage_over_100_rejected(self, client, admin_user, auth_headers):
        response = await client.post(
            "/api/admin/coupons",
            json={"code": "BIG", "discount_type": "percentage", "discount_value": "150"},
            headers=auth_headers(admin_user, Role.ADMIN),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_DISCOUNT"

    async def test_toggle_and_update(self, client, make_coupon, admin_user, auth_headers):
        coupon = make_coupon("EDIT")
        headers = auth_headers(admin_user, Role.ADMIN)
        toggled = await client.patch(f"/api/admin/coupons/{coupon.id}/toggle", headers=headers)
        assert toggled.json()["is_active"] is False

        updated = await client.put(
            f"/api/admin/coupons/{coupon.id}",
            json={"description": "Campanha"},
            headers=headers,
        )
        assert updated.json()["description"] == "Campanha"
        assert updated.json()["code"] == "EDIT"

    async def test_used_coupon_cannot_be_deleted(
        self, client, db, make_coupon, client_user, admin_user, auth_headers
    ):
        coupon = make_coupon("USED")
        coupon_service.record_usage(db, coupon, client_user.id, "pay-1", Decimal("5"))
        db.commit()
        headers = auth_headers(admin_user, Role.ADMIN)

        response = await client.delete(f"/api/admin/coupons/{coupon.id}", headers=headers)
        assert response.status_code == 409
        assert response.json()["code"] == "COUPON_IN_USE"

    async def test_unused_coupon_deleted(self, client, make_coupon, admin_user, auth_headers):
        coupon = make_coupon("FRESH")
        headers = auth_headers(admin_user, Role.ADMIN)
        response = await client.delete(f"/api/admin/coupons/{coupon.id}", headers=headers)
        assert response.status_code == 204
        listing = await client.get("/api/admin/coupons", headers=headers)
        assert all(c["code"] != "FRESH" for c in listing.json())
