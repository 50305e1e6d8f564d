"""
Tests for revenue and cancellation reports.

Coverage:
- Professional revenue summary (convênio vs private)
- Percentage override per professional
- Admin revenue overview
- Cancelled consultations listing
- Period validation
"""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from convenio.core.errors import ValidationError
from convenio.core.timeutils import to_utc
from convenio.db.models import Appointment
from convenio.services import report_service

PERIOD = {"start_date": "2026-03-01", "end_date": "2026-03-31"}


@pytest.fixture
def consulta(make_service):
    return make_service("Consulta", "100.00")


@pytest.fixture
def add_appointment(db, consulta, private_patient, active_client):
    """Insert an appointment row directly (reports only read them)."""
    def _add(professional, day: int, value: str, status: str = "completed", private: bool = False, **fields):
        start = to_utc(datetime(2026, 3, day, 10, 0))
        patient = (
            {"private_patient_id": private_patient.id, "patient_type": "private"}
            if private
            else {"client_user_id": active_client.id, "patient_type": "convenio"}
        )
        appointment = Appointment(
            professional_id=professional.id,
            service_id=consulta.id,
            appointment_at=start,
            ends_at=start + timedelta(minutes=30),
            status=status,
            value=Decimal(value),
            **patient,
            **fields,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment
    return _add


@pytest.fixture
def month_of_work(professional, add_appointment):
    add_appointment(professional, 3, "100.00")
    add_appointment(professional, 10, "150.50")
    add_appointment(professional, 12, "200.00", private=True)
    add_appointment(professional, 15, "300.00", status="cancelled")
    add_appointment(professional, 20, "80.00", status="scheduled")
    return professional


# =============================================================================
# Professional revenue
# =============================================================================

class TestProfessionalRevenue:
    def test_summary(self, db, month_of_work):
        report = report_service.professional_revenue(
            db, month_of_work.id, date(2026, 3, 1), date(2026, 3, 31)
        )
        summary = report["summary"]

        assert summary["consultation_count"] == 3
        assert summary["professional_percentage"] == Decimal("50")
        assert summary["total_revenue"] == Decimal("450.50")
        assert summary["convenio_revenue"] == Decimal("250.50")
        assert summary["private_revenue"] == Decimal("200.00")
        assert summary["amount_to_pay"] == Decimal("125.25")

        owed = [row["amount_to_pay"] for row in report["consultations"]]
        assert owed == [Decimal("50.00"), Decimal("75.25"), Decimal("0.00")]
        assert report["consultations"][0]["patient_name"] == "Cliente Ativo"
        assert report["consultations"][2]["patient_name"] == "Paciente Particular"

    def test_percentage_override(self, db, month_of_work):
        month_of_work.professional_percentage = Decimal("70.00")
        db.commit()

        summary = report_service.professional_revenue(
            db, month_of_work.id, date(2026, 3, 1), date(2026, 3, 31)
        )["summary"]
        assert summary["amount_to_pay"] == Decimal("75.15")

    def test_period_is_inclusive(self, db, month_of_work):
        report = report_service.professional_revenue(
            db, month_of_work.id, date(2026, 3, 10), date(2026, 3, 10)
        )
        assert report["summary"]["consultation_count"] == 1

    def test_inverted_period(self, db, professional):
        with pytest.raises(ValidationError) as exc:
            report_service.professional_revenue(db, professional.id, date(2026, 3, 31), date(2026, 3, 1))
        assert exc.value.code == "INVALID_PERIOD"

    async def test_professional_scoped_to_self(
        self, client, make_user, month_of_work, add_appointment, auth_headers
    ):
        colleague = make_user(["professional"], name="Dr. Bruno")
        add_appointment(colleague, 5, "999.00")

        response = await client.get(
            "/api/reports/professional-revenue",
            params={**PERIOD, "professional_id": colleague.id},
            headers=auth_headers(month_of_work, "professional"),
        )
        assert response.status_code == 200
        assert response.json()["summary"]["total_revenue"] == 450.5

    async def test_admin_must_choose_professional(self, client, admin_user, auth_headers):
        response = await client.get(
            "/api/reports/professional-revenue",
            params=PERIOD,
            headers=auth_headers(admin_user, "admin"),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "PROFESSIONAL_REQUIRED"

    async def test_client_forbidden(self, client, client_user, auth_headers):
        response = await client.get(
            "/api/reports/professional-revenue",
            params=PERIOD,
            headers=auth_headers(client_user, "client"),
        )
        assert response.status_code == 403


# =============================================================================
# Admin overview
# =============================================================================

class TestRevenueOverview:
    async def test_groups_by_professional_and_service(
        self, client, make_user, month_of_work, add_appointment, admin_user, auth_headers
    ):
        colleague = make_user(["professional"], name="Dr. Bruno")
        add_appointment(colleague, 5, "40.00")

        response = await client.get(
            "/api/reports/revenue", params=PERIOD, headers=auth_headers(admin_user, "admin")
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total_revenue"] == 490.5
        by_professional = {row["professional_id"]: row for row in body["revenue_by_professional"]}
        assert by_professional[month_of_work.id]["revenue"] == 450.5
        assert by_professional[month_of_work.id]["clinic_revenue"] == 125.25
        assert by_professional[colleague.id]["consultation_count"] == 1
        assert body["revenue_by_service"][0]["consultation_count"] == 4


# =============================================================================
# Cancelled consultations
# =============================================================================

class TestCancelledConsultations:
    def test_lists_cancelled_with_canceller(self, db, professional, add_appointment):
        add_appointment(professional, 8, "100.00")
        add_appointment(
            professional,
            9,
            "120.00",
            status="cancelled",
            cancellation_reason="Chuva",
            cancelled_by=professional.id,
            cancelled_at=to_utc(datetime(2026, 3, 8, 18, 0)),
        )

        rows = report_service.cancelled_consultations(db, date(2026, 3, 1), date(2026, 3, 31))

        assert len(rows) == 1
        assert rows[0]["cancellation_reason"] == "Chuva"
        assert rows[0]["cancelled_by_name"] == "Dra. Ana"
        assert rows[0]["professional_name"] == "Dra. Ana"
        assert rows[0]["value"] == Decimal("120.00")

    async def test_endpoint_scoped_for_professional(
        self, client, make_user, professional, add_appointment, auth_headers
    ):
        colleague = make_user(["professional"], name="Dr. Bruno")
        add_appointment(professional, 4, "100.00", status="cancelled")
        add_appointment(colleague, 4, "100.00", status="cancelled")

        response = await client.get(
            "/api/reports/cancelled-consultations",
            headers=auth_headers(professional, "professional"),
        )
        assert response.status_code == 200
        assert [row["professional_id"] for row in response.json()] == [professional.id]

    async def test_inverted_period_rejected(self, client, admin_user, auth_headers):
        response = await client.get(
            "/api/reports/cancelled-consultations",
            params={"start_date": "2026-03-31", "end_date": "2026-03-01"},
            headers=auth_headers(admin_user, "admin"),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PERIOD"
