"""
Tests for the professional agenda.

Coverage:
- Scheduling access gate
- Slot conflicts (duration and instant services)
- Patient validation
- Recurring series (all-or-nothing)
- Update / cancel / delete rules
- Local-day listing
"""

from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest

from convenio.core.errors import ConflictError, NotFoundError, ValidationError
from convenio.core.timeutils import local_today, local_tz, to_utc
from convenio.db.enums import RecurrenceInterval
from convenio.db.models import Appointment
from convenio.services import agenda_service
from convenio.services.agenda_service import (
    AppointmentInput,
    ClientPatientRef,
    PrivatePatientRef,
    Recurrence,
)

APPOINTMENTS_URL = "/api/scheduling/appointments"


def _local(days: int = 1, hour: int = 10, minute: int = 0) -> datetime:
    """Naive local business time `days` from today."""
    return datetime.combine(local_today() + timedelta(days=days), time(hour, minute))


@pytest.fixture
def consulta(make_service):
    return make_service("Consulta", "120.00", duration_minutes=30)


@pytest.fixture
def avaliacao(make_service):
    """Service without duration: occupies only its start instant."""
    return make_service("Avaliação", "80.00", duration_minutes=None)


@pytest.fixture
def agenda_headers(professional, grant_access, auth_headers):
    grant_access(professional)
    return auth_headers(professional, "professional")


def _private_input(professional, patient, service, at, **fields) -> AppointmentInput:
    return AppointmentInput(
        professional_id=professional.id,
        patient=PrivatePatientRef(patient.id),
        service_id=service.id,
        appointment_at=at,
        **fields,
    )


# =============================================================================
# Access gate
# =============================================================================

class TestAccessGate:
    async def test_without_access_forbidden(self, client, professional, auth_headers):
        response = await client.get(APPOINTMENTS_URL, headers=auth_headers(professional, "professional"))
        assert response.status_code == 403
        assert response.json()["code"] == "NO_SCHEDULING_ACCESS"

    async def test_expired_access_forbidden(self, client, professional, grant_access, auth_headers):
        grant_access(professional, days=-1)
        response = await client.get(APPOINTMENTS_URL, headers=auth_headers(professional, "professional"))
        assert response.status_code == 403

    async def test_client_role_forbidden(self, client, client_user, auth_headers):
        response = await client.get(APPOINTMENTS_URL, headers=auth_headers(client_user, "client"))
        assert response.status_code == 403

    async def test_status_endpoint(self, client, professional, auth_headers):
        response = await client.post(
            "/api/professional/scheduling-access-status",
            headers=auth_headers(professional, "professional"),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["hasAccess"] is False
        assert body["expiresAt"] is None
        assert body["price"] == 24.99
        assert body["durationDays"] == 30

    async def test_status_endpoint_with_access(self, client, professional, agenda_headers):
        response = await client.post(
            "/api/professional/scheduling-access-status", headers=agenda_headers
        )
        body = response.json()
        assert body["hasAccess"] is True
        assert body["expiresAt"] is not None


# =============================================================================
# Create + conflicts
# =============================================================================

class TestCreateAppointment:
    async def test_create_private(self, client, agenda_headers, private_patient, consulta):
        response = await client.post(
            APPOINTMENTS_URL,
            json={
                "service_id": consulta.id,
                "private_patient_id": private_patient.id,
                "appointment_at": _local().isoformat(),
            },
            headers=agenda_headers,
        )
        assert response.status_code == 201, response.text
        body = response.json()
        assert body["patient_type"] == "private"
        assert body["status"] == "scheduled"
        assert body["value"] == 120.0
        ends_at = datetime.fromisoformat(body["ends_at"])
        starts_at = datetime.fromisoformat(body["appointment_at"])
        assert ends_at - starts_at == timedelta(minutes=30)
        assert starts_at == to_utc(_local())

    async def test_overlap_conflict(self, client, db, professional, agenda_headers, private_patient, consulta):
        existing = agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(hour=10))
        )
        response = await client.post(
            APPOINTMENTS_URL,
            json={
                "service_id": consulta.id,
                "private_patient_id": private_patient.id,
                "appointment_at": _local(hour=10, minute=15).isoformat(),
            },
            headers=agenda_headers,
        )
        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "APPOINTMENT_CONFLICT"
        assert body["conflicting_appointment_id"] == existing.id

    def test_back_to_back_allowed(self, db, professional, private_patient, consulta):
        agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(hour=10))
        )
        second = agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(hour=10, minute=30))
        )
        assert second.id is not None

    def test_instant_slots_conflict_only_on_same_time(self, db, professional, private_patient, avaliacao):
        agenda_service.create_appointment(
            db, _private_input(professional, private_patient, avaliacao, _local(hour=9))
        )
        agenda_service.create_appointment(
            db, _private_input(professional, private_patient, avaliacao, _local(hour=9, minute=5))
        )
        with pytest.raises(ConflictError):
            agenda_service.create_appointment(
                db, _private_input(professional, private_patient, avaliacao, _local(hour=9))
            )

    def test_cancelled_slot_is_free(self, db, professional, private_patient, consulta):
        first = agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(hour=11))
        )
        agenda_service.cancel_appointment(db, first.id, professional.id, "Paciente desmarcou")

        again = agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(hour=11))
        )
        assert again.id != first.id

    def test_other_professional_does_not_conflict(self, db, make_user, professional, private_patient, consulta):
        colleague = make_user(["professional"], name="Dr. Bruno")
        agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(hour=14))
        )
        other = AppointmentInput(
            professional_id=colleague.id,
            patient=PrivatePatientRef(
                agenda_service.create_private_patient(db, colleague.id, {"name": "Outro"}).id
            ),
            service_id=consulta.id,
            appointment_at=_local(hour=14),
        )
        assert agenda_service.create_appointment(db, other).id is not None

    def test_inactive_client_rejected(self, db, professional, client_user, consulta):
        with pytest.raises(ValidationError) as exc:
            agenda_service.create_appointment(
                db,
                AppointmentInput(
                    professional_id=professional.id,
                    patient=ClientPatientRef(client_user.id),
                    service_id=consulta.id,
                    appointment_at=_local(),
                ),
            )
        assert exc.value.code == "SUBSCRIPTION_INACTIVE"

    def test_active_client_is_convenio(self, db, professional, active_client, consulta):
        appointment = agenda_service.create_appointment(
            db,
            AppointmentInput(
                professional_id=professional.id,
                patient=ClientPatientRef(active_client.id),
                service_id=consulta.id,
                appointment_at=_local(),
                value="90.00",
            ),
        )
        assert appointment.patient_type == "convenio"
        assert appointment.value == Decimal("90.00")

    async def test_both_patient_refs_rejected(self, client, agenda_headers, private_patient, active_client, consulta):
        response = await client.post(
            APPOINTMENTS_URL,
            json={
                "service_id": consulta.id,
                "private_patient_id": private_patient.id,
                "client_user_id": active_client.id,
                "appointment_at": _local().isoformat(),
            },
            headers=agenda_headers,
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_someone_elses_private_patient(self, db, make_user, private_patient, consulta):
        colleague = make_user(["professional"], name="Dr. Bruno")
        with pytest.raises(NotFoundError):
            agenda_service.create_appointment(
                db, _private_input(colleague, private_patient, consulta, _local())
            )


# =============================================================================
# Concurrent booking
# =============================================================================

class TestConcurrentBooking:
    def test_only_one_of_two_concurrent_creates_wins(
        self, db, professional, private_patient, consulta, monkeypatch
    ):
        """A second request books the slot while the first waits on the lock."""
        original = agenda_service.find_conflict
        rival: list[Appointment] = []
        raced = []

        def competing_insert_first(session, professional_id, slot, exclude_appointment_id=None):
            if not raced:
                raced.append(True)
                rival.append(
                    agenda_service.create_appointment(
                        session, _private_input(professional, private_patient, consulta, _local(hour=10))
                    )
                )
            return original(session, professional_id, slot, exclude_appointment_id)

        monkeypatch.setattr(agenda_service, "find_conflict", competing_insert_first)
        with pytest.raises(ConflictError) as exc:
            agenda_service.create_appointment(
                db, _private_input(professional, private_patient, consulta, _local(hour=10))
            )

        assert exc.value.code == "APPOINTMENT_CONFLICT"
        assert db.query(Appointment).filter(Appointment.professional_id == professional.id).count() == 1
        assert db.query(Appointment).one().id == rival[0].id

    def _record_calls(self, monkeypatch) -> list[str]:
        calls: list[str] = []
        lock = agenda_service._lock_professional
        check = agenda_service.find_conflict

        def locking(session, professional_id):
            calls.append("lock")
            return lock(session, professional_id)

        def checking(session, professional_id, slot, exclude_appointment_id=None):
            calls.append("check")
            return check(session, professional_id, slot, exclude_appointment_id)

        monkeypatch.setattr(agenda_service, "_lock_professional", locking)
        monkeypatch.setattr(agenda_service, "find_conflict", checking)
        return calls

    def test_single_create_locks_before_checking(
        self, db, professional, private_patient, consulta, monkeypatch
    ):
        calls = self._record_calls(monkeypatch)
        agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(hour=15))
        )
        assert calls == ["lock", "check"]

    def test_series_locks_before_checking(self, db, professional, private_patient, consulta, monkeypatch):
        calls = self._record_calls(monkeypatch)
        agenda_service.create_recurring_series(
            db,
            _private_input(professional, private_patient, consulta, _local(hour=16)),
            Recurrence(RecurrenceInterval.WEEKLY, count=3),
        )
        assert calls == ["lock", "check", "check", "check"]


# =============================================================================
# Recurring series
# =============================================================================

class TestOccurrenceTimes:
    def test_weekly_count(self):
        times = agenda_service.occurrence_times(
            datetime(2030, 3, 4, 10, 0), Recurrence(RecurrenceInterval.WEEKLY, count=3)
        )
        local = [t.astimezone(local_tz()) for t in times]
        assert [t.date() for t in local] == [date(2030, 3, 4), date(2030, 3, 11), date(2030, 3, 18)]
        assert all(t.hour == 10 for t in local)

    def test_monthly_clamps_to_month_end(self):
        times = agenda_service.occurrence_times(
            datetime(2031, 1, 31, 9, 0), Recurrence(RecurrenceInterval.MONTHLY, count=3)
        )
        assert [t.astimezone(local_tz()).date() for t in times] == [
            date(2031, 1, 31),
            date(2031, 2, 28),
            date(2031, 3, 31),
        ]

    def test_until_inclusive(self):
        times = agenda_service.occurrence_times(
            datetime(2030, 5, 1, 8, 0),
            Recurrence(RecurrenceInterval.DAILY, until=date(2030, 5, 3)),
        )
        assert len(times) == 3

    def test_count_capped(self):
        times = agenda_service.occurrence_times(
            datetime(2030, 1, 1, 8, 0), Recurrence(RecurrenceInterval.DAILY, count=500)
        )
        assert len(times) == agenda_service.MAX_OCCURRENCES

    def test_needs_exactly_one_bound(self):
        with pytest.raises(ValidationError):
            agenda_service.occurrence_times(datetime(2030, 1, 1), Recurrence(RecurrenceInterval.DAILY))
        with pytest.raises(ValidationError):
            agenda_service.occurrence_times(
                datetime(2030, 1, 1),
                Recurrence(RecurrenceInterval.DAILY, count=2, until=date(2030, 1, 5)),
            )


class TestRecurringSeries:
    async def test_creates_series(self, client, agenda_headers, private_patient, consulta):
        response = await client.post(
            f"{APPOINTMENTS_URL}/recurring",
            json={
                "service_id": consulta.id,
                "private_patient_id": private_patient.id,
                "appointment_at": _local(hour=15).isoformat(),
                "recurrence": {"interval": "weekly", "count": 4},
            },
            headers=agenda_headers,
        )
        assert response.status_code == 201, response.text
        body = response.json()
        assert body["count"] == 4
        assert {a["recurring_group_id"] for a in body["appointments"]} == {body["recurring_group_id"]}
        assert all(a["is_recurring"] for a in body["appointments"])

    async def test_conflict_rejects_whole_series(
        self, client, db, professional, agenda_headers, private_patient, consulta
    ):
        blocker = agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(days=15, hour=15))
        )

        response = await client.post(
            f"{APPOINTMENTS_URL}/recurring",
            json={
                "service_id": consulta.id,
                "private_patient_id": private_patient.id,
                "appointment_at": _local(days=1, hour=15).isoformat(),
                "recurrence": {"interval": "weekly", "count": 4},
            },
            headers=agenda_headers,
        )

        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "RECURRING_CONFLICT"
        assert body["occurrence"] == 3
        remaining = db.query(Appointment).filter(Appointment.professional_id == professional.id).all()
        assert [a.id for a in remaining] == [blocker.id]


# =============================================================================
# Update / cancel / delete
# =============================================================================

class TestLifecycle:
    def _book(self, db, professional, private_patient, consulta, hour=10):
        return agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(hour=hour))
        )

    async def test_reschedule_into_conflict(self, client, db, professional, agenda_headers, private_patient, consulta):
        self._book(db, professional, private_patient, consulta, hour=10)
        second = self._book(db, professional, private_patient, consulta, hour=12)

        response = await client.put(
            f"{APPOINTMENTS_URL}/{second.id}",
            json={"appointment_at": _local(hour=10, minute=10).isoformat()},
            headers=agenda_headers,
        )
        assert response.status_code == 409

    async def test_reschedule_ignores_itself(self, client, db, professional, agenda_headers, private_patient, consulta):
        appointment = self._book(db, professional, private_patient, consulta, hour=10)
        response = await client.put(
            f"{APPOINTMENTS_URL}/{appointment.id}",
            json={"appointment_at": _local(hour=10, minute=15).isoformat(), "notes": "Retorno"},
            headers=agenda_headers,
        )
        assert response.status_code == 200, response.text
        assert response.json()["notes"] == "Retorno"

    async def test_cancel_records_reason(self, client, db, professional, agenda_headers, private_patient, consulta):
        appointment = self._book(db, professional, private_patient, consulta)
        response = await client.post(
            f"{APPOINTMENTS_URL}/{appointment.id}/cancel",
            json={"reason": "Paciente doente"},
            headers=agenda_headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "cancelled"
        assert body["cancellation_reason"] == "Paciente doente"
        assert body["cancelled_by"] == professional.id
        assert body["cancelled_at"] is not None

    def test_completed_cannot_be_cancelled_or_deleted(self, db, professional, private_patient, consulta):
        appointment = self._book(db, professional, private_patient, consulta)
        agenda_service.update_appointment(db, appointment.id, professional.id, {"status": "completed"})

        with pytest.raises(ValidationError):
            agenda_service.cancel_appointment(db, appointment.id, professional.id)
        with pytest.raises(ValidationError):
            agenda_service.delete_appointment(db, appointment.id, professional.id)

    def test_cancelled_cannot_be_edited(self, db, professional, private_patient, consulta):
        appointment = self._book(db, professional, private_patient, consulta)
        agenda_service.cancel_appointment(db, appointment.id, professional.id)
        with pytest.raises(ValidationError):
            agenda_service.update_appointment(db, appointment.id, professional.id, {"notes": "x"})

    async def test_delete(self, client, db, professional, agenda_headers, private_patient, consulta):
        appointment = self._book(db, professional, private_patient, consulta)
        response = await client.delete(f"{APPOINTMENTS_URL}/{appointment.id}", headers=agenda_headers)
        assert response.status_code == 204
        assert db.query(Appointment).filter(Appointment.id == appointment.id).first() is None

    async def test_other_professional_forbidden(
        self, client, db, make_user, grant_access, auth_headers, professional, private_patient, consulta
    ):
        appointment = self._book(db, professional, private_patient, consulta)
        colleague = make_user(["professional"], name="Dr. Bruno")
        grant_access(colleague)

        response = await client.delete(
            f"{APPOINTMENTS_URL}/{appointment.id}",
            headers=auth_headers(colleague, "professional"),
        )
        assert response.status_code == 403


# =============================================================================
# Listing
# =============================================================================

class TestListing:
    async def test_lists_by_local_day(self, client, db, professional, agenda_headers, private_patient, consulta):
        late = agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(days=2, hour=23))
        )
        agenda_service.create_appointment(
            db, _private_input(professional, private_patient, consulta, _local(days=3, hour=8))
        )

        day = (local_today() + timedelta(days=2)).isoformat()
        response = await client.get(APPOINTMENTS_URL, params={"date": day}, headers=agenda_headers)

        assert response.status_code == 200
        assert [a["id"] for a in response.json()] == [late.id]

    async def test_private_patients(self, client, agenda_headers):
        created = await client.post(
            "/api/scheduling/private-patients",
            json={"name": "João Souza", "phone": "11999990000"},
            headers=agenda_headers,
        )
        assert created.status_code == 201

        listed = await client.get("/api/scheduling/private-patients", headers=agenda_headers)
        assert [p["name"] for p in listed.json()] == ["João Souza"]

    async def test_services_without_access(self, client, professional, consulta, auth_headers):
        response = await client.get(
            "/api/scheduling/services", headers=auth_headers(professional, "professional")
        )
        assert response.status_code == 200
        assert response.json()[0]["name"] == "Consulta"
