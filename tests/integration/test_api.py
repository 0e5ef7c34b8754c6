"""
API tests.

Drive the FastAPI app in-process with httpx. The scheduling engine
dependency is overridden with the test engine; lifespan does not run.
"""

import uuid
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from clinicflow.core.scheduling import get_scheduling_engine
from clinicflow.main import app
from tests.conftest import MONDAY


@pytest_asyncio.fixture
async def client(engine):
    """HTTP client bound to the app."""
    app.dependency_overrides[get_scheduling_engine] = lambda: engine
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def booking(doctor, **overrides) -> dict:
    body = {
        "doctor_id": str(doctor.id),
        "patient_email": "pat@pat.test",
        "date": MONDAY.isoformat(),
        "time": "10:00",
        "type": "General",
    }
    body.update(overrides)
    return body


class TestHealthEndpoints:
    """Test health probes and the scheduling snapshot."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Test basic health."""
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_live(self, client):
        """Test liveness."""
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_ready_reports_dependencies(self, client):
        """Test readiness lists each dependency and the sweep state."""
        with patch("clinicflow.api.routes.health.check_db_health", AsyncMock(return_value=True)), \
                patch("clinicflow.api.routes.health.check_redis_health", AsyncMock(return_value=False)):
            response = await client.get("/health/ready")

        assert response.status_code == 200
        checks = response.json()["checks"]
        assert checks["database"] == "ok"
        assert checks["redis"] in ("degraded", "disabled")
        assert checks["expiry_sweep"] in ("stopped", "disabled")

    @pytest.mark.asyncio
    async def test_not_ready_without_database(self, client):
        """Test readiness fails when the database is unreachable."""
        with patch("clinicflow.api.routes.health.check_db_health", AsyncMock(return_value=False)), \
                patch("clinicflow.api.routes.health.check_redis_health", AsyncMock(return_value=True)):
            response = await client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    @pytest.mark.asyncio
    async def test_scheduling_snapshot(self, client, doctor):
        """Test the daily counts reflect a booking."""
        await client.post("/appointments", json=booking(doctor))

        response = await client.get("/health/scheduling", params={"date": MONDAY.isoformat()})

        assert response.status_code == 200
        data = response.json()
        assert data["date"] == "2030-01-07"
        assert data["appointments"]["pending_payment"] == 1
        assert data["waitlist_waiting"] == 0
        assert "status" in data["expiry_sweep"]


class TestAppointmentEndpoints:
    """Test booking and the appointment lifecycle over HTTP."""

    @pytest.mark.asyncio
    async def test_book(self, client, doctor):
        """Test a booking is created awaiting payment."""
        response = await client.post("/appointments", json=booking(doctor))

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending_payment"
        assert data["status_label"] == "Pending Payment"
        assert data["time"] == "10:00"
        assert data["payment_deadline"].startswith("2030-01-07T09:00")

    @pytest.mark.asyncio
    async def test_full_slot_waitlists(self, client, doctor):
        """Test a full slot answers 202 with the waitlist entry."""
        await client.post("/appointments", json=booking(doctor))

        response = await client.post(
            "/appointments", json=booking(doctor, patient_email="late@pat.test")
        )

        assert response.status_code == 202
        data = response.json()
        assert data["waitlisted"] is True
        assert data["entry"]["patient_email"] == "late@pat.test"
        assert data["entry"]["status"] == "waiting"

    @pytest.mark.asyncio
    async def test_full_slot_without_waitlist(self, client, doctor):
        """Test a full slot is a conflict when the waitlist is declined."""
        await client.post("/appointments", json=booking(doctor))

        response = await client.post(
            "/appointments",
            json=booking(doctor, patient_email="late@pat.test", join_waitlist=False),
        )

        assert response.status_code == 409
        assert response.json()["error"] == "slot_full"

    @pytest.mark.asyncio
    async def test_past_date_rejected(self, client, doctor):
        """Test business validation maps to 400."""
        response = await client.post("/appointments", json=booking(doctor, date="2030-01-06"))

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    @pytest.mark.asyncio
    async def test_malformed_time_rejected(self, client, doctor):
        """Test request validation maps to 422."""
        response = await client.post("/appointments", json=booking(doctor, time="ten"))

        assert response.status_code == 422
        assert response.json()["error"] == "Validation error"

    @pytest.mark.asyncio
    async def test_unknown_appointment(self, client):
        """Test a missing appointment is 404."""
        response = await client.get(f"/appointments/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_pay_and_check_in(self, client, doctor):
        """Test payment then check-in issues memo number one."""
        created = (await client.post("/appointments", json=booking(doctor))).json()

        paid = await client.post(f"/appointments/{created['id']}/pay", json={"recorded_by": "desk"})
        assert paid.status_code == 200
        assert paid.json()["status"] == "paid"
        assert paid.json()["recorded_by"] == "desk"

        again = await client.post(f"/appointments/{created['id']}/pay")
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_transition"

        checked_in = await client.post(f"/appointments/{created['id']}/checkin")
        assert checked_in.status_code == 200
        assert checked_in.json()["appointment"]["status"] == "checked_in"
        assert checked_in.json()["memo"]["memo_number"] == 1

    @pytest.mark.asyncio
    async def test_cancel(self, client, doctor):
        """Test cancellation records the reason."""
        created = (await client.post("/appointments", json=booking(doctor))).json()

        response = await client.post(
            f"/appointments/{created['id']}/cancel", json={"reason": "Travelling"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancellation_reason"] == "Travelling"


class TestDoctorEndpoints:
    """Test doctor, slot and session endpoints."""

    @pytest.mark.asyncio
    async def test_slots(self, client, doctor):
        """Test the day's slots with occupancy."""
        await client.post("/appointments", json=booking(doctor, time="09:00"))

        response = await client.get(f"/doctors/{doctor.id}/slots", params={"date": "2030-01-07"})

        assert response.status_code == 200
        slots = response.json()["slots"]
        assert len(slots) == 6
        assert slots[0] == {"time": "09:00", "capacity": 1, "booked": 1, "available": False}
        assert slots[1]["available"] is True

    @pytest.mark.asyncio
    async def test_session_break(self, client, doctor):
        """Test a doctor going on break."""
        response = await client.put(
            f"/doctor-sessions/{doctor.id}", json={"status": "break", "note": "Lunch"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["previous_status"] == "idle"
        assert data["session"]["status"] == "break"
        assert data["session"]["status_label"] == "On Break"

    @pytest.mark.asyncio
    async def test_start_next_with_empty_queue(self, client, doctor):
        """Test calling the next patient with nobody waiting."""
        response = await client.post(f"/doctor-sessions/{doctor.id}/start-next")

        assert response.status_code == 404
