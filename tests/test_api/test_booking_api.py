"""HTTP tests for the booking API."""

from datetime import timedelta

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from booking_os.api.app import create_app
from booking_os.api.middleware import APIKeyMiddleware
from booking_os.api.rate_limit import SlidingWindowRateLimiter
from booking_os.api.routes import public_booking
from booking_os.core.repository import BusinessRepository
from booking_os.integrations.otp import OtpIssuer, OtpVerifier
from booking_os.notifications import QueueNotificationDispatcher
from booking_os.scheduling.public_booking import PublicBookingOrchestrator
from booking_os.scheduling.scheduler import SchedulingService
from booking_os.services import BookingServices, build_services
from tests.conftest import BUSINESS_SETTINGS, TOMORROW


class CapturingSender:
    def __init__(self):
        self.codes: list[str] = []

    async def send(self, phone, code, expires_at):
        self.codes.append(code)


@pytest.fixture
def sender():
    return CapturingSender()


@pytest.fixture
def services(machine, session_factory, settings, clock, sender):
    orchestrator = PublicBookingOrchestrator(
        machine,
        otp_issuer=OtpIssuer(secret=settings.otp_secret, sender=sender, clock=clock),
        otp_verifier=OtpVerifier(secret=settings.otp_secret, clock=clock),
        settings=settings,
    )
    return BookingServices(
        machine=machine,
        scheduler=SchedulingService(session_factory, clock=clock),
        orchestrator=orchestrator,
    )


@pytest_asyncio.fixture
async def client(services, seed):
    public_booking.limiter.reset()
    app = create_app(services=services)
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def headers(seed):
    return {"X-Actor-Id": "manager-1", "X-Actor-Role": "manager", "X-Business-Id": seed["business_id"]}


def _body(seed, start="10:00", staff="staff_a", **extra) -> dict:
    body = {
        "business_id": seed["business_id"],
        "customer_id": seed["customer_id"],
        "service_id": seed["haircut"],
        "staff_id": seed[staff],
        "date": TOMORROW.isoformat(),
        "start_time": start,
    }
    body.update(extra)
    return body


async def _create(client, headers, seed, **kwargs) -> dict:
    resp = await client.post("/api/v1/appointments", json=_body(seed, **kwargs), headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client):
        resp = await client.get("/health", headers={"X-Request-ID": "trace-42"})
        assert resp.headers["X-Request-ID"] == "trace-42"
        assert "X-Process-Time" in resp.headers

    @pytest.mark.asyncio
    async def test_live(self, client):
        assert (await client.get("/health/live")).json() == {"status": "alive"}

    @pytest.mark.asyncio
    async def test_ready_checks_database(self, client):
        data = (await client.get("/health/ready")).json()
        assert data["status"] == "ready"


class TestActorHeaders:
    @pytest.mark.asyncio
    async def test_missing_headers(self, client, seed):
        resp = await client.post("/api/v1/appointments", json=_body(seed))
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_role(self, client, seed):
        resp = await client.post(
            "/api/v1/appointments", json=_body(seed), headers={"X-Actor-Id": "x", "X-Actor-Role": "wizard"}
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_customer_role_forbidden(self, client, seed):
        resp = await client.post(
            "/api/v1/appointments",
            json=_body(seed),
            headers={"X-Actor-Id": seed["customer_id"], "X-Actor-Role": "customer"},
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "AuthorizationError"


class TestAppointmentsAPI:
    @pytest.mark.asyncio
    async def test_create_and_get(self, client, headers, seed):
        created = await _create(client, headers, seed)
        assert created["status"] == "pending"
        assert created["end_time"] == "10:30:00"
        assert created["total_amount"] == 590

        resp = await client.get(f"/api/v1/appointments/{created['id']}", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["confirmation_code"] == created["confirmation_code"]

    @pytest.mark.asyncio
    async def test_conflict_is_409(self, client, headers, seed):
        first = await _create(client, headers, seed)
        resp = await client.post("/api/v1/appointments", json=_body(seed), headers=headers)
        assert resp.status_code == 409
        data = resp.json()
        assert data["error"] == "ConflictError"
        assert data["detail"] == "Selected time slot is not available"
        assert data["conflicting_ids"] == [first["id"]]

    @pytest.mark.asyncio
    async def test_policy_violation_is_422(self, client, headers, seed):
        resp = await client.post(
            "/api/v1/appointments", json=_body(seed, start="20:00"), headers=headers
        )
        assert resp.status_code == 422
        data = resp.json()
        assert data["error"] == "ValidationError"
        assert data["violations"] == ["Appointment time must be within business working hours"]

    @pytest.mark.asyncio
    async def test_unknown_appointment_is_404(self, client, headers):
        resp = await client.get("/api/v1/appointments/missing", headers=headers)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_list_for_day(self, client, headers, seed):
        await _create(client, headers, seed, start="11:00")
        await _create(client, headers, seed, start="10:00", staff="staff_b")
        resp = await client.get(
            "/api/v1/appointments",
            params={"business_id": seed["business_id"], "date": TOMORROW.isoformat()},
            headers=headers,
        )
        assert [a["start_time"] for a in resp.json()] == ["10:00:00", "11:00:00"]

    @pytest.mark.asyncio
    async def test_lifecycle(self, client, headers, seed):
        appt_id = (await _create(client, headers, seed))["id"]
        base = f"/api/v1/appointments/{appt_id}"

        assert (await client.post(f"{base}/confirm", headers=headers)).json()["status"] == "confirmed"
        assert (await client.post(f"{base}/start", headers=headers)).json()["status"] == "in_progress"
        done = await client.post(f"{base}/complete", json={"loyalty_points": 5}, headers=headers)
        assert done.json()["status"] == "completed"
        assert done.json()["loyalty_points_earned"] == 5

        review = await client.post(f"{base}/review", json={"rating": 5, "text": "Great"}, headers=headers)
        assert review.json()["review"]["rating"] == 5

        resp = await client.post(f"{base}/cancel", json={"reason": "oops"}, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"] == "StateError"

    @pytest.mark.asyncio
    async def test_complete_without_body(self, client, headers, seed):
        appt_id = (await _create(client, headers, seed))["id"]
        resp = await client.post(f"/api/v1/appointments/{appt_id}/complete", headers=headers)
        assert resp.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_cancel_and_no_show(self, client, headers, seed):
        first = (await _create(client, headers, seed))["id"]
        second = (await _create(client, headers, seed, start="11:00"))["id"]

        cancelled = await client.post(
            f"/api/v1/appointments/{first}/cancel", json={"reason": "sick", "fee": 100}, headers=headers
        )
        assert cancelled.json()["cancellation"]["fee"] == 100
        no_show = await client.post(f"/api/v1/appointments/{second}/no-show", headers=headers)
        assert no_show.json()["status"] == "no_show"

    @pytest.mark.asyncio
    async def test_reschedule(self, client, headers, seed):
        appt_id = (await _create(client, headers, seed))["id"]
        await _create(client, headers, seed, start="12:00")

        moved = await client.post(
            f"/api/v1/appointments/{appt_id}/reschedule",
            json={"date": TOMORROW.isoformat(), "start_time": "14:00", "end_time": "14:30"},
            headers=headers,
        )
        assert moved.json()["start_time"] == "14:00:00"

        clash = await client.post(
            f"/api/v1/appointments/{appt_id}/reschedule",
            json={"date": TOMORROW.isoformat(), "start_time": "12:00", "end_time": "12:30"},
            headers=headers,
        )
        assert clash.status_code == 409

    @pytest.mark.asyncio
    async def test_slots(self, client, headers, seed):
        await _create(client, headers, seed)
        resp = await client.get(
            f"/api/v1/businesses/{seed['business_id']}/slots",
            params={"date": TOMORROW.isoformat(), "staff_id": seed["staff_a"]},
            headers=headers,
        )
        slots = {s["start_time"]: s["available"] for s in resp.json()}
        assert len(slots) == 18
        assert slots["10:00:00"] is False
        assert slots["10:30:00"] is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "actor_headers",
        [
            {"X-Actor-Id": "manager-9", "X-Actor-Role": "manager", "X-Business-Id": "other-biz"},
            {"X-Actor-Id": "cust-1", "X-Actor-Role": "customer"},
        ],
    )
    async def test_slots_need_an_actor_of_the_business(self, client, seed, actor_headers):
        resp = await client.get(
            f"/api/v1/businesses/{seed['business_id']}/slots",
            params={"date": TOMORROW.isoformat()},
            headers=actor_headers,
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_search_appointments(self, client, headers, seed):
        first = await _create(client, headers, seed)
        await _create(client, headers, seed, start="11:00")
        await client.post(f"/api/v1/appointments/{first['id']}/confirm", headers=headers)
        url = f"/api/v1/businesses/{seed['business_id']}/appointments"

        page = (await client.get(url, params={"limit": 1}, headers=headers)).json()
        assert (page["total"], page["pages"], page["limit"]) == (2, 2, 1)
        assert len(page["items"]) == 1

        confirmed = (await client.get(url, params={"status": "confirmed"}, headers=headers)).json()
        assert [a["id"] for a in confirmed["items"]] == [first["id"]]

        by_code = (await client.get(url, params={"search": first["confirmation_code"]}, headers=headers)).json()
        assert by_code["total"] == 1

        too_big = await client.get(url, params={"limit": 500}, headers=headers)
        assert too_big.status_code == 422

    @pytest.mark.asyncio
    async def test_appointment_stats(self, client, headers, seed):
        await _create(client, headers, seed, advance_amount=590)
        await _create(client, headers, seed, start="11:00")
        resp = await client.get(
            f"/api/v1/businesses/{seed['business_id']}/appointments/stats",
            params={"start_date": TOMORROW.isoformat(), "end_date": TOMORROW.isoformat()},
            headers=headers,
        )
        stats = resp.json()
        assert stats["total_appointments"] == 2
        assert stats["by_status"]["pending"] == 2
        assert stats["paid_revenue"] == pytest.approx(590)
        assert stats["pending_revenue"] == pytest.approx(590)
        assert stats["total_revenue"] == pytest.approx(1180)

    @pytest.mark.asyncio
    async def test_inverted_stats_range_is_422(self, client, headers, seed):
        resp = await client.get(
            f"/api/v1/businesses/{seed['business_id']}/appointments/stats",
            params={"start_date": TOMORROW.isoformat(), "end_date": (TOMORROW - timedelta(days=2)).isoformat()},
            headers=headers,
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_mismatched_end_time_is_422(self, client, headers, seed):
        resp = await client.post(
            "/api/v1/appointments", json=_body(seed, end_time="10:30", duration=60), headers=headers
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_unhandled_error_is_500(self, client, headers, machine, monkeypatch):
        async def boom(actor, appointment_id):
            raise RuntimeError("database on fire")

        monkeypatch.setattr(machine, "get", boom)
        resp = await client.get("/api/v1/appointments/anything", headers=headers)
        assert resp.status_code == 500
        assert resp.json()["error"] == "Internal server error"


class TestPublicAPI:
    @pytest.mark.asyncio
    async def test_two_phase_booking(self, client, sender, seed):
        slug = seed["slug"]
        request = {
            "customer_name": "Neha Kapoor",
            "phone": "9000000001",
            "service_id": seed["haircut"],
            "staff_id": seed["staff_a"],
            "date": TOMORROW.isoformat(),
            "start_time": "10:00",
        }
        phase1 = await client.post(f"/api/v1/public/businesses/{slug}/bookings", json=request)
        assert phase1.status_code == 200
        assert phase1.json()["requires_verification"] is True

        phase2 = await client.post(
            f"/api/v1/public/businesses/{slug}/bookings/verify", json={"phone": "9000000001", "code": sender.codes[-1]}
        )
        assert phase2.status_code == 201
        code = phase2.json()["confirmation_code"]

        again = await client.post(
            f"/api/v1/public/businesses/{slug}/bookings/verify", json={"phone": "9000000001", "code": sender.codes[-1]}
        )
        assert again.status_code == 404

        lookup = await client.get(f"/api/v1/public/appointments/{code}")
        assert lookup.json()["booking_source"] == "online"

        cancelled = await client.post(f"/api/v1/public/appointments/{code}/cancel", json={"reason": "busy"})
        assert cancelled.status_code == 200
        assert cancelled.json()["refund_amount"] == 250

    @pytest.mark.asyncio
    async def test_wrong_code_is_422(self, client, sender, seed):
        slug = seed["slug"]
        await client.post(
            f"/api/v1/public/businesses/{slug}/bookings",
            json={
                "customer_name": "Neha",
                "phone": "9000000001",
                "service_id": seed["haircut"],
                "date": TOMORROW.isoformat(),
                "start_time": "10:00",
            },
        )
        wrong = "1000" if sender.codes[-1] != "1000" else "2000"
        resp = await client.post(f"/api/v1/public/businesses/{slug}/bookings/verify", json={"phone": "9000000001", "code": wrong})
        assert resp.status_code == 422
        assert resp.json()["detail"] == "Invalid OTP"

    @pytest.mark.asyncio
    async def test_public_slots(self, client, seed):
        resp = await client.get(f"/api/v1/public/businesses/{seed['slug']}/slots", params={"date": TOMORROW.isoformat()})
        assert resp.status_code == 200
        assert len(resp.json()) == 18

    @pytest.mark.asyncio
    async def test_unknown_business_is_404(self, client):
        resp = await client.get("/api/v1/public/businesses/nowhere/slots", params={"date": TOMORROW.isoformat()})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_code_is_404(self, client):
        assert (await client.get("/api/v1/public/appointments/000000000000")).status_code == 404

    @pytest.mark.asyncio
    async def test_slug_that_looks_like_a_route(self, client, sender, seed, session_factory):
        async with session_factory() as session, session.begin():
            await BusinessRepository(session).create(name="Appointments Co", slug="appointments", settings=BUSINESS_SETTINGS)

        slots = await client.get("/api/v1/public/businesses/appointments/slots", params={"date": TOMORROW.isoformat()})
        assert slots.status_code == 200
        assert len(slots.json()) == 18

        await client.post(
            f"/api/v1/public/businesses/{seed['slug']}/bookings",
            json={
                "customer_name": "Neha",
                "phone": "9000000001",
                "service_id": seed["haircut"],
                "date": TOMORROW.isoformat(),
                "start_time": "10:00",
            },
        )
        booked = await client.post(
            f"/api/v1/public/businesses/{seed['slug']}/bookings/verify",
            json={"phone": "9000000001", "code": sender.codes[-1]},
        )
        code = booked.json()["confirmation_code"]
        assert (await client.get(f"/api/v1/public/appointments/{code}")).json()["id"] == booked.json()["id"]


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_limit_exceeded(self):
        limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60)
        app = FastAPI()

        @app.get("/ping", dependencies=[Depends(limiter)])
        async def ping():
            return {"ok": True}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            codes = [(await ac.get("/ping")).status_code for _ in range(3)]
            other_client = await ac.get("/ping", headers={"X-Forwarded-For": "10.0.0.9"})

        assert codes == [200, 200, 429]
        assert other_client.status_code == 200


class TestAPIKeyMiddleware:
    @pytest.mark.asyncio
    async def test_internal_routes_need_key(self):
        app = FastAPI()
        app.add_middleware(APIKeyMiddleware, api_key="sekret")

        @app.get("/api/v1/appointments")
        async def internal():
            return {"ok": True}

        @app.get("/api/v1/public/businesses/glow/slots")
        async def public():
            return {"ok": True}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            assert (await ac.get("/api/v1/appointments")).status_code == 401
            assert (await ac.get("/api/v1/appointments", headers={"X-API-Key": "sekret"})).status_code == 200
            assert (
                await ac.get("/api/v1/appointments", headers={"Authorization": "Bearer sekret"})
            ).status_code == 200
            assert (await ac.get("/api/v1/public/businesses/glow/slots")).status_code == 200


class TestWiring:
    @pytest.mark.asyncio
    async def test_build_services_without_payment_keys(self, settings, session_factory, clock, events):
        services = build_services(settings, session_factory=session_factory, clock=clock, events=events)

        assert isinstance(services.dispatcher, QueueNotificationDispatcher)
        assert services.orchestrator.payment_verifier is None
        assert services.machine.clock is clock

    @pytest.mark.asyncio
    async def test_lifespan_runs_dispatcher(self, settings, session_factory, clock, events):
        services = build_services(settings, session_factory=session_factory, clock=clock, events=events)
        app = create_app(services=services)

        async with app.router.lifespan_context(app):
            assert services.dispatcher.running
        assert not services.dispatcher.running
