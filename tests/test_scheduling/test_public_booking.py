"""Tests for the two-phase public booking flow."""

import json
from datetime import time

import pytest
from sqlalchemy import func, select

from booking_os.core.models import OtpRecordDB
from booking_os.core.repository import ServiceRepository
from booking_os.integrations.otp import OtpIssuer, OtpVerifier
from booking_os.integrations.payments import PaymentVerification
from booking_os.scheduling.errors import (
    ConflictError,
    ExternalDependencyError,
    NotFoundError,
    StateError,
    ValidationError,
)
from booking_os.scheduling.models import (
    AppointmentStatus,
    BookingSource,
    PaymentMethod,
    PaymentStatus,
)
from booking_os.scheduling.public_booking import (
    PaymentProof,
    PublicBookingOrchestrator,
    PublicBookingRequest,
)
from booking_os.scheduling.state_machine import CreateAppointmentRequest
from tests.conftest import TOMORROW


class CapturingSender:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def send(self, phone, code, expires_at):
        if self.fail:
            raise ConnectionError("gateway down")
        self.sent.append((phone, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


class FakePaymentVerifier:
    def __init__(self, verified: bool = True, unavailable: bool = False):
        self.verified = verified
        self.unavailable = unavailable
        self.calls = 0

    async def verify(self, order_id, payment_id, signature):
        self.calls += 1
        if self.unavailable:
            raise ExternalDependencyError("provider down", dependency="razorpay")
        status = "captured" if self.verified else "failed"
        return PaymentVerification(verified=self.verified, status=status)


PROOF = PaymentProof(order_id="order_1", payment_id="pay_1", signature="sig")


@pytest.fixture
def sender():
    return CapturingSender()


def _orchestrator(machine, settings, clock, sender, payment_verifier=None) -> PublicBookingOrchestrator:
    return PublicBookingOrchestrator(
        machine,
        otp_issuer=OtpIssuer(secret=settings.otp_secret, sender=sender, clock=clock),
        otp_verifier=OtpVerifier(secret=settings.otp_secret, clock=clock),
        payment_verifier=payment_verifier,
        settings=settings,
    )


@pytest.fixture
def orchestrator(machine, settings, clock, sender):
    return _orchestrator(machine, settings, clock, sender)


def _booking(seed, **overrides) -> PublicBookingRequest:
    data = {
        "customer_name": "Neha Kapoor",
        "phone": "9000000001",
        "email": "Neha@Example.com",
        "service_id": seed["haircut"],
        "staff_id": seed["staff_a"],
        "date": TOMORROW,
        "start_time": time(10, 0),
    }
    data.update(overrides)
    return PublicBookingRequest(**data)


async def _otp_rows(session_factory) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(OtpRecordDB))
        return result.scalar_one()


class TestPasscodeFlow:
    @pytest.mark.asyncio
    async def test_scenario_unverified_payment_goes_through_passcode(
        self, machine, settings, clock, sender, seed, session_factory, dispatcher
    ):
        verifier = FakePaymentVerifier(verified=False)
        orchestrator = _orchestrator(machine, settings, clock, sender, verifier)

        response = await orchestrator.request_booking(seed["slug"], _booking(seed, payment=PROOF))
        assert response.requires_verification
        assert response.appointment is None
        assert response.expires_at is not None
        assert await _otp_rows(session_factory) == 1

        appt = await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)
        assert appt.status == AppointmentStatus.PENDING
        assert appt.booking_source == BookingSource.ONLINE
        assert appt.payment_status == PaymentStatus.PENDING
        assert appt.payment_method == PaymentMethod.ONLINE
        assert appt.paid_amount == 0
        assert appt.total_amount == 500
        assert await _otp_rows(session_factory) == 0
        assert dispatcher.types() == ["appointment_created"]

        with pytest.raises(NotFoundError):
            await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)

    @pytest.mark.asyncio
    async def test_new_customer_is_created_from_request(self, orchestrator, sender, seed):
        await orchestrator.request_booking(seed["slug"], _booking(seed))
        appt = await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)

        assert appt.customer_id != seed["customer_id"]
        assert appt.created_by == appt.customer_id

    @pytest.mark.asyncio
    async def test_existing_customer_matched_by_phone(self, orchestrator, sender, seed):
        await orchestrator.request_booking(seed["slug"], _booking(seed, phone="9876543210"))
        appt = await orchestrator.verify_booking(seed["slug"], "9876543210", sender.last_code)
        assert appt.customer_id == seed["customer_id"]

    @pytest.mark.asyncio
    async def test_unknown_service_name_is_created(self, orchestrator, sender, seed, session_factory):
        request = _booking(
            seed, service_id=None, service_name="Beard Trim", service_price=200, service_duration=20
        )
        await orchestrator.request_booking(seed["slug"], request)
        appt = await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)

        assert appt.service_price == 200
        assert appt.end_time == time(10, 20)
        async with session_factory() as session:
            service = await ServiceRepository(session).get_by_name(seed["business_id"], "beard trim")
        assert service is not None
        assert service.category == "General"

    @pytest.mark.asyncio
    async def test_service_name_lookup_is_case_insensitive(self, orchestrator, sender, seed):
        await orchestrator.request_booking(seed["slug"], _booking(seed, service_id=None, service_name="HAIRCUT"))
        appt = await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)
        assert appt.service_id == seed["haircut"]

    @pytest.mark.asyncio
    async def test_wrong_code(self, orchestrator, sender, seed, session_factory):
        await orchestrator.request_booking(seed["slug"], _booking(seed))
        wrong = "1000" if sender.last_code != "1000" else "2000"

        with pytest.raises(ValidationError, match="Invalid OTP"):
            await orchestrator.verify_booking(seed["slug"], "9000000001", wrong)
        assert await _otp_rows(session_factory) == 1

        appt = await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)
        assert appt.staff_id == seed["staff_a"]

    @pytest.mark.asyncio
    async def test_too_many_attempts_burns_the_code(self, orchestrator, sender, seed, settings):
        await orchestrator.request_booking(seed["slug"], _booking(seed))
        wrong = "1000" if sender.last_code != "1000" else "2000"

        for _ in range(settings.otp_max_attempts - 1):
            with pytest.raises(ValidationError):
                await orchestrator.verify_booking(seed["slug"], "9000000001", wrong)
        with pytest.raises(ValidationError, match="Too many attempts"):
            await orchestrator.verify_booking(seed["slug"], "9000000001", wrong)
        with pytest.raises(NotFoundError):
            await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)

    @pytest.mark.asyncio
    async def test_expired_code(self, orchestrator, sender, seed, clock):
        await orchestrator.request_booking(seed["slug"], _booking(seed))
        clock.advance(minutes=6)
        with pytest.raises(NotFoundError, match="OTP not found or expired"):
            await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)

    @pytest.mark.asyncio
    async def test_code_is_bound_to_business(self, orchestrator, sender, seed):
        await orchestrator.request_booking(seed["slug"], _booking(seed))
        with pytest.raises(NotFoundError):
            await orchestrator.verify_booking("other-salon", "9000000001", sender.last_code)

    @pytest.mark.asyncio
    async def test_slot_taken_while_code_outstanding(self, orchestrator, sender, seed, machine, manager):
        await orchestrator.request_booking(seed["slug"], _booking(seed))
        await machine.create(
            manager,
            CreateAppointmentRequest(
                business_id=seed["business_id"],
                customer_id=seed["customer_id"],
                service_id=seed["haircut"],
                staff_id=seed["staff_a"],
                date=TOMORROW,
                start_time=time(10, 0),
            ),
        )
        with pytest.raises(ConflictError):
            await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)


class TestPhaseOneRejections:
    @pytest.mark.asyncio
    async def test_policy_violation_sends_nothing(self, orchestrator, sender, seed, session_factory):
        with pytest.raises(ValidationError):
            await orchestrator.request_booking(seed["slug"], _booking(seed, start_time=time(20, 0)))
        assert sender.sent == []
        assert await _otp_rows(session_factory) == 0

    @pytest.mark.asyncio
    async def test_conflicting_end_time_and_duration(self, orchestrator, sender, seed, session_factory):
        booking = _booking(seed, end_time=time(10, 30), duration=45)
        with pytest.raises(ValidationError, match="45 minutes"):
            await orchestrator.request_booking(seed["slug"], booking)
        assert sender.sent == []
        assert await _otp_rows(session_factory) == 0

    @pytest.mark.asyncio
    async def test_taken_slot_sends_nothing(self, orchestrator, sender, seed, machine, manager):
        await orchestrator.request_booking(seed["slug"], _booking(seed))
        await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)

        with pytest.raises(ConflictError):
            await orchestrator.request_booking(seed["slug"], _booking(seed, phone="9000000002"))
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_business(self, orchestrator, seed):
        with pytest.raises(NotFoundError):
            await orchestrator.request_booking("nope", _booking(seed))

    @pytest.mark.asyncio
    async def test_unknown_service(self, orchestrator, seed):
        with pytest.raises(NotFoundError):
            await orchestrator.request_booking(seed["slug"], _booking(seed, service_id="missing"))

    @pytest.mark.asyncio
    async def test_gateway_failure_is_surfaced(self, machine, settings, clock, seed, session_factory):
        orchestrator = _orchestrator(machine, settings, clock, CapturingSender(fail=True))
        with pytest.raises(ExternalDependencyError):
            await orchestrator.request_booking(seed["slug"], _booking(seed))
        assert await _otp_rows(session_factory) == 0


class TestVerifiedPayment:
    @pytest.mark.asyncio
    async def test_scenario_verified_payment_commits_directly(
        self, machine, settings, clock, sender, seed, session_factory, events
    ):
        verifier = FakePaymentVerifier(verified=True)
        orchestrator = _orchestrator(machine, settings, clock, sender, verifier)

        response = await orchestrator.request_booking(seed["slug"], _booking(seed, payment=PROOF))

        assert not response.requires_verification
        appt = response.appointment
        assert appt.payment_status == PaymentStatus.PAID
        assert appt.paid_amount == appt.total_amount
        assert appt.payment_reference == "pay_1"
        assert sender.sent == []
        assert await _otp_rows(session_factory) == 0

        types = [json.loads(line)["event_type"] for line in events.log_file.read_text().splitlines()]
        assert "payment_verified" in types

    @pytest.mark.asyncio
    async def test_provider_outage_falls_back_to_passcode(self, machine, settings, clock, sender, seed, events):
        verifier = FakePaymentVerifier(unavailable=True)
        orchestrator = _orchestrator(machine, settings, clock, sender, verifier)

        response = await orchestrator.request_booking(seed["slug"], _booking(seed, payment=PROOF))
        assert response.requires_verification

        appt = await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)
        assert appt.payment_status == PaymentStatus.PENDING
        assert verifier.calls == 2

        types = [json.loads(line)["event_type"] for line in events.log_file.read_text().splitlines()]
        assert "payment_mismatch" in types


class TestSelfService:
    @pytest.mark.asyncio
    async def test_lookup_and_cancel_by_code(self, orchestrator, sender, seed):
        await orchestrator.request_booking(seed["slug"], _booking(seed))
        appt = await orchestrator.verify_booking(seed["slug"], "9000000001", sender.last_code)

        found = await orchestrator.get_by_confirmation_code(appt.confirmation_code)
        assert found.id == appt.id

        result = await orchestrator.cancel_by_confirmation_code(appt.confirmation_code, reason="Travelling")
        assert result.appointment.status == AppointmentStatus.CANCELLED
        assert result.appointment.cancellation.reason == "Travelling"
        assert result.refund_amount == pytest.approx(250)

        with pytest.raises(StateError):
            await orchestrator.cancel_by_confirmation_code(appt.confirmation_code)
