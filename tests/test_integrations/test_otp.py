"""Tests for one-time passcode issuing and verification."""

from datetime import timedelta

import pytest

from booking_os.integrations.otp import LoggingOtpSender, OtpIssuer, OtpVerifier, hash_otp
from booking_os.scheduling.errors import ExternalDependencyError
from tests.conftest import NOW, FrozenClock


class RecordingSender:
    def __init__(self):
        self.sent = []

    async def send(self, phone, code, expires_at):
        self.sent.append((phone, code, expires_at))


class BrokenSender:
    async def send(self, phone, code, expires_at):
        raise TimeoutError("sms gateway timed out")


class TestOtpIssuer:
    def test_codes_have_fixed_length(self):
        issuer = OtpIssuer(secret="s", length=6)
        for _ in range(50):
            code = issuer.generate_code()
            assert len(code) == 6
            assert code[0] != "0"

    @pytest.mark.asyncio
    async def test_issue_sends_code_and_returns_hash(self):
        sender = RecordingSender()
        issuer = OtpIssuer(secret="s", sender=sender, ttl_minutes=5, clock=FrozenClock())
        issued = await issuer.issue("9000000001")

        assert issued.expires_at == NOW + timedelta(minutes=5)
        assert sender.sent == [("9000000001", issued.code, issued.expires_at)]
        assert issued.code_hash == hash_otp("s", issued.code, issued.expires_at)

    @pytest.mark.asyncio
    async def test_gateway_failure_becomes_external_error(self):
        issuer = OtpIssuer(secret="s", sender=BrokenSender(), clock=FrozenClock())
        with pytest.raises(ExternalDependencyError) as exc_info:
            await issuer.issue("9000000001")
        assert exc_info.value.dependency == "otp"

    @pytest.mark.asyncio
    async def test_logging_sender_is_the_default(self):
        issuer = OtpIssuer(secret="s", clock=FrozenClock())
        assert isinstance(issuer.sender, LoggingOtpSender)
        await issuer.issue("9000000001")


class TestOtpVerifier:
    @pytest.mark.asyncio
    async def test_matching_code(self):
        clock = FrozenClock()
        issued = await OtpIssuer(secret="s", sender=RecordingSender(), clock=clock).issue("9000000001")
        verifier = OtpVerifier(secret="s", clock=clock)
        assert verifier.verify(issued.code, issued.code_hash, issued.expires_at)
        assert verifier.verify(f" {issued.code} ", issued.code_hash, issued.expires_at)

    @pytest.mark.asyncio
    async def test_wrong_code_or_secret(self):
        clock = FrozenClock()
        issued = await OtpIssuer(secret="s", sender=RecordingSender(), clock=clock).issue("9000000001")
        wrong = "1000" if issued.code != "1000" else "2000"
        assert not OtpVerifier(secret="s", clock=clock).verify(wrong, issued.code_hash, issued.expires_at)
        assert not OtpVerifier(secret="other", clock=clock).verify(issued.code, issued.code_hash, issued.expires_at)

    @pytest.mark.asyncio
    async def test_expired_code_never_matches(self):
        clock = FrozenClock()
        issued = await OtpIssuer(secret="s", sender=RecordingSender(), clock=clock).issue("9000000001")
        clock.advance(minutes=5)
        assert not OtpVerifier(secret="s", clock=clock).verify(issued.code, issued.code_hash, issued.expires_at)

    def test_hash_is_bound_to_expiry(self):
        assert hash_otp("s", "1234", NOW) != hash_otp("s", "1234", NOW + timedelta(seconds=1))
