"""One-time passcodes for public booking verification."""

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from pydantic import BaseModel

from booking_os.scheduling.errors import ExternalDependencyError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IssuedOtp(BaseModel):
    code: str
    code_hash: str
    expires_at: datetime


class OtpSender(Protocol):
    """Gateway that delivers a passcode to the customer's phone."""

    async def send(self, phone: str, code: str, expires_at: datetime) -> None: ...


class LoggingOtpSender:
    """Development sender; the code only appears at DEBUG level."""

    async def send(self, phone: str, code: str, expires_at: datetime) -> None:
        logger.info(f"Passcode for ***{phone[-4:]} expires at {expires_at.isoformat()}")
        logger.debug(f"Passcode for {phone}: {code}")


def hash_otp(secret: str, code: str, expires_at: datetime) -> str:
    """Bind the code to its expiry so a stored hash cannot be reused with a new deadline."""
    stamp = expires_at.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    return hmac.new(secret.encode(), f"{code}.{stamp}".encode(), hashlib.sha256).hexdigest()


class OtpIssuer:
    def __init__(
        self,
        secret: str,
        sender: Optional[OtpSender] = None,
        length: int = 4,
        ttl_minutes: int = 5,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.secret = secret
        self.sender = sender or LoggingOtpSender()
        self.length = length
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock or _utcnow

    def generate_code(self) -> str:
        low = 10 ** (self.length - 1)
        return str(low + secrets.randbelow(9 * low))

    async def issue(self, phone: str) -> IssuedOtp:
        """Generate a passcode and hand it to the gateway.

        Raises:
            ExternalDependencyError: The gateway could not accept the passcode.
        """
        code = self.generate_code()
        expires_at = (self._clock() + self.ttl).replace(microsecond=0)
        try:
            await self.sender.send(phone, code, expires_at)
        except ExternalDependencyError:
            raise
        except Exception as e:
            raise ExternalDependencyError(f"Failed to send passcode: {e}", dependency="otp") from e
        return IssuedOtp(code=code, code_hash=hash_otp(self.secret, code, expires_at), expires_at=expires_at)


class OtpVerifier:
    def __init__(self, secret: str, clock: Optional[Callable[[], datetime]] = None):
        self.secret = secret
        self._clock = clock or _utcnow

    def verify(self, code: str, code_hash: str, expires_at: datetime) -> bool:
        """Constant-time check of ``code`` against the stored hash; expired codes never match."""
        if self._clock() >= expires_at:
            return False
        candidate = hash_otp(self.secret, code.strip(), expires_at)
        return hmac.compare_digest(candidate, code_hash)
