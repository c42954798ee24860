"""External collaborators: payment provider and passcode gateway."""

from booking_os.integrations.otp import IssuedOtp, LoggingOtpSender, OtpIssuer, OtpSender, OtpVerifier
from booking_os.integrations.payments import (
    PaymentVerification,
    PaymentVerifier,
    RazorpayPaymentVerifier,
)

__all__ = [
    "IssuedOtp",
    "LoggingOtpSender",
    "OtpIssuer",
    "OtpSender",
    "OtpVerifier",
    "PaymentVerification",
    "PaymentVerifier",
    "RazorpayPaymentVerifier",
]
