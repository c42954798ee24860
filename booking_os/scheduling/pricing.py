"""Price and duration resolution for services."""

from typing import Optional

from booking_os.scheduling.models import PaymentStatus, PriceBreakdown, PriceQuote, Service

DEFAULT_DURATION = 60


class PricingResolver:
    """Resolves the effective (price, duration) of a service.

    Tiered services pick the active tier whose duration matches the request
    exactly, falling back to the first active tier in declaration order.
    Resolution never fails; the worst case is ``(0, 60)``.
    """

    def resolve(self, service: Service, requested_duration: Optional[int] = None) -> PriceQuote:
        active = [tier for tier in service.pricing_options if tier.active]
        if active:
            chosen = active[0]
            if requested_duration is not None:
                for tier in active:
                    if tier.duration == requested_duration:
                        chosen = tier
                        break
            return PriceQuote(price=chosen.price, duration=chosen.duration)

        return PriceQuote(
            price=service.price or 0.0,
            duration=service.duration or DEFAULT_DURATION,
        )


def price_breakdown(price: float, tax_rate: float = 0.0, discount: float = 0.0) -> PriceBreakdown:
    """Derive tax and total from a resolved price.

    ``total = price + tax - discount``, floored at zero.
    """
    tax = round(price * tax_rate, 2)
    discount = max(discount, 0.0)
    total = round(max(price + tax - discount, 0.0), 2)
    return PriceBreakdown(service_price=price, tax=tax, discount=discount, total_amount=total)


def initial_payment_status(paid: float, total: float) -> PaymentStatus:
    if paid >= total:
        return PaymentStatus.PAID
    if paid > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING
