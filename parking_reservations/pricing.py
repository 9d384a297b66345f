"""
Price calculator and discount policies

quote() is pure: the same rate schedule, mode, window and discount
always produce the same breakdown. All money is Decimal, rounded to
two places with banker's rounding.
"""
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Dict, Mapping, Optional, Protocol

from .exceptions import InvalidWindowError
from .models import PriceBreakdown, PricingMode, RateSchedule
from .utils import ceil_units, ensure_utc

TAX_RATE = Decimal("0.18")
SERVICE_FEE_RATE = Decimal("0.05")

CENT = Decimal("0.01")
ZERO = Decimal("0")

BILLING_UNITS: Dict[PricingMode, timedelta] = {
    PricingMode.HOURLY: timedelta(hours=1),
    PricingMode.DAILY: timedelta(days=1),
    PricingMode.WEEKLY: timedelta(days=7),
    PricingMode.MONTHLY: timedelta(days=30),
}


def money(value) -> Decimal:
    """Quantize to cents"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)

# ============================================================
# Discount Policies
# ============================================================

class DiscountPolicy(Protocol):
    """Resolves a discount code to an amount off the base price"""

    def resolve(self, code: str, base_amount: Decimal) -> Optional[Decimal]:
        ...


class NoDiscountPolicy:
    """Accepts no codes"""

    def resolve(self, code: str, base_amount: Decimal) -> Optional[Decimal]:
        return None


class CatalogDiscountPolicy:
    """
    Discount rules keyed by code

    Each rule is either {"percent": "10"} (percentage of base) or
    {"amount": "50"} (flat amount). Codes match case-insensitively.
    """

    def __init__(self, rules: Optional[Mapping[str, Mapping[str, str]]] = None):
        self.rules = {
            code.strip().upper(): dict(rule)
            for code, rule in (rules or {}).items()
        }
        for code, rule in self.rules.items():
            if not ({"percent", "amount"} & rule.keys()):
                raise ValueError(f"Discount rule {code} needs 'percent' or 'amount'")

    @classmethod
    def from_settings(cls, settings) -> "CatalogDiscountPolicy":
        return cls(settings.discount_codes)

    def resolve(self, code: str, base_amount: Decimal) -> Optional[Decimal]:
        rule = self.rules.get(code.strip().upper())
        if rule is None:
            return None
        if "percent" in rule:
            return base_amount * Decimal(rule["percent"]) / Decimal(100)
        return Decimal(rule["amount"])

# ============================================================
# Quote
# ============================================================

def billable_units(mode: PricingMode, start_time: datetime, end_time: datetime) -> int:
    """Whole billing units covering the window; partial units round up"""
    duration = ensure_utc(end_time) - ensure_utc(start_time)
    if duration <= timedelta(0):
        raise InvalidWindowError("End time must be after start time", start_time, end_time)
    return ceil_units(duration, BILLING_UNITS[PricingMode(mode)])


def quote(
    rates: RateSchedule,
    mode: PricingMode,
    start_time: datetime,
    end_time: datetime,
    discount_code: Optional[str] = None,
    discount_policy: Optional[DiscountPolicy] = None
) -> PriceBreakdown:
    """
    Compute the price breakdown for a window

    base = rate x ceil(units); tax 18% and fee 5% of base;
    discount from the policy, clamped to [0, base + tax + fee].
    An unknown or empty code is never an error, it just yields no discount.
    """
    mode = PricingMode(mode)
    units = billable_units(mode, start_time, end_time)
    unit_rate = rates.rate_for(mode)

    base = money(unit_rate * units)
    tax = money(base * TAX_RATE)
    fee = money(base * SERVICE_FEE_RATE)
    gross = base + tax + fee

    discount = ZERO
    code = discount_code.strip().upper() if discount_code and discount_code.strip() else None
    if code and discount_policy is not None:
        resolved = discount_policy.resolve(code, base)
        if resolved is not None:
            discount = min(max(money(resolved), ZERO), gross)

    return PriceBreakdown(
        pricing_mode=mode,
        duration_units=units,
        unit_rate=unit_rate,
        base_amount=base,
        tax_amount=tax,
        service_fee=fee,
        discount_amount=discount,
        total_amount=gross - discount,
        discount_code=code,
    )
