# core/utils/money.py


from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict

ZERO_DECIMAL_CURRENCIES = {
    "BIF","CLP","DJF","GNF","JPY","KMF","KRW","MGA","PYG","RWF","UGX","VND","VUV","XAF","XOF","XPF",
}

def normalize_currency(currency: str | None, default: str = "EUR") -> str:
    return (currency or default).upper().strip()

def currency_exponent(currency: str) -> int:
    c = normalize_currency(currency)
    return 0 if c in ZERO_DECIMAL_CURRENCIES else 2

def quantize_money(amount: Decimal, currency: str) -> Decimal:
    exp = currency_exponent(currency)
    q = Decimal("1") if exp == 0 else Decimal("0.01")
    return Decimal(str(amount)).quantize(q, rounding=ROUND_HALF_UP)

def parse_amount(value: Any) -> Decimal | None:
    """Decimal from user input (str / int / float), or None when not a number."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount

def to_minor_units(amount: Decimal, currency: str) -> int:
    """
    Providers expect integer minor units (cents).
    For 0-decimal currencies, minor units == major units.
    """
    exp = currency_exponent(currency)
    amt = quantize_money(amount, currency)

    if exp == 0:
        return int(amt)
    return int((amt * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

def from_minor_units(amount_minor: int, currency: str) -> Decimal:
    exp = currency_exponent(currency)
    if exp == 0:
        return Decimal(str(int(amount_minor))).quantize(Decimal("1"))
    return (Decimal(str(int(amount_minor))) / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# ═══════════════════════════════════════════════════════════════════════════════
# FEE BREAKDOWN
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FeeBreakdown:
    """
    Split of one checkout.

    base_amount     task budget, paid to the helper minus commission
    service_fee     flat fee charged to the requester on top of the budget
    total_charge    base_amount + service_fee, what the requester pays
    helper_commission  platform share taken from the budget
    platform_fee    service_fee + helper_commission (Stripe application fee)
    """

    base_amount: Decimal
    service_fee: Decimal
    helper_commission: Decimal
    currency: str

    @property
    def total_charge(self) -> Decimal:
        return quantize_money(self.base_amount + self.service_fee, self.currency)

    @property
    def platform_fee(self) -> Decimal:
        return quantize_money(self.service_fee + self.helper_commission, self.currency)

    @property
    def helper_amount(self) -> Decimal:
        return quantize_money(self.base_amount - self.helper_commission, self.currency)

    @property
    def total_charge_minor(self) -> int:
        # Summed in minor units so the total is exact
        return to_minor_units(self.base_amount, self.currency) + to_minor_units(self.service_fee, self.currency)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "baseAmount": str(self.base_amount),
            "serviceFee": str(self.service_fee),
            "totalCharge": str(self.total_charge),
            "helperCommission": str(self.helper_commission),
            "platformFee": str(self.platform_fee),
            "helperAmount": str(self.helper_amount),
            "currency": self.currency,
        }

    def as_metadata(self) -> Dict[str, str]:
        """Flat string map, as provider metadata fields only accept strings."""
        return {
            "base_amount": str(self.base_amount),
            "service_fee": str(self.service_fee),
            "total_charge": str(self.total_charge),
            "helper_commission": str(self.helper_commission),
        }


def compute_fee_breakdown(
    base_amount: Decimal,
    service_fee: Decimal,
    currency: str,
    commission_percent: Decimal = Decimal("0"),
) -> FeeBreakdown:
    c = normalize_currency(currency)
    base = quantize_money(base_amount, c)
    fee = quantize_money(service_fee, c)
    commission = quantize_money(base * Decimal(str(commission_percent)) / Decimal("100"), c)
    return FeeBreakdown(base_amount=base, service_fee=fee, helper_commission=commission, currency=c)
