from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

BUYER_FEE_RATE = Decimal("0.03")
SELLER_FEE_RATE = Decimal("0.02")
PROCESSOR_FEE_RATE = Decimal("0.029")
PROCESSOR_FEE_FIXED = Decimal("0.30")

_CENT = Decimal("0.01")
_ZERO = Decimal("0")


@dataclass(frozen=True)
class FeeBreakdown:
    subtotal: float
    shipping: float
    buyer_fee: float
    total_charge: float
    seller_fee: float
    seller_processor_fee: float
    total_processor_fee: float
    platform_processor_fee: float
    seller_payout: float

    def to_dict(self) -> dict:
        return asdict(self)


def _to_decimal(value) -> Decimal:
    try:
        parsed = Decimal(str(value if value is not None else 0))
    except (InvalidOperation, ValueError, TypeError):
        return _ZERO
    if not parsed.is_finite():
        return _ZERO
    return parsed


def _clamp_money(value) -> Decimal:
    parsed = _to_decimal(value)
    return parsed if parsed > _ZERO else _ZERO


def _quantize_cents(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def round2(value) -> float:
    return float(_quantize_cents(_to_decimal(value)))


def money_to_cents(amount) -> int:
    cents = (_to_decimal(amount) * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents) if cents > _ZERO else 0


def cents_to_money(cents) -> float:
    try:
        parsed = Decimal(int(cents or 0))
    except (TypeError, ValueError):
        parsed = _ZERO
    return float(_quantize_cents(parsed / Decimal("100")))


def offer_total_price(price_per_sq_ft, quantity_sq_ft) -> float:
    return float(_quantize_cents(_to_decimal(price_per_sq_ft) * _to_decimal(quantity_sq_ft)))


def compute_order_fees(subtotal, shipping=0) -> FeeBreakdown:
    """Split one checkout into buyer charge, platform fees and seller payout.

    Every derived field is rounded to the cent on its own, using the already
    rounded buyer fee and total charge where the formula refers to them.
    Negative or non-numeric inputs count as zero; the function never raises.
    """
    goods = _clamp_money(subtotal)
    freight = _clamp_money(shipping)

    buyer_fee = _quantize_cents(BUYER_FEE_RATE * (goods + freight))
    total_charge = _quantize_cents(goods + freight + buyer_fee)
    seller_fee = _quantize_cents(SELLER_FEE_RATE * goods)
    seller_processor_fee = _quantize_cents(PROCESSOR_FEE_RATE * goods + PROCESSOR_FEE_FIXED)
    total_processor_fee = _quantize_cents(PROCESSOR_FEE_RATE * total_charge + PROCESSOR_FEE_FIXED)
    platform_processor_fee = _quantize_cents(max(_ZERO, total_processor_fee - seller_processor_fee))
    seller_payout = _quantize_cents(goods - seller_fee - seller_processor_fee)

    return FeeBreakdown(
        subtotal=float(goods),
        shipping=float(freight),
        buyer_fee=float(buyer_fee),
        total_charge=float(total_charge),
        seller_fee=float(seller_fee),
        seller_processor_fee=float(seller_processor_fee),
        total_processor_fee=float(total_processor_fee),
        platform_processor_fee=float(platform_processor_fee),
        seller_payout=float(seller_payout),
    )
