"""
Pricing

Pure functions. An order's price is computed once, when it is added or
updated, and snapshotted onto the order; everything afterwards re-sums the
snapshot and never looks at the live catalog again.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from pydantic import BaseModel

from schemas import CreditType, Design, EngravingOption, GeneralSettings, Material, Order, Size

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value: Any) -> Decimal:
    """Coerce to Decimal rounded half-up to cents."""
    if value is None or value == "":
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class PriceBreakdown(BaseModel):
    base: Decimal
    material_upcharge: Decimal
    size_upcharge: Decimal
    engraving_upcharge: Decimal
    subtotal: Decimal
    credit_type: CreditType
    applied_credits: Decimal
    total: Decimal


def compute_price(
    design: Design,
    material: Optional[Material],
    size: Optional[Size],
    engraving_option: Optional[EngravingOption],
    available_free_credits: int,
    available_dollar_credits: Decimal,
) -> PriceBreakdown:
    base = money(design.base_price)
    material_upcharge = money(material.upcharge) if material else ZERO
    size_upcharge = money(size.upcharge) if size else ZERO
    engraving_upcharge = money(engraving_option.upcharge) if engraving_option else ZERO
    subtotal = base + material_upcharge + size_upcharge + engraving_upcharge

    # Free credit always wins; the two kinds are never combined on one order.
    if available_free_credits > 0:
        credit_type = CreditType.FREE_ALBUM
        applied = base
    elif money(available_dollar_credits) > 0:
        credit_type = CreditType.DOLLAR
        applied = min(money(available_dollar_credits), subtotal)
    else:
        credit_type = CreditType.NONE
        applied = ZERO

    return PriceBreakdown(
        base=base,
        material_upcharge=material_upcharge,
        size_upcharge=size_upcharge,
        engraving_upcharge=engraving_upcharge,
        subtotal=subtotal,
        credit_type=credit_type,
        applied_credits=applied,
        total=max(ZERO, subtotal - applied),
    )


def calculate_total(order: Order) -> Decimal:
    """Total from the order's own snapshot fields."""
    subtotal = (
        money(order.base_price)
        + money(order.material_upcharge)
        + money(order.size_upcharge)
        + money(order.engraving_upcharge)
    )
    return max(ZERO, subtotal - money(order.applied_credits))


def format_price(amount: Any, settings: GeneralSettings) -> str:
    formatted = f"{money(amount):,.2f}"
    if settings.currency_position == "after":
        return f"{formatted}{settings.currency_symbol}"
    return f"{settings.currency_symbol}{formatted}"


def to_minor_units(amount: Any) -> int:
    """Gateway amounts are integer cents."""
    return int((money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(cents: Optional[int]) -> Decimal:
    return money(Decimal(int(cents or 0)) / 100)
