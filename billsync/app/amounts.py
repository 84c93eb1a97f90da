"""
Pure amount helpers. Tax rules live upstream; here a line carries its own rate
(or a default one) and we only do the arithmetic and rounding. Tax rates and
discounts are percentages (18 means 18%).
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

MONEY_Q = Decimal("0.01")
QTY_Q = Decimal("0.0001")


def q_money(v) -> Decimal:
    return to_decimal(v).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def q_qty(v) -> Decimal:
    return to_decimal(v).quantize(QTY_Q, rounding=ROUND_HALF_UP)


def to_decimal(v, default: str = "0") -> Decimal:
    if v is None or v == "":
        return Decimal(default)
    if isinstance(v, Decimal):
        return v
    try:
        return Decimal(str(v).strip())
    except (InvalidOperation, ValueError):
        return Decimal(default)


def line_amounts(quantity, rate, *, discount_pct=0, discount_amount=0, tax_rate=0) -> dict:
    qty = to_decimal(quantity)
    unit = to_decimal(rate)
    gross = qty * unit
    disc = to_decimal(discount_amount)
    pct = to_decimal(discount_pct)
    if disc == 0 and pct:
        disc = gross * pct / Decimal("100")
    taxable = max(Decimal("0"), gross - disc)
    tax = taxable * to_decimal(tax_rate) / Decimal("100")
    return {
        "discount_amount": q_money(disc),
        "taxable_amount": q_money(taxable),
        "tax_amount": q_money(tax),
        "total_amount": q_money(taxable + tax),
    }


def invoice_totals(lines: list[dict]) -> dict:
    subtotal = sum([to_decimal(l.get("taxable_amount")) for l in lines], Decimal("0"))
    tax = sum([to_decimal(l.get("tax_amount")) for l in lines], Decimal("0"))
    return {
        "subtotal": q_money(subtotal),
        "tax_amount": q_money(tax),
        "total_amount": q_money(subtotal + tax),
    }
