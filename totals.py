"""
totals.py
---------
Invoice Record Builder: Totals Reconciler
-----------------------------------------
Computes invoice totals from line items and reconciles them against the
free-text overrides a user may type into the totals fields.

    net   = round(Σ quantity_i × unit_price_i, 2)
    tax   = round(Σ quantity_i × unit_price_i × tax_percent_i / 100, 2)
    gross = net + tax

Arithmetic is done in ``Decimal`` so that currency-minor-unit amounts do not
pick up binary floating-point noise; rounding is half-up to 2 places.

Each override replaces its computed figure only when it parses as a finite
number.  The three figures are reconciled independently: a single override
that breaks ``net + tax == gross`` is not cross-corrected.

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, NamedTuple, Optional

from schemas import InvoiceLine

logger = logging.getLogger(__name__)

_CENTS = Decimal("0.01")
_HUNDRED = Decimal(100)


class InvoiceTotals(NamedTuple):
    net: Decimal
    tax: Decimal
    gross: Decimal


def to_decimal(value: float) -> Decimal:
    """Exact decimal of a float's shortest repr (``0.1`` → ``Decimal("0.1")``)."""
    return Decimal(repr(float(value)))


def round_money(value: Decimal) -> Decimal:
    """Round to currency minor units, half-up."""
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def line_base_amount(line: InvoiceLine) -> Decimal:
    """Unrounded ``quantity × unit_price`` for one line."""
    return to_decimal(line.quantity) * to_decimal(line.unit_price)


def line_tax_amount(line: InvoiceLine) -> Decimal:
    """Unrounded tax on one line's base amount."""
    if not line.tax_percent:
        return Decimal(0)
    return line_base_amount(line) * to_decimal(line.tax_percent) / _HUNDRED


def compute_totals(lines: Iterable[InvoiceLine]) -> InvoiceTotals:
    """
    Compute ``(net, tax, gross)`` for *lines*.

    Sums are taken over unrounded per-line amounts and rounded once, so
    ``gross == net + tax`` holds exactly.
    """
    base_sum = Decimal(0)
    tax_sum = Decimal(0)
    for line in lines:
        base_sum += line_base_amount(line)
        tax_sum += line_tax_amount(line)
    net = round_money(base_sum)
    tax = round_money(tax_sum)
    return InvoiceTotals(net=net, tax=tax, gross=net + tax)


def parse_override(value: Optional[str]) -> Optional[Decimal]:
    """
    Parse a user override.

    Returns:
        The override rounded to 2 places, or ``None`` when *value* is blank,
        non-numeric, or not finite (``"nan"``, ``"inf"``).
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    return round_money(number)


def reconcile(
    computed: InvoiceTotals,
    net_override: Optional[str] = None,
    tax_override: Optional[str] = None,
    gross_override: Optional[str] = None,
) -> InvoiceTotals:
    """
    Apply numeric overrides to *computed*, figure by figure.

    Non-numeric overrides are ignored (logged at WARNING) and the computed
    figure is kept unchanged.
    """
    figures = []
    for name, computed_value, override in (
        ("net", computed.net, net_override),
        ("tax", computed.tax, tax_override),
        ("gross", computed.gross, gross_override),
    ):
        parsed = parse_override(override)
        if parsed is None:
            if override is not None and str(override).strip():
                logger.warning("totals: ignoring non-numeric %s override %r.", name, override)
            figures.append(computed_value)
        else:
            if parsed != computed_value:
                logger.info("totals: %s override %s replaces computed %s.", name, parsed, computed_value)
            figures.append(parsed)
    return InvoiceTotals(*figures)
