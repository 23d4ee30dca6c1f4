"""Unit price resolution for order line items.

Resolution order, first answer wins:

1. the highest-priority active local pricing rule for the exact
   (supplier, gas type, cylinder size, customer class), valid today;
2. a quote from the supplier service;
3. the static price table keyed by cylinder size.

The last step cannot fail, so ``PricingResolver.price`` always returns a quote
unless the local database itself is unavailable.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Mapping, Protocol

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import SupplierServiceError
from .metrics import PRICING_RESOLUTIONS_TOTAL
from .models import PricingRule

logger = logging.getLogger(__name__)

# Major currency units (NGN) per cylinder size.
DEFAULT_PRICES: Mapping[str, int] = {
    "3kg": 1800,
    "6kg": 3500,
    "12.5kg": 7500,
    "25kg": 15000,
    "50kg": 30000,
}
DEFAULT_FALLBACK_PRICE = 5000
# Width of order_items.pricing_rule_id.
PRICING_RULE_ID_MAX_LENGTH = 64

_CUSTOMER_CLASS_ALIASES = {"household": "retail", "customer": "retail"}


def normalize_customer_class(raw: str | None) -> str:
    """Pricing class for a customer role; households buy at retail prices."""

    cleaned = (raw or "").strip().lower()
    if not cleaned:
        return "retail"
    return _CUSTOMER_CLASS_ALIASES.get(cleaned, cleaned)


def to_cents(amount: Decimal | float | int | str) -> int:
    return int((Decimal(str(amount)) * Decimal("100")).to_integral_value(rounding=ROUND_HALF_UP))


def percent_of(amount_cents: int, percent: Decimal | float) -> int:
    value = Decimal(amount_cents) * Decimal(str(percent)) / Decimal("100")
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def _size_key(cylinder_size: str) -> str:
    return cylinder_size.strip().lower().replace(" ", "")


@dataclass(frozen=True)
class PriceQuote:
    unit_price_cents: int
    base_price_cents: int
    discount_cents: int
    rule_id: str | None
    source: str


class SupplierPricingSource(Protocol):
    async def calculate_pricing(
        self,
        supplier_id: int,
        items: list[dict[str, Any]],
        customer_type: str,
        auth_token: str | None = None,
    ) -> dict[str, Any]: ...


def _remote_line_quote(line: Mapping[str, Any]) -> PriceQuote:
    """Build a quote from one supplier-service pricing line.

    Raises ``ValueError`` (or a ``KeyError``/``ArithmeticError`` from parsing)
    when the line is unusable.
    """

    unit_price = to_cents(line["unitPrice"])
    discount = to_cents(line.get("discountAmount") or 0)
    if unit_price < 0 or discount < 0:
        raise ValueError(f"negative remote price (unitPrice={unit_price}, discountAmount={discount})")
    rule_id = line.get("pricingRuleId")
    if rule_id is not None:
        rule_id = str(rule_id).strip()
        if not rule_id or len(rule_id) > PRICING_RULE_ID_MAX_LENGTH:
            raise ValueError(f"unusable pricingRuleId {line.get('pricingRuleId')!r}")
    return PriceQuote(
        unit_price_cents=unit_price,
        base_price_cents=unit_price + discount,
        discount_cents=discount,
        rule_id=rule_id,
        source="remote",
    )


class PricingResolver:
    def __init__(
        self,
        session: AsyncSession,
        *,
        remote: SupplierPricingSource | None = None,
        auth_token: str | None = None,
        default_prices: Mapping[str, int] | None = None,
        fallback_price: int = DEFAULT_FALLBACK_PRICE,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.session = session
        self.remote = remote
        self.auth_token = auth_token
        self._default_prices = {_size_key(size): price for size, price in (default_prices or DEFAULT_PRICES).items()}
        self._fallback_price = fallback_price
        self._today = today

    async def price(
        self,
        supplier_id: int,
        gas_type_id: int,
        cylinder_size: str,
        quantity: int,
        customer_class: str,
    ) -> PriceQuote:
        quote = await self._from_rule(supplier_id, gas_type_id, cylinder_size, quantity, customer_class)
        if quote is None:
            quote = await self._from_remote(supplier_id, gas_type_id, cylinder_size, quantity, customer_class)
        if quote is None:
            quote = self._from_defaults(supplier_id, cylinder_size)
        PRICING_RESOLUTIONS_TOTAL.labels(source=quote.source).inc()
        return quote

    async def _from_rule(
        self,
        supplier_id: int,
        gas_type_id: int,
        cylinder_size: str,
        quantity: int,
        customer_class: str,
    ) -> PriceQuote | None:
        today = self._today()
        result = await self.session.execute(
            select(PricingRule)
            .where(
                PricingRule.supplier_id == supplier_id,
                PricingRule.gas_type_id == gas_type_id,
                PricingRule.cylinder_size == cylinder_size,
                PricingRule.customer_type == customer_class,
                PricingRule.is_active.is_(True),
                or_(PricingRule.valid_from.is_(None), PricingRule.valid_from <= today),
                or_(PricingRule.valid_until.is_(None), PricingRule.valid_until >= today),
            )
            .order_by(PricingRule.priority.desc(), PricingRule.created_at.desc(), PricingRule.id.desc())
            .limit(1)
        )
        rule = result.scalar_one_or_none()
        if rule is None:
            return None

        base = rule.base_price_cents
        discount = 0
        if (
            rule.bulk_discount_threshold is not None
            and rule.bulk_discount_percentage is not None
            and quantity >= rule.bulk_discount_threshold
        ):
            discount = percent_of(base, rule.bulk_discount_percentage)
        return PriceQuote(
            unit_price_cents=base - discount,
            base_price_cents=base,
            discount_cents=discount,
            rule_id=str(rule.id),
            source="rule",
        )

    async def _from_remote(
        self,
        supplier_id: int,
        gas_type_id: int,
        cylinder_size: str,
        quantity: int,
        customer_class: str,
    ) -> PriceQuote | None:
        if self.remote is None:
            return None
        try:
            calculation = await self.remote.calculate_pricing(
                supplier_id,
                [{"gasTypeId": gas_type_id, "cylinderSize": cylinder_size, "quantity": quantity}],
                customer_class,
                self.auth_token,
            )
            quote = _remote_line_quote(calculation["items"][0])
        except (SupplierServiceError, KeyError, IndexError, TypeError, ValueError, ArithmeticError) as exc:
            logger.warning(
                "Supplier pricing quote failed for supplier %s (%s, %s): %s",
                supplier_id,
                gas_type_id,
                cylinder_size,
                exc,
            )
            return None
        return quote

    def _from_defaults(self, supplier_id: int, cylinder_size: str) -> PriceQuote:
        price = self._default_prices.get(_size_key(cylinder_size), self._fallback_price)
        logger.warning(
            "Using default price %s for %s cylinder from supplier %s",
            price,
            cylinder_size,
            supplier_id,
        )
        cents = to_cents(price)
        return PriceQuote(
            unit_price_cents=cents,
            base_price_cents=cents,
            discount_cents=0,
            rule_id=None,
            source="default",
        )
