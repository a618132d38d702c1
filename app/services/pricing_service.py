"""Pricing Calculator for storefront orders.

Price precedence per line:
1. Verified wholesaler: wholesale price (compare_at_price), or list price
   minus the wholesaler's discount percent when no wholesale price is set
2. Product on sale: list price minus sale percentage
3. List price

Wholesale and sale pricing never stack. Order-level coupon discount,
delivery cost and tax are applied on the subtotal. Everything is computed
once at placement and frozen on the order.

Example:
- List price: 100.00, on sale 20%       -> unit 80.00
- Same product, verified wholesaler     -> unit = compare_at_price (70.00)
- 2 x 80.00, 10% coupon, delivery 15.00 -> 160.00 - 16.00 + 15.00 = 159.00
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, List
from enum import Enum

from app.models.coupon import DiscountType
from app.models.product import Product

TWO_PLACES = Decimal("0.01")
HUNDRED = Decimal("100")


def money(value) -> Decimal:
    """Quantize to 2 places, half-up."""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class PricingSource(str, Enum):
    LIST = "LIST"
    SALE = "SALE"
    WHOLESALE = "WHOLESALE"


@dataclass(frozen=True)
class CouponTerms:
    """Coupon as applied to one order."""
    code: str
    discount_type: str
    value: Decimal
    max_discount_amount: Optional[Decimal] = None


@dataclass
class PricingContext:
    """Inputs that do not come from the products themselves."""
    wholesaler_discount: Optional[Decimal] = None  # set only for verified wholesalers
    coupon: Optional[CouponTerms] = None
    delivery_cost: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")  # percent

    @property
    def is_wholesaler(self) -> bool:
        return self.wholesaler_discount is not None


@dataclass(frozen=True)
class PricedLine:
    product_id: object
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    source: PricingSource


@dataclass
class PricingBreakdown:
    subtotal: Decimal
    discount: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal
    lines: List[PricedLine] = field(default_factory=list)


class PricingCalculator:
    """Stateless price computation; safe to share."""

    def unit_price(self, product: Product, context: PricingContext) -> tuple[Decimal, PricingSource]:
        price = Decimal(product.price)

        if context.is_wholesaler:
            if product.compare_at_price is not None and Decimal(product.compare_at_price) > 0:
                return money(product.compare_at_price), PricingSource.WHOLESALE
            pct = Decimal(context.wholesaler_discount or 0)
            return money(price * (HUNDRED - pct) / HUNDRED), PricingSource.WHOLESALE

        sale_pct = Decimal(product.sale_percentage or 0)
        if product.is_on_sale and sale_pct > 0:
            return money(price * (HUNDRED - sale_pct) / HUNDRED), PricingSource.SALE

        return money(price), PricingSource.LIST

    def price_line(self, product: Product, quantity: int, context: PricingContext) -> PricedLine:
        unit, source = self.unit_price(product, context)
        return PricedLine(
            product_id=product.id,
            quantity=quantity,
            unit_price=unit,
            line_total=money(unit * quantity),
            source=source,
        )

    def coupon_discount(self, subtotal: Decimal, coupon: Optional[CouponTerms]) -> Decimal:
        if coupon is None or subtotal <= 0:
            return money(0)

        if coupon.discount_type == DiscountType.PERCENTAGE.value:
            discount = subtotal * Decimal(coupon.value) / HUNDRED
            if coupon.max_discount_amount is not None:
                discount = min(discount, Decimal(coupon.max_discount_amount))
        else:
            discount = Decimal(coupon.value)

        # A coupon never takes the subtotal below zero
        return money(min(discount, subtotal))

    def breakdown(self, lines: List[PricedLine], context: PricingContext) -> PricingBreakdown:
        subtotal = money(sum((line.line_total for line in lines), Decimal("0")))
        discount = self.coupon_discount(subtotal, context.coupon)
        shipping = money(context.delivery_cost or 0)
        tax = money((subtotal - discount) * Decimal(context.tax_rate or 0) / HUNDRED)
        total = money(subtotal + shipping + tax - discount)

        return PricingBreakdown(
            subtotal=subtotal,
            discount=discount,
            shipping=shipping,
            tax=tax,
            total=total,
            lines=list(lines),
        )
