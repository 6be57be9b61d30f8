"""Cart pricing: per-item sale discount, bulk tier, loyalty tier.

Discounts stack in a fixed order. Sale percentages come off each line first.
The bulk tier (by total quantity) applies to what is left, and the loyalty
tier applies to the amount after the bulk discount. The cart preview and
checkout both call :func:`calculate`, so they cannot disagree.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from errors import ValidationError

CENT = Decimal('0.01')
HUNDRED = Decimal('100')

TIER_NONE = 'none'
TIER_LOW = 'low'
TIER_HIGH = 'high'


def to_money(value) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class DiscountPolicy:
    bulk_low_threshold: int = 5
    bulk_low_rate: int = 5
    bulk_high_threshold: int = 10
    bulk_high_rate: int = 10
    loyalty_threshold: int = 10
    loyalty_rate: int = 10

    @classmethod
    def from_mapping(cls, config):
        return cls(
            bulk_low_threshold=int(config['BULK_LOW_THRESHOLD']),
            bulk_low_rate=int(config['BULK_LOW_RATE']),
            bulk_high_threshold=int(config['BULK_HIGH_THRESHOLD']),
            bulk_high_rate=int(config['BULK_HIGH_RATE']),
            loyalty_threshold=int(config['LOYALTY_THRESHOLD']),
            loyalty_rate=int(config['LOYALTY_RATE']),
        )


@dataclass(frozen=True)
class PricedLine:
    unit_price: Decimal
    quantity: int
    # None or 0 when the book is not on sale
    discount_percent: Optional[Decimal] = None


@dataclass(frozen=True)
class DiscountBreakdown:
    subtotal: Decimal
    item_discount: Decimal
    subtotal_after_item_discount: Decimal
    bulk_tier: str
    bulk_discount: Decimal
    loyalty_discount: Decimal
    total: Decimal
    total_quantity: int
    applied_loyalty: bool = False

    @property
    def applied_bulk_low(self):
        return self.bulk_tier == TIER_LOW

    @property
    def applied_bulk_high(self):
        return self.bulk_tier == TIER_HIGH

    def to_dict(self):
        return {
            'subtotal': float(self.subtotal),
            'item_discount': float(self.item_discount),
            'subtotal_after_item_discount': float(self.subtotal_after_item_discount),
            'bulk_tier': self.bulk_tier,
            'bulk_discount': float(self.bulk_discount),
            'loyalty_discount': float(self.loyalty_discount),
            'total': float(self.total),
            'total_quantity': self.total_quantity,
            'applied_bulk_low_discount': self.applied_bulk_low,
            'applied_bulk_high_discount': self.applied_bulk_high,
            'applied_loyalty_discount': self.applied_loyalty,
        }


def _check_line(index, line):
    errors = []
    if line.quantity is None or int(line.quantity) != line.quantity or line.quantity < 0:
        errors.append({'field': f'lines[{index}].quantity', 'message': 'must be a non-negative integer'})
    if line.unit_price is None or Decimal(str(line.unit_price)) < 0:
        errors.append({'field': f'lines[{index}].unit_price', 'message': 'must not be negative'})
    if line.discount_percent is not None:
        percent = Decimal(str(line.discount_percent))
        if percent < 0 or percent > HUNDRED:
            errors.append({'field': f'lines[{index}].discount_percent', 'message': 'must be between 0 and 100'})
    return errors


def bulk_tier_for(total_quantity, policy):
    if total_quantity >= policy.bulk_high_threshold:
        return TIER_HIGH
    if total_quantity >= policy.bulk_low_threshold:
        return TIER_LOW
    return TIER_NONE


def calculate(lines: Iterable[PricedLine], fulfilled_orders: int, policy: DiscountPolicy = DiscountPolicy()) -> DiscountBreakdown:
    lines = list(lines)
    errors = []
    for index, line in enumerate(lines):
        errors.extend(_check_line(index, line))
    if fulfilled_orders is None or fulfilled_orders < 0:
        errors.append({'field': 'fulfilled_orders', 'message': 'must not be negative'})
    if errors:
        raise ValidationError('Invalid pricing input', details=errors)

    subtotal = Decimal('0')
    item_discount = Decimal('0')
    total_quantity = 0
    for line in lines:
        price = Decimal(str(line.unit_price))
        gross = price * line.quantity
        subtotal += gross
        total_quantity += line.quantity
        if line.discount_percent:
            item_discount += gross * Decimal(str(line.discount_percent)) / HUNDRED

    subtotal = to_money(subtotal)
    item_discount = to_money(item_discount)
    after_items = subtotal - item_discount

    tier = bulk_tier_for(total_quantity, policy)
    rate = {TIER_HIGH: policy.bulk_high_rate, TIER_LOW: policy.bulk_low_rate}.get(tier, 0)
    bulk_discount = to_money(after_items * Decimal(rate) / HUNDRED)

    loyalty_discount = Decimal('0.00')
    applied_loyalty = fulfilled_orders >= policy.loyalty_threshold
    if applied_loyalty:
        loyalty_discount = to_money((after_items - bulk_discount) * Decimal(policy.loyalty_rate) / HUNDRED)

    total = max(after_items - bulk_discount - loyalty_discount, Decimal('0'))
    return DiscountBreakdown(
        subtotal=subtotal,
        item_discount=item_discount,
        subtotal_after_item_discount=after_items,
        bulk_tier=tier,
        bulk_discount=bulk_discount,
        loyalty_discount=loyalty_discount,
        total=to_money(total),
        total_quantity=total_quantity,
        applied_loyalty=applied_loyalty,
    )


def discount_eligibility(member, policy: DiscountPolicy = DiscountPolicy()):
    fulfilled = member.successful_orders_count or 0
    return {
        'fulfilled_orders': fulfilled,
        'required_orders': policy.loyalty_threshold,
        'eligible': fulfilled >= policy.loyalty_threshold,
    }
