"""Pricing calculator: the one place purchase prices are worked out.

Rounding rule: all money is Decimal. The discount, tax and processing fee
are each rounded half-up to whole cents, and the final amount is their
exact sum with the discounted subtotal, so the line items on a receipt
always add up.

    final = (base - discount) + tax + fee
    tax   = round((base - discount) * tax_rate)
    fee   = round((base - discount) * fee_rate)
"""

from dataclasses import dataclass, asdict
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from creditledger.catalog import BULK_BONUS_STEPS, LIST_PRICE_PER_CREDIT
from creditledger.errors import ValidationError
from creditledger.services.limits_service import validate_promo_code_format
from creditledger.utils import round_money, to_decimal, utcnow

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class PurchaseCalculation:
    package_type: str
    base_price: Decimal
    credits_amount: int
    bonus_credits: int
    total_credits: int
    discount_percentage: int
    discount: Decimal
    subtotal: Decimal
    tax: Decimal
    processing_fee: Decimal
    final_amount: Decimal
    price_per_credit: Decimal
    currency: str
    promo_code: Optional[str] = None

    @property
    def amount_in_cents(self):
        return int(self.final_amount * 100)

    def to_dict(self):
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
        return data


@dataclass(frozen=True)
class BulkCalculation:
    credits: int
    price_per_credit: Decimal
    base_price: Decimal
    bonus_credits: int
    total_credits: int
    savings: Decimal


def _threshold_discount(amount, thresholds):
    """Highest-percentage threshold whose minimum is met. Not cumulative."""
    eligible = [t.discount_percentage for t in thresholds if amount >= t.minimum_amount]
    return max(eligible, default=0)


def _promo_discount(promo_code, package_type, catalog, now):
    code = promo_code.strip().upper()
    validate_promo_code_format(code).raise_if_invalid()
    offer = catalog.find_promotion(code)
    if offer is None:
        raise ValidationError(f"Promo code {code} is not recognised")
    if not offer.is_usable(package_type, now):
        raise ValidationError(f"Promo code {code} is not valid for this purchase")
    return code, offer.discount_percentage


def calculate_purchase(package_type, catalog, tax_rate, processing_fee_rate,
                       promo_code=None, currency="AUD", now=None):
    """Price a catalogue package.

    Args:
        package_type: Catalogue package key (e.g. "standard").
        catalog: PriceCatalog to read packages, thresholds and promotions from.
        tax_rate / processing_fee_rate: Fractions, e.g. "0.10" and "0.029".
        promo_code: Optional promotional code; competes with the amount
                    thresholds and the single highest percentage wins.

    Returns:
        PurchaseCalculation

    Raises:
        ValidationError: Unknown package, or an unusable promo code.
    """
    package = catalog.get_package(package_type)
    if package is None:
        raise ValidationError(f"Unknown credit package '{package_type}'")

    now = now or utcnow()
    base = to_decimal(package.price)

    percentage = _threshold_discount(base, catalog.discount_thresholds)
    applied_code = None
    if promo_code:
        applied_code, promo_percentage = _promo_discount(
            promo_code, package.type, catalog, now
        )
        percentage = max(percentage, promo_percentage)

    discount = round_money(base * percentage / HUNDRED)
    subtotal = base - discount
    tax = round_money(subtotal * to_decimal(tax_rate))
    fee = round_money(subtotal * to_decimal(processing_fee_rate))
    final = subtotal + tax + fee

    return PurchaseCalculation(
        package_type=package.type,
        base_price=base,
        credits_amount=package.credits_amount,
        bonus_credits=package.bonus_credits,
        total_credits=package.total_credits,
        discount_percentage=percentage,
        discount=discount,
        subtotal=subtotal,
        tax=tax,
        processing_fee=fee,
        final_amount=final,
        price_per_credit=round_money(final / package.total_credits),
        currency=currency,
        promo_code=applied_code,
    )


def calculate_bonus_credits(credits):
    """Stepped bonus for ad-hoc quantities, floored to whole credits."""
    for minimum, percentage in BULK_BONUS_STEPS:
        if credits >= minimum:
            return credits * percentage // 100
    return 0


def calculate_bulk(credits, catalog):
    """Price an ad-hoc credit quantity from the bulk tiers."""
    if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
        raise ValidationError("Credit quantity must be a positive integer")

    price_per_credit = LIST_PRICE_PER_CREDIT
    for tier in catalog.bulk_tiers:
        if tier.min_credits <= credits <= tier.max_credits:
            price_per_credit = tier.price_per_credit
            break

    base_price = round_money(price_per_credit * credits)
    bonus = calculate_bonus_credits(credits)
    return BulkCalculation(
        credits=credits,
        price_per_credit=price_per_credit,
        base_price=base_price,
        bonus_credits=bonus,
        total_credits=credits + bonus,
        savings=round_money(LIST_PRICE_PER_CREDIT * credits) - base_price,
    )


def calculate_refund_amount(price, refund_credits, total_credits,
                            already_refunded=Decimal("0"), final=False):
    """Money to return for ``refund_credits`` of a purchase.

    Pro rata on the credits refunded. The final refund (the last credits,
    or a full refund) returns whatever is left of the price, so the
    refunds of one purchase never add up to more than was charged.
    """
    price = to_decimal(price)
    left = max(price - to_decimal(already_refunded), Decimal("0"))
    if final:
        return round_money(left)
    if total_credits <= 0 or refund_credits <= 0:
        return Decimal("0.00")
    share = round_money(price * Decimal(refund_credits) / Decimal(total_credits))
    return min(share, round_money(left))


def calculate_credit_expiry(purchased_at, package):
    """Expiry for credits from ``package``, or None if they never expire."""
    if package is None or not package.validity_days:
        return None
    return purchased_at + timedelta(days=package.validity_days)
