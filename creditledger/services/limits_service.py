"""Limits & validation: pure checks against role limits and counters.

None of these functions touch the database or raise. Each returns a
ValidationResult so callers can run several checks and report every
reason at once with combine_results(). The caller is responsible for
supplying current counters (spend today, usage this month, ...).

Passing a check here is never a reservation: the ledger re-checks the
balance atomically when it actually applies a debit.
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Optional

from creditledger.errors import ValidationError
from creditledger.utils import as_utc, to_decimal, utcnow

PROMO_CODE_PATTERN = re.compile(r"^[A-Z0-9]+$")

# Auto-topup settings bounds
MIN_TRIGGER_BALANCE = 1
MAX_TRIGGER_BALANCE = 50
MIN_TOPUP_AMOUNT = 10
MAX_TOPUP_AMOUNT = 100

# Batch bounds
MAX_BULK_ITEMS = 100
MAX_BULK_CREDITS = 1000

# Credits cannot be issued with an expiry further out than this
MAX_EXPIRY = timedelta(days=730)


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None
    suggested_action: Optional[str] = None
    reasons: tuple = ()

    def __bool__(self):
        return self.valid

    def raise_if_invalid(self):
        if not self.valid:
            raise ValidationError(self.reason, suggested_action=self.suggested_action)


OK = ValidationResult(True)


def _fail(reason, suggested_action=None):
    return ValidationResult(
        False, reason=reason, suggested_action=suggested_action, reasons=(reason,)
    )


def combine_results(*results):
    """Aggregate several results, keeping every failure reason in order."""
    failures = [r for r in results if not r.valid]
    if not failures:
        return OK
    reasons = tuple(reason for r in failures for reason in (r.reasons or (r.reason,)))
    suggested = next((r.suggested_action for r in failures if r.suggested_action), None)
    return ValidationResult(
        False, reason="; ".join(reasons), suggested_action=suggested, reasons=reasons
    )


# ──────────────────────────────────────────────
# Purchases
# ──────────────────────────────────────────────

def validate_purchase_amount(amount, limits, min_amount, max_amount,
                             spent_today=Decimal("0"), spent_this_month=Decimal("0")):
    """Check a purchase's money amount against global bounds and role allowance.

    Args:
        amount: Final charge amount.
        limits: RoleLimits for the purchaser.
        min_amount / max_amount: Global per-purchase bounds.
        spent_today / spent_this_month: Completed + pending purchase spend.
    """
    amount = to_decimal(amount)
    min_amount = to_decimal(min_amount)
    max_amount = to_decimal(max_amount)

    if amount < min_amount:
        return _fail(f"Minimum purchase amount is ${min_amount}")
    if amount > max_amount:
        return _fail(f"Maximum purchase amount is ${max_amount}")
    if to_decimal(spent_today) + amount > limits.max_daily_purchase:
        return _fail(
            f"Daily purchase limit of ${limits.max_daily_purchase} would be exceeded",
            "Try again tomorrow or choose a smaller package.",
        )
    if to_decimal(spent_this_month) + amount > limits.max_monthly_purchase:
        return _fail(
            f"Monthly purchase limit of ${limits.max_monthly_purchase} would be exceeded",
            "Choose a smaller package.",
        )
    return OK


def validate_balance_after_purchase(current_balance, credits_to_add, limits):
    new_balance = current_balance + credits_to_add
    if new_balance > limits.max_credit_balance:
        return _fail(
            f"Maximum credit balance of {limits.max_credit_balance} would be exceeded",
            "Use some of your existing credits before buying more.",
        )
    return OK


def validate_cooldown(last_action_at, cooldown_minutes, now=None):
    if last_action_at is None or not cooldown_minutes:
        return OK
    now = now or utcnow()
    elapsed = now - as_utc(last_action_at)
    cooldown = timedelta(minutes=cooldown_minutes)
    if elapsed < cooldown:
        remaining = cooldown - elapsed
        remaining_minutes = -(-int(remaining.total_seconds()) // 60)  # ceil
        return _fail(
            f"Please wait {remaining_minutes} minutes before performing this action again"
        )
    return OK


# ──────────────────────────────────────────────
# Usage
# ──────────────────────────────────────────────

def validate_usage_cost(usage_cost, credits):
    """A usage must spend exactly the configured cost: no partial spends."""
    if usage_cost is None:
        return _fail("Invalid usage type specified")
    if not usage_cost.enabled:
        return _fail(f"{usage_cost.name} is currently disabled")
    if credits != usage_cost.credits_required:
        return _fail(
            f"{usage_cost.name} requires exactly {usage_cost.credits_required} credits"
        )
    return OK


def validate_usage_limit(usage_cost, used_today, used_this_month, quantity=1):
    if used_today + quantity > usage_cost.max_per_day:
        return _fail(
            f"Daily limit exceeded for {usage_cost.name}. "
            f"Maximum {usage_cost.max_per_day} per day."
        )
    if used_this_month + quantity > usage_cost.max_per_month:
        return _fail(
            f"Monthly limit exceeded for {usage_cost.name}. "
            f"Maximum {usage_cost.max_per_month} per month."
        )
    return OK


def validate_sufficient_balance(current_balance, credits):
    """Advisory pre-check only. The ledger's conditional debit is authoritative."""
    if current_balance < credits:
        shortfall = credits - current_balance
        return _fail(
            "Insufficient credit balance",
            f"Purchase at least {shortfall} more credits to continue.",
        )
    return OK


# ──────────────────────────────────────────────
# Transactions
# ──────────────────────────────────────────────

def validate_transaction_amount(credits, min_credits, max_credits):
    if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
        return _fail("Credit amount must be a positive integer")
    if credits < min_credits:
        return _fail(f"Minimum credit amount is {min_credits}")
    if credits > max_credits:
        return _fail(f"Maximum credit amount is {max_credits}")
    return OK


def validate_transaction_count(limits, count_today, count_this_month):
    if count_today >= limits.max_transactions_per_day:
        return _fail(
            f"Daily transaction limit of {limits.max_transactions_per_day} reached",
            "Try again tomorrow.",
        )
    if count_this_month >= limits.max_transactions_per_month:
        return _fail(
            f"Monthly transaction limit of {limits.max_transactions_per_month} reached"
        )
    return OK


def validate_bulk_transactions(credit_amounts, min_credits, max_credits):
    """Validate a batch of credit amounts (e.g. an admin bonus run)."""
    if not credit_amounts:
        return _fail("No transactions provided")
    if len(credit_amounts) > MAX_BULK_ITEMS:
        return _fail(f"Maximum {MAX_BULK_ITEMS} transactions allowed per batch")
    if sum(credit_amounts) > MAX_BULK_CREDITS:
        return _fail(f"Total credits in batch cannot exceed {MAX_BULK_CREDITS}")
    for i, credits in enumerate(credit_amounts, start=1):
        result = validate_transaction_amount(credits, min_credits, max_credits)
        if not result.valid:
            return _fail(f"Transaction {i}: {result.reason}")
    return OK


def validate_expiry_date(expires_at, now=None):
    now = now or utcnow()
    expires_at = as_utc(expires_at)
    if expires_at <= now:
        return _fail("Credits have already expired")
    if expires_at > now + MAX_EXPIRY:
        return _fail("Expiry date cannot be more than 2 years in the future")
    return OK


# ──────────────────────────────────────────────
# Refunds
# ──────────────────────────────────────────────

def validate_refund_eligibility(purchased_at, purchase_credits, credits_consumed,
                                window_days, max_used_percentage, now=None):
    """Single refund rule: inside the window and not consumed beyond the threshold.

    Args:
        purchased_at: When the purchase completed.
        purchase_credits: Credits granted by the purchase (incl. bonus).
        credits_consumed: How many of those credits are already gone.
        window_days: Rolling refund window.
        max_used_percentage: Highest consumed share (0-100) still refundable.
    """
    now = now or utcnow()
    if now - as_utc(purchased_at) > timedelta(days=window_days):
        return _fail(f"Refund window of {window_days} days has expired")

    if purchase_credits <= 0:
        return _fail("Nothing to refund")

    used_percentage = Decimal(credits_consumed) * 100 / Decimal(purchase_credits)
    if used_percentage > max_used_percentage:
        return _fail(
            "Too many credits have been used for a refund",
            "Contact support if you believe this is a mistake.",
        )
    return OK


# ──────────────────────────────────────────────
# Auto-topup & promo codes
# ──────────────────────────────────────────────

def validate_auto_topup_settings(trigger_balance, topup_amount, package_type,
                                 known_packages, limits=None):
    result = OK
    if trigger_balance < MIN_TRIGGER_BALANCE:
        result = _fail(f"Trigger balance must be at least {MIN_TRIGGER_BALANCE}")
    elif trigger_balance > MAX_TRIGGER_BALANCE:
        result = _fail(f"Trigger balance cannot exceed {MAX_TRIGGER_BALANCE}")

    amount_result = OK
    if topup_amount < MIN_TOPUP_AMOUNT:
        amount_result = _fail(f"Topup amount must be at least {MIN_TOPUP_AMOUNT}")
    elif topup_amount > MAX_TOPUP_AMOUNT:
        amount_result = _fail(f"Topup amount cannot exceed {MAX_TOPUP_AMOUNT}")

    package_result = OK
    if package_type is not None and package_type not in known_packages:
        package_result = _fail("Invalid package type specified")

    balance_result = OK
    if limits is not None and trigger_balance + topup_amount > limits.max_credit_balance:
        balance_result = _fail(
            f"Trigger balance plus topup amount cannot exceed the maximum "
            f"balance of {limits.max_credit_balance}"
        )

    return combine_results(result, amount_result, package_result, balance_result)


def validate_promo_code_format(code):
    if not code or len(code) < 3:
        return _fail("Invalid promo code format")
    if not PROMO_CODE_PATTERN.match(code):
        return _fail("Promo code must contain only letters and numbers")
    return OK
