"""Auto-topup service: per-user replenishment policies.

Responsible for:
- Configuring, enabling and disabling a user's policy
- The ENABLED / DISABLED / SUSPENDED / PROCESSING state machine
- Deciding whether a low balance should trigger a topup (evaluate)
- Recording the outcome of a triggered purchase, with failure backoff
  and automatic suspension after repeated failures

Nothing here charges money. The engine turns a "trigger" decision into a
PENDING purchase and calls begin_topup(); the purchase's terminal webhook
calls record_success() or record_failure().
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from creditledger.errors import InvalidTransition, ValidationError
from creditledger.extensions import db
from creditledger.models.auto_topup import (
    DISABLED,
    ENABLED,
    PROCESSING,
    SUSPENDED,
    AutoTopupPolicy,
)
from creditledger.services.ledger_service import log_ledger_audit
from creditledger.services.limits_service import validate_auto_topup_settings
from creditledger.utils import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TopupDecision:
    user_id: str
    trigger: bool
    reason: str
    current_balance: Optional[int] = None
    next_eligible_at: Optional[datetime] = None
    transaction_id: Optional[str] = None

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "trigger": self.trigger,
            "reason": self.reason,
            "current_balance": self.current_balance,
            "next_eligible_at": (
                self.next_eligible_at.isoformat() if self.next_eligible_at else None
            ),
            "transaction_id": self.transaction_id,
        }


def get_policy(user_id):
    return AutoTopupPolicy.query.filter_by(user_id=user_id).first()


def transition_policy(policy, target):
    """Move a policy to ``target``, enforcing VALID_TRANSITIONS.

    Raises:
        InvalidTransition: The move is not allowed from the current status.
    """
    if policy.status == target:
        return policy
    allowed = AutoTopupPolicy.VALID_TRANSITIONS.get(policy.status, [])
    if target not in allowed:
        logger.error(
            f"Rejected auto-topup transition for user {policy.user_id} "
            f"from {policy.status} to {target}"
        )
        raise InvalidTransition(
            policy.status, target, entity="auto-topup policy", entity_id=policy.user_id
        )
    old_status = policy.status
    policy.status = target
    db.session.flush()
    logger.info(f"Auto-topup for user {policy.user_id}: {old_status} -> {target}")
    return policy


def configure_policy(user_id, trigger_balance, topup_amount, catalog, limits=None,
                     package_type=None, payment_method_id=None, enable=True):
    """Create or update a user's policy. Resets the failure count.

    When no package is given the smallest package covering
    ``topup_amount`` is used.

    Raises:
        ValidationError: Invalid settings, or a topup is in flight.
    """
    result = validate_auto_topup_settings(
        trigger_balance, topup_amount, package_type, catalog.packages, limits
    )
    result.raise_if_invalid()

    if package_type is None:
        package_type = catalog.package_for_credits(topup_amount).type

    policy = get_policy(user_id)
    if policy is not None and policy.status == PROCESSING:
        raise ValidationError(
            "An automatic topup is in progress",
            suggested_action="Try again once the current topup has finished.",
        )

    if policy is None:
        policy = AutoTopupPolicy(user_id=user_id, status=DISABLED, failure_count=0)
        db.session.add(policy)

    policy.trigger_balance = trigger_balance
    policy.topup_amount = topup_amount
    policy.package_type = package_type
    if payment_method_id:
        policy.payment_method_id = payment_method_id
    policy.failure_count = 0
    policy.last_failure_at = None
    policy.last_failure_reason = None
    db.session.flush()

    if enable:
        transition_policy(policy, ENABLED)

    log_ledger_audit(user_id, "auto_topup.configured", {
        "trigger_balance": trigger_balance,
        "topup_amount": topup_amount,
        "package_type": package_type,
        "status": policy.status,
    })
    return policy


def _require_policy(user_id):
    policy = get_policy(user_id)
    if policy is None:
        raise ValidationError(
            "Auto-topup is not configured",
            suggested_action="Set a trigger balance and topup amount first.",
        )
    return policy


def enable_policy(user_id):
    policy = _require_policy(user_id)
    if policy.status == SUSPENDED:
        policy.failure_count = 0
    transition_policy(policy, ENABLED)
    log_ledger_audit(user_id, "auto_topup.enabled")
    return policy


def disable_policy(user_id):
    policy = _require_policy(user_id)
    transition_policy(policy, DISABLED)
    log_ledger_audit(user_id, "auto_topup.disabled")
    return policy


def update_payment_method(user_id, payment_method_id):
    """Store a new payment method. A suspended policy is re-enabled."""
    policy = _require_policy(user_id)
    policy.payment_method_id = payment_method_id
    if policy.status == SUSPENDED:
        policy.failure_count = 0
        transition_policy(policy, ENABLED)
    db.session.flush()
    log_ledger_audit(user_id, "auto_topup.payment_method_updated", {
        "status": policy.status,
    })
    return policy


def failure_backoff(failure_count, backoff_base, max_delay_hours):
    """Delay before retrying after ``failure_count`` consecutive failures."""
    if failure_count <= 0:
        return timedelta(0)
    minutes = backoff_base ** failure_count
    return min(timedelta(minutes=minutes), timedelta(hours=max_delay_hours))


def evaluate(policy, user_id, current_balance, cooldown_hours,
             backoff_base, max_delay_hours, now=None):
    """Decide whether ``current_balance`` should trigger a topup.

    Triggers only when the policy is ENABLED, the balance is at or below
    the trigger balance, more than the cooldown has passed since the last
    trigger and any failure backoff has run out. Pure apart from reading
    the policy fields.
    """
    now = now or utcnow()

    if policy is None:
        return TopupDecision(user_id, False, "not_configured", current_balance)
    if policy.status != ENABLED:
        return TopupDecision(user_id, False, f"policy_{policy.status}", current_balance)
    if current_balance > policy.trigger_balance:
        return TopupDecision(user_id, False, "balance_above_trigger", current_balance)

    if policy.last_triggered_at is not None:
        next_at = as_utc(policy.last_triggered_at) + timedelta(hours=cooldown_hours)
        if now <= next_at:
            return TopupDecision(user_id, False, "cooldown", current_balance, next_at)

    if policy.failure_count and policy.last_failure_at is not None:
        delay = failure_backoff(policy.failure_count, backoff_base, max_delay_hours)
        next_at = as_utc(policy.last_failure_at) + delay
        if now < next_at:
            return TopupDecision(user_id, False, "failure_backoff", current_balance, next_at)

    return TopupDecision(user_id, True, "balance_below_trigger", current_balance)


def begin_topup(policy, transaction_id, now=None):
    """ENABLED -> PROCESSING while the topup purchase is in flight."""
    transition_policy(policy, PROCESSING)
    policy.last_triggered_at = now or utcnow()
    policy.pending_transaction_id = transaction_id
    db.session.flush()
    return policy


def record_success(policy):
    policy.failure_count = 0
    policy.last_failure_reason = None
    policy.pending_transaction_id = None
    if policy.status == PROCESSING:
        transition_policy(policy, ENABLED)
    db.session.flush()
    logger.info(f"Auto-topup succeeded for user {policy.user_id}")
    return policy


def record_failure(policy, reason, max_failures, now=None):
    """Count a failed topup; suspend the policy at ``max_failures``."""
    policy.failure_count = (policy.failure_count or 0) + 1
    policy.last_failure_at = now or utcnow()
    policy.last_failure_reason = reason
    policy.pending_transaction_id = None
    db.session.flush()

    logger.warning(
        f"Auto-topup failed for user {policy.user_id} "
        f"({policy.failure_count}/{max_failures}): {reason}"
    )

    if policy.failure_count >= max_failures:
        if policy.status in (ENABLED, PROCESSING):
            transition_policy(policy, SUSPENDED)
        log_ledger_audit(policy.user_id, "auto_topup.suspended", {
            "failure_count": policy.failure_count,
            "reason": reason,
        })
    elif policy.status == PROCESSING:
        transition_policy(policy, ENABLED)
    return policy


def resolve_topup(transaction, succeeded, max_failures, reason=None):
    """Settle the policy waiting on ``transaction``, if there is one."""
    policy = AutoTopupPolicy.query.filter_by(
        pending_transaction_id=transaction.id
    ).first()
    if policy is None:
        return None
    if succeeded:
        return record_success(policy)
    return record_failure(policy, reason or "payment failed", max_failures)
