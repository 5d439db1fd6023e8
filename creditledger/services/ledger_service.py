"""Ledger service: balances, transactions and their state machine.

Responsible for:
- Opening account balances
- Creating transactions of every type and applying their balance effects
- The PENDING -> COMPLETED / FAILED / CANCELLED state machine
- Refunds as new REFUND rows (history is never rewritten)
- Expiry sweeps and the stuck-pending report
- Counters the limits engine needs (spend today, usage this month, ...)

Balance rows are only ever changed with conditional UPDATE statements:
a debit only succeeds WHERE the balance still covers it, and a status
change only succeeds WHERE the transaction is still PENDING. The database
serialises writers on the row, so two requests for the same user cannot
both pass a check and both apply. Functions here flush but never commit;
the caller owns the unit of work.
"""

import logging
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from creditledger.catalog import ROLE_TRADIE
from creditledger.errors import (
    BalanceConflict,
    InsufficientBalance,
    InvalidTransition,
    TransactionNotFound,
    ValidationError,
)
from creditledger.extensions import db
from creditledger.models.audit import AuditEvent
from creditledger.models.balance import CreditBalance
from creditledger.models.transaction import (
    BONUS,
    CANCELLED,
    COMPLETED,
    CREDIT,
    DEBIT,
    EXPIRY,
    FAILED,
    PENDING,
    PURCHASE,
    REFUND,
    SUBSCRIPTION,
    TRIAL,
    USAGE,
    CreditTransaction,
)
from creditledger.services.metadata_service import clean_text, sanitize_metadata
from creditledger.utils import utcnow

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5

# Balance counter moved when a transaction completes
CREDIT_COUNTERS = {
    PURCHASE: "total_purchased",
    SUBSCRIPTION: "total_purchased",
    BONUS: "total_bonus",
    TRIAL: "total_bonus",
    REFUND: "total_refunded",
}
DEBIT_COUNTERS = {
    USAGE: "total_used",
    EXPIRY: "total_expired",
    REFUND: "total_reversed",
}

# Statuses that still count against limits
LIVE_STATUSES = (PENDING, COMPLETED)


def log_ledger_audit(user_id, action, metadata=None):
    """Log a ledger audit event. Flushes, the caller commits."""
    event = AuditEvent(
        user_id=user_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()


def _execute(statement):
    return db.session.execute(
        statement.execution_options(synchronize_session=False)
    )


# ──────────────────────────────────────────────
# Balances
# ──────────────────────────────────────────────

def ensure_balance(user_id, role=None, default_role=ROLE_TRADIE):
    """Get the user's balance row, opening an empty one if needed.

    Must run before any other write in the unit of work: losing the race
    to open the account rolls the session back.
    """
    balance = db.session.get(CreditBalance, user_id, populate_existing=True)
    if balance is not None:
        return balance

    balance = CreditBalance(
        user_id=user_id,
        role=role or default_role,
        current_balance=0,
        reserved_credits=0,
        total_purchased=0,
        total_bonus=0,
        total_refunded=0,
        total_used=0,
        total_expired=0,
        total_reversed=0,
    )
    db.session.add(balance)
    try:
        db.session.flush()
    except IntegrityError:
        # Another request opened the account first
        db.session.rollback()
        balance = db.session.get(CreditBalance, user_id)
    return balance


def get_balance(user_id, default_role=ROLE_TRADIE):
    """Return the user's current balance row, freshly read."""
    return ensure_balance(user_id, default_role=default_role)


def _credit_balance(user_id, credits, counter, now):
    values = {
        "current_balance": CreditBalance.current_balance + credits,
        counter: getattr(CreditBalance, counter) + credits,
        "updated_at": now,
    }
    if counter == "total_purchased":
        values["last_purchase_at"] = now
    _execute(
        update(CreditBalance)
        .where(CreditBalance.user_id == user_id)
        .values(values)
    )


def _debit_balance(user_id, credits, hold, now):
    """Take ``credits`` only if the balance still covers them."""
    values = {
        "current_balance": CreditBalance.current_balance - credits,
        "updated_at": now,
    }
    if hold:
        values["reserved_credits"] = CreditBalance.reserved_credits + credits
    else:
        values["total_used"] = CreditBalance.total_used + credits
        values["last_usage_at"] = now

    result = _execute(
        update(CreditBalance)
        .where(
            CreditBalance.user_id == user_id,
            CreditBalance.current_balance >= credits,
        )
        .values(values)
    )
    if result.rowcount == 0:
        available = db.session.execute(
            select(CreditBalance.current_balance).where(
                CreditBalance.user_id == user_id
            )
        ).scalar() or 0
        raise InsufficientBalance(credits, available)


def _debit_clamped(user_id, credits, counter, now):
    """Take up to ``credits``, never below zero. Returns what was taken."""
    for _ in range(MAX_CAS_ATTEMPTS):
        observed = db.session.execute(
            select(CreditBalance.current_balance).where(
                CreditBalance.user_id == user_id
            )
        ).scalar_one()
        applied = min(credits, observed)
        result = _execute(
            update(CreditBalance)
            .where(
                CreditBalance.user_id == user_id,
                CreditBalance.current_balance == observed,
            )
            .values({
                "current_balance": CreditBalance.current_balance - applied,
                counter: getattr(CreditBalance, counter) + applied,
                "updated_at": now,
            })
        )
        if result.rowcount == 1:
            return applied
    raise BalanceConflict(
        f"Balance for user {user_id} kept changing during a clamped debit"
    )


def _move_hold(user_id, credits, now, release):
    """Settle (to total_used) or release (back to balance) a usage hold."""
    values = {
        "reserved_credits": CreditBalance.reserved_credits - credits,
        "updated_at": now,
    }
    if release:
        values["current_balance"] = CreditBalance.current_balance + credits
    else:
        values["total_used"] = CreditBalance.total_used + credits
        values["last_usage_at"] = now

    result = _execute(
        update(CreditBalance)
        .where(
            CreditBalance.user_id == user_id,
            CreditBalance.reserved_credits >= credits,
        )
        .values(values)
    )
    if result.rowcount == 0:
        logger.error(f"Reserved credits for user {user_id} below hold of {credits}")
        raise BalanceConflict(f"Reserved credits for user {user_id} are below {credits}")


# ──────────────────────────────────────────────
# State machine
# ──────────────────────────────────────────────

def get_transaction(transaction_id):
    # Balance effects are applied with Core UPDATEs, so never trust the identity map
    txn = db.session.get(CreditTransaction, transaction_id, populate_existing=True)
    if txn is None:
        raise TransactionNotFound(f"Transaction {transaction_id} not found")
    return txn


def _reload(transaction_id):
    return db.session.get(CreditTransaction, transaction_id, populate_existing=True)


def _check_transition(txn, target):
    allowed = CreditTransaction.VALID_TRANSITIONS.get(txn.status, [])
    if target not in allowed:
        logger.error(
            f"Rejected transition of transaction {txn.id} "
            f"from {txn.status} to {target}"
        )
        raise InvalidTransition(txn.status, target, entity_id=txn.id)


def _claim(txn, target, now, **values):
    """Move ``txn`` out of PENDING. False if another writer got there first."""
    result = _execute(
        update(CreditTransaction)
        .where(
            CreditTransaction.id == txn.id,
            CreditTransaction.status == PENDING,
        )
        .values(status=target, updated_at=now, **values)
    )
    return result.rowcount == 1


def complete_transaction(transaction_id):
    """Complete a PENDING transaction and apply its balance effect once.

    Idempotent: completing an already COMPLETED transaction returns it
    unchanged without touching the balance.

    Raises:
        TransactionNotFound: Unknown ID.
        InvalidTransition: The transaction is FAILED or CANCELLED.
        BalanceConflict: A clamped debit kept losing the race.
    """
    txn = get_transaction(transaction_id)
    if txn.status == COMPLETED:
        logger.info(f"Transaction {txn.id} already completed, not re-applying")
        return txn
    _check_transition(txn, COMPLETED)

    now = utcnow()
    if not _claim(txn, COMPLETED, now, completed_at=now):
        txn = _reload(txn.id)
        if txn.status == COMPLETED:
            logger.info(f"Transaction {txn.id} completed concurrently, not re-applying")
            return txn
        _check_transition(txn, COMPLETED)

    if txn.is_credit:
        _credit_balance(txn.user_id, txn.credits, CREDIT_COUNTERS[txn.type], now)
        applied = txn.credits
    elif txn.type == USAGE:
        _move_hold(txn.user_id, txn.credits, now, release=False)
        applied = txn.credits
    else:
        applied = _debit_clamped(txn.user_id, txn.credits, DEBIT_COUNTERS[txn.type], now)

    _execute(
        update(CreditTransaction)
        .where(CreditTransaction.id == txn.id)
        .values(applied_credits=applied, balance_applied=True)
    )
    txn = _reload(txn.id)
    logger.info(
        f"Completed {txn.type} transaction {txn.id} for user {txn.user_id}: "
        f"{txn.signed_credits:+d} credits"
    )
    return txn


def _terminate(transaction_id, target, reason=None):
    txn = get_transaction(transaction_id)
    _check_transition(txn, target)

    now = utcnow()
    if not _claim(txn, target, now, failure_reason=clean_text(reason)):
        txn = _reload(txn.id)
        _check_transition(txn, target)

    if txn.type == USAGE and txn.balance_applied:
        _move_hold(txn.user_id, txn.credits, now, release=True)
        _execute(
            update(CreditTransaction)
            .where(CreditTransaction.id == txn.id)
            .values(balance_applied=False)
        )

    if txn.type == REFUND and txn.original_transaction_id:
        # Give the refund's claim back to the original
        _execute(
            update(CreditTransaction)
            .where(CreditTransaction.id == txn.original_transaction_id)
            .values(refunded_credits=CreditTransaction.refunded_credits - txn.credits)
        )

    txn = _reload(txn.id)
    logger.info(f"Transaction {txn.id} {target}: {reason or 'no reason given'}")
    return txn


def fail_transaction(transaction_id, reason=None):
    """PENDING -> FAILED. Releases a usage hold; never grants credit."""
    return _terminate(transaction_id, FAILED, reason)


def cancel_transaction(transaction_id, reason=None):
    """PENDING -> CANCELLED. Releases a usage hold; never grants credit."""
    return _terminate(transaction_id, CANCELLED, reason)


# ──────────────────────────────────────────────
# Creating transactions
# ──────────────────────────────────────────────

def apply_transaction(user_id, transaction_type, credits, description=None,
                      reference_id=None, reference_type=None, usage_type=None,
                      metadata=None, gateway_reference=None, expires_at=None,
                      amount=None, currency=None, original_transaction_id=None,
                      hold=False, role=None, default_role=ROLE_TRADIE):
    """Create a transaction and apply whatever balance effect is due now.

    - PURCHASE: created PENDING, balance untouched until completed.
    - USAGE: balance checked and decremented atomically; created COMPLETED,
      or PENDING with the credits reserved when ``hold`` is set.
    - BONUS / TRIAL / SUBSCRIPTION / EXPIRY: created and completed at once.
    - REFUND: delegated to reverse_transaction().

    Raises:
        ValidationError: Bad type, amount or metadata.
        InsufficientBalance: A usage the balance cannot cover.
    """
    if transaction_type not in CreditTransaction.TYPES:
        raise ValidationError(f"Unknown transaction type '{transaction_type}'")
    if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
        raise ValidationError("Credit amount must be a positive integer")

    if transaction_type == REFUND:
        if not original_transaction_id:
            raise ValidationError("A refund must reference the transaction it reverses")
        return reverse_transaction(
            original_transaction_id, credits, reason=description, metadata=metadata
        )

    clean_metadata = sanitize_metadata(metadata)
    ensure_balance(user_id, role=role, default_role=default_role)

    now = utcnow()
    txn = CreditTransaction(
        user_id=user_id,
        type=transaction_type,
        direction=CreditTransaction.DIRECTIONS[transaction_type],
        credits=credits,
        status=PENDING,
        description=clean_text(description),
        reference_id=clean_text(reference_id, 255),
        reference_type=clean_text(reference_type, 64),
        usage_type=usage_type,
        gateway_reference=gateway_reference,
        original_transaction_id=original_transaction_id,
        expires_at=expires_at,
        amount=amount,
        currency=currency,
        balance_applied=False,
        refunded_credits=0,
        expiry_processed=False,
        metadata_=clean_metadata,
        created_at=now,
        updated_at=now,
    )

    if transaction_type == USAGE:
        _debit_balance(user_id, credits, hold=hold, now=now)
        txn.balance_applied = True
        if not hold:
            txn.status = COMPLETED
            txn.applied_credits = credits
            txn.completed_at = now
        db.session.add(txn)
        db.session.flush()
        logger.info(
            f"Usage {txn.id} for user {user_id}: -{credits} credits "
            f"({'held' if hold else 'completed'})"
        )
        return txn

    db.session.add(txn)
    db.session.flush()

    if transaction_type in CreditTransaction.EXTERNALLY_CONFIRMED:
        logger.info(
            f"Created pending {transaction_type} {txn.id} for user {user_id} "
            f"({credits} credits)"
        )
        return txn

    return complete_transaction(txn.id)


def reverse_transaction(original_transaction_id, credits=None, reason=None,
                        amount=None, metadata=None):
    """Refund (part of) a completed USAGE or PURCHASE as a new REFUND row.

    A usage refund gives the credits back immediately. A purchase refund
    is a money refund: it stays PENDING until the gateway confirms it and
    then removes the credits, clamped at zero.

    Raises:
        TransactionNotFound: Unknown original.
        ValidationError: Original not refundable, or amount too large.
    """
    original = get_transaction(original_transaction_id)
    if original.status != COMPLETED:
        raise ValidationError("Only completed transactions can be refunded")
    if original.type not in (USAGE, PURCHASE):
        raise ValidationError(f"{original.type.capitalize()} transactions cannot be refunded")

    remaining = original.refundable_credits
    credits = remaining if credits is None else credits
    if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
        raise ValidationError("Refund credits must be a positive integer")
    if credits > remaining:
        raise ValidationError(
            f"Refund of {credits} credits exceeds the {remaining} still refundable"
        )

    # Claim the credits on the original so concurrent refunds cannot overlap
    claimed = _execute(
        update(CreditTransaction)
        .where(
            CreditTransaction.id == original.id,
            CreditTransaction.refunded_credits + credits <= CreditTransaction.credits,
        )
        .values(refunded_credits=CreditTransaction.refunded_credits + credits)
    )
    if claimed.rowcount == 0:
        raise ValidationError("The transaction has already been refunded")

    clean_metadata = sanitize_metadata(metadata)
    if reason:
        clean_metadata["reason"] = clean_text(reason)

    now = utcnow()
    direction = DEBIT if original.type == PURCHASE else CREDIT
    refund = CreditTransaction(
        user_id=original.user_id,
        type=REFUND,
        direction=direction,
        credits=credits,
        status=PENDING,
        description=clean_text(reason) or f"Refund of transaction {original.id}",
        reference_id=original.reference_id,
        reference_type=original.reference_type,
        original_transaction_id=original.id,
        amount=amount,
        currency=original.currency,
        balance_applied=False,
        refunded_credits=0,
        expiry_processed=False,
        metadata_=clean_metadata,
        created_at=now,
        updated_at=now,
    )
    db.session.add(refund)
    db.session.flush()

    log_ledger_audit(original.user_id, "refund.created", {
        "refund_id": refund.id,
        "original_transaction_id": original.id,
        "original_type": original.type,
        "credits": credits,
        "amount": str(amount) if amount is not None else None,
    })

    if direction == CREDIT:
        return complete_transaction(refund.id)

    logger.info(f"Created pending purchase refund {refund.id} for {original.id}")
    return refund


def grant_bonus(user_id, credits, description=None, metadata=None,
                default_role=ROLE_TRADIE):
    return apply_transaction(
        user_id, BONUS, credits,
        description=description or "Bonus credits",
        metadata=metadata,
        default_role=default_role,
    )


def grant_subscription_credits(user_id, credits, reference_id=None,
                               default_role=ROLE_TRADIE):
    return apply_transaction(
        user_id, SUBSCRIPTION, credits,
        description="Subscription credits",
        reference_id=reference_id,
        reference_type="subscription",
        default_role=default_role,
    )


def award_trial_credits(user_id, credits, default_role=ROLE_TRADIE):
    """Grant the one-off trial allowance.

    Raises:
        ValidationError: The account already received its trial credits.
    """
    ensure_balance(user_id, default_role=default_role)
    now = utcnow()
    claimed = _execute(
        update(CreditBalance)
        .where(
            CreditBalance.user_id == user_id,
            CreditBalance.trial_awarded_at.is_(None),
        )
        .values(trial_awarded_at=now)
    )
    if claimed.rowcount == 0:
        raise ValidationError("Trial credits have already been awarded")
    return apply_transaction(
        user_id, TRIAL, credits,
        description="Welcome trial credits",
        default_role=default_role,
    )


# ──────────────────────────────────────────────
# Sweeps & monitoring
# ──────────────────────────────────────────────

def expire_credits(now=None, limit=500):
    """Create one EXPIRY per purchase lot past its expires_at.

    Each lot is claimed with a conditional update first, so running the
    sweep twice (or twice at once) never expires a lot twice.

    Returns the EXPIRY transactions created.
    """
    now = now or utcnow()
    lots = (
        CreditTransaction.query
        .filter(
            CreditTransaction.type == PURCHASE,
            CreditTransaction.status == COMPLETED,
            CreditTransaction.expires_at.isnot(None),
            CreditTransaction.expires_at <= now,
            CreditTransaction.expiry_processed.is_(False),
        )
        .order_by(CreditTransaction.expires_at)
        .limit(limit)
        .all()
    )

    expired = []
    for lot in lots:
        claimed = _execute(
            update(CreditTransaction)
            .where(
                CreditTransaction.id == lot.id,
                CreditTransaction.expiry_processed.is_(False),
            )
            .values(expiry_processed=True)
        )
        if claimed.rowcount == 0:
            continue
        remaining = lot.credits - lot.refunded_credits
        if remaining <= 0:
            continue
        # Expiry is per lot with no FIFO: usage since the lot landed may
        # already have come out of it, so the expiry can eat newer credits.
        spent_since = min(remaining, usage_credits_since(lot.user_id, lot.completed_at))
        expiry = apply_transaction(
            lot.user_id, EXPIRY, remaining,
            description=f"Credit expiry for transaction {lot.id}",
            original_transaction_id=lot.id,
        )
        expired.append(expiry)
        log_ledger_audit(lot.user_id, "credits.expired", {
            "lot_id": lot.id,
            "expiry_id": expiry.id,
            "lot_credits": remaining,
            "credits_removed": expiry.applied_credits,
            "spent_since_purchase": spent_since,
        })
        if spent_since:
            logger.warning(
                f"Expired lot {lot.id} for user {lot.user_id}: "
                f"{expiry.applied_credits} of {remaining} credits removed, "
                f"up to {spent_since} of the lot were already spent"
            )
        else:
            logger.info(
                f"Expired lot {lot.id} for user {lot.user_id}: "
                f"{expiry.applied_credits} of {remaining} credits removed"
            )
    return expired


def find_stuck_pending(older_than_minutes, now=None):
    """PENDING purchases/refunds with no gateway outcome after the window.

    Reported only. Only the gateway or an operator may terminate them.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=older_than_minutes)
    stuck = (
        CreditTransaction.query
        .filter(
            CreditTransaction.status == PENDING,
            CreditTransaction.type.in_(CreditTransaction.EXTERNALLY_CONFIRMED),
            CreditTransaction.created_at <= cutoff,
        )
        .order_by(CreditTransaction.created_at)
        .all()
    )
    for txn in stuck:
        logger.warning(
            f"Transaction {txn.id} ({txn.type}, user {txn.user_id}) "
            f"pending since {txn.created_at.isoformat()}"
        )
    return stuck


# ──────────────────────────────────────────────
# Queries
# ──────────────────────────────────────────────

def get_history(user_id, transaction_type=None, status=None, limit=50, offset=0):
    query = CreditTransaction.query.filter_by(user_id=user_id)
    if transaction_type:
        query = query.filter_by(type=transaction_type)
    if status:
        query = query.filter_by(status=status)
    return (
        query.order_by(CreditTransaction.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_summary(user_id):
    """Completed credits and counts per transaction type."""
    rows = db.session.execute(
        select(
            CreditTransaction.type,
            func.count(CreditTransaction.id),
            func.coalesce(
                func.sum(func.coalesce(
                    CreditTransaction.applied_credits, CreditTransaction.credits
                )),
                0,
            ),
        )
        .where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.status == COMPLETED,
        )
        .group_by(CreditTransaction.type)
    ).all()
    return {
        txn_type: {"count": count, "credits": int(credits)}
        for txn_type, count, credits in rows
    }


def verify_balance(user_id):
    """Check a balance against its counters and against the ledger itself.

    The ledger sum is the signed total of completed transactions minus
    credits still held by pending usages.
    """
    balance = db.session.get(CreditBalance, user_id, populate_existing=True)
    if balance is None:
        raise ValidationError(f"No balance for user {user_id}")

    transactions = CreditTransaction.query.filter_by(user_id=user_id).all()
    ledger_sum = sum(t.signed_credits for t in transactions if t.status == COMPLETED)
    held = sum(
        t.credits for t in transactions
        if t.type == USAGE and t.status == PENDING and t.balance_applied
    )
    ledger_balance = ledger_sum - held

    consistent = (
        balance.current_balance >= 0
        and balance.current_balance == balance.expected_balance
        and balance.current_balance == ledger_balance
        and balance.reserved_credits == held
    )
    if not consistent:
        logger.error(
            f"Balance mismatch for user {user_id}: stored={balance.current_balance} "
            f"counters={balance.expected_balance} ledger={ledger_balance}"
        )
    return {
        "user_id": user_id,
        "current_balance": balance.current_balance,
        "counter_balance": balance.expected_balance,
        "ledger_balance": ledger_balance,
        "reserved_credits": balance.reserved_credits,
        "held_credits": held,
        "consistent": consistent,
    }


def purchase_spend_since(user_id, since):
    """Money committed to live purchases created since ``since``."""
    total = db.session.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.type == PURCHASE,
            CreditTransaction.status.in_(LIVE_STATUSES),
            CreditTransaction.created_at >= since,
        )
    ).scalar()
    return Decimal(str(total))


def refund_totals(original_transaction_id):
    """Credits already taken back and money already claimed by refunds.

    Returns ``(reversed_credits, refunded_amount)``. Credits count only
    completed refunds, since a pending one has not touched the balance
    yet. Money counts pending refunds too, because that money is already
    on its way back to the customer.
    """
    refunds = (
        CreditTransaction.original_transaction_id == original_transaction_id,
        CreditTransaction.type == REFUND,
    )
    reversed_credits = db.session.execute(
        select(func.coalesce(func.sum(func.coalesce(
            CreditTransaction.applied_credits, CreditTransaction.credits
        )), 0)).where(*refunds, CreditTransaction.status == COMPLETED)
    ).scalar()
    refunded_amount = db.session.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            *refunds, CreditTransaction.status.in_(LIVE_STATUSES)
        )
    ).scalar()
    return int(reversed_credits), Decimal(str(refunded_amount))


def count_transactions_since(user_id, since, transaction_type=None):
    query = CreditTransaction.query.filter(
        CreditTransaction.user_id == user_id,
        CreditTransaction.status.in_(LIVE_STATUSES),
        CreditTransaction.created_at >= since,
    )
    if transaction_type:
        query = query.filter(CreditTransaction.type == transaction_type)
    return query.count()


def usage_count_since(user_id, usage_type, since):
    return CreditTransaction.query.filter(
        CreditTransaction.user_id == user_id,
        CreditTransaction.type == USAGE,
        CreditTransaction.usage_type == usage_type,
        CreditTransaction.status.in_(LIVE_STATUSES),
        CreditTransaction.created_at >= since,
    ).count()


def usage_credits_since(user_id, since):
    """Credits spent on completed usage since ``since``."""
    total = db.session.execute(
        select(func.coalesce(func.sum(CreditTransaction.credits), 0)).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.type == USAGE,
            CreditTransaction.status == COMPLETED,
            CreditTransaction.completed_at >= since,
        )
    ).scalar()
    return int(total)


def last_transaction_at(user_id, transaction_type):
    return db.session.execute(
        select(func.max(CreditTransaction.created_at)).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.type == transaction_type,
            CreditTransaction.status.in_(LIVE_STATUSES),
        )
    ).scalar()


def find_by_gateway_reference(gateway_reference):
    if not gateway_reference:
        return None
    return (
        CreditTransaction.query
        .filter_by(gateway_reference=gateway_reference)
        .order_by(CreditTransaction.created_at)
        .first()
    )
