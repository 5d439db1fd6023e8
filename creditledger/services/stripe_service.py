"""Stripe service: outbound charge calls and webhook reconciliation.

Responsible for:
- Initiating PaymentIntents and Refunds for ledger transactions
- Verifying webhook signatures and parsing events
- Recording every event in stripe_events (idempotency + retry table)
- Dispatching to event-specific handlers that drive the ledger
- Scheduling retries with exponential backoff and dead-lettering events
  that keep failing

Delivery is at-least-once, so the same event may arrive many times. The
stored record makes the effect exactly-once: a processed event is never
dispatched again, and the ledger operations the handlers call are
themselves idempotent in case a retry follows a partial failure.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

import stripe
from sqlalchemy.exc import IntegrityError

from creditledger.errors import (
    GatewayInconsistency,
    HandlerFailure,
    InvalidEventFormat,
    InvalidSignature,
    ValidationError,
)
from creditledger.extensions import db
from creditledger.models.stripe_event import StripeEvent
from creditledger.models.transaction import (
    CANCELLED,
    COMPLETED,
    DEBIT,
    FAILED,
    PENDING,
    PURCHASE,
    REFUND,
    CreditTransaction,
)
from creditledger.services import auto_topup_service, ledger_service
from creditledger.services.ledger_service import log_ledger_audit
from creditledger.services.metadata_service import sanitize_webhook_data
from creditledger.utils import round_money, utcnow

logger = logging.getLogger(__name__)

# Result statuses
STATUS_PROCESSED = "processed"
STATUS_IGNORED = "ignored"
STATUS_RETRY_SCHEDULED = "retry_scheduled"
STATUS_DEAD_LETTERED = "dead_lettered"
STATUS_INCONSISTENT = "inconsistent"


@dataclass(frozen=True)
class ProcessingResult:
    event_id: str
    event_type: str
    processed: bool
    status: str
    detail: dict = field(default_factory=dict)
    transaction_id: Optional[str] = None
    duplicate: bool = field(default=False, compare=False)

    @classmethod
    def from_record(cls, record, duplicate=False):
        result = record.processing_result or {}
        if record.processed:
            status = result.get("status", STATUS_PROCESSED)
        elif record.dead_lettered:
            status = STATUS_DEAD_LETTERED
        else:
            status = STATUS_RETRY_SCHEDULED
        return cls(
            event_id=record.stripe_event_id,
            event_type=record.event_type,
            processed=record.processed,
            status=status,
            detail=result,
            transaction_id=record.transaction_id,
            duplicate=duplicate,
        )

    def to_dict(self):
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "processed": self.processed,
            "status": self.status,
            "transaction_id": self.transaction_id,
        }


def _to_cents(amount):
    return int(round_money(amount) * 100)


# ──────────────────────────────────────────────
# Outbound calls
# ──────────────────────────────────────────────

def create_payment_intent(transaction, api_key, payment_method_id=None,
                          off_session=False):
    """Create (and, with a saved payment method, confirm) a PaymentIntent.

    The ledger transaction ID travels in metadata so the webhook can find
    the transaction again. The transaction ID doubles as the idempotency
    key, so a retried call never charges twice.

    Raises stripe.StripeError on API failures.
    """
    stripe.api_key = api_key
    params = {
        "amount": _to_cents(transaction.amount),
        "currency": (transaction.currency or "aud").lower(),
        "metadata": {
            "transaction_id": transaction.id,
            "user_id": transaction.user_id,
        },
        "idempotency_key": f"purchase-{transaction.id}",
    }
    if payment_method_id:
        params["payment_method"] = payment_method_id
        params["confirm"] = True
        params["off_session"] = off_session
    intent = stripe.PaymentIntent.create(**params)
    logger.info(f"Created PaymentIntent {intent.id} for transaction {transaction.id}")
    return intent


def create_refund(refund_transaction, payment_intent_id, api_key):
    """Refund money for a purchase refund transaction.

    Raises stripe.StripeError on API failures.
    """
    stripe.api_key = api_key
    refund = stripe.Refund.create(
        payment_intent=payment_intent_id,
        amount=_to_cents(refund_transaction.amount),
        metadata={"transaction_id": refund_transaction.id},
        idempotency_key=f"refund-{refund_transaction.id}",
    )
    logger.info(f"Created Stripe refund {refund.id} for transaction {refund_transaction.id}")
    return refund


# ──────────────────────────────────────────────
# Verification & parsing
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header, secret, tolerance=300):
    """Verify the Stripe-Signature header against the raw body.

    Raises:
        InvalidSignature: Missing header or secret, bad or stale signature.
    """
    if not sig_header:
        raise InvalidSignature("Missing Stripe-Signature header")
    if not secret:
        raise InvalidSignature("Webhook secret is not configured")
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    try:
        stripe.WebhookSignature.verify_header(
            payload, sig_header, secret, tolerance=tolerance
        )
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(f"Signature verification failed: {e}") from e
    return payload


def parse_event(payload):
    """Parse a verified body into an event dict.

    Raises:
        InvalidEventFormat: Not JSON, or missing id / type / created /
                            data.object.
    """
    try:
        event = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise InvalidEventFormat(f"Webhook body is not valid JSON: {e}") from e

    if not isinstance(event, dict):
        raise InvalidEventFormat("Webhook body is not a JSON object")
    if not isinstance(event.get("id"), str) or not event["id"]:
        raise InvalidEventFormat("Event is missing an id")
    if not isinstance(event.get("type"), str) or not event["type"]:
        raise InvalidEventFormat("Event is missing a type")
    if not isinstance(event.get("created"), int):
        raise InvalidEventFormat("Event is missing a created timestamp")
    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise InvalidEventFormat("Event is missing data.object")
    return event


# ──────────────────────────────────────────────
# Processing
# ──────────────────────────────────────────────

def _get_record(event_id):
    return StripeEvent.query.filter_by(stripe_event_id=event_id).first()


def process_webhook(payload, sig_header, config):
    """Verify, record and dispatch one webhook delivery.

    Args:
        payload: Raw request body (str or bytes).
        sig_header: Stripe-Signature header value.
        config: App config mapping (secret, tolerance, retry settings).

    Returns:
        ProcessingResult. A redelivery of a processed event returns the
        stored result unchanged.

    Raises:
        InvalidSignature / InvalidEventFormat: Nothing was persisted.
    """
    try:
        payload = verify_webhook_signature(
            payload, sig_header,
            config.get("STRIPE_WEBHOOK_SECRET"),
            config.get("WEBHOOK_SIGNATURE_TOLERANCE", 300),
        )
    except InvalidSignature as e:
        logger.warning(f"Rejected webhook: {e.message}")
        raise
    try:
        event = parse_event(payload)
    except InvalidEventFormat as e:
        logger.warning(f"Rejected webhook: {e.message}")
        raise

    event_id = event["id"]
    event_type = event["type"]

    # --- Idempotency check ---
    record = _get_record(event_id)
    if record is not None and record.processed:
        logger.info(f"Duplicate webhook event {event_id}, returning stored result")
        return ProcessingResult.from_record(record, duplicate=True)
    if record is not None and record.dead_lettered:
        logger.warning(f"Webhook event {event_id} is dead-lettered, not dispatching")
        return ProcessingResult.from_record(record, duplicate=True)

    # --- Record before dispatch ---
    if record is None:
        record = StripeEvent(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=sanitize_webhook_data(event),
            processed=False,
            retry_count=0,
            dead_lettered=False,
            requires_review=False,
        )
        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError:
            # A concurrent delivery of the same event recorded it first
            db.session.rollback()
            record = _get_record(event_id)
            if record.processed or record.dead_lettered:
                return ProcessingResult.from_record(record, duplicate=True)

    return dispatch_event(record, event, config)


def dispatch_event(record, event, config):
    """Run the handler for ``event`` and store the outcome on ``record``.

    Commits. On a handler exception the ledger changes are rolled back and
    the record gets a retry schedule (or is dead-lettered).
    """
    if record.processed:
        # A concurrent delivery finished first
        return ProcessingResult.from_record(record, duplicate=True)

    record_id = record.id
    event_id = record.stripe_event_id
    event_type = record.event_type
    handler = HANDLERS.get(event_type)

    if handler is None:
        outcome = {"status": STATUS_IGNORED}
    else:
        try:
            outcome = handler(event, config)
        except GatewayInconsistency as e:
            db.session.rollback()
            record = db.session.get(StripeEvent, record_id)
            return _record_inconsistency(record, e)
        except Exception as e:
            logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
            db.session.rollback()
            record = db.session.get(StripeEvent, record_id)
            return _schedule_retry(record, e, config)

    record.processed = True
    record.processing_result = outcome
    record.processed_at = utcnow()
    record.transaction_id = outcome.get("transaction_id")
    record.next_retry_at = None
    record.last_error = None
    if outcome.get("requires_review"):
        record.requires_review = True
    db.session.commit()

    logger.info(f"Processed webhook {event_id} ({event_type}): {outcome['status']}")
    return ProcessingResult.from_record(record)


def retry_delay(attempt, config):
    """Backoff before the next attempt after ``attempt`` failed attempts."""
    base = config.get("WEBHOOK_RETRY_BASE_SECONDS", 60)
    multiplier = config.get("WEBHOOK_RETRY_MULTIPLIER", 2)
    ceiling = config.get("WEBHOOK_RETRY_MAX_SECONDS", 3600)
    return timedelta(seconds=min(base * multiplier ** (attempt - 1), ceiling))


def _schedule_retry(record, error, config):
    max_attempts = config.get("WEBHOOK_MAX_ATTEMPTS", 5)
    record.retry_count = (record.retry_count or 0) + 1
    record.last_error = str(error)[:1000]

    if record.retry_count >= max_attempts:
        record.dead_lettered = True
        record.requires_review = True
        record.next_retry_at = None
        log_ledger_audit(None, "webhook.dead_lettered", {
            "stripe_event_id": record.stripe_event_id,
            "event_type": record.event_type,
            "attempts": record.retry_count,
            "last_error": record.last_error,
        })
        logger.error(
            f"Dead-lettered webhook {record.stripe_event_id} after "
            f"{record.retry_count} attempts: {record.last_error}"
        )
    else:
        record.next_retry_at = utcnow() + retry_delay(record.retry_count, config)
        logger.warning(
            f"Webhook {record.stripe_event_id} attempt {record.retry_count} failed, "
            f"retrying at {record.next_retry_at.isoformat()}"
        )
    db.session.commit()
    return ProcessingResult.from_record(record)


def _record_inconsistency(record, error):
    """Mark the event handled but flagged: never auto-corrected."""
    details = error.details
    record.processed = True
    record.requires_review = True
    record.processed_at = utcnow()
    record.last_error = error.message
    record.transaction_id = details.get("transaction_id")
    record.processing_result = {
        "status": STATUS_INCONSISTENT,
        "transaction_id": details.get("transaction_id"),
    }
    log_ledger_audit(details.get("user_id"), "webhook.gateway_inconsistency", {
        "stripe_event_id": record.stripe_event_id,
        "event_type": record.event_type,
        "detail": error.message,
    })
    db.session.commit()
    logger.error(f"Gateway inconsistency on {record.stripe_event_id}: {error.message}")
    return ProcessingResult.from_record(record)


def retry_pending_events(config, now=None, limit=100):
    """Re-dispatch events whose retry time has come. Out-of-band sweep."""
    now = now or utcnow()
    due = (
        StripeEvent.query
        .filter(
            StripeEvent.processed.is_(False),
            StripeEvent.dead_lettered.is_(False),
            StripeEvent.next_retry_at.isnot(None),
            StripeEvent.next_retry_at <= now,
        )
        .order_by(StripeEvent.next_retry_at)
        .limit(limit)
        .all()
    )
    results = []
    for record in due:
        results.append(dispatch_event(record, record.payload or {}, config))
    if due:
        logger.info(f"Retried {len(due)} webhook events")
    return results


def list_dead_letters(limit=100):
    return (
        StripeEvent.query
        .filter_by(dead_lettered=True)
        .order_by(StripeEvent.created_at)
        .limit(limit)
        .all()
    )


def requeue_event(stripe_event_id, now=None):
    """Put a dead-lettered event back on the retry queue. Operator action.

    Raises:
        ValidationError: Unknown event, or not dead-lettered.
    """
    record = _get_record(stripe_event_id)
    if record is None:
        raise ValidationError(f"Unknown webhook event {stripe_event_id}")
    if not record.dead_lettered:
        raise ValidationError(f"Webhook event {stripe_event_id} is not dead-lettered")

    record.dead_lettered = False
    record.retry_count = 0
    record.next_retry_at = now or utcnow()
    log_ledger_audit(None, "webhook.requeued", {"stripe_event_id": stripe_event_id})
    db.session.flush()
    logger.info(f"Requeued dead-lettered webhook {stripe_event_id}")
    return record


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _find_transaction(obj):
    """Locate the ledger transaction an object refers to.

    metadata.transaction_id wins; otherwise match the gateway reference
    against the object ID or its payment_intent.
    """
    metadata = obj.get("metadata") or {}
    transaction_id = metadata.get("transaction_id")
    if transaction_id:
        txn = db.session.get(CreditTransaction, transaction_id)
        if txn is not None:
            return txn
    for reference in (obj.get("id"), obj.get("payment_intent")):
        txn = ledger_service.find_by_gateway_reference(reference)
        if txn is not None:
            return txn
    return None


def _require_purchase(obj, event_type):
    txn = _find_transaction(obj)
    if txn is None:
        # The webhook can beat the commit that created the transaction, so
        # this is retried. If it never appears the event is dead-lettered
        # with requires_review set, which is where an operator reconciles it.
        raise HandlerFailure(f"{event_type}: no transaction for {obj.get('id')}")
    if txn.type != PURCHASE:
        raise GatewayInconsistency(
            f"{event_type} references {txn.type} transaction {txn.id}",
            transaction_id=txn.id,
            user_id=txn.user_id,
        )
    return txn


def _handle_payment_succeeded(event, config):
    """payment_intent.succeeded: complete the purchase and credit the balance."""
    intent = event["data"]["object"]
    txn = _require_purchase(intent, event["type"])

    if txn.status == COMPLETED:
        return {"status": "already_completed", "transaction_id": txn.id}
    if txn.status in (FAILED, CANCELLED):
        raise GatewayInconsistency(
            f"Payment succeeded for {txn.status} transaction {txn.id}",
            transaction_id=txn.id,
            user_id=txn.user_id,
        )

    received = intent.get("amount_received", intent.get("amount"))
    if txn.amount is not None and received is not None and received != _to_cents(txn.amount):
        raise GatewayInconsistency(
            f"Amount mismatch on {txn.id}: expected {_to_cents(txn.amount)}, "
            f"received {received}",
            transaction_id=txn.id,
            user_id=txn.user_id,
        )

    if not txn.gateway_reference:
        txn.gateway_reference = intent.get("id")
        db.session.flush()

    txn = ledger_service.complete_transaction(txn.id)
    auto_topup_service.resolve_topup(
        txn, True, config.get("AUTO_TOPUP_MAX_FAILURES", 3)
    )
    return {
        "status": "completed",
        "transaction_id": txn.id,
        "credits": txn.credits,
    }


def _terminate_purchase(event, config, target, reason):
    intent = event["data"]["object"]
    txn = _require_purchase(intent, event["type"])

    if txn.status == target:
        return {"status": f"already_{target}", "transaction_id": txn.id}
    if txn.status != PENDING:
        raise GatewayInconsistency(
            f"{event['type']} for {txn.status} transaction {txn.id}",
            transaction_id=txn.id,
            user_id=txn.user_id,
        )

    if target == FAILED:
        txn = ledger_service.fail_transaction(txn.id, reason)
    else:
        txn = ledger_service.cancel_transaction(txn.id, reason)
    auto_topup_service.resolve_topup(
        txn, False, config.get("AUTO_TOPUP_MAX_FAILURES", 3), reason
    )
    return {"status": target, "transaction_id": txn.id, "reason": reason}


def _handle_payment_failed(event, config):
    """payment_intent.payment_failed: fail the purchase, no balance change."""
    error = event["data"]["object"].get("last_payment_error") or {}
    reason = error.get("message") or "Payment failed"
    return _terminate_purchase(event, config, FAILED, reason)


def _handle_payment_canceled(event, config):
    """payment_intent.canceled: cancel the purchase, no balance change."""
    reason = event["data"]["object"].get("cancellation_reason") or "Payment canceled"
    return _terminate_purchase(event, config, CANCELLED, reason)


def _pending_refunds_for(charge):
    """PENDING purchase refunds this charge.refunded event confirms."""
    refund_ids = []
    for refund in (charge.get("refunds") or {}).get("data") or []:
        transaction_id = (refund.get("metadata") or {}).get("transaction_id")
        if transaction_id:
            refund_ids.append(transaction_id)

    if refund_ids:
        candidates = CreditTransaction.query.filter(
            CreditTransaction.id.in_(refund_ids)
        ).all()
    else:
        purchase = _find_transaction(charge)
        if purchase is None:
            return []
        candidates = CreditTransaction.query.filter_by(
            original_transaction_id=purchase.id, type=REFUND
        ).all()
    return [
        t for t in candidates
        if t.type == REFUND and t.direction == DEBIT and t.status == PENDING
    ]


def _handle_charge_refunded(event, config):
    """charge.refunded: complete the pending purchase refund(s)."""
    charge = event["data"]["object"]
    refunds = _pending_refunds_for(charge)
    if not refunds:
        raise HandlerFailure(f"charge.refunded: no pending refund for {charge.get('id')}")

    completed = [ledger_service.complete_transaction(t.id) for t in refunds]
    return {
        "status": "refund_completed",
        "transaction_id": completed[0].id,
        "refund_ids": [t.id for t in completed],
        "credits_removed": sum(t.applied_credits or 0 for t in completed),
    }


def _handle_dispute_created(event, config):
    """charge.dispute.created: flag for manual review, no balance change."""
    dispute = event["data"]["object"]
    txn = _find_transaction(dispute)
    user_id = txn.user_id if txn else None

    log_ledger_audit(user_id, "dispute.created", {
        "dispute_id": dispute.get("id"),
        "transaction_id": txn.id if txn else None,
        "amount": dispute.get("amount"),
        "reason": dispute.get("reason"),
    })
    logger.warning(
        f"Dispute {dispute.get('id')} opened for transaction "
        f"{txn.id if txn else 'unknown'}, flagged for review"
    )
    return {
        "status": "flagged_for_review",
        "transaction_id": txn.id if txn else None,
        "requires_review": True,
    }


HANDLERS = {
    "payment_intent.succeeded": _handle_payment_succeeded,
    "payment_intent.payment_failed": _handle_payment_failed,
    "payment_intent.canceled": _handle_payment_canceled,
    "charge.refunded": _handle_charge_refunded,
    "charge.dispute.created": _handle_dispute_created,
}
