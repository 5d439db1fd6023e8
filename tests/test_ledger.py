"""Tests for the ledger service.

Covers:
- Opening balances and role defaults
- PURCHASE lifecycle (pending, idempotent completion, terminal states)
- USAGE debits, insufficient balance and usage holds
- Refunds of usages (credits back) and purchases (clamped removal)
- Trial credits awarded once
- Expiry sweep and stuck-pending report
- Balance verification against counters and the ledger
- History, summary and limit counters
"""

import logging
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from creditledger.errors import (
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
    USAGE,
    CreditTransaction,
)
from creditledger.services import ledger_service
from creditledger.utils import start_of_day, utcnow


def _balance(user_id):
    return ledger_service.get_balance(user_id)


def _use(user_id, credits, hold=False):
    return ledger_service.apply_transaction(
        user_id, USAGE, credits, usage_type="job_application", hold=hold,
        description="Job Application",
    )


def _purchase(user_id, credits=30, expires_at=None):
    return ledger_service.apply_transaction(
        user_id, PURCHASE, credits,
        amount=Decimal("22.57"), currency="AUD", expires_at=expires_at,
    )


class TestBalances:

    def test_new_account_opens_empty(self):
        balance = ledger_service.ensure_balance("fresh-user")
        assert balance.current_balance == 0
        assert balance.role == "tradie"

    def test_role_kept_from_first_open(self):
        ledger_service.ensure_balance("acct", role="enterprise")
        assert ledger_service.ensure_balance("acct", role="client").role == "enterprise"

    def test_seeded_balances(self, seed_data):
        assert _balance(seed_data["tradie_id"]).current_balance == 20
        assert _balance(seed_data["buyer_id"]).current_balance == 30
        assert _balance(seed_data["client_id"]).current_balance == 0


class TestPurchaseLifecycle:

    # ── Creation ──

    def test_purchase_created_pending_without_credit(self, seed_data):
        txn = _purchase(seed_data["client_id"])
        assert txn.status == PENDING
        assert txn.direction == CREDIT
        assert txn.balance_applied is False
        assert _balance(seed_data["client_id"]).current_balance == 0

    # ── Completion ──

    def test_complete_credits_balance(self, seed_data):
        txn = _purchase(seed_data["client_id"])
        completed = ledger_service.complete_transaction(txn.id)
        assert completed.status == COMPLETED
        assert completed.applied_credits == 30
        assert completed.completed_at is not None

        balance = _balance(seed_data["client_id"])
        assert balance.current_balance == 30
        assert balance.total_purchased == 30
        assert balance.last_purchase_at is not None

    def test_complete_is_idempotent(self, seed_data):
        txn = _purchase(seed_data["client_id"])
        for _ in range(3):
            ledger_service.complete_transaction(txn.id)
        assert _balance(seed_data["client_id"]).current_balance == 30

    # ── Terminal states ──

    def test_fail_never_credits(self, seed_data):
        txn = _purchase(seed_data["client_id"])
        failed = ledger_service.fail_transaction(txn.id, "card_declined")
        assert failed.status == FAILED
        assert failed.failure_reason == "card_declined"
        assert _balance(seed_data["client_id"]).current_balance == 0

    def test_cancel_never_credits(self, seed_data):
        txn = _purchase(seed_data["client_id"])
        assert ledger_service.cancel_transaction(txn.id).status == CANCELLED
        assert _balance(seed_data["client_id"]).current_balance == 0

    def test_completed_cannot_fail(self, seed_data):
        with pytest.raises(InvalidTransition) as exc:
            ledger_service.fail_transaction(seed_data["purchase_id"])
        assert exc.value.current == COMPLETED
        assert exc.value.target == FAILED

    def test_failed_cannot_complete(self, seed_data):
        txn = _purchase(seed_data["client_id"])
        ledger_service.fail_transaction(txn.id)
        with pytest.raises(InvalidTransition):
            ledger_service.complete_transaction(txn.id)
        assert _balance(seed_data["client_id"]).current_balance == 0

    def test_unknown_transaction(self):
        with pytest.raises(TransactionNotFound):
            ledger_service.complete_transaction("no-such-id")


class TestApplyTransaction:

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError):
            ledger_service.apply_transaction("u1", "gift", 5)

    @pytest.mark.parametrize("credits", [0, -5, 2.5, True])
    def test_credits_must_be_positive_integer(self, credits):
        with pytest.raises(ValidationError):
            ledger_service.apply_transaction("u1", BONUS, credits)

    def test_refund_requires_original(self):
        with pytest.raises(ValidationError, match="reference"):
            ledger_service.apply_transaction("u1", REFUND, 5)

    def test_bonus_completes_immediately(self):
        txn = ledger_service.grant_bonus("u1", 7)
        assert txn.status == COMPLETED
        balance = _balance("u1")
        assert balance.current_balance == 7
        assert balance.total_bonus == 7

    def test_subscription_counts_as_purchased(self):
        ledger_service.grant_subscription_credits("u1", 40, reference_id="sub_1")
        balance = _balance("u1")
        assert balance.total_purchased == 40
        assert balance.current_balance == 40

    def test_restricted_metadata_rejected(self):
        with pytest.raises(ValidationError):
            ledger_service.grant_bonus("u1", 5, metadata={"api_key": "sk_live_x"})


class TestUsage:

    def test_usage_debits_and_completes(self, seed_data):
        txn = _use(seed_data["tradie_id"], 5)
        assert txn.status == COMPLETED
        assert txn.direction == DEBIT
        balance = _balance(seed_data["tradie_id"])
        assert balance.current_balance == 15
        assert balance.total_used == 5

    def test_insufficient_balance_rejected_without_record(self, seed_data):
        with pytest.raises(InsufficientBalance) as exc:
            _use(seed_data["client_id"], 2)
        assert exc.value.required == 2
        assert exc.value.available == 0
        assert exc.value.shortfall == 2
        assert CreditTransaction.query.filter_by(
            user_id=seed_data["client_id"], type=USAGE
        ).count() == 0

    def test_spend_exact_balance(self, seed_data):
        _use(seed_data["tradie_id"], 20)
        assert _balance(seed_data["tradie_id"]).current_balance == 0
        with pytest.raises(InsufficientBalance):
            _use(seed_data["tradie_id"], 1)

    # ── Holds ──

    def test_hold_reserves_credits(self, seed_data):
        txn = _use(seed_data["tradie_id"], 5, hold=True)
        assert txn.status == PENDING
        balance = _balance(seed_data["tradie_id"])
        assert balance.current_balance == 15
        assert balance.reserved_credits == 5
        assert balance.total_used == 0
        assert ledger_service.verify_balance(seed_data["tradie_id"])["consistent"]

    def test_completing_hold_settles(self, seed_data):
        txn = _use(seed_data["tradie_id"], 5, hold=True)
        ledger_service.complete_transaction(txn.id)
        balance = _balance(seed_data["tradie_id"])
        assert balance.current_balance == 15
        assert balance.reserved_credits == 0
        assert balance.total_used == 5

    def test_cancelling_hold_releases(self, seed_data):
        txn = _use(seed_data["tradie_id"], 5, hold=True)
        released = ledger_service.cancel_transaction(txn.id, "job withdrawn")
        assert released.balance_applied is False
        balance = _balance(seed_data["tradie_id"])
        assert balance.current_balance == 20
        assert balance.reserved_credits == 0
        assert ledger_service.verify_balance(seed_data["tradie_id"])["consistent"]

    def test_held_credits_cannot_be_spent_twice(self, seed_data):
        _use(seed_data["tradie_id"], 15, hold=True)
        with pytest.raises(InsufficientBalance):
            _use(seed_data["tradie_id"], 6)


class TestRefunds:

    # ── Usage refunds ──

    def test_usage_refund_returns_credits(self, seed_data):
        usage = _use(seed_data["tradie_id"], 5)
        refund = ledger_service.reverse_transaction(usage.id, 3, reason="Job cancelled")
        assert refund.type == REFUND
        assert refund.direction == CREDIT
        assert refund.status == COMPLETED
        assert refund.original_transaction_id == usage.id

        balance = _balance(seed_data["tradie_id"])
        assert balance.current_balance == 18
        assert balance.total_refunded == 3
        assert ledger_service.verify_balance(seed_data["tradie_id"])["consistent"]

    def test_refunds_cannot_exceed_original(self, seed_data):
        usage = _use(seed_data["tradie_id"], 5)
        ledger_service.reverse_transaction(usage.id, 3)
        with pytest.raises(ValidationError):
            ledger_service.reverse_transaction(usage.id, 3)
        ledger_service.reverse_transaction(usage.id, 2)
        with pytest.raises(ValidationError):
            ledger_service.reverse_transaction(usage.id)
        assert _balance(seed_data["tradie_id"]).current_balance == 20

    def test_refund_writes_audit_event(self, seed_data):
        usage = _use(seed_data["tradie_id"], 5)
        refund = ledger_service.reverse_transaction(usage.id)
        event = AuditEvent.query.filter_by(action="refund.created").first()
        assert event is not None
        assert event.metadata_["refund_id"] == refund.id
        assert event.metadata_["credits"] == 5

    def test_only_completed_refundable(self, seed_data):
        txn = _purchase(seed_data["client_id"])
        with pytest.raises(ValidationError, match="completed"):
            ledger_service.reverse_transaction(txn.id)

    def test_bonus_not_refundable(self, seed_data):
        bonus = CreditTransaction.query.filter_by(
            user_id=seed_data["tradie_id"], type=BONUS
        ).first()
        with pytest.raises(ValidationError):
            ledger_service.reverse_transaction(bonus.id)

    # ── Purchase refunds ──

    def test_purchase_refund_pending_until_confirmed(self, seed_data):
        refund = ledger_service.reverse_transaction(
            seed_data["purchase_id"], amount=Decimal("22.57")
        )
        assert refund.status == PENDING
        assert refund.direction == DEBIT
        assert _balance(seed_data["buyer_id"]).current_balance == 30

        ledger_service.complete_transaction(refund.id)
        balance = _balance(seed_data["buyer_id"])
        assert balance.current_balance == 0
        assert balance.total_reversed == 30

    def test_purchase_refund_clamped_at_zero(self, seed_data):
        _use(seed_data["buyer_id"], 25)
        refund = ledger_service.reverse_transaction(seed_data["purchase_id"])
        completed = ledger_service.complete_transaction(refund.id)

        assert completed.credits == 30
        assert completed.applied_credits == 5
        balance = _balance(seed_data["buyer_id"])
        assert balance.current_balance == 0
        result = ledger_service.verify_balance(seed_data["buyer_id"])
        assert result["consistent"]
        assert result["ledger_balance"] == 0

    def test_failed_refund_releases_claim(self, seed_data):
        refund = ledger_service.reverse_transaction(seed_data["purchase_id"])
        ledger_service.fail_transaction(refund.id, "refund_failed")
        original = ledger_service.get_transaction(seed_data["purchase_id"])
        assert original.refunded_credits == 0
        assert original.refundable_credits == 30
        assert _balance(seed_data["buyer_id"]).current_balance == 30


class TestTrialCredits:

    def test_awarded_once(self):
        txn = ledger_service.award_trial_credits("newbie", 3)
        assert txn.status == COMPLETED
        with pytest.raises(ValidationError, match="already"):
            ledger_service.award_trial_credits("newbie", 3)

        balance = _balance("newbie")
        assert balance.current_balance == 3
        assert balance.total_bonus == 3
        assert balance.trial_awarded_at is not None


class TestExpiry:

    def test_expired_lot_removed_once(self, seed_data):
        now = utcnow()
        lot = _purchase(seed_data["client_id"], expires_at=now - timedelta(days=1))
        ledger_service.complete_transaction(lot.id)

        expired = ledger_service.expire_credits(now=now)
        assert len(expired) == 1
        assert expired[0].type == EXPIRY
        assert expired[0].original_transaction_id == lot.id
        assert _balance(seed_data["client_id"]).current_balance == 0
        assert _balance(seed_data["client_id"]).total_expired == 30

        assert ledger_service.expire_credits(now=now) == []

    def test_expiry_clamped_when_credits_spent(self, seed_data):
        now = utcnow()
        lot = _purchase(seed_data["client_id"], expires_at=now - timedelta(hours=1))
        ledger_service.complete_transaction(lot.id)
        _use(seed_data["client_id"], 10)

        expired = ledger_service.expire_credits(now=now)
        assert expired[0].applied_credits == 20
        assert _balance(seed_data["client_id"]).current_balance == 0
        assert ledger_service.verify_balance(seed_data["client_id"])["consistent"]

    def test_spent_share_reported(self, seed_data, caplog):
        client_id = seed_data["client_id"]
        now = utcnow()
        lot = _purchase(client_id, expires_at=now - timedelta(hours=1))
        ledger_service.complete_transaction(lot.id)
        _use(client_id, 10)
        ledger_service.grant_bonus(client_id, 20)

        with caplog.at_level(logging.WARNING, logger="creditledger.services.ledger_service"):
            expired = ledger_service.expire_credits(now=now)

        # Per-lot expiry also takes the later bonus credits
        assert expired[0].applied_credits == 30
        assert _balance(client_id).current_balance == 10
        assert "up to 10 of the lot were already spent" in caplog.text

        event = AuditEvent.query.filter_by(action="credits.expired").one()
        assert event.metadata_["lot_id"] == lot.id
        assert event.metadata_["spent_since_purchase"] == 10
        assert event.metadata_["credits_removed"] == 30

    def test_unspent_lot_logs_no_spent_share(self, seed_data):
        now = utcnow()
        lot = _purchase(seed_data["client_id"], expires_at=now - timedelta(hours=1))
        ledger_service.complete_transaction(lot.id)
        ledger_service.expire_credits(now=now)

        event = AuditEvent.query.filter_by(action="credits.expired").one()
        assert event.metadata_["spent_since_purchase"] == 0

    def test_unexpired_lot_untouched(self, seed_data):
        now = utcnow()
        lot = _purchase(seed_data["client_id"], expires_at=now + timedelta(days=30))
        ledger_service.complete_transaction(lot.id)
        assert ledger_service.expire_credits(now=now) == []
        assert _balance(seed_data["client_id"]).current_balance == 30


class TestStuckPending:

    def test_old_pending_purchase_reported(self, seed_data):
        txn = _purchase(seed_data["client_id"])
        stuck = ledger_service.find_stuck_pending(60, now=utcnow() + timedelta(hours=2))
        assert [t.id for t in stuck] == [txn.id]

    def test_recent_pending_not_reported(self, seed_data):
        _purchase(seed_data["client_id"])
        assert ledger_service.find_stuck_pending(60) == []

    def test_stuck_pending_left_unchanged(self, seed_data):
        txn = _purchase(seed_data["client_id"])
        ledger_service.find_stuck_pending(60, now=utcnow() + timedelta(hours=2))
        assert ledger_service.get_transaction(txn.id).status == PENDING


class TestVerification:

    def test_consistent_after_mixed_activity(self, seed_data):
        user = seed_data["tradie_id"]
        usage = _use(user, 5)
        _use(user, 2, hold=True)
        ledger_service.reverse_transaction(usage.id, 2)
        ledger_service.grant_bonus(user, 4)

        result = ledger_service.verify_balance(user)
        assert result["consistent"]
        assert result["current_balance"] == 19
        assert result["held_credits"] == 2

    def test_tampered_balance_detected(self, seed_data):
        db.session.execute(
            update(CreditBalance)
            .where(CreditBalance.user_id == seed_data["tradie_id"])
            .values(current_balance=999)
        )
        result = ledger_service.verify_balance(seed_data["tradie_id"])
        assert result["consistent"] is False
        assert result["ledger_balance"] == 20

    def test_unknown_user(self):
        with pytest.raises(ValidationError):
            ledger_service.verify_balance("nobody")


class TestQueries:

    def test_history_filters(self, seed_data):
        _use(seed_data["tradie_id"], 1)
        history = ledger_service.get_history(seed_data["tradie_id"])
        assert {t.type for t in history} == {BONUS, USAGE}
        usage_only = ledger_service.get_history(seed_data["tradie_id"], transaction_type=USAGE)
        assert len(usage_only) == 1

    def test_summary(self, seed_data):
        _use(seed_data["tradie_id"], 5)
        summary = ledger_service.get_summary(seed_data["tradie_id"])
        assert summary[BONUS] == {"count": 1, "credits": 20}
        assert summary[USAGE] == {"count": 1, "credits": 5}

    def test_limit_counters(self, seed_data):
        since = start_of_day(utcnow())
        buyer = seed_data["buyer_id"]
        assert ledger_service.purchase_spend_since(buyer, since) == Decimal("22.57")
        assert ledger_service.count_transactions_since(buyer, since) == 1
        assert ledger_service.last_transaction_at(buyer, PURCHASE) is not None

        _use(seed_data["tradie_id"], 1)
        assert ledger_service.usage_count_since(
            seed_data["tradie_id"], "job_application", since
        ) == 1

    def test_failed_purchase_not_counted(self, seed_data):
        since = start_of_day(utcnow())
        txn = _purchase(seed_data["client_id"])
        ledger_service.fail_transaction(txn.id)
        assert ledger_service.purchase_spend_since(seed_data["client_id"], since) == 0

    def test_find_by_gateway_reference(self, seed_data):
        txn = ledger_service.find_by_gateway_reference("pi_seed_purchase")
        assert txn.id == seed_data["purchase_id"]
        assert ledger_service.find_by_gateway_reference(None) is None
