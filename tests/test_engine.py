"""Tests for the CreditEngine facade and the operator CLI.

Covers:
- Purchases: pricing, limits (cooldown, daily spend, balance cap), charges
- Usage: exact cost, unknown types, per-type daily limits, holds
- Refunds: usage refunds, purchase refund eligibility, Stripe refunds
- Trial credits, expiry sweep, stuck pending report
- Config validation
- CLI commands: retry-webhooks, dead-letters, stuck-pending, expire-credits
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import stripe
from sqlalchemy import update

from creditledger.config import Config
from creditledger.errors import InsufficientBalance, ValidationError
from creditledger.extensions import db
from creditledger.models.stripe_event import StripeEvent
from creditledger.models.transaction import (
    CANCELLED,
    COMPLETED,
    FAILED,
    PENDING,
    PURCHASE,
    CreditTransaction,
)
from creditledger.services import ledger_service
from creditledger.utils import utcnow


def _age_transaction(txn_id, **fields):
    """Backdate timestamps on a transaction and commit."""
    db.session.execute(
        update(CreditTransaction)
        .where(CreditTransaction.id == txn_id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


class TestCreatePurchase:

    def test_pending_purchase_with_price_breakdown(self, engine):
        txn = engine.create_purchase("buyer", "standard")

        assert txn.type == PURCHASE
        assert txn.status == PENDING
        assert txn.credits == 30
        assert txn.amount == Decimal("22.57")
        assert txn.currency == "AUD"
        assert txn.expires_at is None
        assert txn.metadata_["package_type"] == "standard"
        assert txn.metadata_["tax"] == "2.00"
        assert txn.metadata_["auto_topup"] is False
        # Nothing is credited until the gateway confirms
        assert engine.get_balance("buyer").current_balance == 0

    def test_enterprise_credits_expire(self, engine):
        txn = engine.create_purchase("buyer", "enterprise", role="enterprise")
        assert txn.amount == Decimal("64.34")
        assert txn.expires_at is not None
        validity = txn.expires_at - txn.created_at
        assert abs(validity - timedelta(days=90)) < timedelta(minutes=1)

    def test_unknown_package(self, engine):
        with pytest.raises(ValidationError, match="Unknown credit package"):
            engine.create_purchase("buyer", "platinum")

    def test_cooldown_between_purchases(self, engine):
        engine.create_purchase("buyer", "starter")
        with pytest.raises(ValidationError, match="Please wait 5 minutes"):
            engine.create_purchase("buyer", "starter")

    def test_daily_spend_limit(self, engine, seed_data):
        client_id = seed_data["client_id"]
        engine.create_purchase(client_id, "enterprise")

        with pytest.raises(ValidationError) as exc:
            engine.create_purchase(client_id, "enterprise")
        assert "Daily purchase limit of $100.00" in exc.value.message
        assert exc.value.suggested_action

    def test_balance_cap(self, engine, seed_data):
        client_id = seed_data["client_id"]
        engine.grant_bonus(client_id, 190)

        with pytest.raises(ValidationError, match="Maximum credit balance of 200"):
            engine.create_purchase(client_id, "standard")
        assert ledger_service.count_transactions_since(
            client_id, utcnow() - timedelta(hours=1), PURCHASE
        ) == 0

    def test_unknown_promo_code(self, engine):
        with pytest.raises(ValidationError, match="not recognised"):
            engine.create_purchase("buyer", "standard", promo_code="NOPE2024")

    @patch("creditledger.services.stripe_service.stripe.PaymentIntent.create")
    def test_charge_initiated(self, mock_create, engine, app, monkeypatch):
        monkeypatch.setitem(app.config, "STRIPE_INITIATE_CHARGES", True)
        mock_create.return_value = MagicMock(id="pi_engine_123")

        txn = engine.create_purchase("buyer", "standard")

        kwargs = mock_create.call_args.kwargs
        assert kwargs["amount"] == 2257
        assert kwargs["currency"] == "aud"
        assert kwargs["metadata"]["transaction_id"] == txn.id
        assert kwargs["idempotency_key"] == f"purchase-{txn.id}"
        assert "payment_method" not in kwargs
        assert ledger_service.get_transaction(txn.id).gateway_reference == "pi_engine_123"

    @patch("creditledger.services.stripe_service.stripe.PaymentIntent.create")
    def test_rejected_charge_fails_purchase(self, mock_create, engine, app, monkeypatch):
        monkeypatch.setitem(app.config, "STRIPE_INITIATE_CHARGES", True)
        mock_create.side_effect = stripe.StripeError("Your card was declined.")

        with pytest.raises(ValidationError, match="could not be started") as exc:
            engine.create_purchase("buyer", "standard", payment_method_id="pm_card_visa")

        txn = ledger_service.get_transaction(exc.value.details["transaction_id"])
        assert txn.status == FAILED
        assert "declined" in txn.failure_reason
        assert engine.get_balance("buyer").current_balance == 0

    def test_no_charge_without_flag(self, engine):
        with patch("creditledger.services.stripe_service.stripe.PaymentIntent.create") as m:
            engine.create_purchase("buyer", "standard")
        m.assert_not_called()


class TestUseCredits:

    def test_spends_configured_cost(self, engine, seed_data):
        tradie_id = seed_data["tradie_id"]
        txn = engine.use_credits(tradie_id, "job_application",
                                 reference_id="job-42", reference_type="job")

        assert txn.status == COMPLETED
        assert txn.credits == 1
        assert txn.reference_id == "job-42"
        assert engine.get_balance(tradie_id).current_balance == 19

    def test_wrong_credit_amount(self, engine, seed_data):
        with pytest.raises(ValidationError, match="requires exactly 5 credits"):
            engine.use_credits(seed_data["tradie_id"], "profile_boost", credits=3)
        assert engine.get_balance(seed_data["tradie_id"]).current_balance == 20

    def test_unknown_usage_type(self, engine, seed_data):
        with pytest.raises(ValidationError, match="Invalid usage type"):
            engine.use_credits(seed_data["tradie_id"], "teleport")

    def test_daily_limit_per_usage_type(self, engine, seed_data):
        tradie_id = seed_data["tradie_id"]
        engine.use_credits(tradie_id, "featured_listing")
        with pytest.raises(ValidationError, match="Daily limit exceeded for Featured Listing"):
            engine.use_credits(tradie_id, "featured_listing")
        assert engine.get_balance(tradie_id).current_balance == 10

    def test_insufficient_balance(self, engine, seed_data):
        client_id = seed_data["client_id"]
        with pytest.raises(InsufficientBalance) as exc:
            engine.use_credits(client_id, "direct_message")

        data = exc.value.to_dict()
        assert data["required"] == 2
        assert data["available"] == 0
        assert data["shortfall"] == 2
        assert ledger_service.get_history(client_id) == []

    def test_hold_then_complete(self, engine, seed_data):
        tradie_id = seed_data["tradie_id"]
        held = engine.use_credits(tradie_id, "profile_boost", hold=True)

        balance = engine.get_balance(tradie_id)
        assert held.status == PENDING
        assert balance.current_balance == 15
        assert balance.reserved_credits == 5

        done = engine.complete_usage(held.id)
        balance = engine.get_balance(tradie_id)
        assert done.status == COMPLETED
        assert balance.current_balance == 15
        assert balance.reserved_credits == 0
        assert balance.total_used == 5

    def test_hold_then_release(self, engine, seed_data):
        tradie_id = seed_data["tradie_id"]
        held = engine.use_credits(tradie_id, "profile_boost", hold=True)

        released = engine.release_usage(held.id, reason="Job withdrawn")
        balance = engine.get_balance(tradie_id)
        assert released.status == CANCELLED
        assert balance.current_balance == 20
        assert balance.reserved_credits == 0
        assert ledger_service.verify_balance(tradie_id)["consistent"]


class TestRefund:

    def test_usage_refund_returns_credits(self, engine, seed_data):
        tradie_id = seed_data["tradie_id"]
        usage = engine.use_credits(tradie_id, "direct_message")

        refund = engine.refund(usage.id, reason="Message bounced")
        assert refund.status == COMPLETED
        assert refund.credits == 2
        assert engine.get_balance(tradie_id).current_balance == 20

    def test_purchase_refund_pending_until_gateway(self, engine, seed_data):
        refund = engine.refund(seed_data["purchase_id"], reason="Changed my mind")

        assert refund.status == PENDING
        assert refund.credits == 30
        assert refund.amount == Decimal("22.57")
        # Credits stay until charge.refunded arrives
        assert engine.get_balance(seed_data["buyer_id"]).current_balance == 30

    def test_partial_purchase_refund_pro_rata(self, engine, seed_data):
        refund = engine.refund(seed_data["purchase_id"], amount=15)
        assert refund.credits == 15
        assert refund.amount == Decimal("11.29")

    def test_split_refund_never_exceeds_price(self, engine, seed_data):
        first = engine.refund(seed_data["purchase_id"], amount=10)
        rest = engine.refund(seed_data["purchase_id"])

        assert first.amount == Decimal("7.52")
        assert rest.credits == 20
        assert rest.amount == Decimal("15.05")
        purchase = ledger_service.get_transaction(seed_data["purchase_id"])
        assert first.amount + rest.amount <= purchase.amount
        assert first.amount + rest.amount == Decimal("22.57")

    def test_completed_refund_not_counted_as_used(self, engine, seed_data):
        purchase_id = seed_data["purchase_id"]
        first = engine.refund(purchase_id, amount=10)
        ledger_service.complete_transaction(first.id)
        db.session.commit()
        assert engine.get_balance(seed_data["buyer_id"]).current_balance == 20

        second = engine.refund(purchase_id, amount=10)
        assert second.amount == Decimal("7.52")
        assert ledger_service.refund_totals(purchase_id) == (10, Decimal("15.04"))

        last = engine.refund(purchase_id)
        assert last.credits == 10
        assert last.amount == Decimal("7.53")

    def test_spend_during_pending_refund_still_counts(self, engine, seed_data):
        engine.refund(seed_data["purchase_id"], amount=10)
        engine.use_credits(seed_data["buyer_id"], "job_application")
        with pytest.raises(ValidationError, match="Too many credits"):
            engine.refund(seed_data["purchase_id"], amount=10)

    def test_purchase_refund_after_usage_rejected(self, engine, seed_data):
        engine.use_credits(seed_data["buyer_id"], "job_application")
        with pytest.raises(ValidationError, match="Too many credits"):
            engine.refund(seed_data["purchase_id"])

    def test_purchase_refund_outside_window(self, engine, seed_data):
        _age_transaction(
            seed_data["purchase_id"], completed_at=utcnow() - timedelta(days=45)
        )
        with pytest.raises(ValidationError, match="Refund window of 30 days"):
            engine.refund(seed_data["purchase_id"])

    def test_refund_twice_rejected(self, engine, seed_data):
        engine.refund(seed_data["purchase_id"])
        with pytest.raises(ValidationError):
            engine.refund(seed_data["purchase_id"])

    @patch("creditledger.services.stripe_service.stripe.Refund.create")
    def test_stripe_refund_created(self, mock_refund, engine, seed_data, app, monkeypatch):
        monkeypatch.setitem(app.config, "STRIPE_INITIATE_CHARGES", True)
        mock_refund.return_value = MagicMock(id="re_123")

        refund = engine.refund(seed_data["purchase_id"])

        kwargs = mock_refund.call_args.kwargs
        assert kwargs["payment_intent"] == "pi_seed_purchase"
        assert kwargs["amount"] == 2257
        assert kwargs["idempotency_key"] == f"refund-{refund.id}"
        assert ledger_service.get_transaction(refund.id).gateway_reference == "re_123"

    @patch("creditledger.services.stripe_service.stripe.Refund.create")
    def test_stripe_refund_error_rolls_back(self, mock_refund, engine, seed_data, app,
                                            monkeypatch):
        monkeypatch.setitem(app.config, "STRIPE_INITIATE_CHARGES", True)
        mock_refund.side_effect = stripe.StripeError("Charge already refunded")

        with pytest.raises(ValidationError, match="could not be started"):
            engine.refund(seed_data["purchase_id"])

        purchase = ledger_service.get_transaction(seed_data["purchase_id"])
        assert purchase.refunded_credits == 0
        assert ledger_service.get_history(seed_data["buyer_id"], transaction_type="refund") == []


class TestGrantsAndSweeps:

    def test_trial_awarded_once(self, engine):
        txn = engine.award_trial_credits("newcomer")
        assert txn.credits == 3
        assert engine.get_balance("newcomer").current_balance == 3

        with pytest.raises(ValidationError, match="already been awarded"):
            engine.award_trial_credits("newcomer")
        assert engine.get_balance("newcomer").current_balance == 3

    def test_subscription_credits(self, engine):
        engine.grant_subscription_credits("subscriber", 40, reference_id="sub_123")
        balance = engine.get_balance("subscriber")
        assert balance.current_balance == 40

    def test_get_balance_opens_account(self, engine):
        balance = engine.get_balance("brand-new")
        assert balance.current_balance == 0
        assert balance.role == "tradie"

    def test_expire_credits(self, engine, seed_data):
        _age_transaction(
            seed_data["purchase_id"], expires_at=utcnow() - timedelta(days=1)
        )
        expired = engine.expire_credits()

        assert len(expired) == 1
        assert expired[0].credits == 30
        assert engine.get_balance(seed_data["buyer_id"]).current_balance == 0
        # A second run finds nothing left to expire
        assert engine.expire_credits() == []

    def test_find_stuck_pending(self, engine):
        txn = engine.create_purchase("buyer", "starter")
        assert engine.find_stuck_pending() == []

        later = utcnow() + timedelta(minutes=61)
        assert [t.id for t in engine.find_stuck_pending(now=later)] == [txn.id]

    def test_history_newest_first(self, engine, seed_data):
        tradie_id = seed_data["tradie_id"]
        engine.use_credits(tradie_id, "job_application")
        history = engine.get_history(tradie_id)
        assert [t.type for t in history] == ["usage", "bonus"]
        assert engine.get_history(tradie_id, transaction_type="bonus")[0].credits == 20


class TestConfigValidation:

    REQUIRED = ("SECRET_KEY", "DATABASE_URL", "STRIPE_WEBHOOK_SECRET", "STRIPE_SECRET_KEY")

    def _set_env(self, monkeypatch, **values):
        for name in self.REQUIRED + ("STRIPE_INITIATE_CHARGES",):
            monkeypatch.delenv(name, raising=False)
        for name, value in values.items():
            monkeypatch.setenv(name, value)

    def test_missing_vars_reported(self, monkeypatch):
        self._set_env(monkeypatch, SECRET_KEY="s")
        with pytest.raises(RuntimeError, match="DATABASE_URL, STRIPE_WEBHOOK_SECRET"):
            Config.validate()

    def test_charging_requires_api_key(self, monkeypatch):
        self._set_env(monkeypatch, SECRET_KEY="s", DATABASE_URL="sqlite://",
                      STRIPE_WEBHOOK_SECRET="whsec", STRIPE_INITIATE_CHARGES="true")
        with pytest.raises(RuntimeError, match="STRIPE_SECRET_KEY"):
            Config.validate()

    def test_complete_config_passes(self, monkeypatch):
        self._set_env(monkeypatch, SECRET_KEY="s", DATABASE_URL="sqlite://",
                      STRIPE_WEBHOOK_SECRET="whsec")
        Config.validate()


class TestCLI:

    @pytest.fixture
    def runner(self, app):
        return app.test_cli_runner()

    def _dead_letter(self, event_id="evt_dead"):
        record = StripeEvent(
            stripe_event_id=event_id,
            event_type="payment_intent.succeeded",
            payload={},
            processed=False,
            retry_count=5,
            dead_lettered=True,
            requires_review=True,
            last_error="Transaction not found",
        )
        db.session.add(record)
        db.session.commit()
        return record

    def test_retry_webhooks_empty(self, runner):
        result = runner.invoke(args=["retry-webhooks"])
        assert result.exit_code == 0
        assert "Retried 0 event(s)." in result.output

    def test_dead_letters_empty(self, runner):
        result = runner.invoke(args=["dead-letters"])
        assert "No dead-lettered events." in result.output

    def test_dead_letters_listed(self, runner):
        self._dead_letter()
        result = runner.invoke(args=["dead-letters"])
        assert "evt_dead" in result.output
        assert "attempts=5" in result.output

    def test_requeue_dead_letter(self, runner):
        self._dead_letter()
        result = runner.invoke(args=["dead-letters", "--requeue", "evt_dead"])
        assert "Requeued evt_dead." in result.output

        record = StripeEvent.query.filter_by(stripe_event_id="evt_dead").first()
        db.session.refresh(record)
        assert record.dead_lettered is False
        assert record.retry_count == 0

    def test_requeue_unknown_event(self, runner):
        result = runner.invoke(args=["dead-letters", "--requeue", "evt_missing"])
        assert "ERROR: Unknown webhook event evt_missing" in result.output

    def test_stuck_pending(self, runner, engine):
        txn = engine.create_purchase("buyer", "starter")
        _age_transaction(txn.id, created_at=utcnow() - timedelta(hours=2))

        result = runner.invoke(args=["stuck-pending"])
        assert txn.id in result.output
        assert "1 stuck transaction(s)." in result.output

    def test_expire_credits(self, runner, seed_data):
        _age_transaction(
            seed_data["purchase_id"], expires_at=utcnow() - timedelta(days=1)
        )
        result = runner.invoke(args=["expire-credits"])
        assert "Expired 1 lot(s)." in result.output
