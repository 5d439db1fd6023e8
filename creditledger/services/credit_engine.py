"""CreditEngine: the operations other parts of the marketplace call.

One instance per app, built from the app config in create_app() and kept
in app.extensions["credit_engine"]. Every public method is one unit of
work: it commits on success and rolls the session back on any error.
The services underneath only flush.
"""

import logging
from contextlib import contextmanager
from decimal import Decimal

import stripe

from creditledger.catalog import PriceCatalog
from creditledger.errors import ValidationError
from creditledger.extensions import db
from creditledger.models.transaction import PURCHASE, USAGE
from creditledger.services import (
    auto_topup_service,
    ledger_service,
    limits_service,
    pricing_service,
    stripe_service,
)
from creditledger.utils import start_of_day, start_of_month, utcnow

logger = logging.getLogger(__name__)


class CreditEngine:
    """Facade over the ledger, pricing, limits, auto-topup and webhook services."""

    def __init__(self, config, catalog=None):
        self.config = config
        self.catalog = catalog or PriceCatalog()

    @classmethod
    def from_config(cls, config, catalog=None):
        return cls(config, catalog=catalog)

    # --- Settings ---

    @property
    def default_role(self):
        return self.config.get("CREDIT_DEFAULT_ROLE", "tradie")

    @property
    def initiates_charges(self):
        return bool(
            self.config.get("STRIPE_INITIATE_CHARGES")
            and self.config.get("STRIPE_SECRET_KEY")
        )

    @contextmanager
    def _unit_of_work(self):
        try:
            yield
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    # ──────────────────────────────────────────────
    # Purchases
    # ──────────────────────────────────────────────

    def quote_purchase(self, package_type, promo_code=None):
        """Price a package without creating anything."""
        return pricing_service.calculate_purchase(
            package_type,
            self.catalog,
            tax_rate=self.config.get("CREDIT_TAX_RATE", "0.10"),
            processing_fee_rate=self.config.get("CREDIT_PROCESSING_FEE_RATE", "0.029"),
            promo_code=promo_code,
            currency=self.config.get("CREDIT_CURRENCY", "AUD"),
        )

    def _validate_purchase(self, balance, calculation, now, check_cooldown=True):
        limits = self.catalog.get_limits_for_role(balance.role)
        user_id = balance.user_id
        last_purchase_at = ledger_service.last_transaction_at(user_id, PURCHASE)
        results = [
            limits_service.validate_purchase_amount(
                calculation.final_amount,
                limits,
                self.config.get("CREDIT_MIN_PURCHASE_AMOUNT", "5.00"),
                self.config.get("CREDIT_MAX_PURCHASE_AMOUNT", "500.00"),
                spent_today=ledger_service.purchase_spend_since(user_id, start_of_day(now)),
                spent_this_month=ledger_service.purchase_spend_since(
                    user_id, start_of_month(now)
                ),
            ),
            limits_service.validate_balance_after_purchase(
                balance.current_balance, calculation.total_credits, limits
            ),
            limits_service.validate_transaction_count(
                limits,
                ledger_service.count_transactions_since(user_id, start_of_day(now)),
                ledger_service.count_transactions_since(user_id, start_of_month(now)),
            ),
        ]
        if check_cooldown:
            results.append(
                limits_service.validate_cooldown(
                    last_purchase_at, limits.cooldown_minutes, now
                )
            )
        limits_service.combine_results(*results).raise_if_invalid()

    def _create_purchase(self, user_id, package_type, promo_code=None, metadata=None,
                         role=None, auto_topup=False):
        now = utcnow()
        balance = ledger_service.ensure_balance(
            user_id, role=role, default_role=self.default_role
        )
        calculation = self.quote_purchase(package_type, promo_code)
        self._validate_purchase(balance, calculation, now, check_cooldown=not auto_topup)

        package = self.catalog.get_package(package_type)
        purchase_metadata = dict(metadata or {})
        purchase_metadata.update({
            "package_type": calculation.package_type,
            "credits_amount": calculation.credits_amount,
            "bonus_credits": calculation.bonus_credits,
            "base_price": str(calculation.base_price),
            "discount": str(calculation.discount),
            "tax": str(calculation.tax),
            "processing_fee": str(calculation.processing_fee),
            "promo_code": calculation.promo_code,
            "auto_topup": auto_topup,
        })
        return ledger_service.apply_transaction(
            user_id,
            PURCHASE,
            calculation.total_credits,
            description=f"{package.name} ({calculation.total_credits} credits)",
            metadata=purchase_metadata,
            amount=calculation.final_amount,
            currency=calculation.currency,
            expires_at=pricing_service.calculate_credit_expiry(now, package),
            default_role=self.default_role,
        )

    def _initiate_charge(self, txn, payment_method_id=None, off_session=False):
        """Start the gateway charge. A rejected charge fails the transaction."""
        try:
            intent = stripe_service.create_payment_intent(
                txn,
                self.config["STRIPE_SECRET_KEY"],
                payment_method_id=payment_method_id,
                off_session=off_session,
            )
        except stripe.StripeError as e:
            logger.warning(f"Charge for transaction {txn.id} rejected: {e}")
            ledger_service.fail_transaction(txn.id, str(e))
            return None
        txn.gateway_reference = intent.id
        db.session.flush()
        return intent

    def create_purchase(self, user_id, package_type, promo_code=None,
                        payment_method_id=None, metadata=None, role=None):
        """Create a PENDING purchase; the balance moves when the webhook confirms.

        Raises:
            ValidationError: Unknown package, bad promo code or a limit hit,
                             or the gateway rejected the charge.
        """
        with self._unit_of_work():
            txn = self._create_purchase(
                user_id, package_type, promo_code=promo_code,
                metadata=metadata, role=role,
            )
            if self.initiates_charges and self._initiate_charge(txn, payment_method_id) is None:
                db.session.commit()
                raise ValidationError(
                    "The payment could not be started",
                    suggested_action="Check your payment details and try again.",
                    transaction_id=txn.id,
                )
        return txn

    # ──────────────────────────────────────────────
    # Usage & refunds
    # ──────────────────────────────────────────────

    def use_credits(self, user_id, usage_type, reference_id=None, reference_type=None,
                    credits=None, hold=False, metadata=None):
        """Spend the configured cost of ``usage_type``.

        Raises:
            ValidationError: Unknown or disabled usage, wrong amount, limit hit.
            InsufficientBalance: The balance does not cover the cost.
        """
        with self._unit_of_work():
            now = utcnow()
            balance = ledger_service.ensure_balance(user_id, default_role=self.default_role)
            limits = self.catalog.get_limits_for_role(balance.role)
            usage_cost = self.catalog.get_usage_cost(usage_type)

            cost_result = limits_service.validate_usage_cost(
                usage_cost, credits if credits is not None else getattr(
                    usage_cost, "credits_required", 0
                )
            )
            cost_result.raise_if_invalid()
            credits = usage_cost.credits_required

            limits_service.combine_results(
                limits_service.validate_transaction_amount(
                    credits,
                    self.config.get("CREDIT_MIN_CREDITS_USAGE", 1),
                    self.config.get("CREDIT_MAX_CREDITS_USAGE", 50),
                ),
                limits_service.validate_usage_limit(
                    usage_cost,
                    ledger_service.usage_count_since(user_id, usage_type, start_of_day(now)),
                    ledger_service.usage_count_since(user_id, usage_type, start_of_month(now)),
                ),
                limits_service.validate_transaction_count(
                    limits,
                    ledger_service.count_transactions_since(user_id, start_of_day(now)),
                    ledger_service.count_transactions_since(user_id, start_of_month(now)),
                ),
            ).raise_if_invalid()

            txn = ledger_service.apply_transaction(
                user_id,
                USAGE,
                credits,
                description=usage_cost.name,
                reference_id=reference_id,
                reference_type=reference_type,
                usage_type=usage_type,
                metadata=metadata,
                hold=hold,
                default_role=self.default_role,
            )

        self._after_usage(user_id)
        return txn

    def _after_usage(self, user_id):
        """Evaluate auto-topup once a usage has committed."""
        if auto_topup_service.get_policy(user_id) is None:
            return
        try:
            self.run_auto_topup(user_id)
        except Exception as e:
            # The usage already succeeded; a topup problem must not undo it
            logger.error(f"Auto-topup after usage failed for user {user_id}: {e}",
                         exc_info=True)

    def complete_usage(self, transaction_id):
        with self._unit_of_work():
            return ledger_service.complete_transaction(transaction_id)

    def release_usage(self, transaction_id, reason=None):
        with self._unit_of_work():
            return ledger_service.cancel_transaction(transaction_id, reason)

    def refund(self, transaction_id, amount=None, reason=None, full_refund=False):
        """Refund a completed usage (credits back) or purchase (money back).

        ``amount`` is in credits. A purchase refund must pass the single
        eligibility rule and stays PENDING until charge.refunded arrives.
        Money is pro rata on the credits refunded; the refund that takes
        the last credits (or ``full_refund``) returns what is left of the
        price.

        Raises:
            TransactionNotFound / ValidationError
        """
        with self._unit_of_work():
            original = ledger_service.get_transaction(transaction_id)
            if original.type != PURCHASE:
                return ledger_service.reverse_transaction(
                    transaction_id, amount, reason=reason
                )

            balance = ledger_service.get_balance(original.user_id, self.default_role)
            reversed_credits, refunded_amount = ledger_service.refund_totals(original.id)
            # Credits a completed refund already took back were not spent
            consumed = max(
                0, original.credits - reversed_credits - balance.current_balance
            )
            limits_service.validate_refund_eligibility(
                original.completed_at or original.created_at,
                original.credits,
                consumed,
                self.config.get("REFUND_WINDOW_DAYS", 30),
                self.config.get("REFUND_MAX_USED_PERCENTAGE", 0),
            ).raise_if_invalid()

            credits = amount if amount is not None else original.refundable_credits
            money = pricing_service.calculate_refund_amount(
                original.amount or Decimal("0"),
                credits,
                original.credits,
                already_refunded=refunded_amount,
                final=full_refund or credits == original.refundable_credits,
            )

            refund_txn = ledger_service.reverse_transaction(
                transaction_id, credits, reason=reason, amount=money
            )
            if self.initiates_charges and original.gateway_reference:
                try:
                    refund = stripe_service.create_refund(
                        refund_txn, original.gateway_reference,
                        self.config["STRIPE_SECRET_KEY"],
                    )
                except stripe.StripeError as e:
                    # Nothing was refunded, so the REFUND row is rolled back too
                    logger.warning(f"Stripe refund for {original.id} rejected: {e}")
                    raise ValidationError(
                        "The refund could not be started",
                        suggested_action="Try again later or contact support.",
                    ) from e
                refund_txn.gateway_reference = refund.id
                db.session.flush()
        return refund_txn

    # ──────────────────────────────────────────────
    # Grants & reads
    # ──────────────────────────────────────────────

    def grant_bonus(self, user_id, credits, description=None, metadata=None):
        with self._unit_of_work():
            return ledger_service.grant_bonus(
                user_id, credits, description=description, metadata=metadata,
                default_role=self.default_role,
            )

    def grant_subscription_credits(self, user_id, credits, reference_id=None):
        with self._unit_of_work():
            return ledger_service.grant_subscription_credits(
                user_id, credits, reference_id=reference_id,
                default_role=self.default_role,
            )

    def award_trial_credits(self, user_id):
        with self._unit_of_work():
            return ledger_service.award_trial_credits(
                user_id, self.config.get("CREDIT_TRIAL_AMOUNT", 3),
                default_role=self.default_role,
            )

    def get_balance(self, user_id):
        with self._unit_of_work():
            return ledger_service.get_balance(user_id, self.default_role)

    def get_history(self, user_id, **filters):
        return ledger_service.get_history(user_id, **filters)

    def verify_balance(self, user_id):
        return ledger_service.verify_balance(user_id)

    # ──────────────────────────────────────────────
    # Webhooks
    # ──────────────────────────────────────────────

    def handle_webhook(self, payload, signature):
        """Verify and reconcile one gateway notification.

        Raises:
            InvalidSignature / InvalidEventFormat: rejected, nothing stored.
        """
        try:
            return stripe_service.process_webhook(payload, signature, self.config)
        except Exception:
            db.session.rollback()
            raise

    def retry_webhooks(self, now=None, limit=100):
        return stripe_service.retry_pending_events(self.config, now=now, limit=limit)

    def requeue_webhook(self, stripe_event_id):
        with self._unit_of_work():
            return stripe_service.requeue_event(stripe_event_id)

    # ──────────────────────────────────────────────
    # Auto-topup
    # ──────────────────────────────────────────────

    def configure_auto_topup(self, user_id, trigger_balance, topup_amount,
                             package_type=None, payment_method_id=None, enable=True):
        with self._unit_of_work():
            balance = ledger_service.ensure_balance(user_id, default_role=self.default_role)
            return auto_topup_service.configure_policy(
                user_id, trigger_balance, topup_amount, self.catalog,
                limits=self.catalog.get_limits_for_role(balance.role),
                package_type=package_type,
                payment_method_id=payment_method_id,
                enable=enable,
            )

    def enable_auto_topup(self, user_id):
        with self._unit_of_work():
            return auto_topup_service.enable_policy(user_id)

    def disable_auto_topup(self, user_id):
        with self._unit_of_work():
            return auto_topup_service.disable_policy(user_id)

    def update_payment_method(self, user_id, payment_method_id):
        with self._unit_of_work():
            return auto_topup_service.update_payment_method(user_id, payment_method_id)

    def _evaluate(self, user_id, now=None):
        balance = ledger_service.get_balance(user_id, self.default_role)
        policy = auto_topup_service.get_policy(user_id)
        return policy, auto_topup_service.evaluate(
            policy,
            user_id,
            balance.current_balance,
            cooldown_hours=self.config.get("AUTO_TOPUP_COOLDOWN_HOURS", 1),
            backoff_base=self.config.get("AUTO_TOPUP_BACKOFF_BASE", 2),
            max_delay_hours=self.config.get("AUTO_TOPUP_MAX_RETRY_DELAY_HOURS", 168),
            now=now,
        )

    def evaluate_auto_topup(self, user_id, now=None):
        with self._unit_of_work():
            _, decision = self._evaluate(user_id, now)
        return decision

    def run_auto_topup(self, user_id, now=None):
        """Evaluate and, on a trigger, start the topup purchase.

        Returns the TopupDecision; a triggered one carries the PENDING
        purchase's transaction_id.
        """
        with self._unit_of_work():
            policy, decision = self._evaluate(user_id, now)
            if not decision.trigger:
                return decision

            try:
                txn = self._create_purchase(
                    user_id, policy.package_type,
                    metadata={"auto_topup_policy": policy.id},
                    auto_topup=True,
                )
            except ValidationError as e:
                logger.warning(f"Auto-topup purchase for user {user_id} rejected: {e.message}")
                return auto_topup_service.TopupDecision(
                    user_id, False, "purchase_rejected", decision.current_balance
                )

            auto_topup_service.begin_topup(policy, txn.id, now)
            logger.info(f"Auto-topup triggered for user {user_id}: transaction {txn.id}")

            if self.initiates_charges and policy.payment_method_id:
                if self._initiate_charge(txn, policy.payment_method_id, off_session=True) is None:
                    auto_topup_service.record_failure(
                        policy, "charge rejected",
                        self.config.get("AUTO_TOPUP_MAX_FAILURES", 3), now,
                    )

            return auto_topup_service.TopupDecision(
                user_id, True, decision.reason, decision.current_balance,
                transaction_id=txn.id,
            )

    # ──────────────────────────────────────────────
    # Sweeps
    # ──────────────────────────────────────────────

    def expire_credits(self, now=None):
        with self._unit_of_work():
            return ledger_service.expire_credits(now=now)

    def find_stuck_pending(self, now=None):
        return ledger_service.find_stuck_pending(
            self.config.get("STUCK_PENDING_MINUTES", 60), now=now
        )
