"""Credit transaction model (append-only ledger).

One row per ledger event. Rows are never deleted; a refund or expiry is a
new row pointing at the transaction it offsets. Status transitions are
enforced by ledger_service via VALID_TRANSITIONS.
"""

import uuid

from creditledger.extensions import db
from creditledger.utils import utcnow

# -- Types --
PURCHASE = "purchase"
USAGE = "usage"
REFUND = "refund"
BONUS = "bonus"
TRIAL = "trial"
SUBSCRIPTION = "subscription"
EXPIRY = "expiry"

# -- Statuses --
PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

# -- Balance direction --
CREDIT = "credit"
DEBIT = "debit"


class CreditTransaction(db.Model):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        db.Index("ix_credit_transactions_user_created", "user_id", "created_at"),
        db.CheckConstraint("credits > 0", name="ck_credit_transactions_positive"),
    )

    TYPES = [PURCHASE, USAGE, REFUND, BONUS, TRIAL, SUBSCRIPTION, EXPIRY]
    STATUSES = [PENDING, COMPLETED, FAILED, CANCELLED]

    # -- Valid status transitions (enforced in ledger_service) --
    VALID_TRANSITIONS = {
        PENDING: [COMPLETED, FAILED, CANCELLED],
    }

    # -- Direction by type; REFUND takes the opposite of what it reverses --
    DIRECTIONS = {
        PURCHASE: CREDIT,
        BONUS: CREDIT,
        TRIAL: CREDIT,
        SUBSCRIPTION: CREDIT,
        USAGE: DEBIT,
        EXPIRY: DEBIT,
    }

    # -- Types awaiting an external confirmation before completing --
    EXTERNALLY_CONFIRMED = [PURCHASE, REFUND]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(db.String(64), nullable=False, index=True)
    type = db.Column(
        db.String(32), nullable=False
    )  # purchase | usage | refund | bonus | trial | subscription | expiry
    direction = db.Column(db.String(16), nullable=False)  # credit | debit
    credits = db.Column(db.Integer, nullable=False)
    applied_credits = db.Column(
        db.Integer, nullable=True
    )  # what actually moved; lower than credits when a debit was clamped at zero
    status = db.Column(
        db.String(32), default=PENDING, nullable=False, index=True
    )  # pending | completed | failed | cancelled
    amount = db.Column(db.Numeric(10, 2), nullable=True)  # money, purchases and refunds
    currency = db.Column(db.String(3), nullable=True)
    usage_type = db.Column(db.String(64), nullable=True)  # e.g. "job_application"
    description = db.Column(db.Text, nullable=True)
    reference_id = db.Column(db.String(255), nullable=True)
    reference_type = db.Column(db.String(64), nullable=True)
    gateway_reference = db.Column(
        db.String(255), nullable=True, index=True
    )  # e.g. Stripe PaymentIntent "pi_..."
    original_transaction_id = db.Column(
        db.String(36), db.ForeignKey("credit_transactions.id"), nullable=True
    )
    balance_applied = db.Column(db.Boolean, default=False, nullable=False)
    refunded_credits = db.Column(
        db.Integer, default=0, nullable=False
    )  # claimed by REFUND rows against this one
    expiry_processed = db.Column(db.Boolean, default=False, nullable=False)
    failure_reason = db.Column(db.Text, nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # sanitized, named metadata_ to avoid the declarative attribute clash
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Relationships ---
    original = db.relationship("CreditTransaction", remote_side=[id])

    @property
    def is_terminal(self):
        return self.status in (COMPLETED, FAILED, CANCELLED)

    @property
    def is_credit(self):
        return self.direction == CREDIT

    @property
    def effective_credits(self):
        if self.applied_credits is not None:
            return self.applied_credits
        return self.credits

    @property
    def refundable_credits(self):
        return self.effective_credits - (self.refunded_credits or 0)

    @property
    def signed_credits(self):
        """Balance delta of this row once completed."""
        if self.is_credit:
            return self.effective_credits
        return -self.effective_credits

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "direction": self.direction,
            "credits": self.credits,
            "applied_credits": self.applied_credits,
            "status": self.status,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "usage_type": self.usage_type,
            "description": self.description,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "gateway_reference": self.gateway_reference,
            "original_transaction_id": self.original_transaction_id,
            "failure_reason": self.failure_reason,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "metadata": self.metadata_ or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f"<CreditTransaction {self.type} {self.credits} ({self.status})>"
