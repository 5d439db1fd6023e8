"""Account balance model.

One row per user. Only ledger_service writes to it, and only with
conditional UPDATE statements so two requests for the same user can never
both spend the same credits.
"""

from creditledger.extensions import db
from creditledger.utils import utcnow


class CreditBalance(db.Model):
    __tablename__ = "credit_balances"
    __table_args__ = (
        db.CheckConstraint(
            "current_balance >= 0", name="ck_credit_balances_non_negative"
        ),
        db.CheckConstraint(
            "reserved_credits >= 0", name="ck_credit_balances_reserved_non_negative"
        ),
    )

    user_id = db.Column(db.String(64), primary_key=True)
    role = db.Column(db.String(32), nullable=False)  # client | tradie | enterprise
    current_balance = db.Column(db.Integer, default=0, nullable=False)
    reserved_credits = db.Column(
        db.Integer, default=0, nullable=False
    )  # held by PENDING usage transactions
    total_purchased = db.Column(db.Integer, default=0, nullable=False)
    total_bonus = db.Column(db.Integer, default=0, nullable=False)  # bonus + trial
    total_refunded = db.Column(db.Integer, default=0, nullable=False)
    total_used = db.Column(db.Integer, default=0, nullable=False)
    total_expired = db.Column(db.Integer, default=0, nullable=False)
    total_reversed = db.Column(
        db.Integer, default=0, nullable=False
    )  # removed by refunds of purchases
    last_purchase_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_usage_at = db.Column(db.DateTime(timezone=True), nullable=True)
    trial_awarded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @property
    def expected_balance(self):
        """Balance implied by the running counters."""
        return (
            self.total_purchased
            + self.total_refunded
            + self.total_bonus
            - self.total_used
            - self.total_expired
            - self.total_reversed
            - self.reserved_credits
        )

    @property
    def is_consistent(self):
        return self.current_balance >= 0 and self.current_balance == self.expected_balance

    def is_low_balance(self, threshold):
        return self.current_balance <= threshold

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "role": self.role,
            "current_balance": self.current_balance,
            "reserved_credits": self.reserved_credits,
            "total_purchased": self.total_purchased,
            "total_bonus": self.total_bonus,
            "total_refunded": self.total_refunded,
            "total_used": self.total_used,
            "total_expired": self.total_expired,
            "total_reversed": self.total_reversed,
            "last_purchase_at": (
                self.last_purchase_at.isoformat() if self.last_purchase_at else None
            ),
            "last_usage_at": (
                self.last_usage_at.isoformat() if self.last_usage_at else None
            ),
        }

    def __repr__(self):
        return f"<CreditBalance {self.user_id} ({self.current_balance})>"
