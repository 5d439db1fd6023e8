"""Auto-topup policy model.

At most one per user. PROCESSING marks a topup purchase in flight, which
blocks further triggers until the purchase's webhook resolves it.
"""

import uuid

from creditledger.extensions import db
from creditledger.utils import utcnow

ENABLED = "enabled"
DISABLED = "disabled"
SUSPENDED = "suspended"
PROCESSING = "processing"


class AutoTopupPolicy(db.Model):
    __tablename__ = "auto_topup_policies"

    STATUSES = [ENABLED, DISABLED, SUSPENDED, PROCESSING]

    # -- Valid status transitions (enforced in auto_topup_service) --
    VALID_TRANSITIONS = {
        ENABLED: [DISABLED, SUSPENDED, PROCESSING],
        DISABLED: [ENABLED],
        SUSPENDED: [ENABLED, DISABLED],
        PROCESSING: [ENABLED, SUSPENDED, DISABLED],
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(db.String(64), unique=True, nullable=False)
    status = db.Column(
        db.String(32), default=DISABLED, nullable=False
    )  # enabled | disabled | suspended | processing
    trigger_balance = db.Column(db.Integer, nullable=False)
    topup_amount = db.Column(db.Integer, nullable=False)  # credits wanted per topup
    package_type = db.Column(db.String(32), nullable=False)
    payment_method_id = db.Column(db.String(255), nullable=True)  # e.g. "pm_..."
    failure_count = db.Column(db.Integer, default=0, nullable=False)
    last_triggered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_failure_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_failure_reason = db.Column(db.Text, nullable=True)
    pending_transaction_id = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "status": self.status,
            "trigger_balance": self.trigger_balance,
            "topup_amount": self.topup_amount,
            "package_type": self.package_type,
            "payment_method_id": self.payment_method_id,
            "failure_count": self.failure_count,
            "last_triggered_at": (
                self.last_triggered_at.isoformat() if self.last_triggered_at else None
            ),
        }

    def __repr__(self):
        return f"<AutoTopupPolicy {self.user_id} ({self.status})>"
