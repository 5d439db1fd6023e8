"""Audit event model.

Logs significant ledger actions (refunds, disputes, dead-lettered events,
reconciliation problems, auto-topup suspensions) for operators.
"""

import uuid

from creditledger.extensions import db
from creditledger.utils import utcnow


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(db.String(64), nullable=True, index=True)
    action = db.Column(db.String(255), nullable=False)  # e.g. "refund.created"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid the declarative attribute clash
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
