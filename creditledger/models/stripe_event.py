"""Stripe event model (idempotency + retry table).

Every verified webhook event is recorded by its Stripe event ID before it
is dispatched. A redelivery of a processed event returns the stored
processing_result without touching the ledger. Failed dispatches stay
unprocessed with a retry schedule until they succeed or are dead-lettered.
"""

import uuid

from creditledger.extensions import db
from creditledger.utils import utcnow


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"
    __table_args__ = (
        db.Index(
            "ix_stripe_events_retry_queue",
            "processed",
            "dead_lettered",
            "next_retry_at",
        ),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "payment_intent.succeeded"
    payload = db.Column(db.JSON, default=dict)
    processed = db.Column(db.Boolean, default=False, nullable=False)
    retry_count = db.Column(db.Integer, default=0, nullable=False)
    processing_result = db.Column(db.JSON, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)
    dead_lettered = db.Column(db.Boolean, default=False, nullable=False)
    requires_review = db.Column(db.Boolean, default=False, nullable=False)
    transaction_id = db.Column(db.String(36), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type})>"
