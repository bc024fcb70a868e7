"""
Durable record of every processor notification, keyed by the sender's event id.
"""
import json
from datetime import datetime

from reconciler.extensions import db


class ProcessingState:
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"

    ALL = (PENDING, PROCESSED, FAILED)


class InboundEvent(db.Model):
    """Track inbound webhook events for idempotency and replay"""
    __tablename__ = "inbound_events"

    # Sender-assigned id; the primary key is the dedup constraint
    id = db.Column(db.String(255), primary_key=True)
    type = db.Column(db.String(100), nullable=False, index=True)

    # Raw request body, exactly as received
    payload = db.Column(db.Text, nullable=False)

    subscription_id = db.Column(db.String(255), nullable=True, index=True)

    received_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processing_state = db.Column(
        db.String(20), nullable=False, default=ProcessingState.PENDING, index=True
    )
    processed_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.CheckConstraint(
            "processing_state IN ('pending', 'processed', 'failed')",
            name="valid_processing_state",
        ),
        db.CheckConstraint("retry_count >= 0", name="non_negative_event_retry_count"),
        db.Index("idx_event_state_received", "processing_state", "received_at"),
    )

    @property
    def data(self):
        """Parsed payload document."""
        return json.loads(self.payload)

    @property
    def is_processed(self):
        return self.processing_state == ProcessingState.PROCESSED

    def to_dict(self, include_payload=False):
        data = {
            "id": self.id,
            "type": self.type,
            "subscription_id": self.subscription_id,
            "processing_state": self.processing_state,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "last_error": self.last_error,
            "retry_count": self.retry_count,
        }
        if include_payload:
            data["payload"] = self.data
        return data

    def __repr__(self):
        return f"<InboundEvent {self.id} {self.type} {self.processing_state}>"
