import uuid
from datetime import datetime

from reconciler.extensions import db


class FailedPayment(db.Model):
    """A payment the processor could not collect, tracked until resolved or abandoned."""
    __tablename__ = "failed_payments"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    customer_id = db.Column(db.String(255), nullable=False, index=True)
    subscription_id = db.Column(
        db.String(255), db.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Invoice or payment intent id passed back to the processor on retry
    payment_reference = db.Column(db.String(255), nullable=True, index=True)
    # Billing period the failure belongs to; one open record per period
    period_end = db.Column(db.DateTime, nullable=True)

    amount = db.Column(db.BigInteger, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="usd")
    failure_code = db.Column(db.String(100), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)

    retry_count = db.Column(db.Integer, nullable=False, default=0)
    next_retry_at = db.Column(db.DateTime, nullable=True, index=True)
    last_attempt_at = db.Column(db.DateTime, nullable=True)
    resolved = db.Column(db.Boolean, nullable=False, default=False, index=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    subscription = db.relationship("Subscription", backref=db.backref("failed_payments", lazy="dynamic"))

    __table_args__ = (
        db.CheckConstraint("retry_count >= 0", name="non_negative_payment_retry_count"),
        db.Index("idx_failed_payment_due", "resolved", "next_retry_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "subscription_id": self.subscription_id,
            "payment_reference": self.payment_reference,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "amount": self.amount,
            "currency": self.currency,
            "failure_code": self.failure_code,
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<FailedPayment {self.id} retries={self.retry_count} resolved={self.resolved}>"
