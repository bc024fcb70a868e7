# subscription.py
from datetime import datetime

from sqlalchemy import CheckConstraint, Index

from reconciler.extensions import db


class SubscriptionStatus:
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"

    ALL = (TRIALING, ACTIVE, PAST_DUE, UNPAID, CANCELED, INCOMPLETE, INCOMPLETE_EXPIRED)
    TERMINAL = (CANCELED, INCOMPLETE_EXPIRED)
    # At most one subscription per customer may sit in these at once
    LIVE = (ACTIVE, TRIALING, PAST_DUE)


class Subscription(db.Model):
    __tablename__ = "subscriptions"

    # Processor subscription id
    id = db.Column(db.String(255), primary_key=True)
    customer_id = db.Column(db.String(255), nullable=False, index=True)
    customer_email = db.Column(db.String(255), nullable=True)
    plan_id = db.Column(db.String(255), nullable=True, index=True)

    status = db.Column(db.String(50), nullable=False, index=True)

    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)
    trial_end = db.Column(db.DateTime, nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, default=False)
    canceled_at = db.Column(db.DateTime, nullable=True)

    # Payment reference handed to the processor when collection is retried
    latest_invoice_id = db.Column(db.String(255), nullable=True)
    amount = db.Column(db.BigInteger, nullable=True)  # Plan amount in minor units
    currency = db.Column(db.String(3), nullable=False, default="usd")

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(
        db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'past_due', 'canceled', 'incomplete', "
            "'incomplete_expired', 'trialing', 'unpaid')",
            name="valid_subscription_status",
        ),
        CheckConstraint(
            "current_period_end IS NULL OR current_period_start IS NULL "
            "OR current_period_end >= current_period_start",
            name="valid_period_range",
        ),
        Index("idx_customer_status", "customer_id", "status"),
        Index("idx_period_end_status", "current_period_end", "status"),
    )

    @property
    def is_terminal(self):
        return self.status in SubscriptionStatus.TERMINAL

    @property
    def recipient(self):
        """Where customer notifications for this subscription go."""
        return self.customer_email or self.customer_id

    def days_past_due(self, now):
        """Whole days elapsed since the current period ended."""
        if not self.current_period_end:
            return None
        return (now - self.current_period_end).days

    def to_dict(self):
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "trial_end": self.trial_end.isoformat() if self.trial_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
            "canceled_at": self.canceled_at.isoformat() if self.canceled_at else None,
            "latest_invoice_id": self.latest_invoice_id,
            "amount": self.amount,
            "currency": self.currency,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Subscription {self.id} {self.status}>"
