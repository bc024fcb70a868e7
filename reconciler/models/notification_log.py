from datetime import datetime

from reconciler.extensions import db


class NotificationLog(db.Model):
    """One row per (subscription, notification type, calendar day) actually claimed."""
    __tablename__ = "notification_logs"

    id = db.Column(db.Integer, primary_key=True)
    subscription_id = db.Column(db.String(255), nullable=False, index=True)
    notification_type = db.Column(db.String(50), nullable=False)
    sent_date = db.Column(db.Date, nullable=False)
    details = db.Column("metadata", db.JSON, nullable=True, default=dict)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint(
            "subscription_id", "notification_type", "sent_date", name="uq_notification_per_day"
        ),
    )

    def __repr__(self):
        return f"<NotificationLog {self.subscription_id} {self.notification_type} {self.sent_date}>"
