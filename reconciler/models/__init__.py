from reconciler.models.failed_payment import FailedPayment
from reconciler.models.inbound_event import InboundEvent, ProcessingState
from reconciler.models.job_lease import JobLease
from reconciler.models.notification_log import NotificationLog
from reconciler.models.subscription import Subscription, SubscriptionStatus

__all__ = [
    "FailedPayment",
    "InboundEvent",
    "JobLease",
    "NotificationLog",
    "ProcessingState",
    "Subscription",
    "SubscriptionStatus",
]
