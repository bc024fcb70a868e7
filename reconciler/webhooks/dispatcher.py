"""
Event dispatcher: routes stored events to their handlers and owns the
pending -> processed / failed lifecycle of every ``InboundEvent``.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from flask import current_app

from reconciler.extensions import db
from reconciler.metrics import get_metrics
from reconciler.models.inbound_event import InboundEvent, ProcessingState
from reconciler.utils.leases import job_lease
from reconciler.webhooks.store import EventStore

logger = logging.getLogger(__name__)

RETRY_LEASE = "retry_failed_events"


@dataclass
class HandlerContext:
    event_id: str
    event_type: str
    received_at: datetime
    now: datetime


@dataclass
class DispatchOutcome:
    event_id: str
    state: str
    handled: bool = False
    error: Optional[str] = None


@dataclass
class ReplayResult:
    event_id: str
    replayed: bool
    reason: Optional[str] = None
    outcome: Optional[DispatchOutcome] = None


@dataclass
class EventRetryResult:
    attempted: int = 0
    processed: int = 0
    failed: int = 0
    skipped: bool = False
    stopped: bool = False


Handler = Callable[[Dict[str, Any], HandlerContext], None]


def subscription_id_of(event: Dict[str, Any]) -> Optional[str]:
    """Best-effort subscription reference carried by an event."""
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        return None
    if obj.get("object") == "subscription":
        return obj.get("id")
    subscription = obj.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    if subscription:
        return subscription
    details = ((obj.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


class EventDispatcher:
    """Registry of ``event type -> handler`` plus the processing rules around it."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register(self, event_type: str):
        def decorator(func: Handler) -> Handler:
            if event_type in self._handlers:
                raise ValueError(f"Handler already registered for {event_type}")
            self._handlers[event_type] = func
            return func
        return decorator

    def handler_for(self, event_type: str) -> Optional[Handler]:
        return self._handlers.get(event_type)

    @property
    def event_types(self):
        return sorted(self._handlers)

    def dispatch(self, record: InboundEvent, now: Optional[datetime] = None) -> DispatchOutcome:
        """
        Run the handler for a stored event and record the outcome.

        Handler exceptions are caught here: the session is rolled back and
        the event is marked failed. Nothing propagates to the caller.
        """
        now = now or datetime.utcnow()
        event_id = record.id
        event_type = record.type
        metrics = get_metrics()

        if record.is_processed:
            logger.info("Event already processed, not dispatching", extra={"event_id": event_id})
            return DispatchOutcome(event_id, ProcessingState.PROCESSED)

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("No handler for event type, acknowledging", extra={"event_id": event_id, "event_type": event_type})
            EventStore.mark_processed(event_id, now)
            metrics.record_dispatch(event_type, "unhandled")
            return DispatchOutcome(event_id, ProcessingState.PROCESSED)

        context = HandlerContext(event_id, event_type, record.received_at, now)
        try:
            handler(record.data, context)
        except Exception as e:
            db.session.rollback()
            logger.error(
                f"Handler failed for {event_type}: {e}",
                extra={"event_id": event_id, "event_type": event_type},
                exc_info=True,
            )
            EventStore.mark_failed(event_id, e, now)
            metrics.record_dispatch(event_type, "failed")
            return DispatchOutcome(event_id, ProcessingState.FAILED, handled=True, error=str(e))

        EventStore.mark_processed(event_id, now)
        metrics.record_dispatch(event_type, "processed")
        logger.info("Event processed", extra={"event_id": event_id, "event_type": event_type})
        return DispatchOutcome(event_id, ProcessingState.PROCESSED, handled=True)

    def dispatch_by_id(self, event_id: str, now: Optional[datetime] = None) -> Optional[DispatchOutcome]:
        record = EventStore.get(event_id)
        if record is None:
            logger.warning("Asked to dispatch unknown event", extra={"event_id": event_id})
            return None
        return self.dispatch(record, now)

    def replay(self, event_id: str, now: Optional[datetime] = None) -> ReplayResult:
        """Operator re-run of a non-processed event. Unknown ids raise EventNotFound."""
        record = EventStore.get_or_404(event_id)
        if record.is_processed:
            return ReplayResult(event_id, replayed=False, reason="already_processed")

        record = EventStore.reset_for_replay(event_id)
        logger.info("Replaying event", extra={"event_id": event_id, "event_type": record.type})
        outcome = self.dispatch(record, now)
        return ReplayResult(event_id, replayed=True, outcome=outcome)

    def retry_failed(self, now: datetime, *, should_stop: Optional[Callable[[], bool]] = None) -> EventRetryResult:
        """Re-dispatch failed events still inside their budget, and pending ones nobody picked up."""
        config = current_app.config
        metrics = get_metrics()
        result = EventRetryResult()

        with job_lease(RETRY_LEASE) as acquired:
            if not acquired:
                result.skipped = True
                metrics.record_job(RETRY_LEASE, "skipped")
                return result

            event_ids = [
                record.id
                for record in EventStore.list_retryable(
                    now,
                    max_attempts=config.get("EVENT_MAX_ATTEMPTS", 3),
                    window_hours=config.get("EVENT_RETRY_WINDOW_HOURS", 24),
                    pending_grace_seconds=config.get("EVENT_PENDING_GRACE_SECONDS", 300),
                    limit=config.get("EVENT_RETRY_BATCH_SIZE", 100),
                )
            ]
            db.session.commit()

            for event_id in event_ids:
                if should_stop is not None and should_stop():
                    result.stopped = True
                    break

                outcome = self.dispatch_by_id(event_id, now)
                if outcome is None:
                    continue
                result.attempted += 1
                if outcome.state == ProcessingState.PROCESSED:
                    result.processed += 1
                else:
                    result.failed += 1

        metrics.record_job(RETRY_LEASE, "stopped" if result.stopped else "completed")
        logger.info(
            "Event retry sweep finished",
            extra={"attempted": result.attempted, "processed": result.processed, "failed": result.failed},
        )
        return result


dispatcher = EventDispatcher()
