"""
Event Store: durable, idempotent record of every inbound notification.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError

from reconciler.errors import EventNotFound
from reconciler.extensions import db
from reconciler.models.inbound_event import InboundEvent, ProcessingState

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


@dataclass
class RecordResult:
    is_new: bool
    record: InboundEvent


class EventStore:
    """All reads and writes of ``InboundEvent`` rows go through here."""

    @staticmethod
    def record_if_new(event_id, event_type, raw_payload, received_at=None, subscription_id=None):
        """
        Atomically insert the event unless a row with the same id exists.

        The row is committed before returning, so the caller may acknowledge
        receipt as soon as this returns.
        """
        existing = db.session.get(InboundEvent, event_id)
        if existing is not None:
            logger.info(
                "Duplicate event delivery absorbed",
                extra={"event_id": event_id, "processing_state": existing.processing_state},
            )
            return RecordResult(is_new=False, record=existing)

        if isinstance(raw_payload, bytes):
            raw_payload = raw_payload.decode("utf-8")

        record = InboundEvent(
            id=event_id,
            type=event_type,
            payload=raw_payload,
            subscription_id=subscription_id,
            received_at=received_at or datetime.utcnow(),
            processing_state=ProcessingState.PENDING,
            retry_count=0,
        )
        db.session.add(record)

        try:
            db.session.commit()
        except IntegrityError:
            # Another delivery of the same id won the insert
            db.session.rollback()
            existing = db.session.get(InboundEvent, event_id)
            if existing is None:
                raise
            logger.info(
                "Duplicate event delivery absorbed",
                extra={"event_id": event_id, "processing_state": existing.processing_state},
            )
            return RecordResult(is_new=False, record=existing)

        logger.info("Event recorded", extra={"event_id": event_id, "event_type": event_type})
        return RecordResult(is_new=True, record=record)

    @staticmethod
    def get(event_id):
        return db.session.get(InboundEvent, event_id)

    @staticmethod
    def get_or_404(event_id):
        record = db.session.get(InboundEvent, event_id)
        if record is None:
            raise EventNotFound(f"Event {event_id} not found")
        return record

    @staticmethod
    def mark_processed(event_id, now=None):
        record = EventStore.get_or_404(event_id)
        record.processing_state = ProcessingState.PROCESSED
        record.processed_at = now or datetime.utcnow()
        record.last_error = None
        db.session.commit()
        return record

    @staticmethod
    def mark_failed(event_id, error, now=None):
        record = EventStore.get_or_404(event_id)
        record.processing_state = ProcessingState.FAILED
        record.last_error = str(error)[:MAX_ERROR_LENGTH]
        record.retry_count = (record.retry_count or 0) + 1
        db.session.commit()
        logger.warning(
            "Event processing failed",
            extra={"event_id": event_id, "retry_count": record.retry_count, "error": record.last_error},
        )
        return record

    @staticmethod
    def reset_for_replay(event_id):
        record = EventStore.get_or_404(event_id)
        record.processing_state = ProcessingState.PENDING
        record.last_error = None
        record.retry_count = 0
        db.session.commit()
        return record

    @staticmethod
    def list_retryable(now, max_attempts, window_hours, pending_grace_seconds, limit):
        """
        Failed events still inside their retry budget and window, plus events
        left pending longer than the grace period (lost dispatches).
        """
        window_start = now - timedelta(hours=window_hours)
        pending_cutoff = now - timedelta(seconds=pending_grace_seconds)

        return (
            InboundEvent.query
            .filter(
                or_(
                    and_(
                        InboundEvent.processing_state == ProcessingState.FAILED,
                        InboundEvent.retry_count < max_attempts,
                        InboundEvent.received_at >= window_start,
                    ),
                    and_(
                        InboundEvent.processing_state == ProcessingState.PENDING,
                        InboundEvent.received_at <= pending_cutoff,
                    ),
                )
            )
            .order_by(InboundEvent.received_at.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def list_failed(limit=100, offset=0):
        """The operator backlog of events that did not process."""
        return (
            InboundEvent.query
            .filter(InboundEvent.processing_state == ProcessingState.FAILED)
            .order_by(InboundEvent.received_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    @staticmethod
    def counts_by_state():
        rows = (
            db.session.query(InboundEvent.processing_state, func.count(InboundEvent.id))
            .group_by(InboundEvent.processing_state)
            .all()
        )
        counts = {state: 0 for state in ProcessingState.ALL}
        counts.update({state: count for state, count in rows})
        return counts
