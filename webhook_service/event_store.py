"""
Webhook Event Store
Durable log of every authenticated webhook and its processing state.

    received -> processing -> processed | failed
    failed   -> processing               (retry)
    processing -> processing             (retry of an abandoned event)

Transitions are compare-and-set UPDATEs on the status column, so two workers
can never both move the same event forward.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from common.error_handling import EventNotFoundError, InvalidStateTransitionError
from common.schemas import WebhookStatus
from ledger_service.models import WebhookEvent, utcnow

logger = logging.getLogger(__name__)

RECEIVED = WebhookStatus.RECEIVED.value
PROCESSING = WebhookStatus.PROCESSING.value
PROCESSED = WebhookStatus.PROCESSED.value
FAILED = WebhookStatus.FAILED.value


class WebhookEventStore:

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def record(
        self,
        provider: str,
        provider_event_id: str,
        event_type: str,
        payload: Dict[str, Any],
        raw_body: bytes = b"",
        session: Optional[Session] = None,
    ) -> WebhookEvent:
        """Persist a new event in `received`. With a caller session the row is flushed, not committed."""
        event = WebhookEvent(
            provider=provider,
            provider_event_id=provider_event_id,
            event_type=event_type,
            payload=payload,
            raw_body=raw_body.decode("utf-8", errors="replace"),
            status=RECEIVED,
            processed=False,
            retry_count=0,
        )
        if session is not None:
            session.add(event)
            session.flush()
            return event
        with self.session_factory() as db:
            db.add(event)
            db.commit()
            return event

    def get(self, event_id: str) -> WebhookEvent:
        with self.session_factory() as db:
            event = db.get(WebhookEvent, event_id)
            if event is None:
                raise EventNotFoundError(event_id)
            return event

    def list(
        self,
        status: Optional[str] = None,
        provider: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[WebhookEvent]:
        with self.session_factory() as db:
            query = select(WebhookEvent).order_by(WebhookEvent.received_at.desc(), WebhookEvent.id)
            if status:
                query = query.where(WebhookEvent.status == status)
            if provider:
                query = query.where(WebhookEvent.provider == provider)
            return list(db.execute(query.limit(limit).offset(offset)).scalars().all())

    def find(self, provider: str, provider_event_id: str) -> Optional[WebhookEvent]:
        """Look up an event by the provider's own id."""
        with self.session_factory() as db:
            return db.execute(
                select(WebhookEvent).where(
                    WebhookEvent.provider == provider,
                    WebhookEvent.provider_event_id == provider_event_id,
                )
            ).scalar_one_or_none()

    def begin_processing(self, event_id: str) -> WebhookEvent:
        return self._transition(
            event_id, WebhookEvent.status == RECEIVED, PROCESSING, processing_started_at=utcnow()
        )

    def begin_retry(self, event_id: str, stale_after: Optional[float] = None) -> WebhookEvent:
        """
        Move a failed event back into processing.

        With `stale_after`, an event stuck in processing for longer than that
        many seconds (a crashed worker) is reclaimed as well.
        """
        allowed = WebhookEvent.status == FAILED
        if stale_after is not None:
            cutoff = utcnow() - timedelta(seconds=stale_after)
            allowed = or_(
                allowed,
                and_(
                    WebhookEvent.status == PROCESSING,
                    or_(WebhookEvent.processing_started_at.is_(None), WebhookEvent.processing_started_at < cutoff),
                ),
            )
        return self._transition(
            event_id,
            allowed,
            PROCESSING,
            retry_count=WebhookEvent.retry_count + 1,
            error=None,
            retryable=False,
            processing_started_at=utcnow(),
        )

    def mark_processed(self, event_id: str, note: Optional[str] = None) -> WebhookEvent:
        return self._transition(
            event_id,
            WebhookEvent.status == PROCESSING,
            PROCESSED,
            processed=True,
            processed_at=utcnow(),
            note=note,
            error=None,
            retryable=False,
        )

    def mark_failed(self, event_id: str, error: str, retryable: bool = False) -> WebhookEvent:
        """`retryable` marks failures a provider redelivery may re-dispatch on its own."""
        return self._transition(
            event_id, WebhookEvent.status == PROCESSING, FAILED, processed=False, error=error, retryable=retryable
        )

    def _transition(self, event_id: str, allowed, target: str, **values) -> WebhookEvent:
        with self.session_factory() as db:
            result = db.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_id, allowed)
                .values(status=target, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                event = db.get(WebhookEvent, event_id)
                if event is None:
                    raise EventNotFoundError(event_id)
                raise InvalidStateTransitionError(f"webhook event {event_id}", event.status, target)
            db.commit()
            event = db.get(WebhookEvent, event_id)
            logger.info(f"Webhook event {event_id} -> {target}")
            return event
