"""
Webhook pipeline: verify -> dedup -> persist -> dispatch -> record outcome.
"""
import json
import logging
from datetime import timedelta
from typing import Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from common.error_handling import (
    ErrorCodes,
    InvalidPayloadError,
    InvalidSignatureError,
    InvalidStateTransitionError,
    ServiceError,
)
from common.schemas import WebhookAck, WebhookStatus
from common.settings import Settings
from common.tracing import webhook_tracer
from ledger_service.models import WebhookEvent, utcnow
from webhook_service.dispatcher import DispatchResult, EventDispatcher
from webhook_service.event_store import WebhookEventStore
from webhook_service.idempotency import IdempotencyStore
from webhook_service.providers import get_adapter
from webhook_service.signatures import verify

logger = logging.getLogger(__name__)


class WebhookPipeline:

    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: EventDispatcher,
        idempotency: IdempotencyStore,
        events: WebhookEventStore,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.idempotency = idempotency
        self.events = events
        self.settings = settings

    def handle(self, provider: str, raw_body: bytes, headers: Mapping[str, str], now: Optional[float] = None) -> WebhookAck:
        """
        Process one webhook delivery.

        Raises:
            InvalidSignatureError: Signature missing or wrong; nothing is stored
            InvalidPayloadError: Body is not a JSON object with an event type
            ServiceError: A handler failed unexpectedly; the event is left failed and a
                redelivery of it is re-dispatched
        """
        adapter = get_adapter(provider)
        with webhook_tracer.start_span(f"webhook.{provider}") as span:
            signature = headers.get(adapter.signature_header)
            if not verify(
                provider,
                raw_body,
                signature,
                self.settings.webhook_secret(provider),
                self.settings.stripe_signature_tolerance_seconds,
                now,
            ):
                logger.warning(f"🚫 Rejected {provider} webhook: invalid signature")
                raise InvalidSignatureError(provider)

            try:
                payload = json.loads(raw_body)
            except ValueError:
                raise InvalidPayloadError("Webhook body is not valid JSON") from None
            if not isinstance(payload, dict):
                raise InvalidPayloadError("Webhook body must be a JSON object")
            event_type = adapter.event_type(payload)
            if not event_type:
                raise InvalidPayloadError("Webhook payload has no event type")

            provider_event_id = adapter.event_id(payload, raw_body)
            span.add_tag("event.type", event_type).add_tag("event.id", provider_event_id)

            event = self._record(provider, provider_event_id, event_type, payload, raw_body)
            if event is None:
                span.add_tag("duplicate", True)
                return self._redelivered(provider, provider_event_id)

            event = self.events.begin_processing(event.id)
            result = self._run(event)
            span.add_tag("outcome", result.outcome)

            if result.unexpected:
                raise ServiceError(ErrorCodes.INTERNAL_SERVER_ERROR, "Webhook processing failed")
            return WebhookAck(event_id=event.id, outcome=result.outcome)

    def retry(self, event_id: str) -> WebhookEvent:
        """Re-dispatch a failed or abandoned event (operator action)."""
        event = self.events.begin_retry(event_id, stale_after=self.settings.webhook_processing_stale_seconds)
        logger.info(f"🔄 Retrying {event.provider} event {event.provider_event_id} (attempt {event.retry_count + 1})")
        self._run(event)
        return self.events.get(event.id)

    def _redelivered(self, provider: str, provider_event_id: str) -> WebhookAck:
        """
        A provider sent an event we already hold. Re-dispatch it when its last
        attempt died on an unexpected error or was abandoned mid-processing;
        otherwise acknowledge it as a duplicate.
        """
        stored = self.events.find(provider, provider_event_id)
        if stored is None or not self._auto_retryable(stored):
            logger.info(f"🔁 Duplicate {provider} event {provider_event_id}; already handled")
            return WebhookAck(duplicate=True)

        try:
            event = self.events.begin_retry(stored.id, stale_after=self.settings.webhook_processing_stale_seconds)
        except InvalidStateTransitionError:
            # Another delivery reclaimed it first
            return WebhookAck(duplicate=True)
        logger.info(f"🔄 Redelivered {provider} event {provider_event_id}; re-dispatching (attempt {event.retry_count + 1})")

        result = self._run(event)
        if result.unexpected:
            raise ServiceError(ErrorCodes.INTERNAL_SERVER_ERROR, "Webhook processing failed")
        return WebhookAck(event_id=event.id, outcome=result.outcome)

    def _auto_retryable(self, event: WebhookEvent) -> bool:
        if event.retry_count >= self.settings.webhook_max_auto_retries:
            return False
        if event.status == WebhookStatus.FAILED.value:
            return event.retryable
        if event.status == WebhookStatus.PROCESSING.value:
            cutoff = utcnow() - timedelta(seconds=self.settings.webhook_processing_stale_seconds)
            return event.processing_started_at is None or event.processing_started_at < cutoff
        return False

    def _run(self, event: WebhookEvent) -> DispatchResult:
        """Dispatch an event in `processing` and record the outcome."""
        try:
            result = self.dispatcher.dispatch(event.provider, event.event_type, event.payload)
            self._finish(event.id, result)
        except Exception as e:
            logger.error(f"❌ Could not complete webhook event {event.id}: {e}", extra={
                "provider": event.provider,
                "provider_event_id": event.provider_event_id,
            })
            self._abandon(event.id, f"{type(e).__name__}: {e}")
            raise ServiceError(ErrorCodes.INTERNAL_SERVER_ERROR, "Webhook processing failed", e) from e
        return result

    def _abandon(self, event_id: str, error: str):
        """Best effort move to `failed`; if even that fails the stale-processing reclaim picks it up."""
        try:
            self.events.mark_failed(event_id, error, retryable=True)
        except Exception:
            logger.exception(f"Webhook event {event_id} left in processing")

    def _record(self, provider, provider_event_id, event_type, payload, raw_body) -> Optional[WebhookEvent]:
        """Claim the event id and store the event in one commit. None for a duplicate."""
        with self.session_factory() as db:
            if not self.idempotency.claim(provider, provider_event_id, session=db):
                return None
            try:
                event = self.events.record(provider, provider_event_id, event_type, payload, raw_body, session=db)
                db.commit()
            except IntegrityError:
                # Already stored under an expired cache claim
                db.rollback()
                return None
            except Exception:
                db.rollback()
                self.idempotency.release(provider, provider_event_id)
                raise
            return event

    def _finish(self, event_id: str, result: DispatchResult) -> WebhookEvent:
        if result.status == WebhookStatus.PROCESSED.value:
            return self.events.mark_processed(event_id, result.note)
        return self.events.mark_failed(event_id, result.error or "Processing failed", retryable=result.unexpected)
