"""
Registry-based event dispatch: (provider, event_type) -> handler.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from common.error_handling import BusinessLogicError, InvariantViolationError
from common.schemas import WebhookStatus

logger = logging.getLogger(__name__)

# handler(provider, payload) -> optional business note
Handler = Callable[[str, Dict[str, Any]], Optional[str]]


@dataclass(frozen=True)
class DispatchResult:
    status: str
    note: Optional[str] = None
    error: Optional[str] = None
    handled: bool = True
    unexpected: bool = False

    @property
    def outcome(self) -> str:
        if not self.handled:
            return "ignored"
        return self.status


class EventDispatcher:

    def __init__(self):
        self._handlers: Dict[Tuple[str, str], Handler] = {}

    def register(self, provider: str, event_type: str) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            self._handlers[(provider, event_type)] = handler
            return handler
        return decorator

    def handler_for(self, provider: str, event_type: str) -> Optional[Handler]:
        return self._handlers.get((provider, event_type))

    def registered(self):
        return sorted(self._handlers)

    def dispatch(self, provider: str, event_type: str, payload: Dict[str, Any]) -> DispatchResult:
        """
        Run the handler for an event and classify the outcome.

        Business-rule rejections (unknown reference, illegal transition) still
        count as processed and carry a note; invariant violations and
        unexpected exceptions leave the event failed.
        """
        handler = self.handler_for(provider, event_type)
        if handler is None:
            logger.info(f"No handler for {provider} event {event_type}; ignoring")
            return DispatchResult(
                WebhookStatus.PROCESSED.value, note=f"Unhandled event type {event_type}", handled=False
            )

        try:
            note = handler(provider, payload)
        except InvariantViolationError as e:
            logger.error(f"❌ {provider} {event_type} rejected by ledger invariant: {e.message}", extra={
                "error_code": e.code,
                "context": e.context,
            })
            return DispatchResult(WebhookStatus.FAILED.value, error=e.message)
        except BusinessLogicError as e:
            logger.warning(f"⚠️ {provider} {event_type}: {e.message}")
            return DispatchResult(WebhookStatus.PROCESSED.value, note=e.message)
        except Exception as e:
            logger.exception(f"Handler for {provider} {event_type} raised")
            return DispatchResult(WebhookStatus.FAILED.value, error=f"{type(e).__name__}: {e}", unexpected=True)

        return DispatchResult(WebhookStatus.PROCESSED.value, note=note)
