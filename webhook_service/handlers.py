"""
Webhook handler catalog.

Handlers only talk to the LedgerGateway and are idempotent at the ledger
level: re-applying an event to a transaction already in the target state
changes nothing.
"""
import logging
from typing import Any, Dict, Optional

from common.error_handling import UnmatchedReferenceError
from common.schemas import Provider
from ledger_service.interface import LedgerGateway, TransitionResult
from ledger_service.models import Transaction
from webhook_service.dispatcher import EventDispatcher
from webhook_service.providers import get_adapter

logger = logging.getLogger(__name__)

STRIPE = Provider.STRIPE.value
PAYSTACK = Provider.PAYSTACK.value
FLUTTERWAVE = Provider.FLUTTERWAVE.value

SUCCESS_STATUSES = {"successful", "success", "succeeded", "completed"}
FAILURE_STATUSES = {"failed", "failure", "cancelled", "canceled", "error"}


def _describe(result: TransitionResult, reference: str) -> Optional[str]:
    if result.changed:
        return None
    return f"Transaction {reference} already {result.status}; no ledger change"


class LedgerEventHandlers:

    def __init__(self, ledger: LedgerGateway):
        self.ledger = ledger

    def _resolve(self, provider: str, payload: Dict[str, Any]) -> Transaction:
        reference = get_adapter(provider).reference(payload)
        tx = self.ledger.find_transaction_by_reference(provider, reference) if reference else None
        if tx is None:
            raise UnmatchedReferenceError(provider, reference)
        return tx

    def _touch_recipient(self, provider: str, payload: Dict[str, Any], tx: Transaction):
        code = get_adapter(provider).recipient_code(payload) or tx.recipient_code
        if code and not self.ledger.touch_recipient(provider, code):
            logger.info(f"Transfer recipient {code} not on file for {provider}")

    # Charges

    def charge_succeeded(self, provider: str, payload: Dict[str, Any]) -> Optional[str]:
        tx = self._resolve(provider, payload)
        result = self.ledger.settle_transaction(tx.id)
        return _describe(result, tx.external_reference)

    def charge_failed(self, provider: str, payload: Dict[str, Any]) -> Optional[str]:
        tx = self._resolve(provider, payload)
        result = self.ledger.fail_transaction(tx.id, get_adapter(provider).failure_reason(payload))
        return _describe(result, tx.external_reference)

    def charge_completed(self, provider: str, payload: Dict[str, Any]) -> Optional[str]:
        """Flutterwave reports both outcomes as charge.completed."""
        status = get_adapter(provider).status(payload)
        if status in SUCCESS_STATUSES:
            return self.charge_succeeded(provider, payload)
        if status in FAILURE_STATUSES:
            return self.charge_failed(provider, payload)
        return f"Charge status {status or 'unknown'}; no ledger change"

    # Transfers

    def transfer_succeeded(self, provider: str, payload: Dict[str, Any]) -> Optional[str]:
        tx = self._resolve(provider, payload)
        result = self.ledger.settle_transaction(tx.id)
        self._touch_recipient(provider, payload, tx)
        return _describe(result, tx.external_reference)

    def transfer_failed(self, provider: str, payload: Dict[str, Any]) -> Optional[str]:
        tx = self._resolve(provider, payload)
        result = self.ledger.fail_transaction(tx.id, get_adapter(provider).failure_reason(payload))
        self._touch_recipient(provider, payload, tx)
        return _describe(result, tx.external_reference)

    def transfer_reversed(self, provider: str, payload: Dict[str, Any]) -> Optional[str]:
        tx = self._resolve(provider, payload)
        result = self.ledger.reverse_transaction(tx.id, get_adapter(provider).failure_reason(payload))
        self._touch_recipient(provider, payload, tx)
        return _describe(result, tx.external_reference)

    def transfer_completed(self, provider: str, payload: Dict[str, Any]) -> Optional[str]:
        """Flutterwave routes transfer outcomes on data.status."""
        status = get_adapter(provider).status(payload)
        if status in SUCCESS_STATUSES:
            return self.transfer_succeeded(provider, payload)
        if status in FAILURE_STATUSES:
            return self.transfer_failed(provider, payload)
        return f"Transfer status {status or 'unknown'}; no ledger change"


def build_dispatcher(ledger: LedgerGateway) -> EventDispatcher:
    dispatcher = EventDispatcher()
    handlers = LedgerEventHandlers(ledger)

    catalog = [
        (PAYSTACK, "charge.success", handlers.charge_succeeded),
        (PAYSTACK, "charge.failed", handlers.charge_failed),
        (PAYSTACK, "transfer.success", handlers.transfer_succeeded),
        (PAYSTACK, "transfer.failed", handlers.transfer_failed),
        (PAYSTACK, "transfer.reversed", handlers.transfer_reversed),
        (STRIPE, "charge.succeeded", handlers.charge_succeeded),
        (STRIPE, "charge.failed", handlers.charge_failed),
        (STRIPE, "payment_intent.succeeded", handlers.charge_succeeded),
        (STRIPE, "payment_intent.payment_failed", handlers.charge_failed),
        (STRIPE, "charge.refunded", handlers.transfer_reversed),
        (STRIPE, "payout.paid", handlers.transfer_succeeded),
        (STRIPE, "payout.failed", handlers.transfer_failed),
        (STRIPE, "transfer.reversed", handlers.transfer_reversed),
        (FLUTTERWAVE, "charge.completed", handlers.charge_completed),
        (FLUTTERWAVE, "transfer.completed", handlers.transfer_completed),
    ]
    for provider, event_type, handler in catalog:
        dispatcher.register(provider, event_type)(handler)
    return dispatcher
