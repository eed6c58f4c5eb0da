"""
Provider adapters: where each provider puts its signature, event type,
event id, reference and recipient in a webhook payload.
"""
import hashlib
from typing import Any, Dict, Optional

from common.error_handling import BusinessLogicError, ErrorCodes
from common.schemas import Provider


def body_fingerprint(raw_body: bytes) -> str:
    return "sha256:" + hashlib.sha256(raw_body).hexdigest()


class ProviderAdapter:
    provider = ""
    signature_header = ""

    @staticmethod
    def data(payload: Dict[str, Any]) -> Dict[str, Any]:
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    def event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        event = payload.get("event")
        return event if isinstance(event, str) and event else None

    def event_id(self, payload: Dict[str, Any], raw_body: bytes) -> str:
        """Provider-native id for dedup; identical redeliveries map to the same id."""
        event_type = self.event_type(payload)
        data = self.data(payload)
        if data.get("id") is not None:
            return f"{event_type}:{data['id']}"
        reference = self.reference(payload)
        if reference:
            return f"{event_type}:{reference}"
        return body_fingerprint(raw_body)

    def reference(self, payload: Dict[str, Any]) -> Optional[str]:
        return self.data(payload).get("reference")

    def status(self, payload: Dict[str, Any]) -> str:
        return str(self.data(payload).get("status") or "").lower()

    def recipient_code(self, payload: Dict[str, Any]) -> Optional[str]:
        return None

    def failure_reason(self, payload: Dict[str, Any]) -> Optional[str]:
        data = self.data(payload)
        return data.get("reason") or data.get("gateway_response") or data.get("complete_message")


class StripeAdapter(ProviderAdapter):
    provider = Provider.STRIPE.value
    signature_header = "stripe-signature"

    @staticmethod
    def data(payload: Dict[str, Any]) -> Dict[str, Any]:
        data = payload.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        return obj if isinstance(obj, dict) else {}

    def event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        event = payload.get("type")
        return event if isinstance(event, str) and event else None

    def event_id(self, payload: Dict[str, Any], raw_body: bytes) -> str:
        return payload.get("id") or body_fingerprint(raw_body)

    def reference(self, payload: Dict[str, Any]) -> Optional[str]:
        obj = self.data(payload)
        metadata = obj.get("metadata") or {}
        return metadata.get("reference") or obj.get("id")

    def recipient_code(self, payload: Dict[str, Any]) -> Optional[str]:
        destination = self.data(payload).get("destination")
        return destination if isinstance(destination, str) else None

    def failure_reason(self, payload: Dict[str, Any]) -> Optional[str]:
        obj = self.data(payload)
        error = obj.get("last_payment_error") or {}
        return obj.get("failure_message") or error.get("message") or obj.get("failure_code")


class PaystackAdapter(ProviderAdapter):
    provider = Provider.PAYSTACK.value
    signature_header = "x-paystack-signature"

    def recipient_code(self, payload: Dict[str, Any]) -> Optional[str]:
        recipient = self.data(payload).get("recipient")
        if isinstance(recipient, dict):
            return recipient.get("recipient_code")
        return recipient if isinstance(recipient, str) else None


class FlutterwaveAdapter(ProviderAdapter):
    provider = Provider.FLUTTERWAVE.value
    signature_header = "verif-hash"

    def event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        event = super().event_type(payload)
        if event:
            return event
        # Older payloads carry the type under "event.type"
        legacy = payload.get("event.type")
        return legacy if isinstance(legacy, str) and legacy else None

    def reference(self, payload: Dict[str, Any]) -> Optional[str]:
        data = self.data(payload)
        return data.get("reference") or data.get("tx_ref")

    def recipient_code(self, payload: Dict[str, Any]) -> Optional[str]:
        meta = self.data(payload).get("meta")
        if isinstance(meta, dict):
            return meta.get("recipient_code")
        return None


ADAPTERS = {
    adapter.provider: adapter
    for adapter in (StripeAdapter(), PaystackAdapter(), FlutterwaveAdapter())
}


def get_adapter(provider: str) -> ProviderAdapter:
    try:
        return ADAPTERS[provider]
    except KeyError:
        raise BusinessLogicError(
            ErrorCodes.UNSUPPORTED_PROVIDER, f"Unsupported provider {provider!r}", field="provider"
        ) from None
