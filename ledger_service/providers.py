"""
Provider transfer sources used by reconciliation.

Each client lists the provider's authoritative transfer records for a time
window and maps them to ProviderTransfer: signed minor-unit amounts from the
ledger account's point of view (payouts leave the account, so they are
negative) and statuses normalized to the ledger's vocabulary.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import requests

from common.error_handling import ProviderError
from common.schemas import Provider, TransactionStatus
from common.settings import Settings

logger = logging.getLogger(__name__)

STATUS_ALIASES = {
    "success": TransactionStatus.COMPLETED,
    "successful": TransactionStatus.COMPLETED,
    "succeeded": TransactionStatus.COMPLETED,
    "completed": TransactionStatus.COMPLETED,
    "paid": TransactionStatus.COMPLETED,
    "failed": TransactionStatus.FAILED,
    "failure": TransactionStatus.FAILED,
    "canceled": TransactionStatus.FAILED,
    "cancelled": TransactionStatus.FAILED,
    "abandoned": TransactionStatus.FAILED,
    "rejected": TransactionStatus.FAILED,
    "reversed": TransactionStatus.REVERSED,
    "refunded": TransactionStatus.REVERSED,
}


def normalize_status(raw: Optional[str]) -> str:
    return STATUS_ALIASES.get(str(raw or "").strip().lower(), TransactionStatus.PENDING).value


def to_minor_units(amount: Any) -> int:
    """Convert a major-unit amount (e.g. 1500.50 NGN) to minor units without floats."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def as_naive_utc(value: datetime) -> datetime:
    """Ledger timestamps are stored as naive UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    return as_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


@dataclass(frozen=True)
class ProviderTransfer:
    reference: str
    amount: int
    currency: str
    status: str
    created_at: Optional[datetime] = None


class ProviderTransferSource(ABC):
    """Authoritative transfer records for one payment provider."""

    provider: str = ""

    @abstractmethod
    def fetch_transfers(self, account_id: str, start: datetime, end: datetime) -> List[ProviderTransfer]:
        """
        List the provider's transfers for an account in [start, end).

        Raises:
            ProviderError: If the provider API cannot be read
        """


class HttpTransferSource(ProviderTransferSource):
    base_url = ""

    def __init__(self, secret_key: str, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.secret_key = secret_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.get(
                f"{self.base_url}{path}",
                params=params,
                headers={"Authorization": f"Bearer {self.secret_key}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise ProviderError(self.provider, f"request to {path} failed", e) from e
        if response.status_code >= 400:
            raise ProviderError(self.provider, f"HTTP {response.status_code} from {path}")
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(self.provider, f"non-JSON response from {path}", e) from e

    @staticmethod
    def _belongs_to(metadata: Optional[Dict[str, Any]], account_id: str) -> bool:
        # Records tagged for another ledger account are skipped; untagged ones
        # belong to whichever account is bound to this integration.
        if not isinstance(metadata, dict):
            return True
        tagged = metadata.get("account_id")
        return tagged is None or tagged == account_id

    @staticmethod
    def _in_window(transfer: ProviderTransfer, start: datetime, end: datetime) -> bool:
        return transfer.created_at is None or start <= transfer.created_at < end


class PaystackTransferClient(HttpTransferSource):
    provider = Provider.PAYSTACK.value
    base_url = "https://api.paystack.co"
    per_page = 100

    def fetch_transfers(self, account_id: str, start: datetime, end: datetime) -> List[ProviderTransfer]:
        transfers = []
        page = 1
        while True:
            body = self._get("/transfer", {
                "from": start.isoformat(),
                "to": end.isoformat(),
                "perPage": self.per_page,
                "page": page,
            })
            for record in body.get("data") or []:
                if not self._belongs_to(record.get("metadata"), account_id):
                    continue
                transfer = ProviderTransfer(
                    reference=record.get("reference") or record.get("transfer_code"),
                    amount=-int(record["amount"]),
                    currency=record.get("currency", "NGN"),
                    status=normalize_status(record.get("status")),
                    created_at=parse_timestamp(record.get("createdAt") or record.get("created_at")),
                )
                if self._in_window(transfer, start, end):
                    transfers.append(transfer)
            meta = body.get("meta") or {}
            if page >= int(meta.get("pageCount") or 1):
                break
            page += 1
        return transfers


class FlutterwaveTransferClient(HttpTransferSource):
    provider = Provider.FLUTTERWAVE.value
    base_url = "https://api.flutterwave.com/v3"

    def fetch_transfers(self, account_id: str, start: datetime, end: datetime) -> List[ProviderTransfer]:
        transfers = []
        page = 1
        while True:
            body = self._get("/transfers", {
                "from": start.date().isoformat(),
                "to": end.date().isoformat(),
                "page": page,
            })
            for record in body.get("data") or []:
                if not self._belongs_to(record.get("meta"), account_id):
                    continue
                transfer = ProviderTransfer(
                    reference=record.get("reference"),
                    # Flutterwave reports major units
                    amount=-to_minor_units(record["amount"]),
                    currency=record.get("currency", "NGN"),
                    status=normalize_status(record.get("status")),
                    created_at=parse_timestamp(record.get("created_at")),
                )
                if self._in_window(transfer, start, end):
                    transfers.append(transfer)
            page_info = (body.get("meta") or {}).get("page_info") or {}
            if page >= int(page_info.get("total_pages") or 1):
                break
            page += 1
        return transfers


class StripePayoutClient(HttpTransferSource):
    provider = Provider.STRIPE.value
    base_url = "https://api.stripe.com/v1"

    def fetch_transfers(self, account_id: str, start: datetime, end: datetime) -> List[ProviderTransfer]:
        transfers = []
        params: Dict[str, Any] = {
            "created[gte]": int(start.replace(tzinfo=timezone.utc).timestamp()),
            "created[lt]": int(end.replace(tzinfo=timezone.utc).timestamp()),
            "limit": 100,
        }
        while True:
            body = self._get("/payouts", params)
            records = body.get("data") or []
            for record in records:
                metadata = record.get("metadata") or {}
                if not self._belongs_to(metadata, account_id):
                    continue
                transfers.append(ProviderTransfer(
                    reference=metadata.get("reference") or record["id"],
                    amount=-int(record["amount"]),
                    currency=str(record.get("currency", "usd")).upper(),
                    status=normalize_status(record.get("status")),
                    created_at=parse_timestamp(record.get("created")),
                ))
            if not body.get("has_more") or not records:
                break
            params["starting_after"] = records[-1]["id"]
        return transfers


def build_default_sources(settings: Settings) -> Dict[str, ProviderTransferSource]:
    """Clients for every provider that has API credentials configured."""
    sources: Dict[str, ProviderTransferSource] = {}
    timeout = settings.provider_http_timeout_seconds
    if settings.paystack_secret_key:
        sources[Provider.PAYSTACK.value] = PaystackTransferClient(settings.paystack_secret_key, timeout=timeout)
    if settings.flutterwave_secret_key:
        sources[Provider.FLUTTERWAVE.value] = FlutterwaveTransferClient(settings.flutterwave_secret_key, timeout=timeout)
    if settings.stripe_secret_key:
        sources[Provider.STRIPE.value] = StripePayoutClient(settings.stripe_secret_key, timeout=timeout)
    if not sources:
        logger.warning("No provider API credentials configured; reconciliation is unavailable")
    return sources
