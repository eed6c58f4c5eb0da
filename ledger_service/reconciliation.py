"""
Reconciliation Engine
Compares ledger transactions for an account and window against the
provider's transfer records. Read-only with respect to the ledger:
discrepancies are reported, never corrected.
"""
import asyncio
import functools
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests
from sqlalchemy import delete, select, update
from sqlalchemy.orm import sessionmaker

from common.circuit_breaker import CircuitBreaker, get_provider_circuit_breaker
from common.error_handling import (
    BusinessLogicError,
    ErrorCodes,
    ProviderError,
    ReconciliationTimeoutError,
)
from common.retry import RetryConfig, provider_retry_config, retry_async
from common.schemas import ReportStatus, TransactionStatus
from common.tracing import reconciliation_tracer
from ledger_service.models import ReconciliationReport, Transaction, utcnow
from ledger_service.providers import ProviderTransfer, ProviderTransferSource, as_naive_utc
from ledger_service.service import LedgerService

logger = logging.getLogger(__name__)

RETRYABLE_PROVIDER_ERRORS = [ProviderError, requests.RequestException, asyncio.TimeoutError, TimeoutError]


@dataclass
class ComparisonResult:
    total_transactions: int = 0
    matched: int = 0
    unmatched: int = 0
    discrepancies: int = 0
    balance_difference: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)


def compare_records(
    snapshot: Iterable[Tuple[Transaction, int]],
    records: Iterable[ProviderTransfer],
) -> ComparisonResult:
    """
    Match ledger transactions to provider records by external reference.

    A pair whose amount or status differs is a discrepancy; a reference present
    on one side only is unmatched. When the provider reports a reference more
    than once, one record is paired and every extra one is a
    `duplicate_at_provider` discrepancy. The balance difference is the net
    amount the ledger posted for the window minus everything the provider
    reports as settled, duplicates included.
    """
    snapshot = list(snapshot)
    records = list(records)
    provider_by_ref: Dict[str, List[ProviderTransfer]] = defaultdict(list)
    for record in records:
        provider_by_ref[record.reference].append(record)

    result = ComparisonResult(total_transactions=len(snapshot))
    seen = set()

    for tx, _net in snapshot:
        ref = tx.external_reference
        seen.add(ref)
        candidates = provider_by_ref.get(ref)
        if not candidates:
            result.unmatched += 1
            result.details.append({
                "reference": ref,
                "finding": "missing_at_provider",
                "ledger_amount": tx.amount,
                "ledger_status": tx.status,
            })
            continue

        # Pair with an exact match when there is one
        record = next((r for r in candidates if (r.amount, r.status) == (tx.amount, tx.status)), candidates[0])
        mismatched = []
        if record.amount != tx.amount:
            mismatched.append("amount")
        if record.status != tx.status:
            mismatched.append("status")
        if mismatched:
            result.discrepancies += 1
            result.details.append({
                "reference": ref,
                "finding": "mismatch",
                "fields": mismatched,
                "ledger_amount": tx.amount,
                "provider_amount": record.amount,
                "ledger_status": tx.status,
                "provider_status": record.status,
            })
        else:
            result.matched += 1
        _report_duplicates(result, ref, [r for r in candidates if r is not record])

    for ref, candidates in provider_by_ref.items():
        if ref in seen:
            continue
        record = candidates[0]
        result.unmatched += 1
        result.details.append({
            "reference": ref,
            "finding": "missing_in_ledger",
            "provider_amount": record.amount,
            "provider_status": record.status,
        })
        _report_duplicates(result, ref, candidates[1:])

    ledger_total = sum(net for _tx, net in snapshot)
    provider_total = sum(r.amount for r in records if r.status == TransactionStatus.COMPLETED.value)
    result.balance_difference = ledger_total - provider_total
    return result


def _report_duplicates(result: ComparisonResult, reference: str, extras: List[ProviderTransfer]):
    for record in extras:
        result.discrepancies += 1
        result.details.append({
            "reference": reference,
            "finding": "duplicate_at_provider",
            "provider_amount": record.amount,
            "provider_status": record.status,
        })


async def in_thread(func, *args):
    """Run a blocking database call on the default executor; cancellable by the caller."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args))


class ReconciliationEngine:

    def __init__(
        self,
        ledger: LedgerService,
        sources: Dict[str, ProviderTransferSource],
        session_factory: Optional[sessionmaker] = None,
        retry_config: Optional[RetryConfig] = None,
        default_timeout: Optional[float] = None,
    ):
        self.ledger = ledger
        self.sources = sources
        self.session_factory = session_factory or ledger.session_factory
        self.retry_config = retry_config or provider_retry_config(retryable_exceptions=RETRYABLE_PROVIDER_ERRORS)
        self.default_timeout = default_timeout

    async def reconcile(
        self,
        account_id: str,
        start: datetime,
        end: datetime,
        timeout: Optional[float] = None,
    ) -> ReconciliationReport:
        start, end = as_naive_utc(start), as_naive_utc(end)
        if end <= start:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "Window end must be after start", field="end")
        account = await in_thread(self.ledger.get_account, account_id)
        source = self.sources.get(account.provider or "")
        if source is None:
            raise BusinessLogicError(
                ErrorCodes.INVALID_INPUT,
                f"No provider transfer source configured for account {account_id} ({account.provider})",
                field="account_id",
            )

        report_id = await in_thread(self._create_pending, account_id, start, end)
        timeout = timeout or self.default_timeout
        try:
            if timeout:
                return await asyncio.wait_for(self._run(report_id, account_id, source, start, end), timeout)
            return await self._run(report_id, account_id, source, start, end)
        except asyncio.TimeoutError:
            await in_thread(self._discard, report_id)
            logger.warning(f"⏱️ Reconciliation {report_id} for {account_id} timed out after {timeout}s; report discarded")
            raise ReconciliationTimeoutError(account_id, timeout)
        except asyncio.CancelledError:
            # No awaiting inside a cancelled task
            self._discard(report_id)
            raise

    async def _run(
        self,
        report_id: str,
        account_id: str,
        source: ProviderTransferSource,
        start: datetime,
        end: datetime,
    ) -> ReconciliationReport:
        with reconciliation_tracer.start_span("reconcile") as span:
            span.add_tag("account.id", account_id).add_tag("provider", source.provider)

            # Plain reads; no ledger lock is held while the provider is queried
            snapshot = await in_thread(self.ledger.window_snapshot, account_id, start, end)
            try:
                records = await retry_async(
                    self._fetch, self.retry_config, self._breaker(source), source, account_id, start, end
                )
            except Exception as e:
                span.set_error(e).add_log(f"provider fetch gave up after {self.retry_config.max_attempts} attempts", "error")
                logger.error(f"❌ Provider fetch failed for reconciliation {report_id}: {e}")
                return await in_thread(self._fail, report_id, e)

            result = compare_records(snapshot, records)
            span.add_tag("matched", result.matched).add_tag("unmatched", result.unmatched)
            span.add_tag("discrepancies", result.discrepancies)
            return await in_thread(self._complete, report_id, result)

    @staticmethod
    async def _fetch(breaker: CircuitBreaker, source, account_id, start, end) -> List[ProviderTransfer]:
        return await breaker.call(source.fetch_transfers, account_id, start, end)

    @staticmethod
    def _breaker(source: ProviderTransferSource) -> CircuitBreaker:
        return get_provider_circuit_breaker(source.provider)

    def get_report(self, report_id: str) -> Optional[ReconciliationReport]:
        with self.session_factory() as db:
            return db.get(ReconciliationReport, report_id)

    def list_reports(self, account_id: Optional[str] = None, limit: int = 50) -> List[ReconciliationReport]:
        with self.session_factory() as db:
            query = select(ReconciliationReport).order_by(ReconciliationReport.created_at.desc()).limit(limit)
            if account_id:
                query = query.where(ReconciliationReport.account_id == account_id)
            return list(db.execute(query).scalars().all())

    def _create_pending(self, account_id: str, start: datetime, end: datetime) -> str:
        with self.session_factory() as db:
            report = ReconciliationReport(
                account_id=account_id,
                window_start=start,
                window_end=end,
                status=ReportStatus.PENDING.value,
                details=[],
            )
            db.add(report)
            db.commit()
            return report.id

    def _complete(self, report_id: str, result: ComparisonResult) -> ReconciliationReport:
        with self.session_factory() as db:
            db.execute(
                update(ReconciliationReport)
                .where(ReconciliationReport.id == report_id, ReconciliationReport.status == ReportStatus.PENDING.value)
                .values(
                    total_transactions=result.total_transactions,
                    matched_count=result.matched,
                    unmatched_count=result.unmatched,
                    discrepancy_count=result.discrepancies,
                    balance_difference=result.balance_difference,
                    details=result.details,
                    status=ReportStatus.COMPLETED.value,
                    completed_at=utcnow(),
                )
            )
            db.commit()
            report = db.get(ReconciliationReport, report_id)
        logger.info(
            f"✅ Reconciliation {report_id}: {result.matched} matched, {result.unmatched} unmatched, "
            f"{result.discrepancies} discrepancies, difference {result.balance_difference}"
        )
        return report

    def _fail(self, report_id: str, error: Exception) -> ReconciliationReport:
        with self.session_factory() as db:
            db.execute(
                update(ReconciliationReport)
                .where(ReconciliationReport.id == report_id, ReconciliationReport.status == ReportStatus.PENDING.value)
                .values(status=ReportStatus.FAILED.value, error=str(error), completed_at=utcnow())
            )
            db.commit()
            return db.get(ReconciliationReport, report_id)

    def _discard(self, report_id: str):
        with self.session_factory() as db:
            db.execute(
                delete(ReconciliationReport).where(
                    ReconciliationReport.id == report_id, ReconciliationReport.status == ReportStatus.PENDING.value
                )
            )
            db.commit()
