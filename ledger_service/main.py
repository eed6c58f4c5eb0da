"""
Ledger Service API
Operator surface for balances, entries, transactions and reconciliation.
"""
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.engine import Engine

from common.circuit_breaker import get_all_circuit_breakers
from common.error_handling import add_error_handlers
from common.retry import provider_retry_config
from common.schemas import (
    AccountCreate,
    AccountOut,
    BalanceOut,
    LedgerEntryOut,
    ReconcileRequest,
    ReconciliationReportOut,
    TransactionCreate,
    TransactionOut,
)
from common.settings import Settings, settings as default_settings
from common.tracing import ledger_tracer, tracing_middleware
from ledger_service.db import build_session_factory, get_engine, init_db
from ledger_service.models import utcnow
from ledger_service.providers import ProviderTransferSource, build_default_sources
from ledger_service.reconciliation import RETRYABLE_PROVIDER_ERRORS, ReconciliationEngine
from ledger_service.service import LedgerService

logger = logging.getLogger(__name__)


def wire(
    app: FastAPI,
    engine: Engine,
    settings: Settings,
    sources: Optional[Dict[str, ProviderTransferSource]] = None,
):
    """Create tables and attach the ledger and reconciler to the app."""
    init_db(engine)
    session_factory = build_session_factory(engine)
    ledger = LedgerService(session_factory, settings.allow_description_reference_match)
    app.state.ledger = ledger
    app.state.reconciler = ReconciliationEngine(
        ledger,
        sources if sources is not None else build_default_sources(settings),
        session_factory=session_factory,
        retry_config=provider_retry_config(settings.reconciliation_max_attempts, RETRYABLE_PROVIDER_ERRORS),
        default_timeout=settings.reconciliation_timeout_seconds,
    )


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_reconciler(request: Request) -> ReconciliationEngine:
    return request.app.state.reconciler


def create_app(
    engine: Optional[Engine] = None,
    sources: Optional[Dict[str, ProviderTransferSource]] = None,
    settings: Settings = default_settings,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not hasattr(app.state, "ledger"):
            wire(app, get_engine(), settings, sources)
            logger.info("🚀 Ledger service started")
        yield

    app = FastAPI(title="Ledger Service", version="1.0.0", lifespan=lifespan)
    if engine is not None:
        wire(app, engine, settings, sources)
    add_error_handlers(app)

    @app.middleware("http")
    async def add_tracing(request: Request, call_next):
        return await tracing_middleware(request, call_next, ledger_tracer)

    @app.post("/ledger/accounts", response_model=AccountOut, status_code=201)
    async def create_account(body: AccountCreate, ledger: LedgerService = Depends(get_ledger)):
        provider = body.provider.value if body.provider else None
        return await run_in_threadpool(ledger.create_account, body.owner_id, body.currency, provider, body.account_id)

    @app.post("/ledger/transactions", response_model=TransactionOut, status_code=201)
    async def create_transaction(body: TransactionCreate, ledger: LedgerService = Depends(get_ledger)):
        return await run_in_threadpool(ledger.create_transaction, body)

    @app.get("/ledger/transactions", response_model=List[TransactionOut])
    async def list_transactions(
        account_id: Optional[str] = None,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        ledger: LedgerService = Depends(get_ledger),
    ):
        return await run_in_threadpool(ledger.list_transactions, account_id, None, None, limit, offset)

    @app.get("/ledger/entries", response_model=List[LedgerEntryOut])
    async def list_entries(
        account_id: Optional[str] = None,
        limit: int = Query(50, ge=1, le=500),
        offset: int = Query(0, ge=0),
        ledger: LedgerService = Depends(get_ledger),
    ):
        return await run_in_threadpool(ledger.list_entries, account_id, limit, offset)

    @app.get("/ledger/balances", response_model=List[BalanceOut])
    async def balances(account_id: Optional[str] = None, ledger: LedgerService = Depends(get_ledger)):
        def _audit():
            ids = [account_id] if account_id else [a.id for a in ledger.list_accounts()]
            return [ledger.audit_account_balance(i) for i in ids]

        audits = await run_in_threadpool(_audit)
        return [
            BalanceOut(
                account_id=a.account_id,
                currency=a.currency,
                balance=a.balance,
                entries_total=a.entries_total,
                consistent=a.consistent,
            )
            for a in audits
        ]

    @app.get("/ledger/reconciliation-reports", response_model=List[ReconciliationReportOut])
    async def reconciliation_reports(
        account_id: Optional[str] = None,
        limit: int = Query(50, ge=1, le=500),
        reconciler: ReconciliationEngine = Depends(get_reconciler),
    ):
        return await run_in_threadpool(reconciler.list_reports, account_id, limit)

    @app.post("/ledger/reconcile", response_model=ReconciliationReportOut)
    async def reconcile(body: ReconcileRequest, reconciler: ReconciliationEngine = Depends(get_reconciler)):
        end = body.end or utcnow()
        start = body.start or end - timedelta(hours=settings.reconciliation_default_window_hours)
        logger.info(f"🔎 Reconciliation requested for {body.account_id}: {start} -> {end}")
        return await reconciler.reconcile(body.account_id, start, end, body.timeout_seconds)

    @app.get("/circuit-breakers")
    async def circuit_breakers():
        return get_all_circuit_breakers()

    @app.get("/health")
    async def health():
        return {"ok": True, "service": "ledger"}

    return app


logging.basicConfig(level=default_settings.log_level)
app = create_app()
