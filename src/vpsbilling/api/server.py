"""
VPS Billing - FastAPI Server

Hosts the embedded billing scheduler and the read-only billing surfaces used
by operational dashboards and invoicing.

Endpoints:
- GET /health - Liveness and database check
- GET /billing/status - Executor heartbeat records and daemon status
- GET /billing/instances/{instance_id}/cycles - Billing history of an instance
- GET /billing/accounts/{account_id}/summary - Spend summary of an account
- POST /billing/sweep - Run one sweep as the embedded executor
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import asyncio
import os

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import structlog

from .. import __version__
from ..billing.scheduler import EmbeddedBillingScheduler
from ..billing.sweep import SweepEngine
from ..config import BillingConfig
from ..persistence.database import Database
from ..persistence.models import EMBEDDED_EXECUTOR_ID

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    embedded_billing: bool
    uptime_seconds: float


class ExecutorStatusModel(BaseModel):
    """Heartbeat record of one executor."""
    executor_id: str
    status: str
    is_live: bool
    age_seconds: Optional[float] = None
    started_at: Optional[str] = None
    heartbeat_at: Optional[str] = None
    last_run_at: Optional[str] = None
    last_run_outcome: Optional[str] = None
    instances_billed: int = 0
    total_amount: str = "0.00"
    total_hours: str = "0"
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DaemonStatusModel(BaseModel):
    """Summary of the most recently seen standalone daemon."""
    status: str
    executor_id: Optional[str] = None
    last_run: Optional[str] = None
    last_run_outcome: Optional[str] = None
    instances_billed: int = 0
    total_amount: str = "0.00"
    total_hours: str = "0"
    next_scheduled_run: Optional[str] = None
    uptime_minutes: Optional[int] = None
    is_stale: bool
    warning: bool
    error_message: Optional[str] = None


class BillingStatusResponse(BaseModel):
    """Operational billing status."""
    lease_window_seconds: int
    billing_interval_seconds: int
    embedded_should_execute: bool
    executors: List[ExecutorStatusModel]
    daemon: DaemonStatusModel


class BillingCycleModel(BaseModel):
    """One billing cycle, amounts as decimal strings."""
    cycle_id: str
    instance_id: str
    account_id: str
    period_start: str
    period_end: str
    hourly_rate: str
    hours: str
    amount: str
    status: str
    ledger_transaction_id: Optional[str] = None
    executor_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: str
    updated_at: str


class CycleHistoryResponse(BaseModel):
    """Billing history page for one instance."""
    instance_id: str
    cycles: List[BillingCycleModel]
    limit: int
    offset: int


class AccountSummaryResponse(BaseModel):
    """Spend summary of an account."""
    account_id: str
    balance: str
    currency: str
    total_spent_this_month: str
    total_spent_all_time: str
    billable_instance_count: int
    monthly_estimate: str


class SweepResponse(BaseModel):
    """Result of a manually triggered sweep."""
    executor_id: str
    executed: bool
    outcome: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    instances_considered: int
    instances_billed: int
    instances_failed: int
    instances_skipped: int
    errors: int
    total_amount: str
    total_hours: str
    deadline_reached: bool
    error_message: Optional[str] = None


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, config: BillingConfig):
        self.config = config
        self.db = Database(config.database_url)
        self.db.initialize()
        self.engine = SweepEngine(self.db, config=config)
        self.scheduler = EmbeddedBillingScheduler(self.engine)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    config = BillingConfig.from_env()
    logger.info("vpsbilling_api_starting", version=__version__, embedded_billing=config.embedded_billing_enabled)
    app_state = AppState(config)
    if config.embedded_billing_enabled:
        await app_state.scheduler.start()
    yield
    logger.info("vpsbilling_api_stopping")
    if config.embedded_billing_enabled:
        await app_state.scheduler.stop()
    app_state = None


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="VPS Billing",
        description="Usage-based billing reconciliation for resold VPS instances.",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.config.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    try:
        await asyncio.to_thread(state.db.ping)
        database = "ok"
    except Exception as e:
        logger.error("health_database_unreachable", error=str(e))
        database = "unreachable"

    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        database=database,
        embedded_billing=state.config.embedded_billing_enabled,
        uptime_seconds=uptime,
    )


@app.get("/billing/status", response_model=BillingStatusResponse, tags=["Billing"])
async def billing_status(state: AppState = Depends(get_state)):
    """
    Executor heartbeat records for operational dashboards.

    Includes whether the embedded scheduler would bill right now, and the
    daemon status view (staleness, uptime, next run, warning flag).
    """
    coordinator = state.engine.coordinator

    def read() -> Dict[str, Any]:
        now = state.engine.clock()
        return {
            "executors": coordinator.statuses(now),
            "daemon": coordinator.daemon_status(state.config.billing_interval, now),
            "embedded": coordinator.should_execute(EMBEDDED_EXECUTOR_ID, now),
        }

    snapshot = await asyncio.to_thread(read)
    return BillingStatusResponse(
        lease_window_seconds=state.config.lease_window_seconds,
        billing_interval_seconds=state.config.billing_interval_seconds,
        embedded_should_execute=snapshot["embedded"],
        executors=[ExecutorStatusModel(**row) for row in snapshot["executors"]],
        daemon=DaemonStatusModel(**snapshot["daemon"]),
    )


@app.get(
    "/billing/instances/{instance_id}/cycles",
    response_model=CycleHistoryResponse,
    tags=["Billing"],
)
async def instance_cycles(
    instance_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Billing cycles of an instance in period order, for invoice generation."""
    tracker = state.engine.tracker
    instance = await asyncio.to_thread(tracker.instances.get, instance_id)
    if instance is None:
        raise HTTPException(status_code=404, detail=f"Instance not found: {instance_id}")

    cycles = await asyncio.to_thread(tracker.history, instance_id, limit, offset)
    return CycleHistoryResponse(
        instance_id=instance_id,
        cycles=[BillingCycleModel(**c.to_dict()) for c in cycles],
        limit=limit,
        offset=offset,
    )


@app.get(
    "/billing/accounts/{account_id}/summary",
    response_model=AccountSummaryResponse,
    tags=["Billing"],
)
async def account_summary(
    account_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Spend this month and all time, billable instances and monthly estimate."""
    account = await asyncio.to_thread(state.engine.ledger.accounts.get, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account not found: {account_id}")

    summary = await asyncio.to_thread(state.engine.tracker.summary, account_id, state.engine.rates)
    return AccountSummaryResponse(
        balance=str(account.balance),
        currency=account.currency,
        **summary,
    )


@app.post("/billing/sweep", response_model=SweepResponse, tags=["Billing"])
async def trigger_sweep(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Run one sweep now as the embedded executor.

    The lease rule still applies: while a standalone daemon is live the sweep
    is deferred and nothing is billed.
    """
    result = await asyncio.to_thread(state.engine.run_sweep, EMBEDDED_EXECUTOR_ID)
    logger.info("manual_sweep_triggered", outcome=result.outcome.value, billed=result.instances_billed)
    return SweepResponse(**result.to_dict())


# ============================================================================
# Run
# ============================================================================

def run(host: str = "0.0.0.0", port: Optional[int] = None):
    """Run the server."""
    import uvicorn
    uvicorn.run(
        "vpsbilling.api.server:app",
        host=host,
        port=port or int(os.environ.get("PORT", 8000)),
        reload=os.environ.get("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    run()
