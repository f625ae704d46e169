import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import batch_db
import bulk_settlement_db
import closure_db
import sale_db
import settlement_db
import tranche_db
from config import configure_logging, settings
from errors import ConcurrencyConflict, DomainError, EntityNotFound, InvalidStateTransition
from events import jsonable
from jobs import build_scheduler, get_job_status, shutdown_scheduler, start_scheduler
from models import CommissionModel
from runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


@lru_cache()
def get_runtime() -> Runtime:
    """one runtime per process. tests override this dependency with an in-memory one."""
    return build_runtime()


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = build_scheduler(get_runtime())
        start_scheduler(scheduler)
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        shutdown_scheduler(scheduler)
    logger.info("Shutting down...")


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# errors
# ---------


def status_for(exc: DomainError) -> int:
    if isinstance(exc, EntityNotFound):
        return 404
    if isinstance(exc, (ConcurrencyConflict, InvalidStateTransition)):
        return 409
    return 400


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    return JSONResponse(status_code=status_for(exc), content=jsonable(exc.to_dict()))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    # plain ValueErrors are bad input (negative amounts, zero quantities...)
    return JSONResponse(status_code=400, content={"code": "INVALID_INPUT", "message": str(exc), "details": {}})


# ---------
# pydantic models (requests)
# ---------


class BatchCreateRequest(BaseModel):
    agent_id: str = Field(..., description="Agent the batch is assigned to")
    quantity: int = Field(..., gt=0, description="Units in the batch")
    model: CommissionModel = Field(CommissionModel.SIXTY_FORTY, description="Commission model")


class SaleRequest(BaseModel):
    quantity: int = Field(..., gt=0, description="Units sold")
    amount: Decimal = Field(..., ge=0, description="Money collected for the sale")


class SettlementConfirmRequest(BaseModel):
    amount: Decimal = Field(..., ge=0, description="Money handed over by the agent")


class BulkSaleRequest(BaseModel):
    agent_id: str
    quantity: int = Field(..., gt=0)
    with_liquor: bool = Field(True, description="Price tier table to use")
    bulk_sale_id: Optional[str] = Field(None, description="Idempotency key, generated when omitted")
    model: Optional[CommissionModel] = None


# ---------
# batches
# ---------


@app.post("/api/batches", status_code=201)
def create_batch(payload: BatchCreateRequest, rt: Runtime = Depends(get_runtime)):
    batch = batch_db.create_batch(rt.store, rt.ports.directory, payload.agent_id, payload.quantity, payload.model)
    return jsonable(batch_db.batch_overview(rt.store, batch.id))


@app.get("/api/batches")
def list_batches(
    agent_id: Optional[str] = Query(None),
    state: Optional[Literal["CREATED", "ACTIVE", "FINALIZED"]] = Query(None),
    rt: Runtime = Depends(get_runtime),
):
    return {"batches": jsonable(batch_db.list_batches(rt.store, agent_id, state))}


@app.get("/api/batches/{batch_id}")
def get_batch(batch_id: str, rt: Runtime = Depends(get_runtime)):
    return jsonable(batch_db.batch_overview(rt.store, batch_id))


@app.post("/api/batches/{batch_id}/activate")
def activate_batch(batch_id: str, rt: Runtime = Depends(get_runtime)):
    batch_db.activate_batch(rt.store, batch_id)
    return jsonable(batch_db.batch_overview(rt.store, batch_id))


@app.delete("/api/batches/{batch_id}")
def cancel_batch(batch_id: str, rt: Runtime = Depends(get_runtime)):
    batch = batch_db.cancel_batch(rt.store, batch_id)
    return {"status": "cancelled", "batch_id": batch.id}


@app.post("/api/batches/{batch_id}/sales")
def record_sale(batch_id: str, payload: SaleRequest, rt: Runtime = Depends(get_runtime)):
    """retail sale out of the tranche the agent currently has in hand."""
    result = sale_db.record_retail_sale(rt.store, rt.ports.directory, batch_id, payload.quantity, payload.amount)
    return jsonable(result)


# ---------
# tranches
# ---------


@app.get("/api/tranches/{tranche_id}")
def get_tranche(tranche_id: str, rt: Runtime = Depends(get_runtime)):
    return jsonable(tranche_db.get_tranche(rt.store, tranche_id))


@app.post("/api/tranches/{tranche_id}/release")
def release_tranche(tranche_id: str, rt: Runtime = Depends(get_runtime)):
    return jsonable(tranche_db.release_tranche(rt.store, tranche_id))


@app.post("/api/tranches/{tranche_id}/pickup")
def pickup_tranche(tranche_id: str, rt: Runtime = Depends(get_runtime)):
    return jsonable(tranche_db.mark_in_transit(rt.store, tranche_id))


@app.post("/api/tranches/{tranche_id}/deliver")
def deliver_tranche(tranche_id: str, rt: Runtime = Depends(get_runtime)):
    return jsonable(tranche_db.confirm_delivery(rt.store, tranche_id))


# ---------
# settlements
# ---------


@app.get("/api/settlements")
def list_settlements(
    batch_id: Optional[str] = Query(None),
    state: Optional[Literal["INACTIVE", "PENDING", "SUCCEEDED"]] = Query(None),
    rt: Runtime = Depends(get_runtime),
):
    return {"settlements": jsonable(settlement_db.list_settlements(rt.store, batch_id, state))}


@app.get("/api/settlements/{settlement_id}")
def get_settlement(settlement_id: str, rt: Runtime = Depends(get_runtime)):
    return jsonable(settlement_db.get_settlement(rt.store, settlement_id))


@app.post("/api/settlements/{settlement_id}/confirm")
def confirm_settlement(settlement_id: str, payload: SettlementConfirmRequest, rt: Runtime = Depends(get_runtime)):
    """
    confirm a PENDING settlement. a short payment comes back as a 400 with
    the shortfall in details.
    """
    return jsonable(settlement_db.confirm_settlement(rt.store, settlement_id, payload.amount))


# ---------
# bulk sales
# ---------


@app.post("/api/bulk-sales", status_code=201)
def register_bulk_sale(payload: BulkSaleRequest, rt: Runtime = Depends(get_runtime)):
    bulk = bulk_settlement_db.register_bulk_sale(
        rt.store,
        rt.ports,
        payload.agent_id,
        payload.quantity,
        payload.with_liquor,
        bulk_sale_id=payload.bulk_sale_id,
        model=payload.model,
    )
    return jsonable(bulk)


@app.get("/api/bulk-settlements")
def list_bulk_settlements(agent_id: Optional[str] = Query(None), rt: Runtime = Depends(get_runtime)):
    return {"bulk_settlements": jsonable(bulk_settlement_db.list_bulk_settlements(rt.store, agent_id))}


@app.get("/api/bulk-settlements/{bulk_id}")
def get_bulk_settlement(bulk_id: str, rt: Runtime = Depends(get_runtime)):
    return jsonable(bulk_settlement_db.get_bulk_settlement(rt.store, bulk_id))


@app.post("/api/bulk-settlements/{bulk_id}/confirm")
def confirm_bulk_settlement(bulk_id: str, rt: Runtime = Depends(get_runtime)):
    """the allocation is recomputed on the stock and money at confirmation time."""
    return jsonable(bulk_settlement_db.confirm_bulk_settlement(rt.store, rt.ports, bulk_id))


@app.post("/api/bulk-settlements/{bulk_id}/cancel")
def cancel_bulk_settlement(bulk_id: str, rt: Runtime = Depends(get_runtime)):
    return jsonable(bulk_settlement_db.cancel_bulk_settlement(rt.store, bulk_id))


# ---------
# closures
# ---------


@app.get("/api/closures/{closure_id}")
def get_closure(closure_id: str, rt: Runtime = Depends(get_runtime)):
    return jsonable(closure_db.get_closure(rt.store, closure_id))


@app.post("/api/closures/{closure_id}/confirm")
def confirm_closure(closure_id: str, rt: Runtime = Depends(get_runtime)):
    return jsonable(closure_db.confirm_closure(rt.store, closure_id))


# ---------
# events / outbox
# ---------


@app.get("/api/events")
def list_events(
    aggregate_type: Optional[str] = Query(None),
    aggregate_id: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    from_datetime: Optional[datetime] = Query(None, alias="from", description="Inclusive lower bound (ISO 8601)"),
    to_datetime: Optional[datetime] = Query(None, alias="to", description="Inclusive upper bound (ISO 8601)"),
    limit: int = Query(500, ge=1, le=5000),
    rt: Runtime = Depends(get_runtime),
):
    """delivered events, oldest first."""
    with rt.store.transaction() as tx:
        records = tx.list_event_records(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            since=from_datetime,
            until=to_datetime,
            limit=limit,
        )
    return {"events": jsonable(records)}


@app.get("/api/outbox")
def list_outbox(
    parked_only: bool = Query(False, description="Only messages that ran out of retries"),
    limit: int = Query(100, ge=1, le=1000),
    rt: Runtime = Depends(get_runtime),
):
    with rt.store.transaction() as tx:
        messages = tx.list_outbox(parked_only=parked_only, max_retries=rt.relay.max_retries, limit=limit)
    return {"messages": jsonable(messages)}


@app.post("/api/outbox/process")
def process_outbox(rt: Runtime = Depends(get_runtime)):
    """run one relay pass now instead of waiting for the poller."""
    stats = rt.relay.process_pending()
    if stats is None:
        return {"status": "busy"}
    return {"status": "ok", **stats}


@app.get("/api/jobs")
def job_status(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"running": False, "jobs": []}
    return {"running": scheduler.running, "jobs": get_job_status(scheduler)}


@app.get("/health")
def health():
    return {"status": "ok", "version": settings.APP_VERSION}
