import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session

from ooilo_shared import (
    RequestIDMiddleware,
    add_standard_health,
    configure_cors,
    register_startup,
    run_periodic,
    setup_json_logging,
)

from . import ledger
from .alerts import recent_alerts
from .catalog import SqlCatalog
from .config import (
    DB_URL,
    LEDGER_BASE_URL,
    QUEUE_DB_URL,
    RECONCILE_INTERVAL_SECS,
    SETTLE_TIMEOUT_SECS,
    docs_enabled,
    use_ledger_internal,
)
from .errors import PosError, http_status_for
from .ledger_client import HttpLedgerClient, InternalLedgerClient
from .lines import make_ref
from .models import Base
from .offline_queue import OfflineQueue
from .schemas import (
    CompleteIn,
    CompleteOut,
    DrainOut,
    LedgerReceiptOut,
    LineIn,
    LineOut,
    OrderDetailOut,
    OrderOut,
    OrderWithDetails,
    QueueItemOut,
    RefKindIn,
    SaleDetailOut,
    SaleOut,
    SalesSummaryOut,
    SettleIn,
    SettlementOut,
    SettlementRequest,
    SyncStatusOut,
    TabOut,
)
from .settlement import SettlementCoordinator
from .tabs import TabRegistry


def _make_engine(url: str, timeout: float):
    # SQLite's busy timeout bounds how long a settlement waits on a locked ledger.
    if url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, connect_args={"check_same_thread": False, "timeout": timeout})
    return create_engine(url, pool_pre_ping=True, pool_timeout=timeout)


engine = _make_engine(DB_URL, SETTLE_TIMEOUT_SECS)
queue_engine = _make_engine(QUEUE_DB_URL, SETTLE_TIMEOUT_SECS)

catalog = SqlCatalog(engine)
tabs = TabRegistry(catalog)
queue = OfflineQueue(queue_engine)
if use_ledger_internal():
    ledger_client = InternalLedgerClient(engine)
else:
    ledger_client = HttpLedgerClient(LEDGER_BASE_URL, SETTLE_TIMEOUT_SECS)
coordinator = SettlementCoordinator(tabs, ledger_client, queue, catalog)


def get_session():
    with Session(engine) as s:
        yield s


def get_coordinator() -> SettlementCoordinator:
    return coordinator


_DOCS = docs_enabled()
app = FastAPI(
    title="Ooilo POS API",
    version="0.1.0",
    docs_url="/docs" if _DOCS else None,
    redoc_url="/redoc" if _DOCS else None,
    openapi_url="/openapi.json" if _DOCS else None,
)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", ""))


def _ledger_ping() -> str:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return "ok"


def _queue_depth() -> dict:
    return {"pending": queue.pending_count(), "failed": queue.failed_count()}


add_standard_health(app, checks={"ledger": _ledger_ping, "queue": _queue_depth})
router = APIRouter()


@register_startup(app)
def on_startup():
    Base.metadata.create_all(engine)
    queue.init_schema()


run_periodic(app, RECONCILE_INTERVAL_SECS, lambda: get_coordinator().drain(), "pos-reconcile")


def _http(e: PosError) -> HTTPException:
    return HTTPException(status_code=http_status_for(e), detail=e.code)


def _parse_range(from_iso: Optional[str], to_iso: Optional[str]) -> Tuple[datetime, datetime]:
    """[from, to) in UTC; defaults to the current UTC day."""

    def _parse(v: str) -> datetime:
        try:
            dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise HTTPException(status_code=400, detail="invalid time")
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    start = _parse(from_iso) if from_iso else today
    end = _parse(to_iso) if to_iso else start + timedelta(days=1)
    if end <= start:
        raise HTTPException(status_code=400, detail="invalid time")
    return start, end


def _tab_out(c: SettlementCoordinator, table_id: str) -> TabOut:
    snap = c.tabs.snapshot(table_id)
    return TabOut(table_id=snap.table_id, lines=[LineOut.from_line(ln) for ln in snap.lines], total=snap.total)


# --- Tabs (client side) ---
@router.get("/tabs/{table_id}", response_model=TabOut)
def get_tab(table_id: str, c: SettlementCoordinator = Depends(get_coordinator)):
    return _tab_out(c, table_id)


@router.post("/tabs/{table_id}/lines", response_model=TabOut)
def add_line(table_id: str, body: LineIn, c: SettlementCoordinator = Depends(get_coordinator)):
    try:
        c.tabs.add_line(table_id, make_ref(body.kind, body.ref_id), body.qty, body.notes or "")
    except PosError as e:
        raise _http(e)
    return _tab_out(c, table_id)


@router.post("/tabs/{table_id}/lines/{kind}/{ref_id}/increment", response_model=TabOut)
def increment_line(table_id: str, kind: RefKindIn, ref_id: int, c: SettlementCoordinator = Depends(get_coordinator)):
    if c.tabs.increment(table_id, make_ref(kind, ref_id)) is None:
        raise HTTPException(status_code=404, detail="line not found")
    return _tab_out(c, table_id)


@router.post("/tabs/{table_id}/lines/{kind}/{ref_id}/decrement", response_model=TabOut)
def decrement_line(table_id: str, kind: RefKindIn, ref_id: int, c: SettlementCoordinator = Depends(get_coordinator)):
    ref = make_ref(kind, ref_id)
    if not c.tabs.has_line(table_id, ref):
        raise HTTPException(status_code=404, detail="line not found")
    c.tabs.decrement(table_id, ref)
    return _tab_out(c, table_id)


@router.delete("/tabs/{table_id}/lines/{kind}/{ref_id}", response_model=TabOut)
def remove_line(table_id: str, kind: RefKindIn, ref_id: int, c: SettlementCoordinator = Depends(get_coordinator)):
    if not c.tabs.remove_line(table_id, make_ref(kind, ref_id)):
        raise HTTPException(status_code=404, detail="line not found")
    return _tab_out(c, table_id)


@router.post("/tabs/{table_id}/settle", response_model=SettlementOut)
def settle_tab(table_id: str, body: SettleIn = SettleIn(), c: SettlementCoordinator = Depends(get_coordinator)):
    try:
        res = c.settle(table_id, body.payment_method)
    except PosError as e:
        raise _http(e)
    return SettlementOut(
        status=res.status,
        table_id=res.table_id,
        total=res.total,
        settlement_id=res.settlement_id,
        sale_id=res.sale_id,
        order_id=res.order_id,
        order_number=res.order_number,
    )


# --- Ledger (server side of record) ---
@router.post("/ledger/settlements", response_model=LedgerReceiptOut)
def record_settlement(
    req: SettlementRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    s: Session = Depends(get_session),
):
    if idempotency_key and idempotency_key != req.settlement_id:
        raise HTTPException(status_code=400, detail="idempotency_key_mismatch")
    try:
        receipt = ledger.record_settlement(s, req)
    except PosError as e:
        raise _http(e)
    return LedgerReceiptOut(
        sale_id=receipt.sale_id,
        order_id=receipt.order_id,
        order_number=receipt.order_number,
        total=receipt.total,
    )


@router.post("/ledger/orders/{order_id}/complete", response_model=CompleteOut)
def complete_order(order_id: int, body: CompleteIn = CompleteIn(), s: Session = Depends(get_session)):
    try:
        sale_id = ledger.complete_order(s, order_id, body.payment_method)
    except PosError as e:
        raise _http(e)
    return CompleteOut(order_id=order_id, sale_id=sale_id)


@router.get("/ledger/orders", response_model=List[OrderOut])
def list_orders(
    table_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    s: Session = Depends(get_session),
):
    return ledger.list_orders(s, table_id=table_id, status=status, limit=limit)


@router.get("/ledger/orders/{order_id}", response_model=OrderWithDetails)
def get_order(order_id: int, s: Session = Depends(get_session)):
    try:
        od, details = ledger.get_order(s, order_id)
    except PosError as e:
        raise _http(e)
    return OrderWithDetails(
        order=OrderOut.model_validate(od),
        details=[OrderDetailOut.model_validate(d) for d in details],
    )


@router.get("/sales", response_model=List[SaleOut])
def list_sales(from_iso: Optional[str] = None, to_iso: Optional[str] = None, s: Session = Depends(get_session)):
    start, end = _parse_range(from_iso, to_iso)
    out: List[SaleOut] = []
    for sale in ledger.list_sales(s, start, end):
        item = SaleOut.model_validate(sale)
        item.details = [SaleDetailOut.model_validate(d) for d in ledger.sale_details(s, sale.id)]
        out.append(item)
    return out


@router.get("/reports/sales-summary", response_model=SalesSummaryOut)
def sales_summary(from_iso: Optional[str] = None, to_iso: Optional[str] = None, s: Session = Depends(get_session)):
    start, end = _parse_range(from_iso, to_iso)
    return ledger.sales_summary(s, start, end)


# --- Offline sync ---
@router.get("/sync/status", response_model=SyncStatusOut)
def sync_status(c: SettlementCoordinator = Depends(get_coordinator)):
    return SyncStatusOut(
        offline=c.last_attempt_offline,
        pending=c.queue.pending_count(),
        failed=c.queue.failed_count(),
    )


@router.post("/sync/drain", response_model=DrainOut)
def sync_drain(c: SettlementCoordinator = Depends(get_coordinator)):
    report = c.drain()
    return DrainOut(settled=report.settled, retried=report.retried, failed=report.failed, skipped=report.skipped)


@router.get("/sync/items", response_model=List[QueueItemOut])
def sync_items(status: Optional[str] = None, limit: int = 100, c: SettlementCoordinator = Depends(get_coordinator)):
    return c.queue.list_items(status=status, limit=limit)


@router.post("/sync/items/{item_id}/requeue", response_model=SyncStatusOut)
def sync_requeue(item_id: int, c: SettlementCoordinator = Depends(get_coordinator)):
    if not c.queue.requeue(item_id):
        raise HTTPException(status_code=404, detail="failed item not found")
    return sync_status(c)


@router.get("/sync/alerts")
def sync_alerts():
    return recent_alerts()


app.include_router(router)
