"""
Durable Order Ledger.

Every function takes the caller's Session and owns exactly one transaction:
it either commits all of its writes or rolls all of them back. Order totals
are recomputed by ``on_detail_mutated`` inside the same transaction as the
detail write that changed them.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeout
from sqlalchemy.orm import Session

from .catalog import SqlCatalog
from .errors import (
    LedgerUnavailable,
    LineValidationError,
    NonUniqueIdentifier,
    OrderNotFound,
    PosError,
    ProductNotFound,
    SettlementCorruption,
)
from .lines import LineItem, LineRef, to_money
from .models import (
    ORDER_COMPLETED,
    ORDER_PENDING,
    Order,
    OrderDetail,
    Sale,
    SaleDetail,
    _utcnow,
)
from .order_numbers import generate_order_number
from .schemas import SettlementRequest

_log = logging.getLogger("ooilo.pos.ledger")

ZERO = Decimal("0")


@dataclass(frozen=True)
class LedgerReceipt:
    sale_id: str
    order_id: int
    order_number: str
    total: Decimal


def _is_sqlite(s: Session) -> bool:
    return s.get_bind().dialect.name == "sqlite"


@contextmanager
def _transaction(s: Session):
    """Commit on success; roll back on any failure, mapping lost connections to LedgerUnavailable."""
    try:
        yield
        s.commit()
    except PosError:
        s.rollback()
        raise
    except (OperationalError, InterfaceError, PoolTimeout) as e:
        s.rollback()
        raise LedgerUnavailable(f"ledger store unavailable: {type(e).__name__}") from e
    except Exception:
        s.rollback()
        raise


# --- Order numbers ---
def order_number_taken(s: Session, number: str) -> bool:
    return s.execute(select(Order.id).where(Order.order_number == number)).first() is not None


def next_order_number(s: Session) -> str:
    return generate_order_number(lambda n: order_number_taken(s, n))


# --- Aggregate recomputation ---
def on_detail_mutated(s: Session, order_id: int) -> Order:
    """
    Recompute subtotal/total of ``order_id`` from its detail rows.

    Must run inside the transaction of the detail write; it flushes pending
    changes so the SUM sees them and leaves the commit to the caller.
    """
    s.flush()
    total = s.execute(
        select(func.coalesce(func.sum(OrderDetail.subtotal), 0)).where(OrderDetail.order_id == order_id)
    ).scalar_one()
    od = s.get(Order, order_id)
    if od is None:
        raise OrderNotFound(f"order {order_id} not found")
    od.subtotal = od.total = to_money(total or 0)
    od.updated_at = _utcnow()
    s.flush()
    return od


def _pending_order(s: Session, order_id: int) -> Order:
    od = s.get(Order, order_id)
    if od is None:
        raise OrderNotFound(f"order {order_id} not found")
    if od.status != ORDER_PENDING:
        raise LineValidationError(f"order {order_id} is {od.status}")
    return od


def _new_detail(order_id: int, ref: LineRef, quantity: int, unit_price, notes: Optional[str]) -> OrderDetail:
    if quantity <= 0:
        raise LineValidationError("quantity must be positive", ref=ref)
    price = to_money(unit_price)
    if price < ZERO:
        raise LineValidationError("unit price must not be negative", ref=ref)
    return OrderDetail(
        order_id=order_id,
        ref_kind=ref.kind,
        ref_id=ref.id,
        quantity=quantity,
        unit_price=price,
        subtotal=to_money(price * quantity),
        notes=(notes or None),
    )


def add_detail(
    s: Session, order_id: int, ref: LineRef, quantity: int, unit_price, notes: Optional[str] = None
) -> OrderDetail:
    with _transaction(s):
        _pending_order(s, order_id)
        d = _new_detail(order_id, ref, quantity, unit_price, notes)
        s.add(d)
        on_detail_mutated(s, order_id)
    return d


def update_detail_quantity(s: Session, detail_id: int, quantity: int) -> OrderDetail:
    with _transaction(s):
        d = s.get(OrderDetail, detail_id)
        if d is None:
            raise LineValidationError(f"detail {detail_id} not found")
        _pending_order(s, d.order_id)
        if quantity <= 0:
            raise LineValidationError("quantity must be positive")
        d.quantity = quantity
        d.subtotal = to_money(d.unit_price * quantity)
        on_detail_mutated(s, d.order_id)
    return d


def delete_detail(s: Session, detail_id: int) -> Order:
    with _transaction(s):
        d = s.get(OrderDetail, detail_id)
        if d is None:
            raise LineValidationError(f"detail {detail_id} not found")
        order_id = d.order_id
        _pending_order(s, order_id)
        s.delete(d)
        od = on_detail_mutated(s, order_id)
    return od


# --- Orders ---
def find_order_by_client_ref(s: Session, client_ref: str) -> Optional[Order]:
    return s.execute(select(Order).where(Order.client_ref == client_ref)).scalars().first()


def _merge_slots(lines: Iterable[LineItem]) -> List[LineItem]:
    merged: dict[LineRef, LineItem] = {}
    for ln in lines:
        prev = merged.get(ln.ref)
        merged[ln.ref] = ln if prev is None else prev.with_quantity(prev.quantity + ln.quantity)
    return list(merged.values())


def _catalog_price(cat: SqlCatalog, ln: LineItem, table_id: str) -> Decimal:
    if not cat.exists(ln.ref):
        raise ProductNotFound(f"{ln.ref.kind} item {ln.ref.id} not found")
    price = to_money(cat.lookup_price(ln.ref))
    if ln.unit_price is not None and to_money(ln.unit_price) != price:
        _log.warning(
            "line price %s for %s item %s differs from catalog price %s",
            ln.unit_price,
            ln.ref.kind,
            ln.ref.id,
            price,
            extra={"table_id": table_id},
        )
    return price


def create_order(
    s: Session,
    table_id: str,
    lines: Sequence[LineItem],
    client_ref: Optional[str] = None,
    catalog: Optional[SqlCatalog] = None,
) -> Order:
    """
    Persist a pending order and its details in one transaction. Lines with
    the same ref are merged into one detail row. With ``client_ref`` set, a
    concurrent or repeated create for the same ref returns the existing order.

    Unit prices come from the catalog; a price carried on a line is only
    compared against it and a mismatch is logged.
    """
    if not lines:
        raise LineValidationError("order has no lines")
    slots = _merge_slots(lines)
    for attempt in range(2):
        try:
            with _transaction(s):
                cat = catalog or SqlCatalog(s)
                prices = [_catalog_price(cat, ln, table_id) for ln in slots]
                od = Order(
                    table_id=table_id,
                    order_number=next_order_number(s),
                    client_ref=client_ref,
                    status=ORDER_PENDING,
                )
                s.add(od)
                s.flush()
                for ln, price in zip(slots, prices):
                    s.add(_new_detail(od.id, ln.ref, ln.quantity, price, ln.notes))
                    on_detail_mutated(s, od.id)
            _log.info("order created", extra={"order_id": od.id, "table_id": table_id})
            return od
        except IntegrityError:
            if client_ref:
                existing = find_order_by_client_ref(s, client_ref)
                if existing is not None:
                    return existing
            if attempt == 0:
                _log.warning("order number collided on insert, regenerating", extra={"table_id": table_id})
                continue
            raise NonUniqueIdentifier("could not allocate a unique order number")
    raise NonUniqueIdentifier("could not allocate a unique order number")


def get_order(s: Session, order_id: int) -> Tuple[Order, List[OrderDetail]]:
    od = s.get(Order, order_id)
    if od is None:
        raise OrderNotFound(f"order {order_id} not found")
    details = s.execute(
        select(OrderDetail).where(OrderDetail.order_id == order_id).order_by(OrderDetail.id)
    ).scalars().all()
    return od, list(details)


def list_orders(
    s: Session, table_id: Optional[str] = None, status: Optional[str] = None, limit: int = 50
) -> List[Order]:
    stmt = select(Order)
    if table_id:
        stmt = stmt.where(Order.table_id == table_id)
    if status:
        stmt = stmt.where(Order.status == status)
    stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).limit(max(1, min(limit, 200)))
    return list(s.execute(stmt).scalars().all())


# --- Settlement ---
def _check_details(od: Order, details: Sequence[OrderDetail]) -> None:
    if not details:
        raise SettlementCorruption(f"order {od.id} has no detail rows")
    running = ZERO
    for d in details:
        try:
            d.ref
        except ValueError as e:
            raise SettlementCorruption(f"detail {d.id} has malformed ref") from e
        if d.quantity is None or d.quantity <= 0:
            raise SettlementCorruption(f"detail {d.id} has non-positive quantity")
        if to_money(d.subtotal) != to_money(to_money(d.unit_price) * d.quantity):
            raise SettlementCorruption(f"detail {d.id} subtotal does not match quantity x price")
        running += to_money(d.subtotal)
    if to_money(od.total) != to_money(running):
        raise SettlementCorruption(f"order {od.id} total {od.total} != sum of details {running}")


def _sale_for_order(s: Session, order_id: int) -> Optional[Sale]:
    return s.execute(select(Sale).where(Sale.order_id == order_id)).scalars().first()


def complete_order(s: Session, order_id: int, payment_method: str) -> str:
    """
    Convert a persisted order into a Sale with its SaleDetail rows, at most
    once per order. Calling it again for the same order (a retried request,
    a concurrent caller) returns the existing sale id and inserts nothing.
    """
    try:
        with _transaction(s):
            stmt = select(Order).where(Order.id == order_id)
            if not _is_sqlite(s):
                stmt = stmt.with_for_update()
            od = s.execute(stmt).scalars().first()
            if od is None:
                raise OrderNotFound(f"order {order_id} not found")
            details = s.execute(
                select(OrderDetail).where(OrderDetail.order_id == order_id).order_by(OrderDetail.id)
            ).scalars().all()
            _check_details(od, details)

            now = _utcnow()
            if od.status != ORDER_COMPLETED:
                od.status = ORDER_COMPLETED
                od.completed_at = now
                od.payment_method = payment_method
            od.updated_at = now
            # Emit the UPDATE first so the write lock is held before the guards run.
            s.flush()

            sale = _sale_for_order(s, order_id)
            if sale is None:
                sale = Sale(
                    id=str(uuid.uuid4()),
                    order_id=order_id,
                    table_ref=od.table_id,
                    total=to_money(od.total),
                    item_count=len(details),
                    payment_method=od.payment_method or payment_method,
                    settled_at=now,
                )
                s.add(sale)
                s.flush()
            sale_id = sale.id

            has_details = s.execute(select(SaleDetail.id).where(SaleDetail.sale_id == sale_id).limit(1)).first()
            if has_details is None:
                catalog = SqlCatalog(s)
                for d in details:
                    name, category = catalog.describe(d.ref)
                    s.add(
                        SaleDetail(
                            sale_id=sale_id,
                            ref_kind=d.ref_kind,
                            ref_id=d.ref_id,
                            product_name=name,
                            category=category,
                            quantity=d.quantity,
                            unit_price=d.unit_price,
                            subtotal=d.subtotal,
                            is_special=d.ref_kind == "special",
                        )
                    )
    except IntegrityError as e:
        # Lost the race on uq_sales_order_id: the winner's sale is the result.
        winner = _sale_for_order(s, order_id)
        if winner is not None:
            _log.info("sale already recorded by concurrent settlement", extra={"order_id": order_id})
            return winner.id
        _log.error("sale insert violated a constraint outside the guarded path", extra={"order_id": order_id})
        raise SettlementCorruption(f"integrity error settling order {order_id}") from e
    _log.info("order completed", extra={"order_id": order_id, "sale_id": sale_id})
    return sale_id


def _check_replay_matches(s: Session, od: Order, req: SettlementRequest) -> None:
    _, details = get_order(s, od.id)
    have = {(d.ref_kind, d.ref_id): d.quantity for d in details}
    want = {(ln.ref.kind, ln.ref.id): ln.quantity for ln in _merge_slots(x.to_line() for x in req.lines)}
    if od.table_id != req.table_id or have != want:
        _log.error(
            "settlement id reused with different contents",
            extra={"settlement_id": req.settlement_id, "order_id": od.id, "table_id": req.table_id},
        )
        raise SettlementCorruption(f"settlement {req.settlement_id} was already recorded with other lines")


def record_settlement(s: Session, req: SettlementRequest, catalog: Optional[SqlCatalog] = None) -> LedgerReceipt:
    """
    Ledger entry point for a client settlement. The order is looked up by
    ``req.settlement_id`` first, so replays of the same request settle the
    same order and return the same sale. A settlement id that comes back
    with another table or other lines is rejected as SettlementCorruption.
    """
    od = find_order_by_client_ref(s, req.settlement_id)
    if od is not None:
        _check_replay_matches(s, od, req)
    else:
        od = create_order(
            s,
            req.table_id,
            [ln.to_line() for ln in req.lines],
            client_ref=req.settlement_id,
            catalog=catalog,
        )
        if to_money(od.total) != to_money(req.total):
            _log.warning(
                "client total %s differs from ledger total %s",
                req.total,
                od.total,
                extra={"settlement_id": req.settlement_id, "order_id": od.id},
            )
    order_id, order_number = od.id, od.order_number
    sale_id = complete_order(s, order_id, req.payment_method)
    sale = s.get(Sale, sale_id)
    return LedgerReceipt(sale_id=sale_id, order_id=order_id, order_number=order_number, total=to_money(sale.total))


# --- Read models ---
def list_sales(s: Session, start: datetime, end: datetime) -> List[Sale]:
    stmt = (
        select(Sale)
        .where(Sale.settled_at >= start, Sale.settled_at < end)
        .order_by(Sale.settled_at.asc(), Sale.id.asc())
    )
    return list(s.execute(stmt).scalars().all())


def sale_details(s: Session, sale_id: str) -> List[SaleDetail]:
    stmt = select(SaleDetail).where(SaleDetail.sale_id == sale_id).order_by(SaleDetail.id)
    return list(s.execute(stmt).scalars().all())


def sales_summary(s: Session, start: datetime, end: datetime, top: int = 5) -> dict:
    window = (Sale.settled_at >= start, Sale.settled_at < end)
    count, revenue = s.execute(select(func.count(Sale.id), func.coalesce(func.sum(Sale.total), 0)).where(*window)).one()
    revenue = to_money(revenue or 0)
    qty = func.sum(SaleDetail.quantity)
    rows = s.execute(
        select(SaleDetail.product_name, qty)
        .join(Sale, Sale.id == SaleDetail.sale_id)
        .where(*window)
        .group_by(SaleDetail.product_name)
        .order_by(qty.desc(), SaleDetail.product_name)
        .limit(top)
    ).all()
    return {
        "sales": int(count or 0),
        "revenue": revenue,
        "average_ticket": to_money(revenue / count) if count else to_money(0),
        "top_products": [{"product_name": name, "quantity": int(q or 0)} for name, q in rows],
    }
