"""
Offline Reconciliation Queue.

Settlements the ledger could not take synchronously are stored here verbatim
and replayed later. The store is local to the client (its own engine and
metadata) so it keeps working while the ledger is unreachable.

Item states:
    pending -> replaying -> settled
                         -> pending  (ledger still unavailable)
                         -> failed   (fatal; operator must requeue)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Set

from sqlalchemy import DateTime, Engine, Integer, String, Text, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from .alerts import emit_alert
from .errors import RETRYABLE, PosError, QueueWriteFailed
from .models import _utcnow
from .schemas import SettlementRequest

_log = logging.getLogger("ooilo.pos.offline_queue")

PENDING = "pending"
REPLAYING = "replaying"
SETTLED = "settled"
FAILED = "failed"


class QueueBase(DeclarativeBase):
    pass


class PendingSettlement(QueueBase):
    __tablename__ = "pending_settlements"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    settlement_id: Mapped[str] = mapped_column(String(64), unique=True)
    table_id: Mapped[str] = mapped_column(String(32), index=True)
    payload: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), default=PENDING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    sale_id: Mapped[Optional[str]] = mapped_column(String(36), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def request(self) -> SettlementRequest:
        return SettlementRequest.model_validate_json(self.payload)


@dataclass
class DrainReport:
    settled: List[str] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


# The submit callable returns anything with a ``sale_id`` (a LedgerReceipt).
Submit = Callable[[SettlementRequest], object]


class OfflineQueue:
    def __init__(self, engine: Engine, alert: Callable[[str, dict], None] = emit_alert):
        self.engine = engine
        self._alert = alert
        self._drain_lock = threading.Lock()

    def init_schema(self) -> None:
        QueueBase.metadata.create_all(self.engine)

    def enqueue(self, req: SettlementRequest) -> PendingSettlement:
        """Persist ``req``; a second enqueue of the same settlement id is a no-op."""
        try:
            with Session(self.engine) as s:
                existing = s.execute(
                    select(PendingSettlement).where(PendingSettlement.settlement_id == req.settlement_id)
                ).scalars().first()
                if existing is not None:
                    s.expunge(existing)
                    return existing
                item = PendingSettlement(
                    settlement_id=req.settlement_id,
                    table_id=req.table_id,
                    payload=req.model_dump_json(),
                    status=PENDING,
                )
                s.add(item)
                s.commit()
                s.refresh(item)
                s.expunge(item)
        except SQLAlchemyError as e:
            _log.error("could not persist settlement", extra={"settlement_id": req.settlement_id, "table_id": req.table_id})
            raise QueueWriteFailed(f"offline queue write failed: {type(e).__name__}") from e
        _log.info("settlement queued", extra={"settlement_id": req.settlement_id, "table_id": req.table_id, "queue_item_id": item.id})
        return item

    def drain(self, submit: Submit) -> DrainReport:
        """
        Replay pending items in insertion order. A table whose item stays
        pending blocks its own later items for this pass; other tables go on.
        Concurrent drains do not overlap: a second caller gets an empty report.
        """
        report = DrainReport()
        if not self._drain_lock.acquire(blocking=False):
            _log.info("drain already running, skipping")
            return report
        try:
            self._reset_interrupted()
            blocked: Set[str] = set()
            for item_id, settlement_id, table_id in self._pending():
                if table_id in blocked:
                    report.skipped.append(settlement_id)
                    continue
                if not self._claim(item_id):
                    continue
                outcome = self._replay(item_id, submit)
                if outcome == SETTLED:
                    report.settled.append(settlement_id)
                elif outcome == PENDING:
                    report.retried.append(settlement_id)
                    blocked.add(table_id)
                else:
                    report.failed.append(settlement_id)
        finally:
            self._drain_lock.release()
        if report.settled or report.failed or report.retried:
            _log.info(
                "drain finished: %d settled, %d retried, %d failed, %d skipped",
                len(report.settled),
                len(report.retried),
                len(report.failed),
                len(report.skipped),
            )
        return report

    def _reset_interrupted(self) -> None:
        with Session(self.engine) as s:
            res = s.execute(
                update(PendingSettlement)
                .where(PendingSettlement.status == REPLAYING)
                .values(status=PENDING, updated_at=_utcnow())
            )
            s.commit()
            if res.rowcount:
                _log.warning("reset %d interrupted replays to pending", res.rowcount)

    def _pending(self) -> List[tuple]:
        with Session(self.engine) as s:
            rows = s.execute(
                select(PendingSettlement.id, PendingSettlement.settlement_id, PendingSettlement.table_id)
                .where(PendingSettlement.status == PENDING)
                .order_by(PendingSettlement.id.asc())
            ).all()
        return [tuple(r) for r in rows]

    def _claim(self, item_id: int) -> bool:
        with Session(self.engine) as s:
            res = s.execute(
                update(PendingSettlement)
                .where(PendingSettlement.id == item_id, PendingSettlement.status == PENDING)
                .values(
                    status=REPLAYING,
                    attempts=PendingSettlement.attempts + 1,
                    updated_at=_utcnow(),
                )
            )
            s.commit()
            return res.rowcount == 1

    def _replay(self, item_id: int, submit: Submit) -> str:
        with Session(self.engine) as s:
            item = s.get(PendingSettlement, item_id)
            ctx = {"queue_item_id": item_id, "settlement_id": item.settlement_id, "table_id": item.table_id}
            try:
                receipt = submit(item.request())
            except RETRYABLE as e:
                item.status = PENDING
                item.last_error = e.code
                _log.info("ledger still unavailable, item stays pending", extra=ctx)
            except PosError as e:
                item.status = FAILED
                item.last_error = e.code
                _log.error("queued settlement failed: %s", e, extra=ctx)
                self._alert("settlement_replay_failed", {**ctx, "error": e.code, "message": str(e)})
            except Exception as e:
                item.status = FAILED
                item.last_error = type(e).__name__
                _log.exception("queued settlement raised unexpectedly", extra=ctx)
                self._alert("settlement_replay_failed", {**ctx, "error": type(e).__name__})
            else:
                item.status = SETTLED
                item.sale_id = getattr(receipt, "sale_id", None)
                item.last_error = None
                _log.info("queued settlement replayed", extra={**ctx, "sale_id": item.sale_id})
            item.updated_at = _utcnow()
            status = item.status
            s.commit()
        return status

    # --- operator helpers ---
    def _count(self, status: str) -> int:
        with Session(self.engine) as s:
            return int(
                s.execute(
                    select(func.count(PendingSettlement.id)).where(PendingSettlement.status == status)
                ).scalar_one()
            )

    def pending_count(self) -> int:
        return self._count(PENDING)

    def failed_count(self) -> int:
        return self._count(FAILED)

    def has_pending(self, table_id: str) -> bool:
        """True while an earlier settlement of ``table_id`` waits for (or is in) replay."""
        with Session(self.engine) as s:
            row = s.execute(
                select(PendingSettlement.id)
                .where(
                    PendingSettlement.table_id == table_id,
                    PendingSettlement.status.in_((PENDING, REPLAYING)),
                )
                .limit(1)
            ).first()
        return row is not None

    def list_items(self, status: Optional[str] = None, limit: int = 100) -> List[PendingSettlement]:
        with Session(self.engine) as s:
            stmt = select(PendingSettlement)
            if status:
                stmt = stmt.where(PendingSettlement.status == status)
            stmt = stmt.order_by(PendingSettlement.id.asc()).limit(max(1, min(limit, 500)))
            items = list(s.execute(stmt).scalars().all())
            for it in items:
                s.expunge(it)
        return items

    def requeue(self, item_id: int) -> bool:
        """Move a failed item back to pending; False if it is not failed."""
        with Session(self.engine) as s:
            res = s.execute(
                update(PendingSettlement)
                .where(PendingSettlement.id == item_id, PendingSettlement.status == FAILED)
                .values(status=PENDING, updated_at=_utcnow())
            )
            s.commit()
            ok = res.rowcount == 1
        if ok:
            _log.info("failed item requeued", extra={"queue_item_id": item_id})
        return ok
