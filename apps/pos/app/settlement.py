from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from .catalog import Catalog
from .config import DEFAULT_PAYMENT_METHOD
from .errors import LedgerUnavailable, NoValidLineItems, PosError
from .ledger_client import LedgerClient
from .lines import CatalogRef, LineItem, SpecialRef, lines_total, to_money
from .offline_queue import DrainReport, OfflineQueue
from .schemas import SettlementLine, SettlementRequest
from .tabs import TabRegistry

_log = logging.getLogger("ooilo.pos.settlement")


@dataclass(frozen=True)
class SettlementResult:
    status: str  # "settled" | "queued"
    table_id: str
    total: Decimal
    settlement_id: str
    sale_id: Optional[str] = None
    order_id: Optional[int] = None
    order_number: Optional[str] = None


class SettlementCoordinator:
    """
    Turns a table's tab into a ledger settlement. Each call ends in exactly
    one durable write: the ledger transaction, or, when the ledger is
    unavailable, an offline queue item. The tab is cleared only after one of
    them succeeded.
    """

    def __init__(
        self,
        tabs: TabRegistry,
        ledger: LedgerClient,
        queue: OfflineQueue,
        catalog: Optional[Catalog] = None,
    ):
        self.tabs = tabs
        self.ledger = ledger
        self.queue = queue
        self.catalog = catalog or tabs.catalog
        self.last_attempt_offline = False

    def validate_lines(self, table_id: str, lines: Sequence[LineItem]) -> List[LineItem]:
        valid: List[LineItem] = []
        for ln in lines:
            reason = self._invalid_reason(ln)
            if reason is None and ln.unit_price is None:
                try:
                    ln = LineItem(ln.ref, ln.quantity, to_money(self.catalog.lookup_price(ln.ref)), ln.name, ln.notes)
                except PosError:
                    reason = "price not resolvable"
            if reason is None and to_money(ln.unit_price) < 0:
                reason = "negative price"
            if reason is not None:
                _log.warning("dropping line: %s", reason, extra={"table_id": table_id})
                continue
            valid.append(ln)
        return valid

    @staticmethod
    def _invalid_reason(ln: LineItem) -> Optional[str]:
        if not isinstance(ln.ref, (CatalogRef, SpecialRef)):
            return "missing ref"
        if not isinstance(ln.quantity, int) or ln.quantity <= 0:
            return "non-positive quantity"
        if ln.unit_price is not None:
            try:
                to_money(ln.unit_price)
            except ValueError:
                return "malformed price"
        return None

    def settle(self, table_id: str, payment_method: str = DEFAULT_PAYMENT_METHOD) -> SettlementResult:
        return self.settle_lines(table_id, self.tabs.snapshot(table_id).lines, payment_method)

    def settle_lines(
        self,
        table_id: str,
        lines: Sequence[LineItem],
        payment_method: str = DEFAULT_PAYMENT_METHOD,
    ) -> SettlementResult:
        valid = self.validate_lines(table_id, lines)
        if not valid:
            raise NoValidLineItems(f"table {table_id} has no valid lines to settle")

        total = lines_total(valid)
        req = SettlementRequest(
            table_id=table_id,
            payment_method=payment_method,
            lines=[
                SettlementLine(
                    kind=ln.ref.kind,
                    ref_id=ln.ref.id,
                    quantity=ln.quantity,
                    unit_price=to_money(ln.unit_price),
                    name=ln.name,
                    notes=ln.notes,
                )
                for ln in valid
            ],
            total=total,
        )
        ctx = {"table_id": table_id, "settlement_id": req.settlement_id}

        # A table's settlements reach the ledger in the order they were made:
        # while an earlier one is still queued, this one queues behind it.
        if self.queue.has_pending(table_id):
            self.drain()
            if self.queue.has_pending(table_id):
                _log.warning("earlier settlement for table still queued, queueing behind it", extra=ctx)
                return self._queue(req, total)

        try:
            receipt = self.ledger.submit(req)
        except LedgerUnavailable as e:
            _log.warning("ledger unavailable, queueing settlement: %s", e, extra=ctx)
            return self._queue(req, total)

        self.last_attempt_offline = False
        self.tabs.clear(table_id)
        _log.info("tab settled", extra={**ctx, "order_id": receipt.order_id, "sale_id": receipt.sale_id})
        return SettlementResult(
            status="settled",
            table_id=table_id,
            total=total,
            settlement_id=req.settlement_id,
            sale_id=receipt.sale_id,
            order_id=receipt.order_id,
            order_number=receipt.order_number,
        )

    def _queue(self, req: SettlementRequest, total: Decimal) -> SettlementResult:
        # QueueWriteFailed propagates and the tab stays as it was.
        self.queue.enqueue(req)
        self.last_attempt_offline = True
        self.tabs.clear(req.table_id)
        return SettlementResult(status="queued", table_id=req.table_id, total=total, settlement_id=req.settlement_id)

    def drain(self) -> DrainReport:
        report = self.queue.drain(self.ledger.submit)
        if report.settled and not report.retried:
            self.last_attempt_offline = False
        return report
