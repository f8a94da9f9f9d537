import time
from decimal import Decimal

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ooilo_shared import run_periodic

from apps.pos.app import ledger, reconcile_worker
from apps.pos.app.errors import LedgerUnavailable, NoValidLineItems, QueueWriteFailed
from apps.pos.app.ledger_client import InternalLedgerClient
from apps.pos.app.lines import CatalogRef, LineItem, SpecialRef
from apps.pos.app.models import Sale
from apps.pos.app.offline_queue import FAILED, PENDING, REPLAYING, SETTLED, DrainReport, PendingSettlement
from apps.pos.app.schemas import SettlementLine, SettlementRequest
from apps.pos.app.settlement import SettlementCoordinator
from apps.pos.app.tabs import TabRegistry


class FlakyLedger:
    """In-process ledger that can be switched off, or lose its response."""

    def __init__(self, engine):
        self.inner = InternalLedgerClient(engine)
        self.down = False
        self.lose_response = False
        self.calls = 0

    def submit(self, req):
        self.calls += 1
        if self.down:
            raise LedgerUnavailable("simulated outage")
        receipt = self.inner.submit(req)
        if self.lose_response:
            raise LedgerUnavailable("simulated timeout after commit")
        return receipt


@pytest.fixture()
def flaky(ledger_engine):
    return FlakyLedger(ledger_engine)


@pytest.fixture()
def coordinator(catalog, flaky, queue):
    return SettlementCoordinator(TabRegistry(catalog), flaky, queue)


def _fill_t1(c: SettlementCoordinator, menu) -> None:
    c.tabs.add_line("T1", CatalogRef(menu.burger), qty=2)
    c.tabs.add_line("T1", CatalogRef(menu.soda))


def _sales(engine):
    with Session(engine) as s:
        return list(s.execute(select(Sale)).scalars().all())


def _sale_lines(engine, sale_id):
    with Session(engine) as s:
        return sorted((d.product_name, d.quantity, d.unit_price, d.subtotal) for d in ledger.sale_details(s, sale_id))


def test_settle_t1_in_cash(coordinator, ledger_engine, menu):
    _fill_t1(coordinator, menu)

    res = coordinator.settle("T1", "efectivo")

    assert res.status == "settled"
    assert res.total == Decimal("85.00")
    assert res.order_number.startswith("PED-")
    assert coordinator.tabs.get("T1") is None
    sales = _sales(ledger_engine)
    assert len(sales) == 1
    assert sales[0].total == Decimal("85.00")
    assert sales[0].payment_method == "efectivo"
    assert len(_sale_lines(ledger_engine, sales[0].id)) == 2


def test_no_valid_lines_leaves_tab_untouched(coordinator, queue, ledger_engine, menu):
    _fill_t1(coordinator, menu)
    before = coordinator.tabs.snapshot("T1")

    with pytest.raises(NoValidLineItems):
        coordinator.settle_lines(
            "T1",
            [
                LineItem(CatalogRef(menu.burger), 0, Decimal("35.00")),
                LineItem(CatalogRef(menu.soda), -2, Decimal("15.00")),
            ],
        )

    assert coordinator.tabs.snapshot("T1") == before
    assert queue.pending_count() == 0
    assert _sales(ledger_engine) == []


def test_invalid_lines_are_dropped_and_missing_prices_resolved(coordinator, ledger_engine, menu):
    res = coordinator.settle_lines(
        "T7",
        [
            LineItem(CatalogRef(menu.soda), 2, None),
            LineItem(CatalogRef(menu.burger), 0, Decimal("35.00")),
            LineItem(SpecialRef(menu.pozole), 1, Decimal("-1")),
            LineItem(CatalogRef(999), 1, None),
        ],
    )
    assert res.status == "settled"
    assert res.total == Decimal("30.00")
    assert _sale_lines(ledger_engine, res.sale_id) == [("Soda", 2, Decimal("15.00"), Decimal("30.00"))]


def test_offline_settlement_replays_to_one_identical_sale(coordinator, flaky, queue, ledger_engine, menu):
    # Synchronous reference result for the same tab on another table.
    coordinator.tabs.add_line("T2", CatalogRef(menu.burger), qty=2)
    coordinator.tabs.add_line("T2", CatalogRef(menu.soda))
    reference = coordinator.settle("T2")

    _fill_t1(coordinator, menu)
    flaky.down = True
    res = coordinator.settle("T1")

    assert res.status == "queued"
    assert res.total == Decimal("85.00")
    assert coordinator.tabs.get("T1") is None
    assert coordinator.last_attempt_offline is True
    assert queue.pending_count() == 1
    assert len(_sales(ledger_engine)) == 1

    # Still down: the item stays pending.
    report = coordinator.drain()
    assert report.retried == [res.settlement_id]
    assert queue.pending_count() == 1

    flaky.down = False
    report = coordinator.drain()
    assert report.settled == [res.settlement_id]
    assert coordinator.last_attempt_offline is False
    assert queue.pending_count() == 0

    assert coordinator.drain().settled == []
    sales = _sales(ledger_engine)
    assert len(sales) == 2
    replayed = next(x for x in sales if x.table_ref == "T1")
    assert replayed.total == Decimal("85.00")
    assert _sale_lines(ledger_engine, replayed.id) == _sale_lines(ledger_engine, reference.sale_id)
    (item,) = queue.list_items(SETTLED)
    assert item.sale_id == replayed.id
    assert item.attempts == 2


def test_replay_after_lost_response_does_not_duplicate(coordinator, flaky, queue, ledger_engine, menu):
    _fill_t1(coordinator, menu)
    flaky.lose_response = True
    res = coordinator.settle("T1")
    assert res.status == "queued"
    assert len(_sales(ledger_engine)) == 1

    flaky.lose_response = False
    report = coordinator.drain()
    assert report.settled == [res.settlement_id]
    assert len(_sales(ledger_engine)) == 1


def test_queue_write_failure_keeps_tab(coordinator, flaky, queue, menu, monkeypatch):
    _fill_t1(coordinator, menu)
    before = coordinator.tabs.snapshot("T1")
    flaky.down = True

    def broken(req):
        raise QueueWriteFailed("disk full")

    monkeypatch.setattr(queue, "enqueue", broken)
    with pytest.raises(QueueWriteFailed):
        coordinator.settle("T1")
    assert coordinator.tabs.snapshot("T1") == before


def _request(table_id: str, ref_id: int, kind: str = "catalog") -> SettlementRequest:
    return SettlementRequest(
        table_id=table_id,
        lines=[SettlementLine(kind=kind, ref_id=ref_id, quantity=1, unit_price=Decimal("15.00"))],
        total=Decimal("15.00"),
    )


def test_enqueue_is_idempotent_per_settlement_id(queue, menu):
    req = _request("T1", menu.soda)
    first = queue.enqueue(req)
    second = queue.enqueue(req)
    assert first.id == second.id
    assert queue.pending_count() == 1


def test_fatal_replay_marks_failed_and_alerts(queue, flaky, alert_sink, ledger_engine):
    req = _request("T1", 9999)
    queue.enqueue(req)

    report = queue.drain(flaky.submit)

    assert report.failed == [req.settlement_id]
    assert queue.failed_count() == 1
    (item,) = queue.list_items(FAILED)
    assert item.last_error == "product_not_found"
    assert alert_sink.alerts and alert_sink.alerts[0][0] == "settlement_replay_failed"
    assert _sales(ledger_engine) == []

    # Operator puts it back; it fails again until the menu is fixed.
    assert queue.requeue(item.id) is True
    assert queue.requeue(item.id) is False
    assert queue.pending_count() == 1


def test_unexpected_replay_error_is_fatal(queue, alert_sink, menu):
    req = _request("T1", menu.soda)
    queue.enqueue(req)

    def boom(_req):
        raise RuntimeError("bug")

    report = queue.drain(boom)
    assert report.failed == [req.settlement_id]
    assert queue.list_items(FAILED)[0].last_error == "RuntimeError"
    assert len(alert_sink.alerts) == 1


def test_drain_keeps_per_table_order(queue, menu):
    r1, r2, r3 = _request("T1", menu.soda), _request("T1", menu.burger), _request("T2", menu.soda)
    for r in (r1, r2, r3):
        queue.enqueue(r)
    seen = []

    def submit(req):
        seen.append(req.settlement_id)
        if req.settlement_id == r1.settlement_id:
            raise LedgerUnavailable("still down")
        return ledger.LedgerReceipt(sale_id="s-" + req.settlement_id[:8], order_id=1, order_number="PED", total=req.total)

    report = queue.drain(submit)

    assert seen == [r1.settlement_id, r3.settlement_id]
    assert report.retried == [r1.settlement_id]
    assert report.skipped == [r2.settlement_id]
    assert report.settled == [r3.settlement_id]
    assert [i.settlement_id for i in queue.list_items(PENDING)] == [r1.settlement_id, r2.settlement_id]


def test_interrupted_replay_is_picked_up_again(queue, flaky, menu, ledger_engine):
    req = _request("T1", menu.soda)
    item = queue.enqueue(req)
    with Session(queue.engine) as s:
        s.execute(update(PendingSettlement).where(PendingSettlement.id == item.id).values(status=REPLAYING))
        s.commit()

    report = queue.drain(flaky.submit)
    assert report.settled == [req.settlement_id]
    with Session(ledger_engine) as s:
        assert s.execute(select(func.count(Sale.id))).scalar_one() == 1


def _ledger_orders(engine, table_id):
    with Session(engine) as s:
        orders = ledger.list_orders(s, table_id=table_id)
        return [
            [(d.ref_id, d.quantity) for d in ledger.get_order(s, o.id)[1]]
            for o in sorted(orders, key=lambda o: o.id)
        ]


def test_settlement_behind_a_queued_one_reaches_ledger_second(coordinator, flaky, queue, ledger_engine, menu):
    coordinator.tabs.add_line("T1", CatalogRef(menu.burger))
    flaky.down = True
    first = coordinator.settle("T1")
    assert first.status == "queued"

    # Ledger is back; the next settlement of T1 pushes the queued one first.
    flaky.down = False
    coordinator.tabs.add_line("T1", CatalogRef(menu.soda), qty=2)
    second = coordinator.settle("T1")

    assert second.status == "settled"
    assert queue.pending_count() == 0
    assert _ledger_orders(ledger_engine, "T1") == [[(menu.burger, 1)], [(menu.soda, 2)]]


def test_settlement_queues_while_table_has_unreplayed_item(coordinator, flaky, queue, ledger_engine, menu, monkeypatch):
    coordinator.tabs.add_line("T1", CatalogRef(menu.burger))
    flaky.down = True
    first = coordinator.settle("T1")
    flaky.down = False

    # A drain that cannot run now (another pass holds the lock) leaves the item pending.
    monkeypatch.setattr(queue, "drain", lambda submit: DrainReport())
    coordinator.tabs.add_line("T1", CatalogRef(menu.soda))
    second = coordinator.settle("T1")
    assert second.status == "queued"
    assert coordinator.tabs.get("T1") is None
    assert _sales(ledger_engine) == []

    # Other tables are not held back.
    coordinator.tabs.add_line("T2", CatalogRef(menu.soda))
    assert coordinator.settle("T2").status == "settled"

    monkeypatch.undo()
    report = coordinator.drain()
    assert report.settled == [first.settlement_id, second.settlement_id]
    assert _ledger_orders(ledger_engine, "T1") == [[(menu.burger, 1)], [(menu.soda, 1)]]


def test_periodic_timer_drains_queued_settlements(coordinator, flaky, queue, ledger_engine, menu):
    _fill_t1(coordinator, menu)
    flaky.down = True
    res = coordinator.settle("T1")
    assert res.status == "queued"
    flaky.down = False

    app = FastAPI()
    run_periodic(app, 0.05, coordinator.drain, "pos-reconcile")
    with TestClient(app):
        deadline = time.monotonic() + 5
        while queue.pending_count() and time.monotonic() < deadline:
            time.sleep(0.05)

    assert queue.pending_count() == 0
    assert [i.settlement_id for i in queue.list_items(SETTLED)] == [res.settlement_id]
    assert coordinator.last_attempt_offline is False
    assert [s.table_ref for s in _sales(ledger_engine)] == ["T1"]


@pytest.mark.parametrize("interval", ["0", "-5", "soon"])
def test_reconcile_worker_refuses_bad_interval(monkeypatch, interval):
    monkeypatch.setattr(reconcile_worker, "setup_json_logging", lambda: None)
    monkeypatch.delenv("POS_RECONCILE_WORKER_INTERVAL_SECS", raising=False)
    monkeypatch.setenv("POS_RECONCILE_INTERVAL_SECS", interval)
    assert reconcile_worker.main() == 1
