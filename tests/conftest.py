import os
import tempfile
from decimal import Decimal
from typing import List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

# Must be set before apps.pos.app.* is imported: config is read at import time.
_tmp = tempfile.mkdtemp(prefix="ooilo-pos-tests-")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("POS_DB_URL", f"sqlite+pysqlite:///{_tmp}/ledger.db")
os.environ.setdefault("POS_QUEUE_DB_URL", f"sqlite+pysqlite:///{_tmp}/queue.db")
os.environ.setdefault("POS_RECONCILE_INTERVAL_SECS", "0")
os.environ.setdefault("EVENTS_ENABLED", "false")

from apps.pos.app import models  # noqa: E402
from apps.pos.app.catalog import SqlCatalog  # noqa: E402
from apps.pos.app.offline_queue import OfflineQueue  # noqa: E402

# Catalog ids used across the tests.
PRODUCT_A = 1  # 10.00
PRODUCT_B = 2  # 25.00
BURGER = 3  # 35.00
SODA = 4  # 15.00
ORPHAN = 5  # category row missing
POZOLE = 1  # special, 85.00


def _sqlite_engine(path: str):
    return create_engine(
        f"sqlite+pysqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 5},
        pool_pre_ping=True,
    )


def _seed_catalog(engine) -> None:
    with Session(engine) as s:
        s.add_all(
            [
                models.Category(id=1, name="Tacos"),
                models.Category(id=2, name="Bebidas"),
                models.MenuItem(id=PRODUCT_A, name="Taco al Pastor", price=Decimal("10.00"), category_id=1),
                models.MenuItem(id=PRODUCT_B, name="Gringa", price=Decimal("25.00"), category_id=1),
                models.MenuItem(id=BURGER, name="Burger", price=Decimal("35.00"), category_id=1),
                models.MenuItem(id=SODA, name="Soda", price=Decimal("15.00"), category_id=2),
                models.MenuItem(id=ORPHAN, name="Tamal", price=Decimal("12.50"), category_id=99),
                models.SpecialItem(id=POZOLE, name="Pozole del día", price=Decimal("85.00")),
            ]
        )
        s.commit()


@pytest.fixture()
def ledger_engine(tmp_path):
    """
    Isolated file-backed SQLite ledger with a seeded menu. A file (not
    :memory:) so several connections, and threads, see the same data.
    """
    engine = _sqlite_engine(str(tmp_path / "ledger.db"))
    models.Base.metadata.create_all(engine)
    _seed_catalog(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def catalog(ledger_engine):
    return SqlCatalog(ledger_engine)


class AlertSink:
    def __init__(self):
        self.alerts: List[tuple] = []

    def __call__(self, kind: str, payload: dict) -> None:
        self.alerts.append((kind, payload))


@pytest.fixture()
def alert_sink():
    return AlertSink()


@pytest.fixture()
def queue(tmp_path, alert_sink):
    engine = _sqlite_engine(str(tmp_path / "queue.db"))
    q = OfflineQueue(engine, alert=alert_sink)
    q.init_schema()
    yield q
    engine.dispose()


class Menu:
    product_a = PRODUCT_A
    product_b = PRODUCT_B
    burger = BURGER
    soda = SODA
    orphan = ORPHAN
    pozole = POZOLE


@pytest.fixture()
def menu():
    return Menu
