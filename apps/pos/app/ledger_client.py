"""
Transports from the Settlement Coordinator to the Durable Order Ledger.

Both clients expose ``submit(request) -> LedgerReceipt`` and raise the same
domain errors, so the coordinator does not care whether the ledger lives in
this process (monolith/dev) or behind POS_LEDGER_BASE_URL.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional, Protocol

import httpx
from sqlalchemy import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeout
from sqlalchemy.orm import Session

from . import ledger
from .catalog import SqlCatalog
from .errors import LedgerUnavailable, PosError, error_for_code
from .ledger import LedgerReceipt
from .schemas import SettlementRequest

_log = logging.getLogger("ooilo.pos.ledger_client")


class LedgerClient(Protocol):
    def submit(self, req: SettlementRequest) -> LedgerReceipt: ...


class InternalLedgerClient:
    """
    Calls ``ledger.record_settlement`` directly on the ledger engine. The
    engine's connect timeout (SQLite busy timeout) bounds the attempt.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def submit(self, req: SettlementRequest) -> LedgerReceipt:
        try:
            with Session(self.engine) as s:
                return ledger.record_settlement(s, req, catalog=SqlCatalog(s))
        except PosError:
            raise
        except (OperationalError, InterfaceError, PoolTimeout) as e:
            _log.warning("ledger store unreachable", extra={"settlement_id": req.settlement_id})
            raise LedgerUnavailable(f"ledger store unreachable: {type(e).__name__}") from e


class HttpLedgerClient:
    """
    POSTs the request to ``{base_url}/ledger/settlements``. The settlement id
    doubles as the Idempotency-Key so a retried POST settles the same order.
    """

    def __init__(self, base_url: str = "", timeout_secs: float = 5.0, client: Optional[httpx.Client] = None):
        self._client = client or httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout_secs)
        self._timeout = timeout_secs

    def submit(self, req: SettlementRequest) -> LedgerReceipt:
        headers = {"Content-Type": "application/json", "Idempotency-Key": req.settlement_id}
        try:
            r = self._client.post(
                "/ledger/settlements",
                json=req.model_dump(mode="json"),
                headers=headers,
                timeout=self._timeout,
            )
        except (httpx.TransportError, httpx.TimeoutException) as e:
            _log.warning("ledger request failed: %s", e, extra={"settlement_id": req.settlement_id})
            raise LedgerUnavailable(f"ledger request failed: {type(e).__name__}") from e

        if r.status_code >= 500 or r.status_code in (408, 429):
            raise LedgerUnavailable(f"ledger responded {r.status_code}")
        if r.status_code >= 400:
            detail = _detail(r)
            _log.warning("ledger rejected settlement: %s", detail, extra={"settlement_id": req.settlement_id})
            raise error_for_code(detail, f"ledger responded {r.status_code}: {detail}")
        try:
            body = r.json()
            return LedgerReceipt(
                sale_id=str(body["sale_id"]),
                order_id=int(body["order_id"]),
                order_number=str(body["order_number"]),
                total=Decimal(str(body["total"])),
            )
        except (ValueError, KeyError, TypeError, ArithmeticError) as e:
            # The ledger may have committed; a replay with the same key finds out.
            _log.warning("unreadable ledger response: %s", type(e).__name__, extra={"settlement_id": req.settlement_id})
            raise LedgerUnavailable(f"unreadable ledger response ({r.status_code})") from e


def _detail(r: httpx.Response) -> str:
    try:
        body = r.json()
    except ValueError:
        return ""
    detail = body.get("detail") if isinstance(body, dict) else None
    return detail if isinstance(detail, str) else ""
