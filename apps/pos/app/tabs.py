from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from .catalog import Catalog
from .errors import LineValidationError, ProductNotFound
from .lines import LineItem, LineRef, lines_total, to_money

_log = logging.getLogger("ooilo.pos.tabs")


@dataclass
class Tab:
    """Open order for one table. The total is always derived from ``lines``."""

    table_id: str
    lines: List[LineItem] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return lines_total(self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def _index(self, ref: LineRef) -> Optional[int]:
        for i, ln in enumerate(self.lines):
            if ln.ref == ref:
                return i
        return None

    def find(self, ref: LineRef) -> Optional[LineItem]:
        idx = self._index(ref)
        return None if idx is None else self.lines[idx]

    def add(self, line: LineItem) -> LineItem:
        if line.quantity <= 0:
            raise LineValidationError("quantity must be positive", ref=line.ref)
        idx = self._index(line.ref)
        if idx is None:
            self.lines.append(line)
            return line
        merged = self.lines[idx].with_quantity(self.lines[idx].quantity + line.quantity)
        self.lines[idx] = merged
        return merged

    def decrement(self, ref: LineRef, qty: int = 1) -> Optional[LineItem]:
        """Lower a slot's quantity; the slot disappears when it reaches zero."""
        idx = self._index(ref)
        if idx is None:
            return None
        left = self.lines[idx].quantity - qty
        if left <= 0:
            del self.lines[idx]
            return None
        self.lines[idx] = self.lines[idx].with_quantity(left)
        return self.lines[idx]

    def remove(self, ref: LineRef) -> bool:
        idx = self._index(ref)
        if idx is None:
            return False
        del self.lines[idx]
        return True

    def snapshot(self) -> "TabSnapshot":
        return TabSnapshot(table_id=self.table_id, lines=list(self.lines), total=self.total)


@dataclass(frozen=True)
class TabSnapshot:
    table_id: str
    lines: List[LineItem]
    total: Decimal


class TabRegistry:
    """
    Tabs held by this client session, keyed by table. A tab exists from the
    first add on an empty table until it is cleared after settlement.
    """

    def __init__(self, catalog: Catalog):
        self.catalog = catalog
        self._tabs: Dict[str, Tab] = {}

    def get(self, table_id: str) -> Optional[Tab]:
        return self._tabs.get(table_id)

    def add_line(self, table_id: str, ref: LineRef, qty: int = 1, notes: str = "") -> LineItem:
        if qty <= 0:
            raise LineValidationError("quantity must be positive", ref=ref)
        if not self.catalog.exists(ref):
            raise ProductNotFound(f"{ref.kind} item {ref.id} not found")
        line = LineItem(
            ref=ref,
            quantity=qty,
            unit_price=to_money(self.catalog.lookup_price(ref)),
            name=self.catalog.lookup_display_name(ref),
            notes=notes or "",
        )
        tab = self._tabs.setdefault(table_id, Tab(table_id=table_id))
        added = tab.add(line)
        _log.debug("line added", extra={"table_id": table_id})
        return added

    def increment(self, table_id: str, ref: LineRef) -> Optional[LineItem]:
        tab = self._tabs.get(table_id)
        line = tab.find(ref) if tab is not None else None
        if line is None:
            return None
        return tab.add(line.with_quantity(1))

    def has_line(self, table_id: str, ref: LineRef) -> bool:
        tab = self._tabs.get(table_id)
        return tab is not None and tab.find(ref) is not None

    def decrement(self, table_id: str, ref: LineRef) -> Optional[LineItem]:
        tab = self._tabs.get(table_id)
        if tab is None:
            return None
        out = tab.decrement(ref)
        self._drop_if_empty(table_id)
        return out

    def remove_line(self, table_id: str, ref: LineRef) -> bool:
        tab = self._tabs.get(table_id)
        if tab is None:
            return False
        removed = tab.remove(ref)
        self._drop_if_empty(table_id)
        return removed

    def snapshot(self, table_id: str) -> TabSnapshot:
        tab = self._tabs.get(table_id)
        if tab is None:
            return TabSnapshot(table_id=table_id, lines=[], total=to_money(0))
        return tab.snapshot()

    def clear(self, table_id: str) -> None:
        self._tabs.pop(table_id, None)

    def open_tables(self) -> List[str]:
        return sorted(self._tabs)

    def _drop_if_empty(self, table_id: str) -> None:
        tab = self._tabs.get(table_id)
        if tab is not None and tab.is_empty:
            del self._tabs[table_id]
