from __future__ import annotations

from decimal import Decimal
from typing import Optional, Protocol, Union

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from .errors import ProductNotFound
from .lines import CatalogRef, LineRef, SpecialRef
from .models import Category, MenuItem, SpecialItem

UNKNOWN_PRODUCT = "Producto Desconocido"
UNCATEGORIZED = "Sin Categoría"
SPECIAL_CATEGORY = "Especial"


class Catalog(Protocol):
    """Read-only view of sellable items owned by the menu service."""

    def exists(self, ref: LineRef) -> bool: ...

    def lookup_price(self, ref: LineRef) -> Decimal: ...

    def lookup_display_name(self, ref: LineRef) -> str: ...

    def lookup_category(self, ref: LineRef) -> str: ...

    def is_special(self, ref: LineRef) -> bool: ...


class SqlCatalog:
    """
    Catalog backed by the menu tables. Accepts either an engine (a short
    session per lookup) or an open session (lookups join the caller's
    transaction, as the ledger does while deriving sale details).
    """

    def __init__(self, bind: Union[Engine, Session]):
        self._bind = bind

    def _row(self, ref: LineRef) -> Optional[Union[MenuItem, SpecialItem]]:
        model = SpecialItem if isinstance(ref, SpecialRef) else MenuItem
        if isinstance(self._bind, Session):
            return self._bind.get(model, ref.id)
        with Session(self._bind) as s:
            row = s.get(model, ref.id)
            if row is not None:
                s.expunge(row)
            return row

    def _require(self, ref: LineRef):
        row = self._row(ref)
        if row is None:
            raise ProductNotFound(f"{ref.kind} item {ref.id} not found")
        return row

    def exists(self, ref: LineRef) -> bool:
        return self._row(ref) is not None

    def lookup_price(self, ref: LineRef) -> Decimal:
        return Decimal(self._require(ref).price)

    def lookup_display_name(self, ref: LineRef) -> str:
        return self._require(ref).name

    def lookup_category(self, ref: LineRef) -> str:
        if isinstance(ref, SpecialRef):
            return SPECIAL_CATEGORY
        item = self._require(ref)
        if item.category_id is None:
            return UNCATEGORIZED
        if isinstance(self._bind, Session):
            cat = self._bind.get(Category, item.category_id)
        else:
            with Session(self._bind) as s:
                cat = s.get(Category, item.category_id)
                name = cat.name if cat else None
            return name or UNCATEGORIZED
        return cat.name if cat else UNCATEGORIZED

    def is_special(self, ref: LineRef) -> bool:
        return isinstance(ref, SpecialRef)

    def describe(self, ref: LineRef) -> tuple[str, str]:
        """(display name, category) with the unknown-product fallbacks."""
        row = self._row(ref)
        if row is None:
            return UNKNOWN_PRODUCT, UNCATEGORIZED
        if isinstance(ref, CatalogRef):
            return row.name, self.lookup_category(ref)
        return row.name, SPECIAL_CATEGORY
