from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Literal, Union

CENTS = Decimal("0.01")

RefKind = Literal["catalog", "special"]


def to_money(value) -> Decimal:
    """Quantize to 2 places, rounding half up. Floats go through str()."""
    if isinstance(value, float):
        value = str(value)
    try:
        return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValueError(f"not a money amount: {value!r}") from e


@dataclass(frozen=True)
class CatalogRef:
    id: int
    kind: RefKind = "catalog"


@dataclass(frozen=True)
class SpecialRef:
    id: int
    kind: RefKind = "special"


LineRef = Union[CatalogRef, SpecialRef]


def make_ref(kind: str, ref_id: int) -> LineRef:
    if kind == "catalog":
        return CatalogRef(int(ref_id))
    if kind == "special":
        return SpecialRef(int(ref_id))
    raise ValueError(f"unknown ref kind {kind!r}")


@dataclass(frozen=True)
class LineItem:
    """One tab slot. The unit price is the one seen when the line was added."""

    ref: LineRef
    quantity: int
    unit_price: Decimal
    name: str = ""
    notes: str = ""

    @property
    def is_special(self) -> bool:
        return isinstance(self.ref, SpecialRef)

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def with_quantity(self, quantity: int) -> "LineItem":
        return replace(self, quantity=quantity)


def lines_total(lines: Iterable[LineItem]) -> Decimal:
    return to_money(sum((ln.subtotal for ln in lines), Decimal("0")))
