from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .lines import LineItem, make_ref

RefKindIn = Literal["catalog", "special"]


# --- Tabs ---
class LineIn(BaseModel):
    kind: RefKindIn = "catalog"
    ref_id: int
    qty: int = Field(default=1, ge=1)
    notes: Optional[str] = None


class LineOut(BaseModel):
    kind: str
    ref_id: int
    name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    is_special: bool
    notes: str = ""

    @classmethod
    def from_line(cls, ln: LineItem) -> "LineOut":
        return cls(
            kind=ln.ref.kind,
            ref_id=ln.ref.id,
            name=ln.name,
            quantity=ln.quantity,
            unit_price=ln.unit_price,
            subtotal=ln.subtotal,
            is_special=ln.is_special,
            notes=ln.notes,
        )


class TabOut(BaseModel):
    table_id: str
    lines: List[LineOut]
    total: Decimal


class SettleIn(BaseModel):
    payment_method: str = Field(default="efectivo", min_length=1, max_length=32)


class SettlementOut(BaseModel):
    status: Literal["settled", "queued"]
    table_id: str
    total: Decimal
    settlement_id: str
    sale_id: Optional[str] = None
    order_id: Optional[int] = None
    order_number: Optional[str] = None


# --- Ledger wire format ---
class SettlementLine(BaseModel):
    kind: RefKindIn
    ref_id: int
    quantity: int
    unit_price: Decimal
    name: str = ""
    notes: str = ""

    def to_line(self) -> LineItem:
        return LineItem(
            ref=make_ref(self.kind, self.ref_id),
            quantity=self.quantity,
            unit_price=self.unit_price,
            name=self.name,
            notes=self.notes,
        )


class SettlementRequest(BaseModel):
    """
    Everything the ledger needs to settle a tab. Stored verbatim in the
    offline queue; ``settlement_id`` is the replay key.
    """

    settlement_id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=8, max_length=64)
    table_id: str = Field(min_length=1, max_length=32)
    payment_method: str = "efectivo"
    lines: List[SettlementLine]
    total: Decimal
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LedgerReceiptOut(BaseModel):
    sale_id: str
    order_id: int
    order_number: str
    total: Decimal


class CompleteIn(BaseModel):
    payment_method: str = "efectivo"


class CompleteOut(BaseModel):
    order_id: int
    sale_id: str


class OrderDetailOut(BaseModel):
    id: int
    ref_kind: str
    ref_id: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    notes: Optional[str]
    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: int
    table_id: str
    order_number: str
    status: str
    subtotal: Decimal
    total: Decimal
    payment_method: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    completed_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class OrderWithDetails(BaseModel):
    order: OrderOut
    details: List[OrderDetailOut]


# --- Sales read model ---
class SaleDetailOut(BaseModel):
    product_name: str
    category: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    is_special: bool
    model_config = ConfigDict(from_attributes=True)


class SaleOut(BaseModel):
    id: str
    order_id: int
    table_ref: str
    total: Decimal
    item_count: int
    payment_method: str
    settled_at: datetime
    details: List[SaleDetailOut] = Field(default_factory=list)
    model_config = ConfigDict(from_attributes=True)


class TopProduct(BaseModel):
    product_name: str
    quantity: int


class SalesSummaryOut(BaseModel):
    sales: int
    revenue: Decimal
    average_ticket: Decimal
    top_products: List[TopProduct]


# --- Offline sync ---
class QueueItemOut(BaseModel):
    id: int
    settlement_id: str
    table_id: str
    status: str
    attempts: int
    last_error: Optional[str]
    sale_id: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    model_config = ConfigDict(from_attributes=True)


class SyncStatusOut(BaseModel):
    offline: bool
    pending: int
    failed: int


class DrainOut(BaseModel):
    settled: List[str]
    retried: List[str]
    failed: List[str]
    skipped: List[str]
