from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .config import DB_SCHEMA
from .lines import LineRef, make_ref

Money = Numeric(12, 2)

ORDER_PENDING = "pendiente"
ORDER_COMPLETED = "completado"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _table_args(*constraints):
    return (*constraints, {"schema": DB_SCHEMA}) if DB_SCHEMA else (*constraints, {})


def _fk(target: str) -> ForeignKey:
    return ForeignKey(f"{DB_SCHEMA}.{target}" if DB_SCHEMA else target, ondelete="CASCADE")


class Base(DeclarativeBase):
    pass


# --- Catalog (read-only for this service) ---
class Category(Base):
    __tablename__ = "categories"
    __table_args__ = _table_args()
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(80))


class MenuItem(Base):
    __tablename__ = "menu_items"
    __table_args__ = _table_args()
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    price: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    category_id: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    available: Mapped[bool] = mapped_column(Boolean, default=True)


class SpecialItem(Base):
    __tablename__ = "special_items"
    __table_args__ = _table_args()
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    price: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    available: Mapped[bool] = mapped_column(Boolean, default=True)


# --- Ledger ---
class Order(Base):
    __tablename__ = "orders"
    __table_args__ = _table_args()
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_id: Mapped[str] = mapped_column(String(32), index=True)
    order_number: Mapped[str] = mapped_column(String(40), unique=True)
    # settlement id of the client request that created the order (replay key)
    client_ref: Mapped[Optional[str]] = mapped_column(String(64), unique=True, default=None)
    status: Mapped[str] = mapped_column(String(16), default=ORDER_PENDING)
    subtotal: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    payment_method: Mapped[Optional[str]] = mapped_column(String(32), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)


class OrderDetail(Base):
    __tablename__ = "order_details"
    __table_args__ = _table_args(
        CheckConstraint("ref_kind in ('catalog', 'special')", name="ck_order_details_ref_kind"),
        CheckConstraint("quantity > 0", name="ck_order_details_quantity"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, _fk("orders.id"), index=True)
    ref_kind: Mapped[str] = mapped_column(String(16))
    ref_id: Mapped[int] = mapped_column(Integer)
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[Decimal] = mapped_column(Money)
    subtotal: Mapped[Decimal] = mapped_column(Money)
    notes: Mapped[Optional[str]] = mapped_column(String(200), default=None)

    @property
    def ref(self) -> LineRef:
        return make_ref(self.ref_kind, self.ref_id)


class Sale(Base):
    __tablename__ = "sales"
    __table_args__ = _table_args(UniqueConstraint("order_id", name="uq_sales_order_id"))
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_id: Mapped[int] = mapped_column(Integer, _fk("orders.id"))
    table_ref: Mapped[str] = mapped_column(String(32))
    total: Mapped[Decimal] = mapped_column(Money)
    item_count: Mapped[int] = mapped_column(Integer, default=0)
    payment_method: Mapped[str] = mapped_column(String(32))
    settled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)


class SaleDetail(Base):
    __tablename__ = "sale_details"
    __table_args__ = _table_args()
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sale_id: Mapped[str] = mapped_column(String(36), _fk("sales.id"), index=True)
    ref_kind: Mapped[str] = mapped_column(String(16))
    ref_id: Mapped[int] = mapped_column(Integer)
    product_name: Mapped[str] = mapped_column(String(200))
    category: Mapped[str] = mapped_column(String(80))
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[Decimal] = mapped_column(Money)
    subtotal: Mapped[Decimal] = mapped_column(Money)
    is_special: Mapped[bool] = mapped_column(Boolean, default=False)
