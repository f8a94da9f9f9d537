from alembic import op
import sqlalchemy as sa

from apps.pos.app.config import DB_SCHEMA

revision = '0001_initial_ledger'
down_revision = None
branch_labels = None
depends_on = None


def _schema():
    return DB_SCHEMA


def _fk(schema, target):
    return f"{schema}.{target}" if schema else target


def upgrade() -> None:
    schema = _schema()
    op.create_table(
        'categories',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(length=80), nullable=False),
        schema=schema
    )

    op.create_table(
        'menu_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('category_id', sa.Integer(), nullable=True),
        sa.Column('available', sa.Boolean(), nullable=False, server_default=sa.true()),
        schema=schema
    )

    op.create_table(
        'special_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('available', sa.Boolean(), nullable=False, server_default=sa.true()),
        schema=schema
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('table_id', sa.String(length=32), nullable=False),
        sa.Column('order_number', sa.String(length=40), nullable=False, unique=True),
        sa.Column('client_ref', sa.String(length=64), nullable=True, unique=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pendiente'),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('payment_method', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        schema=schema
    )
    op.create_index('ix_orders_table_id', 'orders', ['table_id'], schema=schema)

    op.create_table(
        'order_details',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey(_fk(schema, 'orders.id'), ondelete='CASCADE'), nullable=False),
        sa.Column('ref_kind', sa.String(length=16), nullable=False),
        sa.Column('ref_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('notes', sa.String(length=200), nullable=True),
        sa.CheckConstraint("ref_kind in ('catalog', 'special')", name='ck_order_details_ref_kind'),
        sa.CheckConstraint('quantity > 0', name='ck_order_details_quantity'),
        schema=schema
    )
    op.create_index('ix_order_details_order_id', 'order_details', ['order_id'], schema=schema)

    op.create_table(
        'sales',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey(_fk(schema, 'orders.id'), ondelete='CASCADE'), nullable=False),
        sa.Column('table_ref', sa.String(length=32), nullable=False),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('item_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('settled_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)')),
        sa.UniqueConstraint('order_id', name='uq_sales_order_id'),
        schema=schema
    )
    op.create_index('ix_sales_settled_at', 'sales', ['settled_at'], schema=schema)

    op.create_table(
        'sale_details',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('sale_id', sa.String(length=36), sa.ForeignKey(_fk(schema, 'sales.id'), ondelete='CASCADE'), nullable=False),
        sa.Column('ref_kind', sa.String(length=16), nullable=False),
        sa.Column('ref_id', sa.Integer(), nullable=False),
        sa.Column('product_name', sa.String(length=200), nullable=False),
        sa.Column('category', sa.String(length=80), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('is_special', sa.Boolean(), nullable=False, server_default=sa.false()),
        schema=schema
    )
    op.create_index('ix_sale_details_sale_id', 'sale_details', ['sale_id'], schema=schema)


def downgrade() -> None:
    schema = _schema()
    op.drop_index('ix_sale_details_sale_id', table_name='sale_details', schema=schema)
    op.drop_table('sale_details', schema=schema)
    op.drop_index('ix_sales_settled_at', table_name='sales', schema=schema)
    op.drop_table('sales', schema=schema)
    op.drop_index('ix_order_details_order_id', table_name='order_details', schema=schema)
    op.drop_table('order_details', schema=schema)
    op.drop_index('ix_orders_table_id', table_name='orders', schema=schema)
    op.drop_table('orders', schema=schema)
    op.drop_table('special_items', schema=schema)
    op.drop_table('menu_items', schema=schema)
    op.drop_table('categories', schema=schema)
