"""initial schema

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 00:00:00.000000

This migration creates the complete posledger schema from scratch:
- sellers: tenant root
- products / product_variants: catalog with seller-scoped SKU/barcode uniqueness
- stock_movements: append-only record of every stock adjustment
- invoices / invoice_items / invoice_payments: sale records and their snapshots
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1b2c3d4e5f6'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """
    Create all tables from scratch.

    WHY: stock can never go negative at the storage level (CHECK constraints),
    and variant codes get real unique constraints through the denormalized
    seller_id column, so concurrent writers are stopped by the database.
    """

    # ============================================================================
    # sellers: Tenant root
    # ============================================================================
    op.create_table(
        'sellers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_sellers_is_active', 'sellers', ['is_active'])

    # ============================================================================
    # products: Product master
    # ============================================================================
    # Unique constraints cover soft-deleted rows too: a restore never collides.
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('barcode', sa.String(length=128), nullable=True),
        sa.Column('barcode_type', sa.String(length=16), nullable=False, server_default='CODE128'),
        sa.Column('category', sa.String(length=120), nullable=False),
        sa.Column('brand', sa.String(length=120), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('cost_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=True),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unit', sa.String(length=32), nullable=False, server_default='pcs'),
        sa.Column('min_stock', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['seller_id'], ['sellers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('seller_id', 'sku', name='uq_products_seller_sku'),
        sa.UniqueConstraint('seller_id', 'barcode', name='uq_products_seller_barcode'),
        sa.CheckConstraint('stock >= 0', name='ck_products_stock_nonnegative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_seller_id', 'products', ['seller_id'])
    op.create_index('ix_products_seller_name', 'products', ['seller_id', 'name'])
    op.create_index('ix_products_seller_deleted', 'products', ['seller_id', 'is_deleted'])

    # ============================================================================
    # product_variants: Sellable sub-units owned by a product
    # ============================================================================
    op.create_table(
        'product_variants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('options', sa.JSON(), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('barcode', sa.String(length=128), nullable=True),
        sa.Column('barcode_type', sa.String(length=16), nullable=False, server_default='CODE128'),
        sa.Column('cost_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('attributes', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['seller_id'], ['sellers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('seller_id', 'barcode', name='uq_variants_seller_barcode'),
        sa.UniqueConstraint('seller_id', 'sku', name='uq_variants_seller_sku'),
        sa.CheckConstraint('stock >= 0', name='ck_variants_stock_nonnegative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_product_variants_product_id', 'product_variants', ['product_id'])
    op.create_index('ix_product_variants_seller_id', 'product_variants', ['seller_id'])

    # ============================================================================
    # stock_movements: Append-only record of stock adjustments
    # ============================================================================
    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('reason', sa.String(length=32), nullable=False),
        sa.Column('quantity_delta', sa.Integer(), nullable=False),
        sa.Column('resulting_stock', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['seller_id'], ['sellers.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_movements_seller_id', 'stock_movements', ['seller_id'])
    op.create_index('ix_stock_movements_product_id', 'stock_movements', ['product_id'])
    op.create_index('ix_stock_movements_reason', 'stock_movements', ['reason'])
    op.create_index('ix_stock_movements_invoice_id', 'stock_movements', ['invoice_id'])
    op.create_index('ix_stock_movements_occurred_at', 'stock_movements', ['occurred_at'])
    op.create_index('ix_movements_seller_product_occurred', 'stock_movements',
                    ['seller_id', 'product_id', 'occurred_at'])

    # ============================================================================
    # invoices: Sale records
    # ============================================================================
    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('customer_name', sa.String(length=255), nullable=False),
        sa.Column('date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False, server_default='Retail'),
        sa.Column('gross_total', sa.Numeric(12, 2), nullable=True),
        sa.Column('item_discount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('discount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('additional_charges', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('round_off', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='Paid'),
        sa.Column('payment_status', sa.String(length=20), nullable=False, server_default='Paid'),
        sa.Column('payment_method', sa.String(length=32), nullable=False, server_default='Cash'),
        sa.Column('balance', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('internal_notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('is_locked', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('stock_applied', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('stock_restored_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('needs_reconciliation', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['seller_id'], ['sellers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_invoices_seller_id', 'invoices', ['seller_id'])
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_needs_reconciliation', 'invoices', ['needs_reconciliation'])
    op.create_index('ix_invoices_seller_status_date', 'invoices', ['seller_id', 'status', 'date'])
    op.create_index('ix_invoices_seller_deleted', 'invoices', ['seller_id', 'is_deleted'])

    # ============================================================================
    # invoice_items: Line snapshots (product_id/variant_id are not FKs)
    # ============================================================================
    op.create_table(
        'invoice_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('variant_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('variant_name', sa.String(length=255), nullable=True),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('barcode', sa.String(length=128), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('total', sa.Numeric(12, 2), nullable=False),
        sa.Column('stock_applied', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('stock_reversed', sa.Boolean(), nullable=False, server_default='0'),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_invoice_items_invoice_id', 'invoice_items', ['invoice_id'])
    op.create_index('ix_invoice_items_product_id', 'invoice_items', ['product_id'])

    # ============================================================================
    # invoice_payments: Split and partial payments
    # ============================================================================
    op.create_table(
        'invoice_payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('method', sa.String(length=32), nullable=False, server_default='Cash'),
        sa.Column('date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_invoice_payments_invoice_id', 'invoice_payments', ['invoice_id'])


def downgrade():
    """Drop all tables (destructive operation)."""
    op.drop_table('invoice_payments')
    op.drop_table('invoice_items')
    op.drop_table('invoices')
    op.drop_table('stock_movements')
    op.drop_table('product_variants')
    op.drop_table('products')
    op.drop_table('sellers')
