# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/posledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` when migrations are in play).
#
# Seller management (MULTI-TENANT):
# - python -m flask sellers list
#   List all sellers.
# - python -m flask sellers create --name "Corner Store"
#   Create a new seller (tenant).
#
# Inventory maintenance:
# - python -m flask inventory reconcile [--seller-id 1]
#   Report products whose stock differs from their variant sum and invoices
#   flagged for reconciliation.
# - python -m flask inventory reconcile --fix
#   Same, then reset drifted products to their variant sum.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Seller
from .services import inventory_service, invoice_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables for the configured database."""
    db.create_all()
    click.echo("PASS Tables created")


@click.group('sellers')
def sellers_group():
    """Seller (tenant) management commands."""


@sellers_group.command('list')
@with_appcontext
def list_sellers():
    """List all sellers."""
    sellers = db.session.query(Seller).order_by(Seller.id.asc()).all()

    if not sellers:
        click.echo("No sellers found.")
        return

    click.echo("\n" + "="*60)
    click.echo(f"{'ID':<5} {'Name':<40} {'Active'}")
    click.echo("="*60)

    for seller in sellers:
        active_str = "Yes" if seller.is_active else "No"
        click.echo(f"{seller.id:<5} {seller.name:<40} {active_str}")

    click.echo("="*60 + "\n")


@sellers_group.command('create')
@click.option('--name', required=True, help='Seller name')
@with_appcontext
def create_seller_cli(name):
    """Create a new seller (tenant)."""
    name = name.strip()
    if not name:
        click.echo("FAIL Seller name cannot be blank")
        return

    seller = Seller(name=name, is_active=True)
    db.session.add(seller)
    db.session.commit()

    click.echo(f"PASS Created seller: {seller.name} (ID: {seller.id})")


@click.group('inventory')
def inventory_group():
    """Inventory consistency commands."""


@inventory_group.command('reconcile')
@click.option('--seller-id', type=int, help='Limit to one seller')
@click.option('--fix', is_flag=True, help='Reset drifted products to their variant sum')
@with_appcontext
def reconcile_inventory(seller_id, fix):
    """Report stock drift and invoices flagged for reconciliation."""
    drift = inventory_service.find_stock_drift(seller_id)

    if not drift:
        click.echo("PASS No stock drift found")
    else:
        click.echo(f"WARN {len(drift)} product(s) with stock != variant sum:")
        for row in drift:
            click.echo(
                f"  - product {row['product_id']} (seller {row['seller_id']}, sku {row['sku']}): "
                f"stock {row['stock']}, variants {row['variant_sum']}"
            )
        if fix:
            fixed = inventory_service.fix_stock_drift(seller_id)
            click.echo(f"PASS Fixed {fixed} product(s)")

    if seller_id is not None:
        seller_ids = [seller_id]
    else:
        seller_ids = [s.id for s in db.session.query(Seller.id).order_by(Seller.id.asc()).all()]

    flagged = []
    for sid in seller_ids:
        flagged.extend(invoice_service.list_invoices_needing_reconciliation(sid))

    if not flagged:
        click.echo("PASS No invoices need reconciliation")
        return

    click.echo(f"WARN {len(flagged)} invoice(s) need reconciliation:")
    for invoice in flagged:
        missing = [item for item in invoice.items if not item.stock_applied]
        click.echo(
            f"  - invoice {invoice.id} (seller {invoice.seller_id}): "
            f"{len(missing)} line(s) not debited"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sellers_group)  # Multi-tenant seller management
    app.cli.add_command(inventory_group)
