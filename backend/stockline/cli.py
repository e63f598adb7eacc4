# Overview: Flask CLI command groups for stock inspection and maintenance.

# backend/stockline/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Stock:
# - python -m flask inventory adjust --tenant acme --product-id 12 --change -3 --reason damage
#   Single-item adjustment through the same locked, ledgered path as the API.
# - python -m flask inventory ledger --tenant acme --product-id 12 [--limit 20]
#   Show the newest ledger entries for a product.
#
# Imports:
# - python -m flask imports usage --tenant acme
#   Extraction call counts, tokens and estimated cost.

import click
from flask.cli import with_appcontext

from .services import inventory_service, usage_service
from .services.inventory_service import ProductNotFoundError
from .validation import ValidationError


@click.group('inventory')
def inventory_group():
    """Stock level and ledger commands."""


@inventory_group.command('adjust')
@click.option('--tenant', 'tenant_id', required=True, help='Tenant id')
@click.option('--product-id', type=int, required=True, help='Product id')
@click.option('--change', 'quantity_change', type=int, required=True, help='Signed quantity change')
@click.option('--reason', default='adjustment', show_default=True, help='Reason code')
@click.option('--notes', default=None, help='Free-text note for the ledger')
@click.option('--location', 'location_id', default=None, help='Location id (defaults to DEFAULT_LOCATION_ID)')
@click.option('--actor', default='cli', show_default=True, help='Actor recorded on the ledger entry')
@with_appcontext
def adjust_command(tenant_id, product_id, quantity_change, reason, notes, location_id, actor):
    """Adjust on-hand quantity for one product."""
    if quantity_change == 0:
        raise click.BadParameter('must be non-zero', param_hint='--change')
    try:
        result = inventory_service.adjust_stock(
            tenant_id=tenant_id,
            product_id=product_id,
            quantity_change=quantity_change,
            reason=reason,
            notes=notes,
            location_id=location_id,
            actor=actor,
        )
    except (ValidationError, ProductNotFoundError) as e:
        raise click.ClickException(str(e))
    click.echo(
        f"PASS {result['sku']} @ {result['location_id']}: "
        f"{result['previous']} -> {result['new']} ({result['change']:+d})"
    )


@inventory_group.command('ledger')
@click.option('--tenant', 'tenant_id', required=True, help='Tenant id')
@click.option('--product-id', type=int, required=True, help='Product id')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def ledger_command(tenant_id, product_id, limit):
    """List ledger entries for a product, newest first."""
    try:
        entries = inventory_service.list_ledger_entries(tenant_id, product_id, limit=limit)
    except ProductNotFoundError as e:
        raise click.ClickException(str(e))
    if not entries:
        click.echo("No ledger entries.")
        return
    for e in entries:
        click.echo(
            f"{e['created_at']}  {e['type']:<10} {e['quantity_delta']:+6d}  "
            f"{e['quantity_before']:>6} -> {e['quantity_after']:<6} {e['location_id']}  {e['reason'] or ''}"
        )


@click.group('imports')
def imports_group():
    """Import pipeline commands."""


@imports_group.command('usage')
@click.option('--tenant', 'tenant_id', required=True, help='Tenant id')
@with_appcontext
def usage_command(tenant_id):
    """Show extraction usage and estimated cost."""
    stats = usage_service.get_usage_stats(tenant_id)
    click.echo(f"Calls: {stats['total_calls']}  Tokens: {stats['total_tokens']}  "
               f"Cost: ${stats['total_cost']:.4f}  Success: {stats['success_rate']}")
    for month, bucket in stats['by_month'].items():
        click.echo(f"  {month}  calls={bucket['calls']}  tokens={bucket['tokens']}  cost=${bucket['cost']:.4f}")
    for item in stats['by_service']:
        click.echo(f"  {item['service']}/{item['model']}  calls={item['calls']}  cost=${item['cost']:.4f}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(inventory_group)
    app.cli.add_command(imports_group)
