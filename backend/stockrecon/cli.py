# Overview: Flask CLI command groups for ledger inspection, sync maintenance and stock processing.

# backend/stockrecon/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to stockrecon (PowerShell: $env:FLASK_APP="stockrecon").
# - Use: python -m flask <group> <command> [options]
#
# Ledger inspection/repair:
# - python -m flask ledger verify
#   Compare every stock summary with a replay of its movements.
# - python -m flask ledger rebuild [--sku SKU]
#   Overwrite summaries from the ledger (one SKU, or every SKU with movements).
# - python -m flask ledger history SKU [--limit 20]
#   Show the newest movements for a SKU.
#
# Sync maintenance:
# - python -m flask sync expire-stale [--minutes 120]
#   Mark RUNNING sync runs older than the cutoff as FAILED.
# - python -m flask sync recent [--source routestar] [--limit 20]
#   List recent sync runs.
#
# Stock processing:
# - python -m flask stock process-invoices [--source routestar]
#   Post OUT movements for ingested invoices not yet stock-processed.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import StockMovement
from .services import ledger_service, sync_service
from .services.alias_service import AliasResolver


@click.group('ledger')
def ledger_group():
    """Stock ledger inspection and repair commands."""


@ledger_group.command('verify')
@with_appcontext
def verify_ledger_cli():
    """Check that every stock summary matches its ledger replay."""
    mismatches = ledger_service.verify_summaries()
    if not mismatches:
        click.echo("All stock summaries match the ledger.")
        return

    click.echo(f"{len(mismatches)} summaries out of sync:")
    for entry in mismatches:
        stored = entry["stored"]
        expected = entry["expected"]
        click.echo(
            f"  {entry['sku']}: available {stored['available_qty']} (expected {expected['available_qty']}), "
            f"in {stored['total_in_qty']} (expected {expected['total_in_qty']}), "
            f"out {stored['total_out_qty']} (expected {expected['total_out_qty']})"
        )
    raise SystemExit(1)


@ledger_group.command('rebuild')
@click.option('--sku', default=None, help='Only rebuild this SKU.')
@with_appcontext
def rebuild_ledger_cli(sku):
    """Rewrite stock summaries from the ledger."""
    if sku:
        skus = [sku]
    else:
        skus = [row[0] for row in db.session.query(StockMovement.sku).distinct().order_by(StockMovement.sku).all()]

    for value in skus:
        summary = ledger_service.recalculate_summary(value)
        click.echo(f"{summary.sku}: available {summary.available_qty}")
    click.echo(f"Rebuilt {len(skus)} summaries.")


@ledger_group.command('history')
@click.argument('sku')
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def ledger_history_cli(sku, limit):
    """Show the newest movements for SKU."""
    movements = ledger_service.movements_by_sku(sku, limit=limit)
    if not movements:
        click.echo(f"No movements for {sku}.")
        return

    for m in movements:
        direction = f" {m.adjust_direction}" if m.adjust_direction else ""
        click.echo(
            f"{m.occurred_at:%Y-%m-%d %H:%M}  {m.type}{direction:<9} {m.qty:>6}  "
            f"{m.ref_type}:{m.ref_id}  {m.notes or ''}"
        )


@click.group('sync')
def sync_group():
    """Sync run maintenance commands."""


@sync_group.command('expire-stale')
@click.option('--minutes', type=int, default=None, help='Age cutoff (default: SYNC_STALE_AFTER_MINUTES).')
@with_appcontext
def expire_stale_cli(minutes):
    """Close abandoned RUNNING sync runs as FAILED."""
    expired = sync_service.expire_stale_runs(minutes)
    for run in expired:
        click.echo(f"Expired run {run.id} ({run.source}/{run.kind}) started {run.started_at:%Y-%m-%d %H:%M}")
    click.echo(f"Expired {len(expired)} runs.")


@sync_group.command('recent')
@click.option('--source', default=None)
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def recent_runs_cli(source, limit):
    """List recent sync runs."""
    runs = sync_service.recent_runs(source, limit)
    if not runs:
        click.echo("No sync runs found.")
        return

    for run in runs:
        click.echo(
            f"{run.id:>5}  {run.source:<16} {run.kind:<10} {run.status:<8} "
            f"found={run.records_found} ins={run.records_inserted} "
            f"upd={run.records_updated} fail={run.records_failed}"
        )


@click.group('stock')
def stock_group():
    """Stock processing commands."""


@stock_group.command('process-invoices')
@click.option('--source', default=None)
@with_appcontext
def process_invoices_cli(source):
    """Post OUT movements for ingested invoices not yet stock-processed."""
    result = sync_service.process_unprocessed_invoices(source=source, resolver=AliasResolver())
    click.echo(f"Processed {len(result['processed'])} of {result['total']} invoices.")
    for error in result["errors"]:
        click.echo(f"  {error['key']}: {error['kind']} - {error['message']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(ledger_group)
    app.cli.add_command(sync_group)
    app.cli.add_command(stock_group)
