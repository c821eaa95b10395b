# Overview: Flask CLI command groups for edition maintenance and order reconciliation.

# backend/edition_ledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Edition maintenance:
# - python -m flask editions resequence 8123456789
#   Recompute dense numbering for one product (use --all for every product with line items).
# - python -m flask editions heal --all
#   Detect numbering violations, record them, and resequence affected products.
# - python -m flask editions integrity --owner collector@example.com
#   Report invalid items holding numbers and duplicate numbers.
# - python -m flask editions owner collector@example.com
#   List the deduplicated, valid editions an owner holds.
# - python -m flask editions invalidate 14123 --reason removed --notes "swapped print"
#   Mark a line item invalid and resequence its product.
#
# Order reconciliation:
# - python -m flask orders compare --order 1114 --limit 50
#   Read-only comparison against the commerce platform.
# - python -m flask orders apply-sync 5123456789 --yes
#   Fetch one order from the platform and apply every differing status field.
# - python -m flask orders duplicates
#   List order rows that collapse to the same canonical key.
# - python -m flask orders ingest order.json
#   Upsert a platform order payload from a JSON file and resequence.

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import LineItem
from .services import edition_service, ingest_service, order_store, reconciliation_service
from .services.dedupe_service import duplicate_groups
from .services.errors import LedgerError, OUTCOME_FAILED


def _all_product_ids() -> list[str]:
    rows = db.session.query(LineItem.product_id).filter(LineItem.product_id.isnot(None)).distinct().all()
    return sorted(pid for (pid,) in rows)


def _cli_actor() -> str:
    return f"cli:{current_app.config['LEDGER_ACTOR']}"


@click.group('editions')
def editions_group():
    """Edition numbering maintenance commands."""


@editions_group.command('resequence')
@click.argument('product_id', required=False)
@click.option('--all', 'all_products', is_flag=True, help='Resequence every product with line items')
@with_appcontext
def resequence_cmd(product_id, all_products):
    """Recompute dense 1..k numbering for one or all products."""
    if not product_id and not all_products:
        raise click.UsageError("Pass a PRODUCT_ID or --all")

    product_ids = _all_product_ids() if all_products else [product_id]
    results = edition_service.resequence_many(product_ids, actor=_cli_actor())
    for r in results:
        if r.outcome == OUTCOME_FAILED:
            click.echo(f"FAIL {r.product_id}: {r.error}")
        else:
            click.echo(f"PASS {r.product_id}: {r.assigned_count} assigned, {r.cleared_count} cleared, "
                       f"{r.valid_count} valid")
    if any(r.outcome == OUTCOME_FAILED for r in results):
        raise SystemExit(1)


@editions_group.command('heal')
@click.argument('product_id', required=False)
@click.option('--all', 'all_products', is_flag=True, help='Check every product with line items')
@with_appcontext
def heal_cmd(product_id, all_products):
    """Detect numbering violations and heal them by resequencing."""
    if not product_id and not all_products:
        raise click.UsageError("Pass a PRODUCT_ID or --all")

    unhealthy = 0
    for pid in (_all_product_ids() if all_products else [product_id]):
        report = edition_service.check_and_heal(pid, actor=_cli_actor())
        if report["healthy"]:
            click.echo(f"PASS {pid}: numbering consistent")
        else:
            unhealthy += 1
            click.echo(f"WARN {pid}: healed {json.dumps(report['issues'])}")
    click.echo(f"\n{unhealthy} product(s) healed")


@editions_group.command('integrity')
@click.option('--product-id', default=None, help='Limit to one product')
@click.option('--owner', default=None, help='Limit to one owner (email or id)')
@with_appcontext
def integrity_cmd(product_id, owner):
    """Report invalid items holding numbers and duplicate numbers (read-only)."""
    report = edition_service.validate_integrity(product_id=product_id, owner=owner)
    if not report["issues"]:
        click.echo("PASS No integrity issues found")
        return
    for issue in report["issues"]:
        click.echo(f"[{issue['severity'].upper()}] {issue['type']}: {issue['description']}")
    click.echo(f"\n{report['issues_found']} issue(s) found")


@editions_group.command('owner')
@click.argument('owner')
@with_appcontext
def owner_cmd(owner):
    """List the editions an owner holds."""
    editions = edition_service.get_valid_editions_for(owner)
    if not editions:
        click.echo(f"No editions for {owner}")
        return
    for e in editions:
        total = e["edition_total"] if e["edition_total"] is not None else "?"
        click.echo(f"{e['product_id']:<16} #{e['edition_number']} of {total}  (line item {e['line_item_id']})")


@editions_group.command('invalidate')
@click.argument('line_item_id')
@click.option('--reason', required=True, type=click.Choice(sorted(edition_service.REASON_FLAGS)))
@click.option('--notes', default=None)
@with_appcontext
def invalidate_cmd(line_item_id, reason, notes):
    """Mark a line item invalid and resequence its product."""
    try:
        result = edition_service.mark_invalid(line_item_id, reason, notes=notes, actor=_cli_actor())
    except LedgerError as e:
        raise click.ClickException(str(e))
    click.echo(f"{result.outcome.upper()} line item {line_item_id} "
               f"(previous edition: {result.previous_edition_number})")


@click.group('orders')
def orders_group():
    """Order reconciliation and deduplication commands."""


@orders_group.command('compare')
@click.option('--order', 'order_ref', default=None, help='Order id or order number')
@click.option('--limit', default=None, type=int, help='Orders to sweep (default RECONCILE_DEFAULT_LIMIT)')
@click.option('--json', 'as_json', is_flag=True, help='Print the full report as JSON')
@with_appcontext
def compare_cmd(order_ref, limit, as_json):
    """Compare local orders with the platform (never writes)."""
    try:
        report = reconciliation_service.compare(order_ref, limit)
    except LedgerError as e:
        raise click.ClickException(str(e))

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
        return

    for comparison in report.mismatches:
        click.echo(f"\nOrder {comparison.order_number or comparison.order_id} [{comparison.severity}]")
        for m in comparison.mismatches:
            click.echo(f"  - {m.message}")

    s = report.summary
    click.echo("\n" + "=" * 60)
    click.echo(f"Checked {s['total_checked']}: {s['matches']} match, {s['mismatches']} mismatched, "
               f"{s['critical']} critical, {s['unavailable']} unavailable")


@orders_group.command('apply-sync')
@click.argument('order_id')
@click.option('--yes', is_flag=True, help='Confirm writing platform values onto the local order')
@with_appcontext
def apply_sync_cmd(order_id, yes):
    """Fetch one order from the platform and apply differing status fields."""
    if not yes:
        click.echo("FAIL Refusing to write without --yes")
        raise SystemExit(1)
    try:
        result = reconciliation_service.apply_sync(order_id, actor=_cli_actor())
    except LedgerError as e:
        raise click.ClickException(str(e))
    click.echo(f"{result.outcome.upper()} order {order_id}: {result.message or sorted(result.changes)}")


@orders_group.command('duplicates')
@click.option('--customer', default=None, help='Limit to one customer (email or id)')
@with_appcontext
def duplicates_cmd(customer):
    """List order rows sharing a canonical key and the winning row."""
    groups = duplicate_groups(order_store.find_orders(customer=customer))
    if not groups:
        click.echo("PASS No duplicate orders")
        return
    for grp in groups:
        superseded = ", ".join(o.id for o in grp.superseded)
        click.echo(f"#{grp.canonical_key}: keep {grp.winner.id} (superseded: {superseded})")


@orders_group.command('ingest')
@click.argument('payload_file', type=click.File('r'))
@click.option('--skip-editions', is_flag=True, help='Upsert only; resequence later')
@with_appcontext
def ingest_cmd(payload_file, skip_editions):
    """Upsert a platform order JSON payload."""
    try:
        result = ingest_service.ingest_platform_order(
            json.load(payload_file), skip_editions=skip_editions, actor=_cli_actor(),
        )
    except LedgerError as e:
        raise click.ClickException(str(e))
    click.echo(f"{result.outcome.upper()} order {result.order_name or result.order_id}: "
               f"{result.line_items_synced} line item(s), {len(result.resequenced)} product(s) resequenced")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(editions_group)
    app.cli.add_command(orders_group)
