# Overview: Read-only reports over the ledger, checkouts, discrepancies and sync runs.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import NotFoundError, ValidationError
from ..models import ExternalInvoice, ExternalInvoiceLine, StockMovement, StockSummary, SyncRun, TruckCheckout
from ..models.ledger import MOVEMENT_IN, REF_PURCHASE_ORDER, normalize_sku
from stockrecon.time_utils import parse_iso_datetime, to_utc_z
from . import discrepancy_service, ledger_service, summary_service, sync_service
from .alias_service import AliasResolver

STOCK_IN_STOCK = "IN_STOCK"
STOCK_OUT_OF_STOCK = "OUT_OF_STOCK"
STOCK_OVERSOLD = "OVERSOLD"


def _parse_range(start: str | None, end: str | None) -> tuple[datetime | None, datetime | None]:
    try:
        start_dt = parse_iso_datetime(start) if start else None
        end_dt = parse_iso_datetime(end) if end else None
    except ValueError:
        raise ValidationError("invalid date range")
    if start_dt and end_dt and start_dt > end_dt:
        raise ValidationError("start must be before end")
    return start_dt, end_dt


def sku_history(sku: str, *, start: str | None = None, end: str | None = None, limit: int | None = 200) -> dict:
    """Stored summary, ledger replay and newest-first movements for one SKU."""
    start_dt, end_dt = _parse_range(start, end)
    sku = normalize_sku(sku)
    summary = summary_service.get_summary(sku)
    movements = ledger_service.movements_by_sku(sku, start=start_dt, end=end_dt, limit=limit)
    if summary is None and not movements:
        raise NotFoundError(f"No stock history for {sku}")

    replay = ledger_service.rebuild_summary(sku)
    return {
        "sku": sku,
        "summary": summary.to_dict() if summary else None,
        "replay": replay,
        "in_sync": summary is not None and summary.available_qty == replay["current_stock"],
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "movements": [m.to_dict() for m in movements],
    }


def movement_totals(*, start: str | None = None, end: str | None = None) -> dict:
    """Units moved per movement type over the range, ledger-wide."""
    start_dt, end_dt = _parse_range(start, end)
    query = db.session.query(
        StockMovement.type,
        func.count(StockMovement.id).label("movements"),
        func.coalesce(func.sum(StockMovement.qty), 0).label("units"),
    )
    if start_dt:
        query = query.filter(StockMovement.occurred_at >= start_dt)
    if end_dt:
        query = query.filter(StockMovement.occurred_at <= end_dt)

    rows = query.group_by(StockMovement.type).order_by(StockMovement.type).all()
    return {
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "rows": [
            {"type": row.type, "movements": int(row.movements or 0), "units": int(row.units or 0)}
            for row in rows
        ],
    }


def discrepancy_report(*, start: str | None = None, end: str | None = None) -> dict:
    start_dt, end_dt = _parse_range(start, end)
    report = discrepancy_service.discrepancy_summary(start=start_dt, end=end_dt)
    report["start"] = to_utc_z(start_dt)
    report["end"] = to_utc_z(end_dt)
    return report


def employee_checkout_stats(*, start: str | None = None, end: str | None = None) -> dict:
    """Checkout counts by status for each employee over checkout_date."""
    start_dt, end_dt = _parse_range(start, end)
    query = db.session.query(
        TruckCheckout.employee_name,
        TruckCheckout.status,
        func.count(TruckCheckout.id).label("checkouts"),
    )
    if start_dt:
        query = query.filter(TruckCheckout.checkout_date >= start_dt)
    if end_dt:
        query = query.filter(TruckCheckout.checkout_date <= end_dt)

    employees: dict[str, dict] = {}
    rows = query.group_by(TruckCheckout.employee_name, TruckCheckout.status).all()
    for row in rows:
        entry = employees.setdefault(row.employee_name, {"employee_name": row.employee_name, "total": 0, "by_status": {}})
        entry["by_status"][row.status] = int(row.checkouts)
        entry["total"] += int(row.checkouts)

    return {
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "rows": sorted(employees.values(), key=lambda e: (-e["total"], e["employee_name"])),
    }


def low_stock_report() -> dict:
    items = summary_service.low_stock_items()
    return {"count": len(items), "items": [s.to_dict() for s in items]}


def sync_report(*, source: str | None = None, days: int = 7) -> dict:
    stats = sync_service.run_stats(source, days)
    latest = sync_service.latest_run(source) if source else None
    stats["latest_run"] = latest.to_dict() if latest else None
    stats["active_runs"] = len(sync_service.active_runs(source))
    stats["sources"] = sorted(row[0] for row in db.session.query(SyncRun.source).distinct().all())
    return stats


def _invoice_lines(start_dt, end_dt, *, purchase_sources, purchases: bool):
    query = (
        db.session.query(ExternalInvoiceLine, ExternalInvoice.id)
        .join(ExternalInvoice, ExternalInvoice.id == ExternalInvoiceLine.invoice_id)
    )
    if purchases:
        query = query.filter(ExternalInvoice.source.in_(purchase_sources))
    elif purchase_sources:
        query = query.filter(ExternalInvoice.source.notin_(purchase_sources))
    if start_dt:
        query = query.filter(ExternalInvoice.invoice_date >= start_dt)
    if end_dt:
        query = query.filter(ExternalInvoice.invoice_date <= end_dt)
    return query.order_by(ExternalInvoiceLine.id).all()


def _line_value(line: ExternalInvoiceLine) -> int:
    if line.line_total_cents is not None:
        return line.line_total_cents
    return (line.unit_price_cents or 0) * line.quantity


def stock_reconciliation(
    *,
    start: str | None = None,
    end: str | None = None,
    resolver: AliasResolver | None = None,
) -> dict:
    """
    Purchased vs received vs sold per canonical SKU.

    - purchased: lines of orders synced from PURCHASE_SOURCES (quantity, value)
    - received: PURCHASE_ORDER IN movements in the ledger
    - sold: lines of invoices from every other source
    - net = purchased - sold; OVERSOLD below zero, OUT_OF_STOCK at zero

    SKUs sold with no purchase record are listed with has_purchase_record
    False. available_qty is the current summary, not limited to the range.
    """
    start_dt, end_dt = _parse_range(start, end)
    resolver = resolver or AliasResolver()
    purchase_sources = list(current_app.config.get("PURCHASE_SOURCES") or [])

    items: dict[str, dict] = {}

    def _row(sku: str, name: str | None) -> dict:
        row = items.get(sku)
        if row is None:
            row = items[sku] = {
                "sku": sku,
                "name": name,
                "purchased": {"quantity": 0, "total_value_cents": 0, "orders": set()},
                "received_qty": 0,
                "sold": {"quantity": 0, "total_value_cents": 0, "invoices": set()},
            }
        elif not row["name"] and name:
            row["name"] = name
        return row

    def _canonical(line: ExternalInvoiceLine) -> str:
        return normalize_sku(resolver.get_canonical_name(line.sku or line.name))

    for line, invoice_id in _invoice_lines(start_dt, end_dt, purchase_sources=purchase_sources, purchases=True):
        side = _row(_canonical(line), line.name)["purchased"]
        side["quantity"] += line.quantity
        side["total_value_cents"] += _line_value(line)
        side["orders"].add(invoice_id)

    received = db.session.query(
        StockMovement.sku,
        func.coalesce(func.sum(StockMovement.qty), 0).label("units"),
    ).filter(StockMovement.type == MOVEMENT_IN, StockMovement.ref_type == REF_PURCHASE_ORDER)
    if start_dt:
        received = received.filter(StockMovement.occurred_at >= start_dt)
    if end_dt:
        received = received.filter(StockMovement.occurred_at <= end_dt)
    for row in received.group_by(StockMovement.sku).all():
        _row(row.sku, None)["received_qty"] = int(row.units or 0)

    for line, invoice_id in _invoice_lines(start_dt, end_dt, purchase_sources=purchase_sources, purchases=False):
        side = _row(_canonical(line), line.name)["sold"]
        side["quantity"] += line.quantity
        side["total_value_cents"] += _line_value(line)
        side["invoices"].add(invoice_id)

    available = {}
    if items:
        summaries = db.session.query(StockSummary.sku, StockSummary.available_qty).filter(
            StockSummary.sku.in_(list(items))
        )
        available = {sku: qty for sku, qty in summaries.all()}

    rows = []
    for sku, row in items.items():
        purchased, sold = row["purchased"], row["sold"]
        net = purchased["quantity"] - sold["quantity"]
        if net < 0:
            status = STOCK_OVERSOLD
        elif net == 0:
            status = STOCK_OUT_OF_STOCK
        else:
            status = STOCK_IN_STOCK
        rows.append({
            "sku": sku,
            "name": row["name"] or sku,
            "has_purchase_record": purchased["quantity"] > 0 or row["received_qty"] > 0,
            "purchased": {
                "quantity": purchased["quantity"],
                "total_value_cents": purchased["total_value_cents"],
                "avg_price_cents": purchased["total_value_cents"] // purchased["quantity"] if purchased["quantity"] else 0,
                "order_count": len(purchased["orders"]),
            },
            "received_qty": row["received_qty"],
            "sold": {
                "quantity": sold["quantity"],
                "total_value_cents": sold["total_value_cents"],
                "avg_price_cents": sold["total_value_cents"] // sold["quantity"] if sold["quantity"] else 0,
                "invoice_count": len(sold["invoices"]),
            },
            "net_qty": net,
            "status": status,
            "available_qty": available.get(sku),
        })
    rows.sort(key=lambda r: (r["net_qty"], r["sku"]))

    purchase_value = sum(r["purchased"]["total_value_cents"] for r in rows)
    sale_value = sum(r["sold"]["total_value_cents"] for r in rows)
    return {
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "items": rows,
        "summary": {
            "total_items": len(rows),
            "in_stock": sum(1 for r in rows if r["status"] == STOCK_IN_STOCK),
            "out_of_stock": sum(1 for r in rows if r["status"] == STOCK_OUT_OF_STOCK),
            "oversold": sum(1 for r in rows if r["status"] == STOCK_OVERSOLD),
            "without_purchase_record": sum(1 for r in rows if not r["has_purchase_record"]),
            "total_purchase_value_cents": purchase_value,
            "total_sale_value_cents": sale_value,
            "gross_margin_cents": sale_value - purchase_value,
        },
    }
