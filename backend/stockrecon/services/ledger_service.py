# Overview: Service-layer operations for the stock ledger; encapsulates business logic and database work.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import case, func

from ..extensions import db
from ..errors import ValidationError
from ..models import StockMovement, StockSummary
from ..models.ledger import (
    ADJUST_DECREASE,
    ADJUST_DIRECTIONS,
    ADJUST_INCREASE,
    MOVEMENT_ADJUST,
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_TYPES,
    REF_ADJUSTMENT,
    REF_PURCHASE_ORDER,
    REF_TYPES,
    normalize_sku,
)
from stockrecon.time_utils import normalize_datetime, utcnow
from . import summary_service
from .concurrency import run_with_retry
"""
Stock Ledger Invariants (authoritative)

- stock_movements is append-only; rows are never updated or deleted.
- qty is a positive magnitude. IN adds, OUT removes, ADJUST adds or removes
  according to adjust_direction.
- Every movement is written in the same DB transaction as the summary update
  for its SKU. If the summary refuses the change (e.g. insufficient stock)
  the movement is rolled back with it.
- occurred_at is business time; created_at is system time.
- Movement history reads are newest-first; range filters are inclusive.
"""


def _parse_occurred_at(value) -> datetime:
    if value is None:
        return utcnow()
    try:
        dt = normalize_datetime(value)
    except ValueError:
        raise ValidationError("invalid occurred_at")
    if dt is None:
        raise ValidationError("invalid occurred_at")
    return dt


def _validate_post(sku: str, movement_type: str, qty, ref_type: str, ref_id, adjust_direction):
    if not sku:
        raise ValidationError("sku is required")
    if movement_type not in MOVEMENT_TYPES:
        raise ValidationError(f"Invalid movement type: {movement_type}")
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise ValidationError("qty must be a positive integer")
    if ref_type not in REF_TYPES:
        raise ValidationError(f"Invalid reference type: {ref_type}")
    if ref_id is None or str(ref_id).strip() == "":
        raise ValidationError("ref_id is required")
    if movement_type == MOVEMENT_ADJUST:
        if adjust_direction not in ADJUST_DIRECTIONS:
            raise ValidationError("adjust_direction must be INCREASE or DECREASE for ADJUST movements")
    elif adjust_direction is not None:
        raise ValidationError("adjust_direction is only valid for ADJUST movements")


def _post_movement_inner(
    *,
    sku: str,
    movement_type: str,
    qty: int,
    ref_type: str,
    ref_id,
    occurred_at=None,
    notes: str | None = None,
    source_ref: str | None = None,
    created_by: str | None = None,
    adjust_direction: str | None = None,
) -> StockMovement:
    """Core post logic without retry or commit.

    Used by the public post_movement() and by services that post movements
    as part of a larger unit of work (checkouts, invoice processing).
    """
    sku = normalize_sku(sku)
    _validate_post(sku, movement_type, qty, ref_type, ref_id, adjust_direction)
    occurred_dt = _parse_occurred_at(occurred_at)

    movement = StockMovement(
        sku=sku,
        type=movement_type,
        qty=qty,
        adjust_direction=adjust_direction,
        ref_type=ref_type,
        ref_id=str(ref_id),
        source_ref=source_ref,
        notes=notes,
        created_by=created_by,
        occurred_at=occurred_dt,
    )
    db.session.add(movement)
    db.session.flush()

    if movement_type == MOVEMENT_IN:
        summary_service.add_stock(sku, qty)
    elif movement_type == MOVEMENT_OUT:
        summary_service.remove_stock(sku, qty)
    else:
        summary_service.apply_adjustment(sku, qty, adjust_direction)

    return movement


def post_movement(
    *,
    sku: str,
    movement_type: str,
    qty: int,
    ref_type: str,
    ref_id,
    occurred_at=None,
    notes: str | None = None,
    source_ref: str | None = None,
    created_by: str | None = None,
    adjust_direction: str | None = None,
) -> StockMovement:
    """
    Append one movement and update the SKU summary atomically.

    Raises:
        ValidationError: bad input, nothing written
        InsufficientStockError: OUT/DECREASE larger than available stock,
            nothing written
    """
    def _op():
        movement = _post_movement_inner(
            sku=sku,
            movement_type=movement_type,
            qty=qty,
            ref_type=ref_type,
            ref_id=ref_id,
            occurred_at=occurred_at,
            notes=notes,
            source_ref=source_ref,
            created_by=created_by,
            adjust_direction=adjust_direction,
        )
        db.session.commit()
        return movement

    return run_with_retry(_op)


def create_adjustment(*, sku: str, delta: int, reason: str, created_by: str | None = None) -> StockMovement:
    """
    Manual correction. The sign of `delta` picks the direction; the stored
    movement still carries a positive qty.
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError("delta must be a non-zero integer")
    if not reason or not str(reason).strip():
        raise ValidationError("reason is required for adjustments")

    movement = post_movement(
        sku=sku,
        movement_type=MOVEMENT_ADJUST,
        qty=abs(delta),
        adjust_direction=ADJUST_INCREASE if delta > 0 else ADJUST_DECREASE,
        ref_type=REF_ADJUSTMENT,
        ref_id=created_by or "system",
        notes=reason,
        created_by=created_by,
    )
    current_app.logger.info("Stock ADJUST: %s %+d - %s", movement.sku, delta, reason)
    return movement


def record_purchase_receipt(
    *,
    order_number: str,
    lines: list[dict],
    vendor_name: str | None = None,
    received_at=None,
    created_by: str | None = None,
) -> list[StockMovement]:
    """
    Post one IN movement per purchase-order line ({sku, qty}) in a single
    transaction.
    """
    if not order_number or not str(order_number).strip():
        raise ValidationError("order_number is required")
    if not lines:
        raise ValidationError("At least one line is required")

    def _op():
        movements = []
        for line in lines:
            movements.append(
                _post_movement_inner(
                    sku=line.get("sku"),
                    movement_type=MOVEMENT_IN,
                    qty=line.get("qty"),
                    ref_type=REF_PURCHASE_ORDER,
                    ref_id=order_number,
                    source_ref=order_number,
                    occurred_at=received_at,
                    notes=f"Purchase from {vendor_name}" if vendor_name else None,
                    created_by=created_by,
                )
            )
        db.session.commit()
        return movements

    movements = run_with_retry(_op)
    current_app.logger.info("Stock IN: %d lines from PO %s", len(movements), order_number)
    return movements


def movements_by_sku(
    sku: str,
    *,
    start=None,
    end=None,
    limit: int | None = None,
) -> list[StockMovement]:
    """Movement history for one SKU, newest first. start/end are inclusive."""
    try:
        start_dt = normalize_datetime(start)
        end_dt = normalize_datetime(end)
    except ValueError:
        raise ValidationError("invalid date range")

    q = db.session.query(StockMovement).filter(StockMovement.sku == normalize_sku(sku))
    if start_dt is not None:
        q = q.filter(StockMovement.occurred_at >= start_dt)
    if end_dt is not None:
        q = q.filter(StockMovement.occurred_at <= end_dt)

    q = q.order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
    if limit:
        q = q.limit(limit)
    return q.all()


def movements_for_reference(ref_type: str, ref_id) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter_by(ref_type=ref_type, ref_id=str(ref_id))
        .order_by(StockMovement.id.asc())
        .all()
    )


def rebuild_summary(sku: str) -> dict:
    """
    Replay every movement for `sku` grouped by type.

    Read-only: returns what the summary should be. Use recalculate_summary()
    to write it.
    """
    sku = normalize_sku(sku)
    signed_adjust = case(
        (StockMovement.adjust_direction == ADJUST_DECREASE, -StockMovement.qty),
        else_=StockMovement.qty,
    )
    rows = (
        db.session.query(
            StockMovement.type,
            func.coalesce(func.sum(StockMovement.qty), 0).label("total_qty"),
            func.coalesce(func.sum(signed_adjust), 0).label("signed_qty"),
            func.count(StockMovement.id).label("count"),
        )
        .filter(StockMovement.sku == sku)
        .group_by(StockMovement.type)
        .all()
    )

    replay = {
        "sku": sku,
        "total_in": 0,
        "total_out": 0,
        "total_adjust": 0,
        "movement_count": 0,
        "current_stock": 0,
    }
    for row in rows:
        replay["movement_count"] += int(row.count or 0)
        if row.type == MOVEMENT_IN:
            replay["total_in"] = int(row.total_qty or 0)
        elif row.type == MOVEMENT_OUT:
            replay["total_out"] = int(row.total_qty or 0)
        elif row.type == MOVEMENT_ADJUST:
            replay["total_adjust"] = int(row.signed_qty or 0)

    replay["current_stock"] = replay["total_in"] - replay["total_out"] + replay["total_adjust"]
    return replay


def recalculate_summary(sku: str) -> StockSummary:
    """Overwrite the stored summary for `sku` with the ledger replay (seed/repair)."""
    def _op():
        replay = rebuild_summary(sku)
        summary = summary_service.get_or_create(sku)
        summary.available_qty = replay["current_stock"]
        summary.total_in_qty = replay["total_in"]
        summary.total_out_qty = replay["total_out"]
        summary.last_movement_at = utcnow()
        db.session.commit()
        return summary

    summary = run_with_retry(_op)
    current_app.logger.info("Recalculated stock for %s: %d units", summary.sku, summary.available_qty)
    return summary


def verify_summaries() -> list[dict]:
    """
    Compare every stored summary with its ledger replay.

    Returns one entry per SKU whose stored values differ, including SKUs
    that have movements but no summary row (and the reverse).
    """
    ledger_skus = {row[0] for row in db.session.query(StockMovement.sku).distinct().all()}
    summaries = {s.sku: s for s in db.session.query(StockSummary).all()}

    mismatches = []
    for sku in sorted(ledger_skus | set(summaries)):
        replay = rebuild_summary(sku)
        summary = summaries.get(sku)
        stored = {
            "available_qty": summary.available_qty if summary else None,
            "total_in_qty": summary.total_in_qty if summary else None,
            "total_out_qty": summary.total_out_qty if summary else None,
        }
        expected = {
            "available_qty": replay["current_stock"],
            "total_in_qty": replay["total_in"],
            "total_out_qty": replay["total_out"],
        }
        if summary is None and replay["movement_count"] == 0:
            continue
        if stored != expected:
            mismatches.append({"sku": sku, "stored": stored, "expected": expected})
    return mismatches
