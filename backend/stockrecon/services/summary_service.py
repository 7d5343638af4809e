# Overview: Summary projector; keeps stock_summaries in step with the ledger.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import InsufficientStockError, ValidationError
from ..models import StockSummary
from ..models.ledger import ADJUST_DECREASE, ADJUST_INCREASE, normalize_sku
from stockrecon.time_utils import utcnow
"""
Summary projector invariants (authoritative)

- One row per SKU, created zeroed on first touch.
- available_qty == total_in_qty - total_out_qty + net ADJUST, i.e. a replay
  of stock_movements for the SKU (see ledger_service.rebuild_summary).
- Every change is a single storage-level UPDATE (col = col + :qty). Nothing
  reads a quantity into Python, changes it and writes it back, so two
  concurrent posts for the same SKU cannot lose an update.
- Decrements are conditional (available_qty >= :qty). When the condition
  fails the caller gets InsufficientStockError; stock never goes negative.
- Functions here only flush. The ledger service owns the transaction and
  pairs each summary change with its movement.
"""


def _default_threshold() -> int:
    return int(current_app.config.get("LOW_STOCK_THRESHOLD_DEFAULT", 10))


def get_summary(sku: str) -> StockSummary | None:
    return db.session.query(StockSummary).filter_by(sku=normalize_sku(sku)).first()


def get_or_create(sku: str) -> StockSummary:
    """
    Return the summary for `sku`, inserting a zeroed row on first touch.

    A concurrent first touch loses the unique-constraint race inside a
    savepoint and re-reads the winner's row.
    """
    sku = normalize_sku(sku)
    if not sku:
        raise ValidationError("sku is required")

    summary = db.session.query(StockSummary).filter_by(sku=sku).first()
    if summary is not None:
        return summary

    try:
        with db.session.begin_nested():
            summary = StockSummary(
                sku=sku,
                available_qty=0,
                reserved_qty=0,
                total_in_qty=0,
                total_out_qty=0,
                low_stock_threshold=_default_threshold(),
            )
            db.session.add(summary)
    except IntegrityError:
        summary = db.session.query(StockSummary).filter_by(sku=sku).one()
    return summary


def _apply(summary: StockSummary, values: dict, *conditions) -> int:
    values[StockSummary.last_movement_at] = utcnow()
    values[StockSummary.updated_at] = utcnow()
    updated = (
        db.session.query(StockSummary)
        .filter(StockSummary.id == summary.id, *conditions)
        .update(values, synchronize_session=False)
    )
    if updated:
        db.session.refresh(summary)
    return updated


def _check_qty(qty: int) -> None:
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise ValidationError("qty must be a positive integer")


def add_stock(sku: str, qty: int) -> StockSummary:
    """IN: total_in += qty, available += qty."""
    _check_qty(qty)
    summary = get_or_create(sku)
    _apply(
        summary,
        {
            StockSummary.available_qty: StockSummary.available_qty + qty,
            StockSummary.total_in_qty: StockSummary.total_in_qty + qty,
        },
    )
    return summary


def remove_stock(sku: str, qty: int) -> StockSummary:
    """OUT: total_out += qty, available -= qty, refused if it would go negative."""
    _check_qty(qty)
    summary = get_or_create(sku)
    updated = _apply(
        summary,
        {
            StockSummary.available_qty: StockSummary.available_qty - qty,
            StockSummary.total_out_qty: StockSummary.total_out_qty + qty,
        },
        StockSummary.available_qty >= qty,
    )
    if not updated:
        db.session.refresh(summary)
        raise InsufficientStockError(summary.sku, qty, summary.available_qty)
    return summary


def apply_adjustment(sku: str, qty: int, direction: str) -> StockSummary:
    """ADJUST only moves available_qty; in/out totals are untouched."""
    _check_qty(qty)
    if direction not in (ADJUST_INCREASE, ADJUST_DECREASE):
        raise ValidationError(f"Invalid adjust direction: {direction}")

    summary = get_or_create(sku)
    if direction == ADJUST_INCREASE:
        _apply(summary, {StockSummary.available_qty: StockSummary.available_qty + qty})
        return summary

    updated = _apply(
        summary,
        {StockSummary.available_qty: StockSummary.available_qty - qty},
        StockSummary.available_qty >= qty,
    )
    if not updated:
        db.session.refresh(summary)
        raise InsufficientStockError(summary.sku, qty, summary.available_qty)
    return summary


def set_low_stock_threshold(sku: str, threshold: int) -> StockSummary:
    if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
        raise ValidationError("low_stock_threshold must be a non-negative integer")
    summary = get_or_create(sku)
    summary.low_stock_threshold = threshold
    db.session.commit()
    return summary


def low_stock_items() -> list[StockSummary]:
    return (
        db.session.query(StockSummary)
        .filter(StockSummary.available_qty <= StockSummary.low_stock_threshold)
        .order_by(StockSummary.available_qty.asc(), StockSummary.sku.asc())
        .all()
    )
