# Overview: Stock discrepancy reports and their approval workflow.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..errors import NotFoundError, StateConflictError, ValidationError, error_entry, StockReconError
from ..models import StockDiscrepancy
from ..models.discrepancies import (
    DISCREPANCY_STATUS_APPROVED,
    DISCREPANCY_STATUS_PENDING,
    DISCREPANCY_STATUS_REJECTED,
    DISCREPANCY_STATUS_RESOLVED,
    DISCREPANCY_STATUSES,
    DISCREPANCY_TYPE_OVERAGE,
    DISCREPANCY_TYPE_SHORTAGE,
    DISCREPANCY_TYPES,
)
from stockrecon.time_utils import normalize_datetime, utcnow
from .concurrency import lock_for_update, run_with_retry


UPDATABLE_FIELDS = ("actual_quantity", "discrepancy_type", "reason", "notes")


def _require_int(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer")
    return value


def _resolve_type(discrepancy_type: str | None, difference: int) -> str:
    if discrepancy_type:
        if discrepancy_type not in DISCREPANCY_TYPES:
            raise ValidationError(f"Invalid discrepancy type: {discrepancy_type}")
        return discrepancy_type
    if difference > 0:
        return DISCREPANCY_TYPE_OVERAGE
    if difference < 0:
        return DISCREPANCY_TYPE_SHORTAGE
    raise ValidationError("discrepancy_type is required when actual equals system quantity")


def _date_range(start, end):
    try:
        return normalize_datetime(start), normalize_datetime(end)
    except ValueError:
        raise ValidationError("invalid date range")


def _load_for_update(discrepancy_id: int) -> StockDiscrepancy:
    discrepancy = lock_for_update(db.session.query(StockDiscrepancy).filter_by(id=discrepancy_id)).first()
    if not discrepancy:
        raise NotFoundError(f"Discrepancy {discrepancy_id} not found")
    return discrepancy


def create_discrepancy(
    *,
    item_name: str,
    system_quantity: int,
    actual_quantity: int,
    reported_by: str,
    discrepancy_type: str | None = None,
    invoice_number: str | None = None,
    invoice_type: str | None = None,
    item_sku: str | None = None,
    category_name: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
    **ignored,
) -> StockDiscrepancy:
    """
    Report a variance between counted and system quantity.

    difference is always actual - system; a caller-supplied difference is
    ignored. Without an explicit type the sign decides Overage/Shortage.

    Raises:
        ValidationError: Missing required field, or zero difference with no type
    """
    item_name = str(item_name or "").strip()
    if not item_name:
        raise ValidationError("item_name is required")
    if not reported_by:
        raise ValidationError("reported_by is required")
    system_quantity = _require_int("system_quantity", system_quantity)
    actual_quantity = _require_int("actual_quantity", actual_quantity)

    difference = actual_quantity - system_quantity
    resolved_type = _resolve_type(discrepancy_type, difference)

    def _op():
        discrepancy = StockDiscrepancy(
            invoice_number=(invoice_number or "").strip() or "N/A",
            invoice_type=invoice_type or "RouteStarInvoice",
            item_name=item_name,
            item_sku=item_sku,
            category_name=category_name or item_name,
            system_quantity=system_quantity,
            actual_quantity=actual_quantity,
            difference=difference,
            discrepancy_type=resolved_type,
            reason=reason,
            notes=notes,
            status=DISCREPANCY_STATUS_PENDING,
            reported_by=str(reported_by),
            reported_at=utcnow(),
        )
        db.session.add(discrepancy)
        db.session.commit()
        return discrepancy

    discrepancy = run_with_retry(_op)
    current_app.logger.info(
        "Discrepancy %s reported for %s: %+d (%s)",
        discrepancy.id, item_name, difference, resolved_type,
    )
    return discrepancy


def get_discrepancy(discrepancy_id: int) -> StockDiscrepancy:
    discrepancy = db.session.get(StockDiscrepancy, discrepancy_id)
    if not discrepancy:
        raise NotFoundError(f"Discrepancy {discrepancy_id} not found")
    return discrepancy


def update_discrepancy(discrepancy_id: int, fields: dict) -> StockDiscrepancy:
    """Edit a pending discrepancy. difference is recomputed from the stored system quantity."""
    unknown = sorted(set(fields or {}) - set(UPDATABLE_FIELDS) - {"difference"})
    if unknown:
        raise ValidationError(f"Fields not updatable: {', '.join(unknown)}")

    def _op():
        discrepancy = _load_for_update(discrepancy_id)
        if discrepancy.status != DISCREPANCY_STATUS_PENDING:
            raise StateConflictError(f"Cannot update discrepancy in {discrepancy.status} status")

        if "actual_quantity" in fields:
            discrepancy.actual_quantity = _require_int("actual_quantity", fields["actual_quantity"])
        discrepancy.difference = discrepancy.actual_quantity - discrepancy.system_quantity

        if "discrepancy_type" in fields:
            discrepancy.discrepancy_type = _resolve_type(fields["discrepancy_type"], discrepancy.difference)
        if "reason" in fields:
            discrepancy.reason = fields["reason"]
        if "notes" in fields:
            discrepancy.notes = fields["notes"]

        db.session.commit()
        return discrepancy

    return run_with_retry(_op)


def _resolve_pending(discrepancy: StockDiscrepancy, status: str, user_id, notes: str | None) -> None:
    if discrepancy.status != DISCREPANCY_STATUS_PENDING:
        raise StateConflictError(
            f"Cannot {'approve' if status == DISCREPANCY_STATUS_APPROVED else 'reject'} "
            f"discrepancy in {discrepancy.status} status"
        )
    discrepancy.status = status
    discrepancy.resolved_by = str(user_id) if user_id is not None else None
    discrepancy.resolved_at = utcnow()
    discrepancy.resolution_notes = notes


def approve_discrepancy(discrepancy_id: int, *, user_id, notes: str | None = None) -> StockDiscrepancy:
    def _op():
        discrepancy = _load_for_update(discrepancy_id)
        _resolve_pending(discrepancy, DISCREPANCY_STATUS_APPROVED, user_id, notes)
        db.session.commit()
        return discrepancy

    discrepancy = run_with_retry(_op)
    current_app.logger.info("Discrepancy %s approved by %s", discrepancy_id, user_id)
    return discrepancy


def reject_discrepancy(discrepancy_id: int, *, user_id, notes: str | None = None) -> StockDiscrepancy:
    def _op():
        discrepancy = _load_for_update(discrepancy_id)
        _resolve_pending(discrepancy, DISCREPANCY_STATUS_REJECTED, user_id, notes)
        db.session.commit()
        return discrepancy

    discrepancy = run_with_retry(_op)
    current_app.logger.info("Discrepancy %s rejected by %s", discrepancy_id, user_id)
    return discrepancy


def resolve_discrepancy(discrepancy_id: int, *, user_id, notes: str | None = None) -> StockDiscrepancy:
    """Close the follow-up on an approved discrepancy."""
    def _op():
        discrepancy = _load_for_update(discrepancy_id)
        if discrepancy.status != DISCREPANCY_STATUS_APPROVED:
            raise StateConflictError(f"Cannot resolve discrepancy in {discrepancy.status} status")
        discrepancy.status = DISCREPANCY_STATUS_RESOLVED
        discrepancy.resolved_by = str(user_id) if user_id is not None else None
        discrepancy.resolved_at = utcnow()
        if notes:
            discrepancy.resolution_notes = notes
        db.session.commit()
        return discrepancy

    return run_with_retry(_op)


def _filtered_query(*, status=None, discrepancy_type=None, start=None, end=None, ids=None):
    if status is not None and status not in DISCREPANCY_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    if discrepancy_type is not None and discrepancy_type not in DISCREPANCY_TYPES:
        raise ValidationError(f"Invalid discrepancy type: {discrepancy_type}")
    start_dt, end_dt = _date_range(start, end)

    q = db.session.query(StockDiscrepancy)
    if ids is not None:
        q = q.filter(StockDiscrepancy.id.in_(list(ids)))
    if status:
        q = q.filter(StockDiscrepancy.status == status)
    if discrepancy_type:
        q = q.filter(StockDiscrepancy.discrepancy_type == discrepancy_type)
    if start_dt is not None:
        q = q.filter(StockDiscrepancy.reported_at >= start_dt)
    if end_dt is not None:
        q = q.filter(StockDiscrepancy.reported_at <= end_dt)
    return q


def bulk_approve(
    *,
    user_id,
    ids: list[int] | None = None,
    discrepancy_type: str | None = None,
    start=None,
    end=None,
    notes: str | None = None,
) -> dict:
    """
    Approve every pending discrepancy matching `ids` or the filters.

    Best-effort: each approval runs in its own savepoint and is committed
    on its own, so a failing row (state or storage) does not undo the others.

    Returns:
        {"approved": [ids], "errors": [{key, kind, message}]}
    """
    q = _filtered_query(
        status=DISCREPANCY_STATUS_PENDING,
        discrepancy_type=discrepancy_type,
        start=start,
        end=end,
        ids=ids,
    )
    candidate_ids = [row.id for row in q.order_by(StockDiscrepancy.id.asc()).all()]

    approved: list[int] = []
    errors: list[dict] = []
    if ids is not None:
        for missing in sorted(set(ids) - set(candidate_ids)):
            existing = db.session.get(StockDiscrepancy, missing)
            exc = (
                StateConflictError(f"Cannot approve discrepancy in {existing.status} status")
                if existing
                else NotFoundError(f"Discrepancy {missing} not found")
            )
            errors.append(error_entry(missing, exc))

    for discrepancy_id in candidate_ids:
        try:
            with db.session.begin_nested():
                discrepancy = _load_for_update(discrepancy_id)
                _resolve_pending(discrepancy, DISCREPANCY_STATUS_APPROVED, user_id, notes)
            db.session.commit()
            approved.append(discrepancy_id)
        except StockReconError as exc:
            db.session.rollback()
            errors.append(error_entry(discrepancy_id, exc))
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.warning("Bulk approve: discrepancy %s failed: %s", discrepancy_id, exc)
            errors.append(error_entry(discrepancy_id, exc))

    current_app.logger.info("Bulk approve by %s: %d approved, %d errors", user_id, len(approved), len(errors))
    return {"approved": approved, "errors": errors}


def delete_discrepancy(discrepancy_id: int) -> None:
    def _op():
        discrepancy = _load_for_update(discrepancy_id)
        if discrepancy.status != DISCREPANCY_STATUS_PENDING:
            raise StateConflictError(f"Cannot delete discrepancy in {discrepancy.status} status")
        db.session.delete(discrepancy)
        db.session.commit()

    run_with_retry(_op)


def list_discrepancies(
    *,
    status: str | None = None,
    discrepancy_type: str | None = None,
    start=None,
    end=None,
    page: int = 1,
    per_page: int = 50,
) -> dict:
    q = _filtered_query(status=status, discrepancy_type=discrepancy_type, start=start, end=end)
    q = q.order_by(StockDiscrepancy.reported_at.desc(), StockDiscrepancy.id.desc())

    per_page = min(per_page or 50, 200)
    page = max(page or 1, 1)
    total = q.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    rows = q.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [d.to_dict() for d in rows],
        "count": len(rows),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def discrepancy_summary(*, start=None, end=None) -> dict:
    """Counts and summed difference by status and by type over reported_at."""
    start_dt, end_dt = _date_range(start, end)

    def _grouped(column):
        q = db.session.query(
            column,
            func.count(StockDiscrepancy.id),
            func.coalesce(func.sum(StockDiscrepancy.difference), 0),
        )
        if start_dt is not None:
            q = q.filter(StockDiscrepancy.reported_at >= start_dt)
        if end_dt is not None:
            q = q.filter(StockDiscrepancy.reported_at <= end_dt)
        return {
            key: {"count": int(count), "total_difference": int(total)}
            for key, count, total in q.group_by(column).all()
        }

    by_status = _grouped(StockDiscrepancy.status)
    by_type = _grouped(StockDiscrepancy.discrepancy_type)
    return {
        "by_status": by_status,
        "by_type": by_type,
        "total": sum(entry["count"] for entry in by_status.values()),
        "total_difference": sum(entry["total_difference"] for entry in by_status.values()),
    }
