# Overview: Truck checkout lifecycle and reconciliation of items taken against items sold.

from __future__ import annotations

from typing import Any

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    IntegrityConflictError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from ..models import (
    ExternalInvoice,
    StockMovement,
    TruckCheckout,
    TruckCheckoutInvoice,
    TruckCheckoutItem,
)
from ..models.checkouts import (
    CHECKOUT_STATUS_CANCELLED,
    CHECKOUT_STATUS_CHECKED_OUT,
    CHECKOUT_STATUS_COMPLETED,
    CHECKOUT_STATUSES,
    INVOICE_TYPE_CLOSED,
    INVOICE_TYPES,
)
from ..models.ledger import MOVEMENT_IN, MOVEMENT_OUT, REF_CHECKOUT, normalize_sku
from stockrecon.time_utils import normalize_datetime, utcnow
from .alias_service import AliasResolver
from .concurrency import lock_for_update, run_with_retry
from .ingest_schemas import _to_int
from .ledger_service import _post_movement_inner
"""
Checkout reconciliation invariants (authoritative)

- checked_out -> completed -> stock processed (terminal);
  checked_out -> cancelled (terminal). Nothing else.
- Creating a checkout posts one OUT per item immediately, against the
  canonical SKU of the item.
- An invoice number belongs to at most one checkout (unique link row).
- tally_results is overwritten by every tally until stock is processed,
  after which it is frozen.
- Stock processing happens once. The stock_processed flag flips in the same
  transaction as the compensating movements; a racing second processor
  loses on the checkout's version column and then sees the flag.
- Cancelling does not reverse the checkout-time OUT movements.
"""

TALLY_MATCHED = "matched"
TALLY_EXCESS = "excess"
TALLY_SHORTAGE = "shortage"

ACTIVE_CHECKOUT_STATUSES = (CHECKOUT_STATUS_CHECKED_OUT, CHECKOUT_STATUS_COMPLETED)

UPDATABLE_FIELDS = ("notes", "employee_id", "truck_number")


def _load_for_update(checkout_id: int) -> TruckCheckout:
    checkout = lock_for_update(db.session.query(TruckCheckout).filter_by(id=checkout_id)).first()
    if not checkout:
        raise NotFoundError(f"Checkout {checkout_id} not found")
    return checkout


def _item_key(item: dict) -> str:
    return item.get("sku") or item.get("name")


def _canonical_sku(resolver: AliasResolver, sku: str | None, name: str | None) -> str:
    raw = sku or name
    return normalize_sku(resolver.get_canonical_name(raw))


def _normalize_items(items) -> list[dict]:
    if not items or not isinstance(items, list):
        raise ValidationError("At least one item is required")

    normalized = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{index}] must be an object")
        name = str(item.get("name") or "").strip()
        if not name:
            raise ValidationError(f"items[{index}].name is required")
        quantity = item.get("quantity", item.get("qty"))
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f"items[{index}].quantity must be a positive integer")
        sku = str(item.get("sku") or "").strip() or None
        normalized.append({"name": name, "sku": sku, "quantity": quantity, "notes": item.get("notes")})
    return normalized


def _normalize_invoice_numbers(invoice_numbers) -> list[str]:
    if isinstance(invoice_numbers, str):
        invoice_numbers = [invoice_numbers]
    seen = set()
    numbers = []
    for value in invoice_numbers or []:
        number = str(value or "").strip()
        if number and number not in seen:
            seen.add(number)
            numbers.append(number)
    return numbers


def _find_invoice_conflicts(numbers: list[str], checkout_id: int) -> list[dict]:
    rows = (
        db.session.query(TruckCheckoutInvoice.invoice_number, TruckCheckoutInvoice.checkout_id)
        .join(TruckCheckout, TruckCheckout.id == TruckCheckoutInvoice.checkout_id)
        .filter(
            TruckCheckoutInvoice.invoice_number.in_(numbers),
            TruckCheckoutInvoice.checkout_id != checkout_id,
            TruckCheckout.status.in_(ACTIVE_CHECKOUT_STATUSES),
        )
        .order_by(TruckCheckoutInvoice.invoice_number.asc())
        .all()
    )
    return [{"invoice_number": number, "checkout_id": cid} for number, cid in rows]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def create_checkout(
    *,
    employee_name: str,
    items: list[dict],
    employee_id: str | None = None,
    truck_number: str | None = None,
    notes: str | None = None,
    checkout_date=None,
    created_by: str | None = None,
    resolver: AliasResolver | None = None,
) -> TruckCheckout:
    """
    Record items taken by an employee and decrement stock for each.

    Args:
        employee_name: Who took the items
        items: [{name, sku?, quantity}], at least one, quantity > 0
        resolver: Alias lookup used to pick the ledger SKU for each item

    Returns:
        TruckCheckout in checked_out status

    Raises:
        ValidationError: Missing employee or invalid items
        InsufficientStockError: An item is not in stock; nothing is written
    """
    employee_name = str(employee_name or "").strip()
    if not employee_name:
        raise ValidationError("employee_name is required")
    normalized = _normalize_items(items)
    try:
        checkout_dt = normalize_datetime(checkout_date) or utcnow()
    except ValueError:
        raise ValidationError("invalid checkout_date")

    resolver = resolver or AliasResolver()
    for item in normalized:
        item["ledger_sku"] = _canonical_sku(resolver, item["sku"], item["name"])

    def _op():
        checkout = TruckCheckout(
            employee_name=employee_name,
            employee_id=employee_id,
            truck_number=truck_number,
            notes=notes,
            checkout_date=checkout_dt,
            status=CHECKOUT_STATUS_CHECKED_OUT,
            created_by=created_by,
        )
        for item in normalized:
            checkout.items.append(
                TruckCheckoutItem(
                    name=item["name"],
                    sku=item["sku"],
                    quantity=item["quantity"],
                    notes=item["notes"],
                    ledger_sku=item["ledger_sku"],
                )
            )
        db.session.add(checkout)
        db.session.flush()

        source_ref = f"Truck checkout - {employee_name}"
        if truck_number:
            source_ref += f" ({truck_number})"
        for item in checkout.items:
            _post_movement_inner(
                sku=item.ledger_sku,
                movement_type=MOVEMENT_OUT,
                qty=item.quantity,
                ref_type=REF_CHECKOUT,
                ref_id=checkout.id,
                source_ref=source_ref,
                occurred_at=checkout_dt,
                notes=f"Checked out: {item.name}",
                created_by=created_by,
            )

        db.session.commit()
        return checkout

    checkout = run_with_retry(_op)
    current_app.logger.info(
        "Checkout %s created for %s: %d items, %d units",
        checkout.id, employee_name, len(checkout.items), checkout.total_items_taken,
    )
    return checkout


def complete_checkout(
    checkout_id: int,
    *,
    invoice_numbers,
    invoice_type: str = INVOICE_TYPE_CLOSED,
    completed_by: str | None = None,
) -> TruckCheckout:
    """
    Link a checked-out checkout to the invoices written in the field.

    Raises:
        ValidationError: No usable invoice number or bad invoice_type
        StateConflictError: Checkout is not checked_out
        IntegrityConflictError: An invoice number is already linked to
            another active checkout; the checkout is left unchanged
    """
    numbers = _normalize_invoice_numbers(invoice_numbers)
    if not numbers:
        raise ValidationError("At least one invoice number is required")
    if invoice_type not in INVOICE_TYPES:
        raise ValidationError(f"Invalid invoice_type: {invoice_type}")

    def _op():
        checkout = _load_for_update(checkout_id)
        if checkout.status != CHECKOUT_STATUS_CHECKED_OUT:
            raise StateConflictError(f"Cannot complete checkout in {checkout.status} status")

        conflicts = _find_invoice_conflicts(numbers, checkout.id)
        if conflicts:
            raise IntegrityConflictError("Invoice numbers already linked to another checkout", conflicts)

        for number in numbers:
            checkout.invoice_links.append(TruckCheckoutInvoice(invoice_number=number))
        checkout.status = CHECKOUT_STATUS_COMPLETED
        checkout.completed_date = utcnow()
        checkout.invoice_type = invoice_type
        checkout.completed_by = completed_by

        try:
            db.session.flush()
        except IntegrityError:
            # Lost the race to a concurrent completion
            db.session.rollback()
            raise IntegrityConflictError(
                "Invoice numbers already linked to another checkout",
                _find_invoice_conflicts(numbers, checkout_id),
            )

        db.session.commit()
        return checkout

    checkout = run_with_retry(_op)
    current_app.logger.info("Checkout %s completed with invoices %s", checkout.id, ", ".join(numbers))
    return checkout


def cancel_checkout(checkout_id: int, *, reason: str | None = None, cancelled_by: str | None = None) -> TruckCheckout:
    """
    Cancel a checkout that has not been completed.

    The OUT movements posted at checkout time stay in the ledger.
    """
    def _op():
        checkout = _load_for_update(checkout_id)
        if checkout.status != CHECKOUT_STATUS_CHECKED_OUT:
            raise StateConflictError(
                f"Cannot cancel checkout in {checkout.status} status. "
                f"Only checked out checkouts can be cancelled."
            )

        checkout.status = CHECKOUT_STATUS_CANCELLED
        checkout.cancelled_at = utcnow()
        checkout.cancellation_reason = reason
        if reason:
            prefix = f"{checkout.notes}\n" if checkout.notes else ""
            checkout.notes = f"{prefix}Cancelled: {reason}"
        db.session.commit()
        return checkout

    checkout = run_with_retry(_op)
    current_app.logger.info("Checkout %s cancelled by %s", checkout.id, cancelled_by or "system")
    return checkout


# ---------------------------------------------------------------------------
# Tally
# ---------------------------------------------------------------------------


def _snapshot_local_invoice(number: str) -> dict | None:
    invoices = (
        db.session.query(ExternalInvoice)
        .filter(ExternalInvoice.number == number)
        .order_by(ExternalInvoice.id.asc())
        .all()
    )
    for invoice in invoices:
        if invoice.lines:
            return {
                "invoice_number": invoice.number,
                "customer": invoice.counterparty_name or "Unknown",
                "items": [
                    {"name": line.name, "sku": line.sku, "quantity": line.quantity}
                    for line in invoice.lines
                ],
                "total": invoice.total_cents / 100,
                "source": "local",
                "fetched_at": utcnow().isoformat(),
            }
    return None


def _call_fetcher(invoice_fetcher, number: str):
    if hasattr(invoice_fetcher, "fetch_invoice_details"):
        return invoice_fetcher.fetch_invoice_details(number)
    return invoice_fetcher(number)


def _snapshot_fetched_invoice(number: str, details: Any) -> dict:
    if not isinstance(details, dict):
        raise ValidationError("invoice details must be an object")
    items = []
    for index, item in enumerate(details.get("items") or []):
        if not isinstance(item, dict):
            raise ValidationError(f"invoice {number} item {index} must be an object")
        name = str(item.get("name") or "").strip() or None
        sku = str(item.get("sku") or "").strip() or None
        if not name and not sku:
            raise ValidationError(f"invoice {number} item {index} has neither name nor sku")
        try:
            quantity = _to_int(item.get("quantity", item.get("qty", 0))) or 0
        except (TypeError, ValueError, OverflowError):
            raise ValidationError(f"invalid quantity on invoice {number} item {index}")
        items.append({"name": name, "sku": sku, "quantity": quantity})
    if not items:
        raise ValidationError(f"invoice {number} has no line items")
    return {
        "invoice_number": number,
        "customer": details.get("customer") or "Unknown",
        "items": items,
        "total": details.get("total"),
        "source": "fetched",
        "fetched_at": utcnow().isoformat(),
    }


def _resolve_invoices(numbers: list[str], invoice_fetcher) -> tuple[list[dict], list[dict]]:
    fetched: list[dict] = []
    missing: list[dict] = []
    for number in numbers:
        snapshot = _snapshot_local_invoice(number)
        if snapshot is not None:
            fetched.append(snapshot)
            continue

        if invoice_fetcher is None:
            missing.append({"invoice_number": number, "reason": "no line items available"})
            continue

        try:
            details = _call_fetcher(invoice_fetcher, number)
            fetched.append(_snapshot_fetched_invoice(number, details))
        except Exception as exc:
            current_app.logger.warning("Failed to fetch invoice %s: %s", number, exc)
            missing.append({"invoice_number": number, "reason": str(exc)})
    return fetched, missing


def compute_tally(items_taken: list[dict], fetched_invoices: list[dict]) -> dict:
    """
    Compare items taken with items sold.

    Both sides are grouped by sku, falling back to name, and summed. Every
    key on either side yields one discrepancy line with
    difference = quantity_taken - quantity_sold.
    """
    sold_map: dict[str, dict] = {}
    for invoice in fetched_invoices:
        for item in invoice["items"]:
            key = _item_key(item)
            entry = sold_map.setdefault(key, {"name": item.get("name"), "sku": item.get("sku"), "quantity_sold": 0})
            entry["quantity_sold"] += item["quantity"]

    taken_map: dict[str, dict] = {}
    for item in items_taken:
        key = _item_key(item)
        entry = taken_map.setdefault(key, {"name": item.get("name"), "sku": item.get("sku"), "quantity_taken": 0})
        entry["quantity_taken"] += item["quantity"]

    discrepancies = []
    for key in list(taken_map) + [k for k in sold_map if k not in taken_map]:
        taken = taken_map.get(key, {"name": key, "sku": key, "quantity_taken": 0})
        sold = sold_map.get(key, {"name": key, "sku": key, "quantity_sold": 0})
        difference = taken["quantity_taken"] - sold["quantity_sold"]
        if difference > 0:
            status = TALLY_EXCESS
        elif difference < 0:
            status = TALLY_SHORTAGE
        else:
            status = TALLY_MATCHED
        discrepancies.append({
            "name": taken["name"] or sold["name"],
            "sku": taken["sku"] or sold["sku"],
            "quantity_taken": taken["quantity_taken"],
            "quantity_sold": sold["quantity_sold"],
            "difference": difference,
            "status": status,
        })

    return {
        "items_taken": list(taken_map.values()),
        "items_sold": list(sold_map.values()),
        "discrepancies": discrepancies,
    }


def tally_checkout(checkout_id: int, *, invoice_fetcher=None, tallied_by: str | None = None) -> dict:
    """
    Resolve the linked invoices and compute sold-vs-taken per item.

    Invoices already stored locally with line items are used as-is; the
    rest go through `invoice_fetcher` (callable or object with
    fetch_invoice_details(number) -> {customer, items, total}). A fetch
    failure is recorded in missing_invoices and does not stop the tally.

    Returns:
        {"checkout": ..., "summary": {...}}

    Raises:
        StateConflictError: Checkout not completed, already stock-processed,
            or has no invoices
    """
    checkout = db.session.get(TruckCheckout, checkout_id)
    if not checkout:
        raise NotFoundError(f"Checkout {checkout_id} not found")
    if checkout.status != CHECKOUT_STATUS_COMPLETED:
        raise StateConflictError("Checkout must be completed before tallying")
    if checkout.stock_processed:
        raise StateConflictError("Stock already processed; tally results are final")
    numbers = checkout.invoice_numbers
    if not numbers:
        raise StateConflictError("Checkout has no invoice numbers to tally")

    current_app.logger.info("Starting tally for checkout %s (%d invoices)", checkout_id, len(numbers))
    fetched, missing = _resolve_invoices(numbers, invoice_fetcher)
    # Release the read transaction before writing
    db.session.rollback()

    def _op():
        checkout = _load_for_update(checkout_id)
        if checkout.status != CHECKOUT_STATUS_COMPLETED:
            raise StateConflictError("Checkout must be completed before tallying")
        if checkout.stock_processed:
            raise StateConflictError("Stock already processed; tally results are final")

        items_taken = [{"name": i.name, "sku": i.sku, "quantity": i.quantity} for i in checkout.items]
        results = compute_tally(items_taken, fetched)
        results["missing_invoices"] = missing
        results["warnings"] = []

        checkout.fetched_invoices = fetched
        checkout.tally_results = results
        checkout.tally_date = utcnow()
        checkout.tallied_by = tallied_by
        db.session.commit()
        return checkout

    checkout = run_with_retry(_op)
    discrepancies = checkout.tally_results["discrepancies"]
    summary = {
        "total_invoices": len(numbers),
        "fetched_invoices": len(fetched),
        "missing_invoices": len(missing),
        "total_items_taken": checkout.total_items_taken,
        "total_items_sold": checkout.total_items_sold,
        "matched": sum(1 for d in discrepancies if d["status"] == TALLY_MATCHED),
        "discrepancies": sum(1 for d in discrepancies if d["status"] != TALLY_MATCHED),
    }
    current_app.logger.info(
        "Tally completed for checkout %s: %d/%d invoices, %d matched, %d discrepancies",
        checkout_id, summary["fetched_invoices"], summary["total_invoices"],
        summary["matched"], summary["discrepancies"],
    )
    return {"checkout": checkout, "summary": summary}


# ---------------------------------------------------------------------------
# Stock processing
# ---------------------------------------------------------------------------


def process_checkout_stock(
    checkout_id: int,
    *,
    resolver: AliasResolver | None = None,
    processed_by: str | None = None,
) -> dict:
    """
    Post the compensating movements for a tallied checkout, once.

    Per discrepancy line (SKU canonicalized first):
    - quantity_sold > 0: IN quantity_sold. The sale was decremented once at
      checkout and again when the invoice was ingested.
    - quantity_taken - quantity_sold > 0: OUT of the difference, items used
      in the field and never invoiced.
    - quantity_taken - quantity_sold < 0: nothing posted, warning recorded.

    Returns:
        {"checkout", "movements", "warnings"}

    Raises:
        StateConflictError: Not completed, not tallied, or already processed
        InsufficientStockError: An OUT could not be covered; nothing posted
            and the error is stored on the checkout
    """
    resolver = resolver or AliasResolver()
    gate_passed = False

    def _op():
        nonlocal gate_passed
        checkout = _load_for_update(checkout_id)
        if checkout.status != CHECKOUT_STATUS_COMPLETED:
            raise StateConflictError(f"Cannot process stock for checkout in {checkout.status} status")
        if checkout.stock_processed:
            raise StateConflictError("Stock already processed for this checkout")
        if not checkout.tally_results or "discrepancies" not in checkout.tally_results:
            raise StateConflictError("Tally must be completed before processing stock")

        checkout.stock_processed = True
        checkout.stock_processed_at = utcnow()
        checkout.stock_processing_error = None
        db.session.flush()
        gate_passed = True

        source_ref = f"{checkout.employee_name} - {', '.join(checkout.invoice_numbers)}"
        occurred_at = checkout.completed_date or utcnow()
        movements: list[StockMovement] = []
        warnings: list[dict] = []

        for line in checkout.tally_results["discrepancies"]:
            sku = _canonical_sku(resolver, line.get("sku"), line.get("name"))
            sold = int(line.get("quantity_sold") or 0)
            used = int(line.get("quantity_taken") or 0) - sold

            if sold > 0:
                movements.append(_post_movement_inner(
                    sku=sku,
                    movement_type=MOVEMENT_IN,
                    qty=sold,
                    ref_type=REF_CHECKOUT,
                    ref_id=checkout.id,
                    source_ref=source_ref,
                    occurred_at=occurred_at,
                    notes=f"Truck sale reversal: {checkout.employee_name}",
                    created_by=processed_by,
                ))
            if used > 0:
                movements.append(_post_movement_inner(
                    sku=sku,
                    movement_type=MOVEMENT_OUT,
                    qty=used,
                    ref_type=REF_CHECKOUT,
                    ref_id=checkout.id,
                    source_ref=source_ref,
                    occurred_at=occurred_at,
                    notes=f"Truck usage: {checkout.employee_name}",
                    created_by=processed_by,
                ))
            elif used < 0:
                warnings.append({
                    "sku": sku,
                    "quantity_taken": line.get("quantity_taken"),
                    "quantity_sold": sold,
                    "quantity_used": used,
                    "message": "Sold more than taken; no movement posted",
                })

        if warnings:
            results = dict(checkout.tally_results)
            results["warnings"] = list(results.get("warnings") or []) + warnings
            checkout.tally_results = results

        db.session.commit()
        return checkout, movements, warnings

    try:
        checkout, movements, warnings = run_with_retry(_op)
    except Exception as exc:
        if gate_passed:
            _record_processing_error(checkout_id, exc)
        raise

    for warning in warnings:
        current_app.logger.warning(
            "Checkout %s: %s sold %s but took %s",
            checkout_id, warning["sku"], warning["quantity_sold"], warning["quantity_taken"],
        )
    current_app.logger.info("Stock processed for checkout %s: %d movements", checkout_id, len(movements))
    return {"checkout": checkout, "movements": movements, "warnings": warnings}


def _record_processing_error(checkout_id: int, exc: Exception) -> None:
    message = getattr(exc, "message", None) or str(exc)
    current_app.logger.error("Stock processing failed for checkout %s: %s", checkout_id, message)

    def _op():
        checkout = _load_for_update(checkout_id)
        if not checkout.stock_processed:
            checkout.stock_processing_error = message
            db.session.commit()

    run_with_retry(_op)


# ---------------------------------------------------------------------------
# Queries and maintenance
# ---------------------------------------------------------------------------


def get_checkout(checkout_id: int) -> TruckCheckout:
    checkout = db.session.get(TruckCheckout, checkout_id)
    if not checkout:
        raise NotFoundError(f"Checkout {checkout_id} not found")
    return checkout


def list_checkouts(
    *,
    status: str | None = None,
    employee_name: str | None = None,
    start=None,
    end=None,
    page: int = 1,
    per_page: int = 50,
) -> dict:
    """Filtered checkout listing, newest first, paginated."""
    if status is not None and status not in CHECKOUT_STATUSES:
        raise ValidationError(f"Invalid status: {status}")
    try:
        start_dt = normalize_datetime(start)
        end_dt = normalize_datetime(end)
    except ValueError:
        raise ValidationError("invalid date range")

    q = db.session.query(TruckCheckout)
    if status:
        q = q.filter(TruckCheckout.status == status)
    if employee_name:
        q = q.filter(TruckCheckout.employee_name.ilike(f"%{employee_name}%"))
    if start_dt is not None:
        q = q.filter(TruckCheckout.checkout_date >= start_dt)
    if end_dt is not None:
        q = q.filter(TruckCheckout.checkout_date <= end_dt)
    q = q.order_by(TruckCheckout.checkout_date.desc(), TruckCheckout.id.desc())

    per_page = min(per_page or 50, 200)
    page = max(page or 1, 1)
    total = q.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    checkouts = q.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [c.to_dict() for c in checkouts],
        "count": len(checkouts),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def active_checkouts() -> list[TruckCheckout]:
    return (
        db.session.query(TruckCheckout)
        .filter(TruckCheckout.status == CHECKOUT_STATUS_CHECKED_OUT)
        .order_by(TruckCheckout.checkout_date.desc())
        .all()
    )


def checkouts_needing_stock_processing() -> list[TruckCheckout]:
    """Completed and tallied, but compensating movements not yet posted."""
    return (
        db.session.query(TruckCheckout)
        .filter(
            TruckCheckout.status == CHECKOUT_STATUS_COMPLETED,
            TruckCheckout.tally_date.isnot(None),
            TruckCheckout.stock_processed.is_(False),
        )
        .order_by(TruckCheckout.completed_date.asc())
        .all()
    )


def update_checkout(checkout_id: int, fields: dict) -> TruckCheckout:
    """Edit descriptive fields only; status and processing flags are never writable here."""
    unknown = sorted(set(fields or {}) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Fields not updatable: {', '.join(unknown)}")

    def _op():
        checkout = _load_for_update(checkout_id)
        for name in UPDATABLE_FIELDS:
            if name in fields:
                setattr(checkout, name, fields[name])
        db.session.commit()
        return checkout

    return run_with_retry(_op)


def delete_checkout(checkout_id: int) -> None:
    """
    Remove a checkout record. Refused once stock has been processed.

    Ledger movements posted for the checkout are kept.
    """
    def _op():
        checkout = _load_for_update(checkout_id)
        if checkout.stock_processed:
            raise StateConflictError("Cannot delete a checkout whose stock has been processed")
        db.session.delete(checkout)
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.info("Checkout %s deleted", checkout_id)
