# Overview: Sync coordinator; records ingestion runs from external sources and upserts their records.

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    ExternalDependencyError,
    NotFoundError,
    StateConflictError,
    StockReconError,
    ValidationError,
    error_entry,
)
from ..models import ExternalInvoice, ExternalInvoiceLine, StockMovement, SyncRun
from ..models.ledger import MOVEMENT_OUT, REF_INVOICE, normalize_sku
from ..models.sync import (
    SYNC_STATUS_FAILED,
    SYNC_STATUS_PARTIAL,
    SYNC_STATUS_RUNNING,
    SYNC_STATUS_SUCCESS,
)
from stockrecon.time_utils import utcnow
from .alias_service import AliasResolver
from .concurrency import lock_for_update, run_with_retry
from .ingest_schemas import NormalizedRecord
from .ledger_service import _post_movement_inner
"""
Sync invariants (authoritative)

- A run opens RUNNING and is finished exactly once as SUCCESS, PARTIAL or
  FAILED. Finished runs are never reopened.
- Records are upserted by natural key, (source, number) or
  (source, external_id) per source config, so re-running a sync never
  duplicates invoices.
- Re-ingesting overwrites header and lines but keeps stock_processed and
  stock_processed_at.
- Two runs for the same source may overlap; upsert keys keep them from
  duplicating records, nothing else coordinates them.
"""

UPSERT_KEY_NUMBER = "number"
UPSERT_KEY_EXTERNAL_ID = "external_id"

INGEST_INSERTED = "inserted"
INGEST_UPDATED = "updated"


def upsert_key_for(source: str) -> str:
    keys = current_app.config.get("SYNC_UPSERT_KEYS") or {}
    key = keys.get(source, current_app.config.get("SYNC_UPSERT_KEY_DEFAULT", UPSERT_KEY_NUMBER))
    if key not in (UPSERT_KEY_NUMBER, UPSERT_KEY_EXTERNAL_ID):
        raise ValidationError(f"Invalid upsert key for {source}: {key}")
    return key


def _get_run(run_or_id) -> SyncRun:
    if isinstance(run_or_id, SyncRun):
        return run_or_id
    run = db.session.get(SyncRun, run_or_id)
    if not run:
        raise NotFoundError(f"Sync run {run_or_id} not found")
    return run


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------


def start_fetch(source: str, kind: str, params: dict | None = None, *, triggered_by: str | None = None) -> SyncRun:
    source = str(source or "").strip().lower()
    if not source:
        raise ValidationError("source is required")
    if not kind:
        raise ValidationError("kind is required")

    def _op():
        run = SyncRun(
            source=source,
            kind=kind,
            params=params or {},
            status=SYNC_STATUS_RUNNING,
            started_at=utcnow(),
            triggered_by=triggered_by,
            details={"errors": []},
        )
        db.session.add(run)
        db.session.commit()
        return run

    run = run_with_retry(_op)
    current_app.logger.info("Sync run %s started: %s/%s", run.id, source, kind)
    return run


def complete_run(run_or_id, *, success: bool = True, message: str | None = None) -> SyncRun:
    """
    Finish a RUNNING run.

    success=False marks the run FAILED. Otherwise the status comes from the
    record counters: SUCCESS with zero failures, PARTIAL with some.

    Raises:
        StateConflictError: The run is not RUNNING
    """
    run_id = run_or_id.id if isinstance(run_or_id, SyncRun) else run_or_id

    def _op():
        run = lock_for_update(db.session.query(SyncRun).filter_by(id=run_id)).first()
        if not run:
            raise NotFoundError(f"Sync run {run_id} not found")
        if run.status != SYNC_STATUS_RUNNING:
            raise StateConflictError(f"Cannot complete sync run in {run.status} status")

        if not success:
            run.status = SYNC_STATUS_FAILED
        elif run.records_failed:
            run.status = SYNC_STATUS_PARTIAL
        else:
            run.status = SYNC_STATUS_SUCCESS
        run.ended_at = utcnow()
        run.error_message = message
        db.session.commit()
        return run

    run = run_with_retry(_op)
    log = current_app.logger.info if run.status == SYNC_STATUS_SUCCESS else current_app.logger.warning
    log(
        "Sync run %s finished %s: found=%d inserted=%d updated=%d failed=%d",
        run.id, run.status, run.records_found, run.records_inserted, run.records_updated, run.records_failed,
    )
    return run


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


def _find_existing(source: str, record: NormalizedRecord, key: str) -> ExternalInvoice | None:
    q = db.session.query(ExternalInvoice).filter(ExternalInvoice.source == source)
    if key == UPSERT_KEY_EXTERNAL_ID and record.external_id:
        return q.filter(ExternalInvoice.external_id == record.external_id).first()
    return q.filter(ExternalInvoice.number == record.number).first()


def _apply_record(invoice: ExternalInvoice, record: NormalizedRecord, run: SyncRun) -> None:
    """Overwrite header and lines. Local processing flags are left alone."""
    invoice.external_id = record.external_id
    invoice.number = record.number
    invoice.invoice_date = record.invoice_date
    invoice.counterparty_name = record.counterparty_name
    invoice.status = record.status
    invoice.subtotal_cents = record.subtotal_cents
    invoice.tax_cents = record.tax_cents
    invoice.total_cents = record.total_cents
    invoice.last_synced_at = utcnow()
    invoice.last_sync_run_id = run.id

    if invoice.lines:
        invoice.lines.clear()
        db.session.flush()
    for index, item in enumerate(record.line_items, start=1):
        invoice.lines.append(
            ExternalInvoiceLine(
                line_number=index,
                name=item.name,
                sku=item.sku,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                line_total_cents=item.line_total_cents,
            )
        )


def _upsert(run: SyncRun, record: NormalizedRecord) -> tuple[ExternalInvoice, str]:
    key = upsert_key_for(run.source)
    invoice = _find_existing(run.source, record, key)
    if invoice is not None:
        _apply_record(invoice, record, run)
        db.session.flush()
        return invoice, INGEST_UPDATED

    try:
        with db.session.begin_nested():
            invoice = ExternalInvoice(source=run.source, number=record.number, stock_processed=False)
            db.session.add(invoice)
            _apply_record(invoice, record, run)
        return invoice, INGEST_INSERTED
    except IntegrityError:
        # A concurrent run inserted the same record first
        invoice = _find_existing(run.source, record, key)
        if invoice is None:
            raise
        _apply_record(invoice, record, run)
        db.session.flush()
        return invoice, INGEST_UPDATED


def ingest_record(run_or_id, payload) -> tuple[ExternalInvoice, str]:
    """
    Validate one raw payload and upsert it as an ExternalInvoice.

    Returns:
        (invoice, "inserted" | "updated")

    Raises:
        ValidationError: Payload rejected at the boundary
        StateConflictError: Run is not RUNNING
    """
    run = _get_run(run_or_id)
    if run.status != SYNC_STATUS_RUNNING:
        raise StateConflictError(f"Cannot ingest into sync run in {run.status} status")
    record = NormalizedRecord.from_payload(payload)

    def _op():
        invoice, outcome = _upsert(run, record)
        counter = SyncRun.records_inserted if outcome == INGEST_INSERTED else SyncRun.records_updated
        db.session.query(SyncRun).filter(SyncRun.id == run.id).update(
            {
                SyncRun.records_found: SyncRun.records_found + 1,
                counter: counter + 1,
            },
            synchronize_session=False,
        )
        db.session.commit()
        return invoice, outcome

    return run_with_retry(_op)


def _record_failure(run: SyncRun, key, exc: Exception) -> dict:
    entry = error_entry(key, exc)

    def _op():
        db.session.query(SyncRun).filter(SyncRun.id == run.id).update(
            {
                SyncRun.records_found: SyncRun.records_found + 1,
                SyncRun.records_failed: SyncRun.records_failed + 1,
            },
            synchronize_session=False,
        )
        locked = lock_for_update(db.session.query(SyncRun).filter_by(id=run.id)).populate_existing().first()
        details = dict(locked.details or {})
        details["errors"] = list(details.get("errors") or []) + [entry]
        locked.details = details
        db.session.commit()

    run_with_retry(_op)
    return entry


def ingest_batch(run_or_id, payloads) -> dict:
    """
    Best-effort ingestion of many payloads into one run.

    A failing record is counted and added to run.details["errors"]; the
    remaining records still go in.
    """
    run = _get_run(run_or_id)
    result = {INGEST_INSERTED: 0, INGEST_UPDATED: 0, "failed": 0, "errors": []}

    for index, payload in enumerate(payloads or []):
        key = payload.get("number") if isinstance(payload, dict) and payload.get("number") else index
        try:
            _, outcome = ingest_record(run, payload)
            result[outcome] += 1
        except StockReconError as exc:
            if isinstance(exc, StateConflictError):
                raise
            current_app.logger.warning("Sync run %s: record %s rejected: %s", run.id, key, exc.message)
            result["errors"].append(_record_failure(run, key, exc))
            result["failed"] += 1
        except IntegrityError as exc:
            current_app.logger.warning("Sync run %s: record %s conflicts: %s", run.id, key, exc.orig)
            result["errors"].append(_record_failure(run, key, exc))
            result["failed"] += 1

    return result


def _fetch_records(fetcher, kind: str, params: dict):
    if hasattr(fetcher, "fetch_records"):
        return fetcher.fetch_records(kind, params)
    return fetcher(kind, params)


def run_sync(
    source: str,
    kind: str,
    fetcher,
    params: dict | None = None,
    *,
    process_stock: bool = False,
    triggered_by: str | None = None,
    resolver: AliasResolver | None = None,
) -> SyncRun:
    """
    Full sync: open run, pull records from `fetcher`, ingest, optionally
    post stock for newly ingested invoices, close run.

    Raises:
        ExternalDependencyError: The fetcher failed; the run is closed FAILED
    """
    params = params or {}
    run = start_fetch(source, kind, params, triggered_by=triggered_by)
    run_id = run.id

    try:
        payloads = list(_fetch_records(fetcher, kind, params))
    except Exception as exc:
        current_app.logger.exception("Sync run %s: fetch from %s failed", run_id, source)
        _fail_run(run_id, exc)
        raise ExternalDependencyError(f"Fetching {kind} from {source} failed: {exc}") from exc

    try:
        result = ingest_batch(run_id, payloads)

        if process_stock:
            stock = process_unprocessed_invoices(source=source, resolver=resolver)
            _merge_details(run_id, {"stock": {"processed": stock["processed"], "errors": stock["errors"]}})
    except Exception as exc:
        current_app.logger.exception("Sync run %s: aborted while ingesting", run_id)
        _fail_run(run_id, exc)
        raise

    current_app.logger.info(
        "Sync run %s ingested %d inserted, %d updated, %d failed",
        run_id, result[INGEST_INSERTED], result[INGEST_UPDATED], result["failed"],
    )
    return complete_run(run_id, success=True)


def _fail_run(run_id: int, exc: Exception) -> None:
    db.session.rollback()
    message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    complete_run(run_id, success=False, message=message)


def _merge_details(run_id: int, extra: dict) -> None:
    def _op():
        run = lock_for_update(db.session.query(SyncRun).filter_by(id=run_id)).first()
        details = dict(run.details or {})
        details.update(extra)
        run.details = details
        db.session.commit()

    run_with_retry(_op)


# ---------------------------------------------------------------------------
# Invoice stock processing
# ---------------------------------------------------------------------------


def process_invoice_stock(
    invoice_id: int,
    *,
    resolver: AliasResolver | None = None,
    processed_by: str | None = None,
) -> list[StockMovement]:
    """
    Post one OUT per invoice line (canonical SKU) and mark the invoice
    stock-processed, all in one transaction.

    Raises:
        StateConflictError: Already processed
        InsufficientStockError: A line is not covered; nothing posted
    """
    resolver = resolver or AliasResolver()

    def _op():
        invoice = lock_for_update(db.session.query(ExternalInvoice).filter_by(id=invoice_id)).first()
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        if invoice.stock_processed:
            raise StateConflictError(f"Stock already processed for invoice {invoice.number}")

        invoice.stock_processed = True
        invoice.stock_processed_at = utcnow()
        db.session.flush()

        movements = []
        for line in invoice.lines:
            if line.quantity <= 0:
                continue
            sku = normalize_sku(resolver.get_canonical_name(line.sku or line.name))
            movements.append(_post_movement_inner(
                sku=sku,
                movement_type=MOVEMENT_OUT,
                qty=line.quantity,
                ref_type=REF_INVOICE,
                ref_id=invoice.number,
                source_ref=f"{invoice.source}:{invoice.number}",
                occurred_at=invoice.invoice_date,
                notes=f"Sold: {line.name}",
                created_by=processed_by,
            ))

        db.session.commit()
        return movements

    movements = run_with_retry(_op)
    current_app.logger.info("Stock processed for invoice %s: %d movements", invoice_id, len(movements))
    return movements


def process_unprocessed_invoices(*, source: str | None = None, resolver: AliasResolver | None = None) -> dict:
    """Best-effort stock processing of every invoice with lines not yet processed."""
    resolver = resolver or AliasResolver()
    q = (
        db.session.query(ExternalInvoice.id, ExternalInvoice.number)
        .filter(ExternalInvoice.stock_processed.is_(False))
        .filter(ExternalInvoice.lines.any())
    )
    if source:
        q = q.filter(ExternalInvoice.source == source)
    pending = q.order_by(ExternalInvoice.invoice_date.asc(), ExternalInvoice.id.asc()).all()

    processed: list[str] = []
    errors: list[dict] = []
    for invoice_id, number in pending:
        try:
            process_invoice_stock(invoice_id, resolver=resolver)
            processed.append(number)
        except StockReconError as exc:
            current_app.logger.warning("Stock processing skipped for invoice %s: %s", number, exc.message)
            errors.append(error_entry(number, exc))

    return {"processed": processed, "errors": errors, "total": len(pending)}


# ---------------------------------------------------------------------------
# Queries and maintenance
# ---------------------------------------------------------------------------


def latest_run(source: str) -> SyncRun | None:
    return (
        db.session.query(SyncRun)
        .filter(SyncRun.source == source)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .first()
    )


def recent_runs(source: str | None = None, limit: int = 20) -> list[SyncRun]:
    q = db.session.query(SyncRun)
    if source:
        q = q.filter(SyncRun.source == source)
    return q.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(limit).all()


def active_runs(source: str | None = None) -> list[SyncRun]:
    q = db.session.query(SyncRun).filter(SyncRun.status == SYNC_STATUS_RUNNING)
    if source:
        q = q.filter(SyncRun.source == source)
    return q.order_by(SyncRun.started_at.asc()).all()


def run_stats(source: str | None = None, days: int = 7) -> dict:
    """Run counts and record totals per status over the last `days` days."""
    cutoff = utcnow() - timedelta(days=days)
    q = db.session.query(
        SyncRun.status,
        func.count(SyncRun.id),
        func.coalesce(func.sum(SyncRun.records_found), 0),
        func.coalesce(func.sum(SyncRun.records_inserted), 0),
        func.coalesce(func.sum(SyncRun.records_updated), 0),
        func.coalesce(func.sum(SyncRun.records_failed), 0),
    ).filter(SyncRun.started_at >= cutoff)
    if source:
        q = q.filter(SyncRun.source == source)

    by_status = {}
    for status, count, found, inserted, updated, failed in q.group_by(SyncRun.status).all():
        by_status[status] = {
            "runs": int(count),
            "records_found": int(found),
            "records_inserted": int(inserted),
            "records_updated": int(updated),
            "records_failed": int(failed),
        }

    total_runs = sum(entry["runs"] for entry in by_status.values())
    succeeded = by_status.get(SYNC_STATUS_SUCCESS, {}).get("runs", 0)
    return {
        "source": source,
        "days": days,
        "total_runs": total_runs,
        "by_status": by_status,
        "success_rate": round(succeeded / total_runs * 100, 2) if total_runs else None,
    }


def expire_stale_runs(older_than_minutes: int | None = None) -> list[SyncRun]:
    """Close RUNNING runs started before the cutoff as FAILED (timed out)."""
    if older_than_minutes is None:
        older_than_minutes = int(current_app.config.get("SYNC_STALE_AFTER_MINUTES", 120))
    cutoff = utcnow() - timedelta(minutes=older_than_minutes)

    def _op():
        stale = (
            db.session.query(SyncRun)
            .filter(SyncRun.status == SYNC_STATUS_RUNNING, SyncRun.started_at < cutoff)
            .all()
        )
        now = utcnow()
        for run in stale:
            run.status = SYNC_STATUS_FAILED
            run.ended_at = now
            run.error_message = f"Timed out after {older_than_minutes} minutes"
        db.session.commit()
        return stale

    stale = run_with_retry(_op)
    if stale:
        current_app.logger.warning("Expired %d stale sync runs", len(stale))
    return stale
