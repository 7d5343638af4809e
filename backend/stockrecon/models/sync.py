from __future__ import annotations

from ..extensions import db
from stockrecon.time_utils import to_utc_z, utcnow


SYNC_STATUS_RUNNING = "RUNNING"
SYNC_STATUS_SUCCESS = "SUCCESS"
SYNC_STATUS_FAILED = "FAILED"
SYNC_STATUS_PARTIAL = "PARTIAL"
SYNC_STATUSES = (SYNC_STATUS_RUNNING, SYNC_STATUS_SUCCESS, SYNC_STATUS_FAILED, SYNC_STATUS_PARTIAL)


class SyncRun(db.Model):
    """
    One ingestion session against an external source.

    LIFECYCLE:
    1. RUNNING: opened by start_fetch
    2. SUCCESS: finished with zero record failures
    3. PARTIAL: finished, some records failed
    4. FAILED: the run itself errored (or was expired as abandoned)

    Append-only in the sense that a finished run is never reopened.
    Nothing prevents two RUNNING runs for the same source.
    """
    __tablename__ = "sync_runs"
    __table_args__ = (
        db.Index("ix_sync_runs_source_started", "source", "started_at"),
        db.Index("ix_sync_runs_status_source", "status", "source"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    source = db.Column(db.String(64), nullable=False, index=True)
    # pending, closed, all, items, ...
    kind = db.Column(db.String(32), nullable=False)
    params = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=SYNC_STATUS_RUNNING, index=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    ended_at = db.Column(db.DateTime(timezone=True), nullable=True)

    records_found = db.Column(db.Integer, nullable=False, default=0)
    records_inserted = db.Column(db.Integer, nullable=False, default=0)
    records_updated = db.Column(db.Integer, nullable=False, default=0)
    records_failed = db.Column(db.Integer, nullable=False, default=0)

    error_message = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, nullable=True)

    triggered_by = db.Column(db.String(128), nullable=True)

    @property
    def duration_seconds(self) -> float | None:
        if not self.ended_at or not self.started_at:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def __repr__(self) -> str:
        return f"<SyncRun id={self.id} source={self.source!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "kind": self.kind,
            "params": self.params or {},
            "status": self.status,
            "started_at": to_utc_z(self.started_at),
            "ended_at": to_utc_z(self.ended_at),
            "duration_seconds": self.duration_seconds,
            "records_found": self.records_found,
            "records_inserted": self.records_inserted,
            "records_updated": self.records_updated,
            "records_failed": self.records_failed,
            "error_message": self.error_message,
            "details": self.details or {},
            "triggered_by": self.triggered_by,
        }


class ExternalInvoice(db.Model):
    """
    Invoice/order ingested from an external system of record.

    Natural keys: (source, number) always; (source, external_id) when the
    source supplies one. Re-ingestion overwrites header and lines but never
    the local processing flags (stock_processed, stock_processed_at).
    """
    __tablename__ = "external_invoices"
    __table_args__ = (
        db.UniqueConstraint("source", "number", name="uq_external_invoices_source_number"),
        db.UniqueConstraint("source", "external_id", name="uq_external_invoices_source_external_id"),
        db.Index("ix_external_invoices_stock_processed", "stock_processed"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    source = db.Column(db.String(64), nullable=False, index=True)
    external_id = db.Column(db.String(128), nullable=True)
    number = db.Column(db.String(64), nullable=False, index=True)

    invoice_date = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    counterparty_name = db.Column(db.String(255), nullable=True, index=True)
    status = db.Column(db.String(32), nullable=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    # Local processing flags; preserved across upserts
    stock_processed = db.Column(db.Boolean, nullable=False, default=False)
    stock_processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    last_synced_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_sync_run_id = db.Column(db.Integer, db.ForeignKey("sync_runs.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship(
        "ExternalInvoiceLine",
        backref="invoice",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="ExternalInvoiceLine.line_number",
    )
    last_sync_run = db.relationship("SyncRun", foreign_keys=[last_sync_run_id])

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<ExternalInvoice id={self.id} source={self.source!r} number={self.number!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "external_id": self.external_id,
            "number": self.number,
            "invoice_date": to_utc_z(self.invoice_date),
            "counterparty_name": self.counterparty_name,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "line_items": [line.to_dict() for line in self.lines],
            "stock_processed": self.stock_processed,
            "stock_processed_at": to_utc_z(self.stock_processed_at),
            "last_synced_at": to_utc_z(self.last_synced_at),
            "last_sync_run_id": self.last_sync_run_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class ExternalInvoiceLine(db.Model):
    __tablename__ = "external_invoice_lines"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "line_number", name="uq_external_invoice_lines_invoice_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("external_invoices.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(128), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    unit_price_cents = db.Column(db.Integer, nullable=True)
    line_total_cents = db.Column(db.Integer, nullable=True)

    def to_dict(self) -> dict:
        return {
            "line_number": self.line_number,
            "name": self.name,
            "sku": self.sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }
