from __future__ import annotations

from ..extensions import db
from stockrecon.time_utils import to_utc_z, utcnow


CHECKOUT_STATUS_CHECKED_OUT = "checked_out"
CHECKOUT_STATUS_COMPLETED = "completed"
CHECKOUT_STATUS_CANCELLED = "cancelled"
CHECKOUT_STATUSES = (
    CHECKOUT_STATUS_CHECKED_OUT,
    CHECKOUT_STATUS_COMPLETED,
    CHECKOUT_STATUS_CANCELLED,
)

INVOICE_TYPE_PENDING = "pending"
INVOICE_TYPE_CLOSED = "closed"
INVOICE_TYPES = (INVOICE_TYPE_PENDING, INVOICE_TYPE_CLOSED)


class TruckCheckout(db.Model):
    """
    Items an employee removed from the warehouse for field work.

    LIFECYCLE:
    1. checked_out: created; OUT movements already posted for every item
    2. completed: linked to the invoice numbers written in the field
    3. stock processed (completed + stock_processed=True): compensating
       movements posted from the tally, terminal
    4. cancelled: terminal, only reachable from checked_out. Checkout-time
       OUT movements stay in the ledger.

    tally_results is overwritten on every tally; it is a snapshot, not a log.
    """
    __tablename__ = "truck_checkouts"
    __table_args__ = (
        db.Index("ix_truck_checkouts_employee_date", "employee_name", "checkout_date"),
        db.Index("ix_truck_checkouts_status_date", "status", "checkout_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    employee_name = db.Column(db.String(255), nullable=False)
    employee_id = db.Column(db.String(64), nullable=True)
    truck_number = db.Column(db.String(64), nullable=True)

    checkout_date = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    notes = db.Column(db.Text, nullable=True)

    # checked_out, completed, cancelled
    status = db.Column(db.String(16), nullable=False, default=CHECKOUT_STATUS_CHECKED_OUT, index=True)

    completed_date = db.Column(db.DateTime(timezone=True), nullable=True)
    invoice_type = db.Column(db.String(16), nullable=False, default=INVOICE_TYPE_CLOSED)

    # Invoice snapshots resolved during the last tally
    fetched_invoices = db.Column(db.JSON, nullable=True)

    tally_results = db.Column(db.JSON, nullable=True)
    tally_date = db.Column(db.DateTime(timezone=True), nullable=True)
    tallied_by = db.Column(db.String(128), nullable=True)

    # One-shot gate for compensating movements
    stock_processed = db.Column(db.Boolean, nullable=False, default=False)
    stock_processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stock_processing_error = db.Column(db.Text, nullable=True)

    cancellation_reason = db.Column(db.Text, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.String(128), nullable=True)
    completed_by = db.Column(db.String(128), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "TruckCheckoutItem",
        backref="checkout",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="TruckCheckoutItem.id",
    )
    invoice_links = db.relationship(
        "TruckCheckoutInvoice",
        backref="checkout",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="TruckCheckoutInvoice.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def invoice_numbers(self) -> list[str]:
        return [link.invoice_number for link in self.invoice_links]

    @property
    def total_items_taken(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def total_items_sold(self) -> int:
        if not self.tally_results:
            return 0
        return sum(row.get("quantity_sold", 0) for row in self.tally_results.get("items_sold", []))

    def __repr__(self) -> str:
        return f"<TruckCheckout id={self.id} employee={self.employee_name!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "employee_name": self.employee_name,
            "employee_id": self.employee_id,
            "truck_number": self.truck_number,
            "checkout_date": to_utc_z(self.checkout_date),
            "notes": self.notes,
            "status": self.status,
            "items_taken": [item.to_dict() for item in self.items],
            "total_items_taken": self.total_items_taken,
            "total_items_sold": self.total_items_sold,
            "invoice_numbers": self.invoice_numbers,
            "invoice_type": self.invoice_type,
            "completed_date": to_utc_z(self.completed_date),
            "fetched_invoices": self.fetched_invoices or [],
            "tally_results": self.tally_results,
            "tally_date": to_utc_z(self.tally_date),
            "tallied_by": self.tallied_by,
            "stock_processed": self.stock_processed,
            "stock_processed_at": to_utc_z(self.stock_processed_at),
            "stock_processing_error": self.stock_processing_error,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_at": to_utc_z(self.cancelled_at),
            "created_by": self.created_by,
            "completed_by": self.completed_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }


class TruckCheckoutItem(db.Model):
    __tablename__ = "truck_checkout_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_truck_checkout_items_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    checkout_id = db.Column(db.Integer, db.ForeignKey("truck_checkouts.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(128), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    notes = db.Column(db.String(255), nullable=True)

    # Ledger SKU the checkout-time OUT movement was posted against
    ledger_sku = db.Column(db.String(128), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sku": self.sku,
            "quantity": self.quantity,
            "notes": self.notes,
            "ledger_sku": self.ledger_sku,
        }


class TruckCheckoutInvoice(db.Model):
    """
    Link between a checkout and an invoice number.

    invoice_number is globally unique here: a number can belong to one
    checkout only. Cancelled checkouts never carry links (cancel is only
    allowed before completion), so this equals uniqueness across active
    checkouts and closes the race left open by the application pre-check.
    """
    __tablename__ = "truck_checkout_invoices"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_truck_checkout_invoices_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    checkout_id = db.Column(db.Integer, db.ForeignKey("truck_checkouts.id"), nullable=False, index=True)
    invoice_number = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
