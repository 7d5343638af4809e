from __future__ import annotations

from ..extensions import db
from stockrecon.time_utils import to_utc_z, utcnow


DISCREPANCY_STATUS_PENDING = "Pending"
DISCREPANCY_STATUS_APPROVED = "Approved"
DISCREPANCY_STATUS_REJECTED = "Rejected"
DISCREPANCY_STATUS_RESOLVED = "Resolved"
DISCREPANCY_STATUSES = (
    DISCREPANCY_STATUS_PENDING,
    DISCREPANCY_STATUS_APPROVED,
    DISCREPANCY_STATUS_REJECTED,
    DISCREPANCY_STATUS_RESOLVED,
)

DISCREPANCY_TYPE_OVERAGE = "Overage"
DISCREPANCY_TYPE_SHORTAGE = "Shortage"
DISCREPANCY_TYPE_DAMAGE = "Damage"
DISCREPANCY_TYPE_MISSING = "Missing"
DISCREPANCY_TYPES = (
    DISCREPANCY_TYPE_OVERAGE,
    DISCREPANCY_TYPE_SHORTAGE,
    DISCREPANCY_TYPE_DAMAGE,
    DISCREPANCY_TYPE_MISSING,
)


class StockDiscrepancy(db.Model):
    """
    Physical-vs-system count variance reported by a person.

    LIFECYCLE:
    1. Pending: reported; quantities, type, reason and notes editable
    2. Approved / Rejected: resolved once, one-way
    3. Resolved: follow-up done on an approved variance

    difference = actual_quantity - system_quantity, always recomputed by the
    service; callers never supply it.
    """
    __tablename__ = "stock_discrepancies"
    __table_args__ = (
        db.Index("ix_stock_discrepancies_status_reported", "status", "reported_at"),
        db.Index("ix_stock_discrepancies_invoice_item", "invoice_number", "item_name"),
        db.Index("ix_stock_discrepancies_reporter", "reported_by", "reported_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    invoice_number = db.Column(db.String(64), nullable=False, default="N/A", index=True)
    # Source document kind the invoice number belongs to
    invoice_type = db.Column(db.String(32), nullable=False, default="RouteStarInvoice")

    item_name = db.Column(db.String(255), nullable=False)
    item_sku = db.Column(db.String(128), nullable=True)
    category_name = db.Column(db.String(255), nullable=True, index=True)

    system_quantity = db.Column(db.Integer, nullable=False, default=0)
    actual_quantity = db.Column(db.Integer, nullable=False, default=0)
    difference = db.Column(db.Integer, nullable=False, default=0)

    # Overage, Shortage, Damage, Missing
    discrepancy_type = db.Column(db.String(16), nullable=False, index=True)
    reason = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Pending, Approved, Rejected, Resolved
    status = db.Column(db.String(16), nullable=False, default=DISCREPANCY_STATUS_PENDING, index=True)

    reported_by = db.Column(db.String(128), nullable=False)
    reported_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    resolved_by = db.Column(db.String(128), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def discrepancy_percentage(self) -> float:
        if not self.system_quantity:
            return 0.0
        return round(self.difference / self.system_quantity * 100, 2)

    def __repr__(self) -> str:
        return f"<StockDiscrepancy id={self.id} item={self.item_name!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "invoice_type": self.invoice_type,
            "item_name": self.item_name,
            "item_sku": self.item_sku,
            "category_name": self.category_name,
            "system_quantity": self.system_quantity,
            "actual_quantity": self.actual_quantity,
            "difference": self.difference,
            "discrepancy_percentage": self.discrepancy_percentage,
            "discrepancy_type": self.discrepancy_type,
            "reason": self.reason,
            "notes": self.notes,
            "status": self.status,
            "reported_by": self.reported_by,
            "reported_at": to_utc_z(self.reported_at),
            "resolved_by": self.resolved_by,
            "resolved_at": to_utc_z(self.resolved_at),
            "resolution_notes": self.resolution_notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
