from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from stockrecon.time_utils import to_utc_z, utcnow


MOVEMENT_IN = "IN"
MOVEMENT_OUT = "OUT"
MOVEMENT_ADJUST = "ADJUST"
MOVEMENT_TYPES = (MOVEMENT_IN, MOVEMENT_OUT, MOVEMENT_ADJUST)

ADJUST_INCREASE = "INCREASE"
ADJUST_DECREASE = "DECREASE"
ADJUST_DIRECTIONS = (ADJUST_INCREASE, ADJUST_DECREASE)

REF_PURCHASE_ORDER = "PURCHASE_ORDER"
REF_INVOICE = "INVOICE"
REF_CHECKOUT = "CHECKOUT"
REF_MANUAL = "MANUAL"
REF_ADJUSTMENT = "ADJUSTMENT"
REF_TYPES = (REF_PURCHASE_ORDER, REF_INVOICE, REF_CHECKOUT, REF_MANUAL, REF_ADJUSTMENT)


def normalize_sku(value) -> str:
    """SKUs are stored trimmed and upper-cased."""
    return str(value or "").strip().upper()


class StockMovement(db.Model):
    """
    One immutable ledger entry.

    INVARIANTS:
    - qty is always a positive magnitude; direction comes from `type`
      (and `adjust_direction` for ADJUST rows), never from the sign.
    - Rows are append-only. UPDATE and DELETE are rejected at flush time;
      corrections are new ADJUST movements.
    - occurred_at is business time; created_at is system time.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.CheckConstraint("qty > 0", name="ck_stock_movements_qty_positive"),
        db.Index("ix_stock_movements_sku_occurred", "sku", "occurred_at"),
        db.Index("ix_stock_movements_ref", "ref_type", "ref_id"),
        db.Index("ix_stock_movements_type_occurred", "type", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(128), nullable=False, index=True)

    # IN, OUT, ADJUST
    type = db.Column(db.String(16), nullable=False, index=True)
    qty = db.Column(db.Integer, nullable=False)

    # INCREASE / DECREASE, only for ADJUST
    adjust_direction = db.Column(db.String(16), nullable=True)

    # PURCHASE_ORDER, INVOICE, CHECKOUT, MANUAL, ADJUSTMENT
    ref_type = db.Column(db.String(32), nullable=False, index=True)
    ref_id = db.Column(db.String(64), nullable=False)
    source_ref = db.Column(db.String(255), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(128), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def signed_qty(self) -> int:
        if self.type == MOVEMENT_IN:
            return self.qty
        if self.type == MOVEMENT_OUT:
            return -self.qty
        return self.qty if self.adjust_direction == ADJUST_INCREASE else -self.qty

    def __repr__(self) -> str:
        return f"<StockMovement id={self.id} sku={self.sku!r} type={self.type} qty={self.qty}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "type": self.type,
            "qty": self.qty,
            "adjust_direction": self.adjust_direction,
            "signed_qty": self.signed_qty,
            "ref_type": self.ref_type,
            "ref_id": self.ref_id,
            "source_ref": self.source_ref,
            "notes": self.notes,
            "created_by": self.created_by,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
        }


class LedgerImmutabilityError(RuntimeError):
    """Raised when code tries to modify or delete a posted movement."""


@event.listens_for(StockMovement, "before_update")
def _reject_movement_update(mapper, connection, target):
    raise LedgerImmutabilityError(
        f"Stock movement {target.id} is immutable; post an ADJUST movement instead"
    )


@event.listens_for(StockMovement, "before_delete")
def _reject_movement_delete(mapper, connection, target):
    raise LedgerImmutabilityError(f"Stock movement {target.id} cannot be deleted")


class StockSummary(db.Model):
    """
    Materialized per-SKU aggregate derived from stock_movements.

    available_qty == total_in_qty - total_out_qty + net ADJUST for the SKU.
    Only the summary service writes these columns, always with storage-level
    increments (col = col + :qty) so concurrent posts never lose an update.
    """
    __tablename__ = "stock_summaries"
    __table_args__ = (
        db.Index("ix_stock_summaries_available", "available_qty"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(128), nullable=False, unique=True)

    available_qty = db.Column(db.Integer, nullable=False, default=0)
    reserved_qty = db.Column(db.Integer, nullable=False, default=0)
    total_in_qty = db.Column(db.Integer, nullable=False, default=0)
    total_out_qty = db.Column(db.Integer, nullable=False, default=0)

    # Reporting metadata only; nothing is gated on it
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=10)

    last_movement_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_low_stock(self) -> bool:
        return self.available_qty <= self.low_stock_threshold

    def __repr__(self) -> str:
        return f"<StockSummary sku={self.sku!r} available={self.available_qty}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "available_qty": self.available_qty,
            "reserved_qty": self.reserved_qty,
            "total_in_qty": self.total_in_qty,
            "total_out_qty": self.total_out_qty,
            "low_stock_threshold": self.low_stock_threshold,
            "is_low_stock": self.is_low_stock,
            "last_movement_at": to_utc_z(self.last_movement_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
