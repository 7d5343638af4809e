from __future__ import annotations

from ..extensions import db
from stockrecon.time_utils import to_utc_z, utcnow


class ItemAlias(db.Model):
    """
    Canonical item name with the external names that map onto it.

    Several external names/SKUs for the same physical item resolve to
    canonical_name, which is used as the ledger SKU. Lookups are
    case-insensitive; only active mappings participate.
    """
    __tablename__ = "item_aliases"
    __table_args__ = (
        db.Index("ix_item_aliases_canonical_active", "canonical_name", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    canonical_name = db.Column(db.String(255), nullable=False, unique=True)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    names = db.relationship(
        "ItemAliasName",
        backref="mapping",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="ItemAliasName.id",
    )

    def __repr__(self) -> str:
        return f"<ItemAlias id={self.id} canonical={self.canonical_name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "canonical_name": self.canonical_name,
            "description": self.description,
            "is_active": self.is_active,
            "aliases": [n.to_dict() for n in self.names],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ItemAliasName(db.Model):
    __tablename__ = "item_alias_names"
    __table_args__ = (
        db.UniqueConstraint("alias_id", "name", name="uq_item_alias_names_alias_name"),
        db.Index("ix_item_alias_names_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    alias_id = db.Column(db.Integer, db.ForeignKey("item_aliases.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    notes = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {"name": self.name, "notes": self.notes}
