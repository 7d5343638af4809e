# Overview: Item-name canonicalization; maps external item names/SKUs onto one ledger SKU.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..errors import ExternalDependencyError, NotFoundError, ValidationError
from ..models import ItemAlias, ItemAliasName
from .concurrency import run_with_retry


class AliasResolver:
    """
    Lookup service for canonical item names.

    Holds a lower-cased {alias or canonical name -> canonical name} map built
    from active mappings. The map is built lazily on first lookup and kept
    until invalidate() or rebuild() is called; mutations in this module
    invalidate the resolver they are given.
    """

    def __init__(self):
        self._lookup: dict[str, str] | None = None

    @property
    def is_loaded(self) -> bool:
        return self._lookup is not None

    def rebuild(self) -> dict[str, str]:
        try:
            mappings = (
                db.session.query(ItemAlias)
                .filter(ItemAlias.is_active.is_(True))
                .order_by(ItemAlias.id.asc())
                .all()
            )
        except SQLAlchemyError as exc:
            raise ExternalDependencyError(f"Alias store unavailable: {exc}") from exc

        lookup: dict[str, str] = {}
        for mapping in mappings:
            canonical = mapping.canonical_name
            lookup[canonical.strip().lower()] = canonical
            for alias in mapping.names:
                lookup[alias.name.strip().lower()] = canonical

        self._lookup = lookup
        current_app.logger.debug("Alias map rebuilt: %d names", len(lookup))
        return lookup

    def invalidate(self) -> None:
        self._lookup = None

    def get_canonical_name(self, raw: str | None) -> str | None:
        """Canonical name for `raw`, or `raw` unchanged when nothing maps it."""
        if raw is None:
            return None
        key = str(raw).strip().lower()
        if not key:
            return raw
        if self._lookup is None:
            self.rebuild()
        return self._lookup.get(key, raw)


def _clean_names(names) -> list[dict]:
    """Accept strings or {name, notes} dicts; drop blanks and case-insensitive duplicates."""
    seen = set()
    cleaned = []
    for entry in names or []:
        if isinstance(entry, dict):
            name = str(entry.get("name") or "").strip()
            notes = entry.get("notes")
        else:
            name = str(entry or "").strip()
            notes = None
        key = name.lower()
        if not name or key in seen:
            continue
        seen.add(key)
        cleaned.append({"name": name, "notes": notes})
    return cleaned


def _invalidate(resolver: AliasResolver | None) -> None:
    if resolver is not None:
        resolver.invalidate()


def get_mapping(canonical_name: str) -> ItemAlias | None:
    return db.session.query(ItemAlias).filter_by(canonical_name=str(canonical_name or "").strip()).first()


def list_mappings(include_inactive: bool = False) -> list[ItemAlias]:
    q = db.session.query(ItemAlias)
    if not include_inactive:
        q = q.filter(ItemAlias.is_active.is_(True))
    return q.order_by(ItemAlias.canonical_name.asc()).all()


def upsert_mapping(
    canonical_name: str,
    aliases=None,
    *,
    description: str | None = None,
    resolver: AliasResolver | None = None,
) -> ItemAlias:
    """
    Create or replace the mapping for `canonical_name`.

    The alias list replaces the stored one (de-duplicated, case-insensitive).
    An existing inactive mapping is reactivated.
    """
    canonical_name = str(canonical_name or "").strip()
    if not canonical_name:
        raise ValidationError("canonical_name is required")
    names = _clean_names(aliases)

    def _op():
        mapping = get_mapping(canonical_name)
        if mapping is None:
            mapping = ItemAlias(canonical_name=canonical_name, is_active=True)
            db.session.add(mapping)
        else:
            mapping.is_active = True
            mapping.names.clear()
            db.session.flush()

        if description is not None:
            mapping.description = description
        for entry in names:
            mapping.names.append(ItemAliasName(name=entry["name"], notes=entry["notes"]))

        db.session.commit()
        return mapping

    try:
        mapping = run_with_retry(_op)
    except IntegrityError as exc:
        raise ValidationError(f"Mapping for {canonical_name!r} could not be saved: {exc.orig}") from exc

    _invalidate(resolver)
    current_app.logger.info("Alias mapping saved: %s (%d aliases)", canonical_name, len(names))
    return mapping


def add_alias(
    canonical_name: str,
    alias_name: str,
    *,
    notes: str | None = None,
    resolver: AliasResolver | None = None,
) -> ItemAlias:
    alias_name = str(alias_name or "").strip()
    if not alias_name:
        raise ValidationError("alias name is required")

    def _op():
        mapping = get_mapping(canonical_name)
        if mapping is None:
            raise NotFoundError(f"No mapping for {canonical_name!r}")
        if any(n.name.lower() == alias_name.lower() for n in mapping.names):
            return mapping
        mapping.names.append(ItemAliasName(name=alias_name, notes=notes))
        db.session.commit()
        return mapping

    mapping = run_with_retry(_op)
    _invalidate(resolver)
    return mapping


def remove_alias(canonical_name: str, alias_name: str, *, resolver: AliasResolver | None = None) -> ItemAlias:
    key = str(alias_name or "").strip().lower()

    def _op():
        mapping = get_mapping(canonical_name)
        if mapping is None:
            raise NotFoundError(f"No mapping for {canonical_name!r}")
        for entry in list(mapping.names):
            if entry.name.lower() == key:
                mapping.names.remove(entry)
        db.session.commit()
        return mapping

    mapping = run_with_retry(_op)
    _invalidate(resolver)
    return mapping


def deactivate_mapping(canonical_name: str, *, resolver: AliasResolver | None = None) -> ItemAlias:
    def _op():
        mapping = get_mapping(canonical_name)
        if mapping is None:
            raise NotFoundError(f"No mapping for {canonical_name!r}")
        mapping.is_active = False
        db.session.commit()
        return mapping

    mapping = run_with_retry(_op)
    _invalidate(resolver)
    current_app.logger.info("Alias mapping deactivated: %s", mapping.canonical_name)
    return mapping
