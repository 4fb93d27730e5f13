from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .auth import CallerIdentity
from .calc import percent
from .catalog import (
    COMMUNE,
    DEPARTMENT,
    NATIONAL,
    POLLING_STATION,
    REGION,
    SEPARATOR,
    VOTING_PLACE,
    Ambiguous,
    Catalog,
    GeoUnit,
    Unresolved,
)
from .cells import (
    CELLS_FILE,
    HISTORY_FILE,
    PENDING,
    CellRegistry,
    append_history,
    is_eligible,
    status_of,
)
from .errors import AmbiguousScope, Forbidden, NotFound, PublicationRefused
from .storage import JsonStore
from .visibility import assigned_cells, is_unrestricted, narrow, visible_units

logger = logging.getLogger(__name__)

FLAGS_FILE = "publications.json"

FLAG_PENDING = "PENDING"
FLAG_PUBLISHED = "PUBLISHED"
FLAG_CANCELLED = "CANCELLED"


def paginate(items: List[Any], page: int, per_page: int) -> Dict[str, Any]:
    """Return a slice + metadata. Page is 1-indexed."""
    if per_page <= 0:
        per_page = 10
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    if page < 1:
        page = 1

    total = len(items)
    total_pages = max(1, (total + per_page - 1) // per_page)
    if page > total_pages:
        page = total_pages

    start = (page - 1) * per_page
    return {
        "items": items[start:start + per_page],
        "page": page,
        "limit": per_page,
        "total": total,
        "total_pages": total_pages,
    }


class PublicationGate:
    """Per-unit publication flags, independent from cell status.

    Publication units are departments, or the communes of a department flagged
    ``publish_by_commune``. Larger scopes count as published once every
    publication unit beneath them is.
    """

    def __init__(self, store: JsonStore, catalog: Catalog, registry: CellRegistry):
        self.store = store
        self.catalog = catalog
        self.registry = registry

    # -------------------------
    # Flags
    # -------------------------
    def load_flags(self) -> Dict[str, Any]:
        data = self.store.load_json(FLAGS_FILE, default={})
        return data if isinstance(data, dict) else {}

    @staticmethod
    def flag_status(flags: Dict[str, Any], unit_key: str) -> str:
        st = str((flags.get(unit_key) or {}).get("status") or FLAG_PENDING).upper()
        return st if st in (FLAG_PUBLISHED, FLAG_CANCELLED) else FLAG_PENDING

    def publication_units_under(self, unit: GeoUnit) -> List[GeoUnit]:
        units = self.catalog.publication_units()
        if unit.level == NATIONAL:
            return units
        if unit.level == REGION:
            return [u for u in units if self.catalog.department_of(u).parent_key == unit.key]
        prefix = unit.key + SEPARATOR
        return [u for u in units if u.key == unit.key or u.key.startswith(prefix)]

    def is_published(self, unit: GeoUnit, flags: Optional[Dict[str, Any]] = None) -> bool:
        if flags is None:
            flags = self.load_flags()

        if unit.level in (VOTING_PLACE, POLLING_STATION):
            unit = next(a for a in self.catalog.ancestors(unit) if a.level == COMMUNE)

        if unit.level == COMMUNE:
            if self.flag_status(flags, unit.key) == FLAG_PUBLISHED:
                return True
            department = self.catalog.department_of(unit)
            return department is not None and self.flag_status(flags, department.key) == FLAG_PUBLISHED

        # Anything inside a department published as a whole follows its flag.
        department = self.catalog.department_of(unit)
        if department is not None and not department.publish_by_commune:
            return self.flag_status(flags, department.key) == FLAG_PUBLISHED

        beneath = self.publication_units_under(unit)
        return bool(beneath) and all(self.is_published(u, flags) for u in beneath)

    def published_units(self) -> List[GeoUnit]:
        flags = self.load_flags()
        return [u for u in self.catalog.publication_units() if self.is_published(u, flags)]

    # -------------------------
    # Actions
    # -------------------------
    def _publication_unit(self, scope_key: str) -> GeoUnit:
        res = self.catalog.resolve(scope_key)
        if isinstance(res, Unresolved):
            raise NotFound(f"Unité '{scope_key}' introuvable.")
        if isinstance(res, Ambiguous):
            raise AmbiguousScope(scope_key, res.matches)
        unit = res.unit
        if unit.level == DEPARTMENT and unit.publish_by_commune:
            raise PublicationRefused(
                f"Le département {unit.label} ne peut pas être publié globalement. Publiez-le commune par commune."
            )
        if unit.key not in {u.key for u in self.catalog.publication_units()}:
            raise PublicationRefused(f"{unit.label} n'est pas une unité de publication.")
        return unit

    def _check_actor(self, unit: GeoUnit, identity: CallerIdentity) -> None:
        if not identity.is_admin:
            raise Forbidden("Seuls les administrateurs peuvent publier ou annuler une publication.")
        if narrow(unit, identity, self.catalog).narrowed:
            raise Forbidden(f"{unit.label} dépasse votre périmètre.")

    def publish(self, scope_key: str, identity: CallerIdentity) -> Dict[str, Any]:
        unit = self._publication_unit(scope_key)
        self._check_actor(unit, identity)
        cells = self.catalog.descendant_cells(unit)
        if not cells:
            raise PublicationRefused(f"Impossible de publier {unit.label}: aucune CEL rattachée.")

        with self.store.transaction():
            states = self.registry.load_states()
            pending = sorted(c for c in cells if status_of(states, c) == PENDING)
            if pending:
                raise PublicationRefused(
                    f"Impossible de publier {unit.label}. {len(pending)} CEL(s) ne sont pas encore importées."
                )
            flipped = self.registry.mark_published(cells, states)
            self.store.save_json(CELLS_FILE, states)

            flags = self.load_flags()
            flags[unit.key] = {
                "status": FLAG_PUBLISHED,
                "at_utc": datetime.now(timezone.utc).isoformat(),
                "by": identity.username,
            }
            self.store.save_json(FLAGS_FILE, flags)
            append_history(self.store, "PUBLISH", unit.key, identity.username, f"{unit.label} publié avec succès")
            self.store.touch_last_update()

        logger.info("%s publié par %s (%d CEL(s) passées à PUBLISHED)", unit.key, identity.username, len(flipped))
        return {
            "success": True,
            "message": f"{unit.label} publié avec succès",
            "unit": self.unit_summary(unit, identity),
        }

    def unpublish(self, scope_key: str, identity: CallerIdentity) -> Dict[str, Any]:
        unit = self._publication_unit(scope_key)
        self._check_actor(unit, identity)

        with self.store.transaction():
            flags = self.load_flags()
            if self.flag_status(flags, unit.key) != FLAG_PUBLISHED:
                raise PublicationRefused(f"{unit.label} n'est pas publié.")
            flags[unit.key] = {
                "status": FLAG_CANCELLED,
                "at_utc": datetime.now(timezone.utc).isoformat(),
                "by": identity.username,
            }
            self.store.save_json(FLAGS_FILE, flags)
            append_history(
                self.store, "CANCEL", unit.key, identity.username, f"Publication de {unit.label} annulée"
            )
            self.store.touch_last_update()

        logger.info("Publication de %s annulée par %s", unit.key, identity.username)
        return {
            "success": True,
            "message": f"Publication de {unit.label} annulée",
            "unit": self.unit_summary(unit, identity),
        }

    # -------------------------
    # Reporting
    # -------------------------
    def _caller_cells(self, identity: CallerIdentity):
        if is_unrestricted(identity):
            return frozenset(self.catalog.cells)
        return assigned_cells(identity, self.catalog)

    def unit_summary(
        self,
        unit: GeoUnit,
        identity: CallerIdentity,
        states: Optional[Dict[str, Any]] = None,
        flags: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if states is None:
            states = self.registry.load_states()
        if flags is None:
            flags = self.load_flags()
        cells = sorted(self.catalog.descendant_cells(unit) & self._caller_cells(identity))
        imported = sum(1 for c in cells if is_eligible(status_of(states, c)))
        return {
            "key": unit.key,
            "code": unit.code,
            "label": unit.label,
            "level": unit.level,
            "total_cells": len(cells),
            "imported_cells": imported,
            "pending_cells": len(cells) - imported,
            "publication_status": self.flag_status(flags, unit.key),
            "cells": [
                {
                    "code": c,
                    "label": self.catalog.cell(c).label,
                    "status": status_of(states, c),
                    "imported_at_utc": (states.get(c) or {}).get("imported_at_utc"),
                }
                for c in cells
            ],
        }

    def stats(self, identity: CallerIdentity) -> Dict[str, Any]:
        units = visible_units(identity, self.catalog, self.catalog.publication_units())
        if not units:
            return {
                "total_units": 0, "published_units": 0, "pending_units": 0,
                "total_cells": 0, "imported_cells": 0, "pending_cells": 0,
                "publication_rate": 0.0,
            }
        with self.store.snapshot():
            states = self.registry.load_states()
            flags = self.load_flags()
        published = sum(1 for u in units if self.flag_status(flags, u.key) == FLAG_PUBLISHED)
        cells = self._caller_cells(identity)
        imported = sum(1 for c in cells if is_eligible(status_of(states, c)))
        return {
            "total_units": len(units),
            "published_units": published,
            "pending_units": len(units) - published,
            "total_cells": len(cells),
            "imported_cells": imported,
            "pending_cells": len(cells) - imported,
            "publication_rate": percent(published, len(units)),
        }

    def list_units(
        self,
        identity: CallerIdentity,
        search: str = "",
        status: str = "",
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        units = visible_units(identity, self.catalog, self.catalog.publication_units())
        with self.store.snapshot():
            states = self.registry.load_states()
            flags = self.load_flags()

        needle = (search or "").strip().upper()
        if needle:
            units = [u for u in units if needle in u.label.upper() or needle in u.key.upper()]
        wanted = (status or "").strip().upper()
        if wanted:
            units = [u for u in units if self.flag_status(flags, u.key) == wanted]
        units.sort(key=lambda u: (u.label, u.key))

        out = paginate(units, page, limit)
        out["items"] = [self.unit_summary(u, identity, states, flags) for u in out["items"]]
        return out

    def unit_details(self, scope_key: str, identity: CallerIdentity) -> Dict[str, Any]:
        unit = self._publication_unit(scope_key)
        narrow(unit, identity, self.catalog)
        with self.store.snapshot():
            states = self.registry.load_states()
            flags = self.load_flags()
            history = self.store.load_json(HISTORY_FILE, default=[])
        events = [e for e in history if isinstance(e, dict) and e.get("unit_key") == unit.key]
        events.sort(key=lambda e: int(e.get("seq") or 0), reverse=True)
        return {
            "unit": self.unit_summary(unit, identity, states, flags),
            "history": [
                {k: e.get(k) for k in ("action", "timestamp", "user", "details")} for e in events
            ],
        }
