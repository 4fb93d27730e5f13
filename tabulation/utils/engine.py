from __future__ import annotations

import logging
from typing import Any, Dict, List

from .aggregator import Aggregator
from .auth import PUBLIC, CallerIdentity
from .calc import slot_candidates
from .catalog import Catalog
from .cells import CellRegistry
from .errors import Forbidden, NotFound
from .ledger import Ledger
from .publication import PublicationGate
from .storage import JsonStore
from .visibility import assigned_cells, is_unrestricted

logger = logging.getLogger(__name__)


class Tabulation:
    """Everything a request needs, built once per application.

    The catalog is read-only reference data: it is loaded here and handed to
    each component instead of living in a module global.
    """

    def __init__(self, store: JsonStore, slots: int):
        self.store = store
        self.catalog = Catalog.load(store)
        self.ledger = Ledger(store, slots)
        self.registry = CellRegistry(store, self.catalog, self.ledger)
        self.gate = PublicationGate(store, self.catalog, self.registry)

        candidates = store.load_json("candidates.json", default=[])
        if not isinstance(candidates, list):
            candidates = []
        self.candidates = slot_candidates(candidates, slots)
        self.aggregator = Aggregator(store, self.catalog, self.registry, self.ledger, self.gate, self.candidates)

        logger.info(
            "Catalogue chargé: %d unités, %d CEL(s), %d candidat(s) sur %d emplacement(s)",
            len(self.catalog.units), len(self.catalog.cells), len(self.candidates), slots,
        )

    def import_cell(
        self,
        cell_code: str,
        rows: List[Dict[str, Any]],
        identity: CallerIdentity,
        file_name: str = "",
    ) -> Dict[str, Any]:
        """Hand-off point of the import pipeline for one cell."""
        if self.catalog.cell(cell_code) is None:
            raise NotFound(f"CEL {cell_code} introuvable.")
        if identity.role == PUBLIC:
            raise Forbidden("Authentification requise.")
        if not is_unrestricted(identity) and cell_code not in assigned_cells(identity, self.catalog):
            raise Forbidden(f"Vous n'avez pas accès à la CEL {cell_code}.")
        return self.registry.record_import(
            cell_code, rows, identity.username, file_name, is_unit_published=self.gate.is_published
        )

    def settings(self) -> Dict[str, Any]:
        data = self.store.load_json("settings.json", default={})
        return data if isinstance(data, dict) else {}
