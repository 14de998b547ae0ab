"""
Catalog entries resource: create/read/update/delete/import on top of the reconciler.

The resource is authoritative for its catalog type. Create, update and delete
all go through one reconciliation; delete is a reconciliation against an empty
mapping, followed by a check that nothing is left behind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import CatalogType, DesiredEntry, RemoteEntry
from .normalizer import normalize_remote_bindings
from .reconciler import Reconciler


class ConsistencyError(Exception):
    """Raised when a teardown leaves entries behind in the catalog type."""

    def __init__(self, catalog_type_id: str, remaining: int) -> None:
        super().__init__(
            f"tried deleting all entries but found {remaining} for catalog type id={catalog_type_id}"
        )
        self.catalog_type_id = catalog_type_id
        self.remaining = remaining


@dataclass
class CatalogEntriesState:
    """Managed state: catalog type ID plus the entries keyed by external ID."""
    id: str
    entries: Dict[str, DesiredEntry] = field(default_factory=dict)


def build_state(catalog_type: CatalogType, entries: List[RemoteEntry]) -> CatalogEntriesState:
    """State model from a full entry listing.

    Entries without an external ID are skipped: they were not created by this
    tool and are never represented in managed state.
    """
    managed: Dict[str, DesiredEntry] = {}
    for entry in entries:
        if entry.external_id is None:
            continue
        managed[entry.external_id] = DesiredEntry(
            id=entry.id,
            name=entry.name,
            alias=entry.alias,
            rank=entry.rank,
            attribute_values=normalize_remote_bindings(entry),
        )
    return CatalogEntriesState(id=catalog_type.id, entries=managed)


class CatalogEntriesResource:
    def __init__(self, reconciler: Reconciler, *, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.reconciler = reconciler
        self.log = logger or logging.getLogger("cs.resource")

    def create(self, state: CatalogEntriesState) -> CatalogEntriesState:
        result = self.reconciler.reconcile(state.id, state.entries)
        return build_state(result.catalog_type, result.entries)

    def update(self, state: CatalogEntriesState) -> CatalogEntriesState:
        return self.create(state)

    def read(self, catalog_type_id: str) -> CatalogEntriesState:
        catalog_type, entries = self.reconciler.fetch_all(catalog_type_id)
        return build_state(catalog_type, entries)

    def import_state(self, catalog_type_id: str) -> CatalogEntriesState:
        """Adopt an existing catalog type by its ID (same as read)."""
        return self.read(catalog_type_id)

    def delete(self, state: CatalogEntriesState) -> None:
        result = self.reconciler.reconcile(state.id, {})
        if result.entries:
            self.log.error(
                "Teardown left %d entries in catalog_type=%s", len(result.entries), state.id
            )
            raise ConsistencyError(state.id, len(result.entries))
        self.log.info("Deleted all entries of catalog_type=%s", state.id)
