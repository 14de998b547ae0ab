"""
Catalog entries reconciler.

Lifecycle (one catalog type per call):
  FETCHING -> DELETING -> SYNCING -> REFETCHING -> DONE
Any failure moves to FAILED and raises ReconcileError carrying the phase.

- Deleting runs first and removes every remote entry not declared by external
  ID, including entries that never had an external ID.
- Syncing classifies creates/updates against the lookup built from the
  initial fetch; deleted entries were undeclared, so they never match.
- Refetching returns the authoritative final state (server IDs, ranks).
- No retries and no rollback: a failed call leaves partial work applied and
  the next call re-derives the plan from live state.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, NoReturn, Optional, Tuple

from .catalog_client import CatalogClient
from .diff_engine import EntryPlan, index_by_external_id, plan, plan_deletions, plan_sync
from .executor import DEFAULT_LIMIT, BoundedExecutor, OperationCancelled
from .models import CatalogType, DesiredEntry, RemoteEntry
from .normalizer import Payload

DEFAULT_PAGE_SIZE = 250

OpFactory = Callable[[threading.Event], Callable[[], None]]


class Phase(str, enum.Enum):
    FETCHING = "fetching"
    DELETING = "deleting"
    SYNCING = "syncing"
    REFETCHING = "refetching"
    DONE = "done"
    FAILED = "failed"


class ReconcileError(Exception):
    """A reconciliation phase failed; ``__cause__`` holds the underlying error."""

    def __init__(self, phase: Phase, message: str) -> None:
        super().__init__(message)
        self.phase = phase


class _EntryOpError(Exception):
    """One entry operation failed; carries which entry alongside the original error."""

    def __init__(self, context: str, error: Exception) -> None:
        super().__init__(f"{context}: {error}")
        self.error = error


@dataclass
class ReconcileResult:
    catalog_type: CatalogType
    entries: List[RemoteEntry]
    counts: Dict[str, int] = field(default_factory=dict)


class Reconciler:
    """Converges the entries of one catalog type to a desired mapping."""

    def __init__(
        self,
        client: CatalogClient,
        *,
        concurrency: int = DEFAULT_LIMIT,
        page_size: int = DEFAULT_PAGE_SIZE,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.client = client
        self.concurrency = int(concurrency)
        self.page_size = int(page_size)
        self.log = logger or logging.getLogger("cs.reconciler")
        self.phase: Optional[Phase] = None

    # ------------- Fetch -------------

    def fetch_all(self, catalog_type_id: str) -> Tuple[CatalogType, List[RemoteEntry]]:
        """List every entry of a catalog type, one page at a time, until an empty page."""
        entries: List[RemoteEntry] = []
        after: Optional[str] = None
        while True:
            page = self.client.list_entries(catalog_type_id, after=after, page_size=self.page_size)
            if not page.entries:
                return page.catalog_type, entries
            entries.extend(page.entries)
            after = page.entries[-1].id

    # ------------- Plan (dry run) -------------

    def plan(self, catalog_type_id: str, desired: Mapping[str, DesiredEntry]) -> EntryPlan:
        """Fetch and diff only; no writes."""
        self.phase = Phase.FETCHING
        try:
            _, entries = self.fetch_all(catalog_type_id)
        except Exception as exc:
            self._fail(exc, "listing entries")
        result = plan(catalog_type_id, desired, entries)
        self.phase = Phase.DONE
        self.log.info("Plan for catalog_type=%s: %s", catalog_type_id, result.counts())
        return result

    # ------------- Reconcile -------------

    def reconcile(self, catalog_type_id: str, desired: Mapping[str, DesiredEntry]) -> ReconcileResult:
        counts = {"DELETED": 0, "CREATED": 0, "UPDATED": 0, "UNCHANGED": 0}

        self.phase = Phase.FETCHING
        try:
            _, entries = self.fetch_all(catalog_type_id)
        except Exception as exc:
            self._fail(exc, "listing entries")

        self.phase = Phase.DELETING
        to_delete = plan_deletions(desired, entries)
        self.log.debug("found %d entries in the catalog, want to delete %d of them", len(entries), len(to_delete))
        try:
            self._run_batch([self._destroy_op(e) for e in to_delete])
        except Exception as exc:
            self._fail(exc, "destroying catalog entries")
        counts["DELETED"] = len(to_delete)

        self.phase = Phase.SYNCING
        sync = plan_sync(catalog_type_id, desired, index_by_external_id(entries))
        counts["UNCHANGED"] = len(sync.unchanged)
        factories = [self._create_op(p) for p in sync.to_create]
        factories += [self._update_op(entry_id, p) for entry_id, p in sync.to_update]
        try:
            self._run_batch(factories)
        except Exception as exc:
            self._fail(exc, "reconciling catalog entries")
        counts["CREATED"] = len(sync.to_create)
        counts["UPDATED"] = len(sync.to_update)

        self.phase = Phase.REFETCHING
        try:
            catalog_type, final = self.fetch_all(catalog_type_id)
        except Exception as exc:
            self._fail(exc, "listing entries")

        self.phase = Phase.DONE
        self.log.info("Reconciled catalog_type=%s: %s", catalog_type_id, counts)
        return ReconcileResult(catalog_type=catalog_type, entries=final, counts=counts)

    # ------------- Internal -------------

    def _fail(self, exc: Exception, context: str) -> NoReturn:
        failed_in = self.phase or Phase.FETCHING
        self.phase = Phase.FAILED
        cause = exc.error if isinstance(exc, _EntryOpError) else exc
        self.log.error("Reconciliation failed while %s: %s", failed_in.value, exc)
        raise ReconcileError(failed_in, f"{context}: {exc}") from cause

    def _run_batch(self, factories: List[OpFactory]) -> None:
        executor = BoundedExecutor(self.concurrency, logger=self.log)
        executor.run([make(executor.cancelled) for make in factories])

    def _destroy_op(self, entry: RemoteEntry) -> OpFactory:
        def make(cancelled: threading.Event) -> Callable[[], None]:
            def op() -> None:
                if cancelled.is_set():
                    raise OperationCancelled()
                try:
                    self.client.destroy_entry(entry.id)
                except Exception as exc:
                    context = f"unable to destroy catalog entry with id={entry.id}"
                    self.log.warning("%s: %s", context, exc)
                    raise _EntryOpError(context, exc) from exc
                self.log.debug("destroyed catalog entry with id=%s", entry.id)
            return op
        return make

    def _create_op(self, payload: Payload) -> OpFactory:
        external_id = payload.get("external_id")

        def make(cancelled: threading.Event) -> Callable[[], None]:
            def op() -> None:
                if cancelled.is_set():
                    raise OperationCancelled()
                try:
                    created = self.client.create_entry(payload)
                except Exception as exc:
                    context = f"unable to create catalog entry with external_id={external_id}"
                    self.log.warning("%s: %s", context, exc)
                    raise _EntryOpError(context, exc) from exc
                self.log.debug("created catalog entry with id=%s external_id=%s", created.id, external_id)
            return op
        return make

    def _update_op(self, entry_id: str, payload: Payload) -> OpFactory:
        def make(cancelled: threading.Event) -> Callable[[], None]:
            def op() -> None:
                if cancelled.is_set():
                    raise OperationCancelled()
                try:
                    self.client.update_entry(entry_id, payload)
                except Exception as exc:
                    context = f"unable to update catalog entry with id={entry_id}"
                    self.log.warning("%s: %s", context, exc)
                    raise _EntryOpError(context, exc) from exc
                self.log.debug("updated catalog entry with id=%s", entry_id)
            return op
        return make
