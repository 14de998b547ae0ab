"""
Diff engine for catalog entries.

Classifies remote entries as DELETE when no desired entry claims their
external ID (entries without an external ID are never claimed), and each
desired entry as CREATE, UPDATE or NOOP against the remote entry sharing its
external ID. Internal IDs are never used for matching.

Nothing here depends on the iteration order of the desired mapping.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Literal, Mapping, Optional, Tuple

from .models import DesiredEntry, RemoteEntry
from .normalizer import Payload, build_payload, first_difference, payload_matches

Op = Literal["NOOP", "CREATE", "UPDATE", "DELETE"]


@dataclass(frozen=True)
class Decision:
    """Diff outcome for one entry.

    Attributes:
        op: One of ``"NOOP"``, ``"CREATE"``, ``"UPDATE"`` or ``"DELETE"``.
        reason: Human-friendly explanation of the decision.
        external_id: Join key (``None`` for foreign remote entries).
        entry_id: Internal ID of the remote entry touched, if any.
        payload: Request body for CREATE/UPDATE.
    """
    op: Op
    reason: str
    external_id: Optional[str] = None
    entry_id: Optional[str] = None
    payload: Optional[Payload] = None


@dataclass
class SyncPlan:
    """Create/update half of a plan."""
    to_create: List[Payload] = field(default_factory=list)
    to_update: List[Tuple[str, Payload]] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    decisions: List[Decision] = field(default_factory=list)


@dataclass
class EntryPlan:
    """Full plan: deletions first, then the sync half."""
    to_delete: List[RemoteEntry] = field(default_factory=list)
    sync: SyncPlan = field(default_factory=SyncPlan)

    @property
    def decisions(self) -> List[Decision]:
        deletes = [
            Decision(op="DELETE", reason=_delete_reason(e), external_id=e.external_id, entry_id=e.id)
            for e in self.to_delete
        ]
        return deletes + list(self.sync.decisions)

    def counts(self) -> Dict[str, int]:
        return {
            "DELETED": len(self.to_delete),
            "CREATED": len(self.sync.to_create),
            "UPDATED": len(self.sync.to_update),
            "UNCHANGED": len(self.sync.unchanged),
        }


def _delete_reason(entry: RemoteEntry) -> str:
    if entry.external_id is None:
        return "No external ID"
    return "Not declared"


def index_by_external_id(entries: Iterable[RemoteEntry]) -> Dict[str, RemoteEntry]:
    """Lookup of remote entries by external ID; entries without one are left out."""
    index: Dict[str, RemoteEntry] = {}
    for entry in entries:
        if entry.external_id is None:
            continue
        index[entry.external_id] = entry
    return index


def plan_deletions(desired: Mapping[str, DesiredEntry], remote: Iterable[RemoteEntry]) -> List[RemoteEntry]:
    """Every remote entry whose external ID is absent from ``desired``, or missing."""
    return [
        entry for entry in remote
        if entry.external_id is None or entry.external_id not in desired
    ]


def decide(external_id: str, payload: Payload, current: Optional[RemoteEntry]) -> Decision:
    """Compute a :class:`Decision` for one desired entry."""
    if current is None:
        return Decision(op="CREATE", reason="Not found", external_id=external_id, payload=payload)

    if payload_matches(payload, current):
        return Decision(op="NOOP", reason="Identical", external_id=external_id, entry_id=current.id)

    return Decision(
        op="UPDATE",
        reason=first_difference(payload, current),
        external_id=external_id,
        entry_id=current.id,
        payload=payload,
    )


def plan_sync(
    catalog_type_id: str,
    desired: Mapping[str, DesiredEntry],
    index: Mapping[str, RemoteEntry],
) -> SyncPlan:
    """Classify every desired entry against ``index`` (see :func:`index_by_external_id`)."""
    plan = SyncPlan()
    for external_id, entry in desired.items():
        payload = build_payload(catalog_type_id, external_id, entry)
        decision = decide(external_id, payload, index.get(external_id))
        plan.decisions.append(decision)

        if decision.op == "CREATE":
            plan.to_create.append(payload)
        elif decision.op == "UPDATE":
            plan.to_update.append((decision.entry_id or "", payload))
        else:
            plan.unchanged.append(external_id)
    return plan


def plan(
    catalog_type_id: str,
    desired: Mapping[str, DesiredEntry],
    remote: List[RemoteEntry],
) -> EntryPlan:
    """Deletions plus create/update classification against one remote snapshot."""
    return EntryPlan(
        to_delete=plan_deletions(desired, remote),
        sync=plan_sync(catalog_type_id, desired, index_by_external_id(remote)),
    )
