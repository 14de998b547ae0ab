"""
Typed records for catalog entries, on both sides of a reconciliation.

- DesiredEntry: one declared entry, keyed externally by its external ID.
- RemoteEntry: the server's view, keyed by a server-assigned internal ID.
- AttributeBinding: a single literal or an array of literals.

Wire shapes follow the v2 catalog API:
    {"value": {"literal": "x"}} / {"array_value": [{"literal": "a"}, ...]}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class AttributeBinding:
    value: Optional[str] = None
    array_value: Optional[List[str]] = None

    @property
    def is_empty(self) -> bool:
        """True when neither side is populated (the binding carries nothing)."""
        return self.value is None and self.array_value is None

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "AttributeBinding":
        raw = raw or {}
        value = None
        if isinstance(raw.get("value"), dict):
            value = _literal(raw["value"])
        array_value = None
        if isinstance(raw.get("array_value"), list):
            array_value = [_literal(v) for v in raw["array_value"] if isinstance(v, dict)]
        return cls(value=value, array_value=array_value)

    def to_api(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.value is not None:
            out["value"] = {"literal": self.value}
        if self.array_value is not None:
            out["array_value"] = [{"literal": v} for v in self.array_value]
        return out


def _literal(raw: Dict[str, Any]) -> Optional[str]:
    lit = raw.get("literal")
    return None if lit is None else str(lit)


@dataclass
class DesiredEntry:
    """A declared entry. ``rank=None`` means unset; ``id`` is the last-known internal ID."""
    name: str
    alias: Optional[str] = None
    rank: Optional[int] = None
    attribute_values: Dict[str, AttributeBinding] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass(frozen=True)
class CatalogType:
    id: str
    name: str = ""
    type_name: str = ""

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "CatalogType":
        return cls(
            id=str(raw.get("id") or ""),
            name=str(raw.get("name") or ""),
            type_name=str(raw.get("type_name") or ""),
        )


@dataclass
class RemoteEntry:
    id: str
    catalog_type_id: str
    name: str
    alias: Optional[str] = None
    rank: int = 0
    external_id: Optional[str] = None
    attribute_values: Dict[str, AttributeBinding] = field(default_factory=dict)

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "RemoteEntry":
        values = raw.get("attribute_values") or {}
        return cls(
            id=str(raw.get("id") or ""),
            catalog_type_id=str(raw.get("catalog_type_id") or ""),
            name=str(raw.get("name") or ""),
            alias=raw.get("alias"),
            rank=int(raw.get("rank") or 0),
            external_id=raw.get("external_id"),
            attribute_values={
                str(attr_id): AttributeBinding.from_api(b)
                for attr_id, b in values.items()
                if isinstance(b, dict)
            },
        )

    def to_api(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "catalog_type_id": self.catalog_type_id,
            "name": self.name,
            "rank": self.rank,
            "attribute_values": {k: b.to_api() for k, b in self.attribute_values.items()},
        }
        if self.alias is not None:
            out["alias"] = self.alias
        if self.external_id is not None:
            out["external_id"] = self.external_id
        return out
