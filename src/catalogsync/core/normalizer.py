"""
Entry normalizer: desired entries -> wire payloads, remote entries -> comparable shape.

Both directions produce the same binding shape so that change detection is a
plain field-by-field comparison:

    {"<attribute_id>": {"value": {"literal": "x"}}}
    {"<attribute_id>": {"array_value": [{"literal": "a"}, {"literal": "b"}]}}

The API omits empty arrays from responses entirely, so a remote binding with
neither side populated is read back as an empty array binding.
"""

from __future__ import annotations

from typing import Any, Dict

from .models import AttributeBinding, DesiredEntry, RemoteEntry

Payload = Dict[str, Any]


def binding_payload(binding: AttributeBinding) -> Payload:
    """Wire form of one binding; a scalar value wins over an array value."""
    if binding.value is not None:
        return {"value": {"literal": binding.value}}
    if binding.array_value is not None:
        return {"array_value": [{"literal": v} for v in binding.array_value]}
    return {}


def build_payload(catalog_type_id: str, external_id: str, entry: DesiredEntry) -> Payload:
    """Create/update request body for one desired entry.

    Bindings with neither value nor array value are left out; alias and rank
    are only sent when set.
    """
    values: Dict[str, Payload] = {}
    for attr_id, binding in entry.attribute_values.items():
        if binding is None or binding.is_empty:
            continue
        values[attr_id] = binding_payload(binding)

    payload: Payload = {
        "catalog_type_id": catalog_type_id,
        "name": entry.name,
        "external_id": external_id,
        "attribute_values": values,
    }
    if entry.alias is not None:
        payload["alias"] = entry.alias
    if entry.rank is not None:
        payload["rank"] = int(entry.rank)
    return payload


def normalize_remote_bindings(remote: RemoteEntry) -> Dict[str, AttributeBinding]:
    """Remote bindings with the empty-array omission papered over."""
    out: Dict[str, AttributeBinding] = {}
    for attr_id, binding in remote.attribute_values.items():
        if binding.is_empty:
            binding = AttributeBinding(array_value=[])
        out[attr_id] = binding
    return out


def canonical_bindings(remote: RemoteEntry) -> Dict[str, Payload]:
    """Remote bindings in payload shape, comparable with ``build_payload`` output."""
    return {attr_id: binding_payload(b) for attr_id, b in normalize_remote_bindings(remote).items()}


def payload_matches(payload: Payload, remote: RemoteEntry) -> bool:
    """Whether applying ``payload`` to ``remote`` would change nothing.

    Compared: name, alias (None-aware), rank (only when the payload sets one)
    and the full attribute binding mapping.
    """
    if payload.get("name") != remote.name:
        return False
    if payload.get("alias") != remote.alias:
        return False
    if "rank" in payload and payload["rank"] != remote.rank:
        return False
    return payload.get("attribute_values", {}) == canonical_bindings(remote)


def first_difference(payload: Payload, remote: RemoteEntry) -> str:
    """Human-friendly reason for a mismatch (empty string when equal)."""
    if payload.get("name") != remote.name:
        return "Field differs: name"
    if payload.get("alias") != remote.alias:
        return "Field differs: alias"
    if "rank" in payload and payload["rank"] != remote.rank:
        return "Field differs: rank"
    desired = payload.get("attribute_values", {})
    current = canonical_bindings(remote)
    for attr_id in sorted(set(desired) | set(current)):
        if desired.get(attr_id) != current.get(attr_id):
            return f"Attribute differs: {attr_id}"
    return ""
