"""
Desired-state loader: read a mapping of external ID -> DesiredEntry from disk.

Supported inputs:
- YAML / JSON document:
    catalog_type_id: "01CATALOGTYPE"        # optional, CLI may supply it
    entries:
      ext-1:
        name: "Payments"
        alias: "payments"                   # optional
        rank: 3                             # optional (unset = not compared)
        attribute_values:
          owner: {value: "team-a"}
          tags:  {array_value: ["pci", "tier-1"]}
- CSV / XLSX sheet, one row per entry:
    external_id | name | alias | rank | attr:<id> | attr[]:<id>
  ``attr:<id>`` cells are scalar values (blank = no binding),
  ``attr[]:<id>`` cells are ';'-separated arrays (blank = empty array).
"""

from __future__ import annotations

import json
from collections.abc import Hashable
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd
import yaml

from .models import AttributeBinding, DesiredEntry

DesiredMap = Dict[str, DesiredEntry]

SCALAR_PREFIX = "attr:"
ARRAY_PREFIX = "attr[]:"
ARRAY_SEP = ";"


class ValidationError(Exception):
    """Raised when a desired-state document is malformed."""


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that raises ValidationError on a key repeated within one mapping.

    Keys brought in through a merge key (``<<``) may still be overridden.
    """

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            if key_node.tag == "tag:yaml.org,2002:merge":
                continue
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                continue  # SafeLoader reports it
            if key in seen:
                raise ValidationError(f"duplicate key {key!r} at line {key_node.start_mark.line + 1}")
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _unique_pairs(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    """``object_pairs_hook`` for json.load that rejects repeated keys."""
    out: Dict[str, Any] = {}
    for key, value in pairs:
        if key in out:
            raise ValidationError(f"duplicate key {key!r}")
        out[key] = value
    return out


def _str_keys(raw: Dict[Any, Any], where: str) -> Dict[str, Any]:
    """Keys coerced to str; 1 and "1" would otherwise collapse into one entry."""
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        skey = str(key)
        if skey in out:
            raise ValidationError(f"{where}: duplicate key '{skey}'")
        out[skey] = value
    return out


def require_columns(df: pd.DataFrame, required: Iterable[str], context: Optional[str] = None) -> None:
    """Ensure that all required columns are present in a DataFrame."""
    missing = [c for c in required if c not in df.columns]
    if missing:
        prefix = f"{context}: " if context else ""
        raise ValidationError(f"{prefix}Missing required columns: {', '.join(missing)}")


def _to_rank(value: Any, where: str) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{where}: rank must be an integer, got {value!r}")
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"{where}: rank must be an integer, got {value!r}") from exc


def parse_binding(raw: Any, where: str) -> AttributeBinding:
    if raw is None:
        return AttributeBinding()
    if not isinstance(raw, dict):
        raise ValidationError(f"{where}: binding must be a mapping with 'value' or 'array_value'")
    unknown = set(raw) - {"value", "array_value"}
    if unknown:
        raise ValidationError(f"{where}: unknown binding keys {sorted(unknown)}")

    value = raw.get("value")
    array_value = raw.get("array_value")
    if value is not None and array_value is not None:
        raise ValidationError(f"{where}: binding sets both 'value' and 'array_value'")
    if array_value is not None and not isinstance(array_value, list):
        raise ValidationError(f"{where}: 'array_value' must be a list")
    return AttributeBinding(
        value=None if value is None else str(value),
        array_value=None if array_value is None else [str(v) for v in array_value],
    )


def parse_entry(external_id: str, raw: Any) -> DesiredEntry:
    where = f"entry '{external_id}'"
    if not isinstance(raw, dict):
        raise ValidationError(f"{where}: must be a mapping")
    name = raw.get("name")
    if name is None or not str(name).strip():
        raise ValidationError(f"{where}: 'name' is required")

    values_raw = raw.get("attribute_values") or {}
    if not isinstance(values_raw, dict):
        raise ValidationError(f"{where}: 'attribute_values' must be a mapping")

    alias = raw.get("alias")
    return DesiredEntry(
        name=str(name),
        alias=None if alias is None else str(alias),
        rank=_to_rank(raw.get("rank"), where),
        attribute_values={
            attr_id: parse_binding(b, f"{where} attribute '{attr_id}'")
            for attr_id, b in _str_keys(values_raw, f"{where} attribute_values").items()
        },
        id=raw.get("id"),
    )


def parse_document(doc: Any) -> Tuple[Optional[str], DesiredMap]:
    if not isinstance(doc, dict):
        raise ValidationError("Top-level document must be a mapping")
    entries_raw = doc.get("entries") or {}
    if not isinstance(entries_raw, dict):
        raise ValidationError("'entries' must be a mapping of external ID to entry")
    catalog_type_id = doc.get("catalog_type_id")
    entries = {ext_id: parse_entry(ext_id, raw) for ext_id, raw in _str_keys(entries_raw, "entries").items()}
    return (str(catalog_type_id) if catalog_type_id else None), entries


def parse_frame(df: pd.DataFrame, context: str = "sheet") -> DesiredMap:
    """One row per entry; see module docstring for the column layout."""
    df = df.fillna("")
    df.columns = [str(c).strip() for c in df.columns]
    require_columns(df, ("external_id", "name"), context)

    entries: DesiredMap = {}
    for idx, row in df.iterrows():
        where = f"{context} row {int(idx) + 2}"
        external_id = str(row["external_id"]).strip()
        if not external_id:
            raise ValidationError(f"{where}: 'external_id' is required")
        if external_id in entries:
            raise ValidationError(f"{where}: duplicate external_id '{external_id}'")
        name = str(row["name"]).strip()
        if not name:
            raise ValidationError(f"{where}: 'name' is required")

        values: Dict[str, AttributeBinding] = {}
        for col in df.columns:
            cell = str(row[col]).strip()
            if col.startswith(ARRAY_PREFIX):
                items = [p.strip() for p in cell.split(ARRAY_SEP) if p.strip()]
                values[col[len(ARRAY_PREFIX):]] = AttributeBinding(array_value=items)
            elif col.startswith(SCALAR_PREFIX) and cell:
                values[col[len(SCALAR_PREFIX):]] = AttributeBinding(value=cell)

        alias = str(row["alias"]).strip() if "alias" in df.columns else ""
        entries[external_id] = DesiredEntry(
            name=name,
            alias=alias or None,
            rank=_to_rank(row["rank"], where) if "rank" in df.columns else None,
            attribute_values=values,
        )
    return entries


def load_desired(path: str, *, sheet: Optional[str] = None) -> Tuple[Optional[str], DesiredMap]:
    """Load desired entries from ``path``; returns (catalog_type_id or None, entries)."""
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"Entries file not found: {path}")

    ext = p.suffix.lower()
    if ext in (".yml", ".yaml"):
        with p.open("r", encoding="utf-8") as f:
            return parse_document(yaml.load(f, Loader=_UniqueKeyLoader) or {})
    if ext == ".json":
        with p.open("r", encoding="utf-8") as f:
            try:
                return parse_document(json.load(f, object_pairs_hook=_unique_pairs))
            except json.JSONDecodeError as exc:
                raise ValidationError(f"Invalid JSON in {path}: {exc}") from exc
    if ext in (".xlsx", ".xlsm"):
        df = pd.read_excel(p, sheet_name=sheet or 0, dtype=str, engine="openpyxl")
        return None, parse_frame(df, context=sheet or p.name)
    if ext == ".csv":
        df = pd.read_csv(p, dtype=str, keep_default_na=False, encoding="utf-8-sig")
        return None, parse_frame(df, context=p.name)
    raise ValidationError(f"Unsupported entries file type: {ext or path}")


def entry_to_dict(entry: DesiredEntry) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": entry.name}
    if entry.id:
        out["id"] = entry.id
    if entry.alias is not None:
        out["alias"] = entry.alias
    if entry.rank is not None:
        out["rank"] = entry.rank
    values: Dict[str, Any] = {}
    for attr_id, b in entry.attribute_values.items():
        if b.value is not None:
            values[attr_id] = {"value": b.value}
        elif b.array_value is not None:
            values[attr_id] = {"array_value": list(b.array_value)}
    out["attribute_values"] = values
    return out


def dump_document(catalog_type_id: str, entries: DesiredMap) -> str:
    """YAML document in the same layout ``load_desired`` reads."""
    doc = {
        "catalog_type_id": catalog_type_id,
        "entries": {ext_id: entry_to_dict(e) for ext_id, e in sorted(entries.items())},
    }
    return yaml.safe_dump(doc, sort_keys=False, allow_unicode=True)
