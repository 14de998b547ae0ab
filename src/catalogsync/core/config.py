from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv


class ConfigError(ValueError):
    """Raised when runtime configuration cannot be resolved."""


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    concurrency: int = 10
    page_size: int = 250


@dataclass
class ApiSection:
    base_url: str = "https://api.incident.io"
    token: str = ""          # secret – never log in clear text
    verify_tls: bool = True
    timeout_sec: int = 30
    retries: int = 0


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class InputsSection:
    entries_path: str = ""
    sheet: Optional[str] = None
    catalog_type_id: str = ""


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    api: ApiSection
    logging: LoggingSection
    inputs: InputsSection

    @property
    def run_id(self) -> str:
        """
        Return a stable run identifier for this process.
        Generated lazily when first accessed if not provided.
        """
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./catalogsync.yml",
    os.path.expanduser("~/.config/catalogsync/config.yml"),
    "/etc/catalogsync/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "concurrency": 10, "page_size": 250},
    "api": {
        "base_url": "https://api.incident.io",
        "token": "",
        "verify_tls": True,
        "timeout_sec": 30,
        "retries": 0,
    },
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
    "inputs": {"entries_path": "", "sheet": None, "catalog_type_id": ""},
}


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _load_dotenv() -> None:
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(env_path, override=False)


def _env_to_dict(prefix: str = "CSYNC_") -> Dict[str, Any]:
    """
    Convert CSYNC_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[plen:].lower().split("__")
        if len(path) < 2:
            continue
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values like "${VAR}" with os.environ["VAR"] when present.
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(x) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Minimal type coercion for booleans and integers in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(v, key_path) for v in obj]
        if key_path[-1:] in [("verify_tls",)]:
            return to_bool(obj)
        if key_path[-1:] in [("timeout_sec",), ("retries",), ("concurrency",), ("page_size",)]:
            try:
                return int(obj)
            except (TypeError, ValueError):
                raise ConfigError(f"{'.'.join(key_path)} must be an integer, got {obj!r}")
        return obj

    return walk(cfg)


def _validate(cfg: Dict[str, Any]) -> None:
    """
    Validate ranges and required fields.
    """
    app = cfg.get("app", {})
    if int(app.get("concurrency", 1)) < 1:
        raise ConfigError("app.concurrency must be >= 1")
    if int(app.get("page_size", 1)) < 1:
        raise ConfigError("app.page_size must be >= 1")

    missing = []
    if not cfg.get("api", {}).get("base_url"):
        missing.append("api.base_url")
    if not cfg.get("api", {}).get("token"):
        missing.append("api.token")
    if missing:
        raise ConfigError(
            "Missing required configuration: " + ", ".join(missing)
        )


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "CSYNC_",
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix CSYNC_, nested via __; .env is loaded first)
      3) YAML file (first existing)
      4) Built-in defaults

    Also performs:
      - ${ENV_VAR} interpolation
      - basic type coercion (bool/int)
      - validation of required fields
    """
    file_cfg = _load_first_existing(files)

    _load_dotenv()
    env_cfg = _env_to_dict(env_prefix)

    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, env_cfg)
    merged = _deep_merge(merged, cli_overrides or {})

    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    _validate(merged)

    return AppConfig(
        app=AppSection(**merged.get("app", {})),
        api=ApiSection(**merged.get("api", {})),
        logging=LoggingSection(**merged.get("logging", {})),
        inputs=InputsSection(**merged.get("inputs", {})),
    )
