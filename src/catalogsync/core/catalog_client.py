"""
CatalogClient: JSON-first HTTP client for the catalog entries API.

- requests.Session with bearer token and JSON headers.
- Methods: list_entries (cursor paginated), create_entry, update_entry, destroy_entry.
- Any status >= 400 raises RemoteError(status, url, body).
- Transport failures (connection, timeout) raise RemoteError with status=0.
- Optional retries with exponential backoff on 5xx/transport errors (off by default).

Usage:
    client = CatalogClient(base_url, token)
    page = client.list_entries("01CATALOGTYPE", page_size=250)
"""

from __future__ import annotations

import json
import logging
import os
import time
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
import urllib3

from .models import CatalogType, RemoteEntry

__all__ = ["CatalogClient", "ClientOptions", "EntryPage", "RemoteError"]

_LOG_PREVIEW = int(os.getenv("CSYNC_HTTP_PREVIEW", "600"))
_REDACT_KEYS = {"token", "authorization", "password", "api_key", "x-api-key"}

ENTRIES_PATH = "v2/catalog_entries"


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {
            k: ("***REDACTED***" if str(k).lower() in _REDACT_KEYS else _redact(v))
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [_redact(x) for x in obj]
    return obj


def _short_json(obj: Any, limit: int = _LOG_PREVIEW) -> str:
    try:
        if isinstance(obj, (dict, list)):
            s = json.dumps(_redact(obj), ensure_ascii=False)
        else:
            s = str(obj)
        return s[:limit]
    except (TypeError, ValueError):
        return f"<unserializable:{type(obj).__name__}>"


@dataclass(eq=False)
class RemoteError(Exception):
    """HTTP/transport error with context. status=0 means the request never got a response."""
    status: int
    url: str
    body: str = ""
    message: str = ""

    def __str__(self) -> str:
        base = f"RemoteError(status={self.status}, url={self.url})"
        if self.message:
            base += f": {self.message}"
        if self.body:
            base += f" body={self.body[:200]}"
        return base

    @property
    def is_transport(self) -> bool:
        return self.status == 0


@dataclass
class ClientOptions:
    """Runtime options for :class:`CatalogClient`.

    Attributes:
        verify_tls: If False, SSL certificate verification is disabled.
        timeout_sec: Per-request timeout (seconds).
        retries: Extra attempts on 5xx and transport errors. 0 disables retrying.
        backoff_base_sec: First backoff delay; doubled on each attempt.
        suppress_insecure_warning: Silence urllib3 warnings when verify_tls is off.
    """
    verify_tls: bool = True
    timeout_sec: float = 30
    retries: int = 0
    backoff_base_sec: float = 0.05
    suppress_insecure_warning: bool = False


@dataclass(frozen=True)
class EntryPage:
    """One page of ``list_entries``. ``after`` is the cursor for the next page."""
    catalog_type: CatalogType
    entries: List[RemoteEntry]
    after: Optional[str] = None


class CatalogClient:
    """High-level HTTP client for the catalog entries API.

    Args:
        base_url: Base URL of the API (e.g. ``https://api.incident.io``).
        token: API key passed as ``Authorization: Bearer``.
        options: Optional :class:`ClientOptions`.
        session: Optional pre-built ``requests.Session`` (tests, custom adapters).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        options: Optional[ClientOptions] = None,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.options = options or ClientOptions()
        self.log = logger or logging.getLogger("cs.http")
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": "catalogsync/HTTPClient",
        })

        if not self.options.verify_tls and self.options.suppress_insecure_warning:
            warnings.filterwarnings("ignore", category=urllib3.exceptions.InsecureRequestWarning)
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    # ------------- Public API -------------

    def list_entries(
        self,
        catalog_type_id: str,
        *,
        after: Optional[str] = None,
        page_size: int = 250,
    ) -> EntryPage:
        params: Dict[str, Any] = {"catalog_type_id": catalog_type_id, "page_size": int(page_size)}
        if after:
            params["after"] = after
        data = self._request_json("GET", ENTRIES_PATH, params=params)

        catalog_type = CatalogType.from_api(data.get("catalog_type") or {"id": catalog_type_id})
        entries = [RemoteEntry.from_api(e) for e in data.get("catalog_entries") or []]
        meta = data.get("pagination_meta") or {}
        return EntryPage(catalog_type=catalog_type, entries=entries, after=meta.get("after"))

    def create_entry(self, payload: Dict[str, Any]) -> RemoteEntry:
        data = self._request_json("POST", ENTRIES_PATH, payload=payload)
        return RemoteEntry.from_api(data.get("catalog_entry") or {})

    def update_entry(self, entry_id: str, payload: Dict[str, Any]) -> RemoteEntry:
        body = {k: v for k, v in payload.items() if k != "catalog_type_id"}
        data = self._request_json("PUT", f"{ENTRIES_PATH}/{entry_id}", payload=body)
        return RemoteEntry.from_api(data.get("catalog_entry") or {})

    def destroy_entry(self, entry_id: str) -> None:
        self._request_json("DELETE", f"{ENTRIES_PATH}/{entry_id}")

    # ------------- Internal -------------

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = self._url(path)
        attempts = max(0, int(self.options.retries)) + 1

        for attempt in range(attempts):
            last = attempt == attempts - 1
            start = time.time()
            if payload is not None:
                self.log.debug("%s %s payload=%s", method, path, _short_json(payload))
            try:
                resp = self.session.request(
                    method=method,
                    url=url,
                    json=payload,
                    params=params,
                    timeout=self.options.timeout_sec,
                    verify=self.options.verify_tls,
                )
            except requests.RequestException as exc:
                err = RemoteError(status=0, url=url, message=str(exc))
                self._log_err(method, path, err)
                if not last:
                    self._sleep_backoff(attempt)
                    continue
                raise err from exc

            elapsed = (time.time() - start) * 1000
            if resp.status_code >= 400:
                err = RemoteError(status=resp.status_code, url=url, body=resp.text, message=resp.reason or "")
                self._log_err(method, path, err)
                if 500 <= resp.status_code < 600 and not last:
                    self._sleep_backoff(attempt)
                    continue
                raise err

            self.log.debug("%s %s -> %s in %.1fms", method, path, resp.status_code, elapsed)
            if resp.status_code == 204 or not resp.content:
                return {}
            try:
                data = resp.json()
            except ValueError as exc:
                raise RemoteError(status=resp.status_code, url=url, body=resp.text, message=str(exc)) from exc
            return data if isinstance(data, dict) else {}

        raise AssertionError("unreachable")  # pragma: no cover

    def _sleep_backoff(self, attempt: int) -> None:
        time.sleep(self.options.backoff_base_sec * (2 ** attempt))

    def _log_err(self, method: str, path: str, err: RemoteError) -> None:
        self.log.warning("%s %s failed (status=%s): %s", method, path, err.status, err)
