import json
import threading
from dataclasses import replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

import pytest

from catalogsync.core.catalog_client import EntryPage, RemoteError
from catalogsync.core.models import AttributeBinding, CatalogType, RemoteEntry

CATALOG_TYPE_ID = "01CATALOGTYPE"


# =========================
# In-memory client
# =========================

class FakeCatalogClient:
    """Thread-safe in-memory stand-in for CatalogClient.

    - entries are listed ordered by id; the cursor is the last id of the previous page
    - fail_on: {"create"|"update"|"destroy"|"list": set of external ids / entry ids / "*"}
    - empty arrays are dropped from stored bindings, like the real API does
    """

    def __init__(self, entries=None, catalog_type_id=CATALOG_TYPE_ID):
        self.catalog_type = CatalogType(id=catalog_type_id, name="Service", type_name='Custom["Service"]')
        self.entries = {}
        self.calls = {"list": 0, "create": 0, "update": 0, "destroy": 0}
        self.fail_on = {}
        self.ignore_destroy = False
        self._lock = threading.Lock()
        self._seq = 0
        for e in entries or []:
            self.entries[e.id] = e

    # ---- helpers ----
    def add(self, external_id, name, *, entry_id=None, alias=None, rank=0, attribute_values=None):
        with self._lock:
            self._seq += 1
            entry_id = entry_id or f"01SEED{self._seq:04d}"
        entry = RemoteEntry(
            id=entry_id,
            catalog_type_id=self.catalog_type.id,
            name=name,
            alias=alias,
            rank=rank,
            external_id=external_id,
            attribute_values=dict(attribute_values or {}),
        )
        self.entries[entry_id] = entry
        return entry

    def by_external_id(self, external_id):
        return next((e for e in self.entries.values() if e.external_id == external_id), None)

    def writes(self):
        return self.calls["create"] + self.calls["update"] + self.calls["destroy"]

    def reset_calls(self):
        self.calls = {k: 0 for k in self.calls}

    def _should_fail(self, op, *keys):
        targets = self.fail_on.get(op) or set()
        return "*" in targets or any(k in targets for k in keys if k is not None)

    @staticmethod
    def _store_bindings(raw):
        out = {}
        for attr_id, b in (raw or {}).items():
            binding = AttributeBinding.from_api(b)
            if binding.array_value == []:
                binding = AttributeBinding()
            out[attr_id] = binding
        return out

    # ---- client API ----
    def list_entries(self, catalog_type_id, *, after=None, page_size=250):
        with self._lock:
            self.calls["list"] += 1
            if self._should_fail("list", "*"):
                raise RemoteError(status=500, url="/v2/catalog_entries", body="list failed")
            ordered = sorted(self.entries.values(), key=lambda e: e.id)
            if after is not None:
                ordered = [e for e in ordered if e.id > after]
            page = ordered[:page_size]
        return EntryPage(catalog_type=self.catalog_type, entries=[replace(e, attribute_values=dict(e.attribute_values)) for e in page], after=page[-1].id if page else None)

    def create_entry(self, payload):
        with self._lock:
            self.calls["create"] += 1
            ext = payload.get("external_id")
            if self._should_fail("create", ext):
                raise RemoteError(status=422, url="/v2/catalog_entries", body=f"create failed for {ext}")
            if any(e.external_id == ext for e in self.entries.values()):
                raise RemoteError(status=422, url="/v2/catalog_entries", body="duplicate external_id")
            self._seq += 1
            entry = RemoteEntry(
                id=f"01NEW{self._seq:04d}",
                catalog_type_id=payload["catalog_type_id"],
                name=payload["name"],
                alias=payload.get("alias"),
                rank=payload.get("rank", 0),
                external_id=ext,
                attribute_values=self._store_bindings(payload.get("attribute_values")),
            )
            self.entries[entry.id] = entry
            return entry

    def update_entry(self, entry_id, payload):
        with self._lock:
            self.calls["update"] += 1
            if self._should_fail("update", entry_id, payload.get("external_id")):
                raise RemoteError(status=500, url=f"/v2/catalog_entries/{entry_id}", body="update failed")
            current = self.entries.get(entry_id)
            if current is None:
                raise RemoteError(status=404, url=f"/v2/catalog_entries/{entry_id}", body="not found")
            current.name = payload["name"]
            current.alias = payload.get("alias")
            current.rank = payload.get("rank", current.rank)
            current.external_id = payload.get("external_id")
            current.attribute_values = self._store_bindings(payload.get("attribute_values"))
            return current

    def destroy_entry(self, entry_id):
        with self._lock:
            self.calls["destroy"] += 1
            if self._should_fail("destroy", entry_id):
                raise RemoteError(status=500, url=f"/v2/catalog_entries/{entry_id}", body="destroy failed")
            if self.ignore_destroy:
                return
            if self.entries.pop(entry_id, None) is None:
                raise RemoteError(status=404, url=f"/v2/catalog_entries/{entry_id}", body="not found")


@pytest.fixture()
def fake_client():
    return FakeCatalogClient()


# =========================
# HTTP fake of the catalog API
# =========================

class FakeCatalogApi:
    """Shared state behind the HTTP handler (one per test)."""

    def __init__(self, catalog_type_id=CATALOG_TYPE_ID, token="TEST"):
        self.token = token
        self.catalog_type = {"id": catalog_type_id, "name": "Service", "type_name": 'Custom["Service"]'}
        self.entries = {}
        self.calls = {"list": 0, "create": 0, "update": 0, "destroy": 0}
        self.requests = []
        self.status_overrides = []  # list of (method, path_prefix, status, remaining)
        self._lock = threading.Lock()
        self._seq = 0

    def seed(self, external_id, name, *, entry_id=None, alias=None, rank=0, attribute_values=None):
        with self._lock:
            self._seq += 1
            entry_id = entry_id or f"01SEED{self._seq:04d}"
            self.entries[entry_id] = {
                "id": entry_id,
                "catalog_type_id": self.catalog_type["id"],
                "name": name,
                "alias": alias,
                "rank": rank,
                "external_id": external_id,
                "attribute_values": attribute_values or {},
            }
        return entry_id

    def fail_next(self, method, path_prefix, status, times=1):
        self.status_overrides.append([method, path_prefix, status, times])

    def override_for(self, method, path):
        with self._lock:
            for ov in self.status_overrides:
                if ov[0] == method and path.startswith(ov[1]) and ov[3] > 0:
                    ov[3] -= 1
                    return ov[2]
        return None

    @staticmethod
    def _wire(entry):
        # empty arrays are omitted from responses by the real API
        out = dict(entry)
        out["attribute_values"] = {
            k: ({} if b.get("array_value") == [] else b) for k, b in entry["attribute_values"].items()
        }
        if out.get("alias") is None:
            out.pop("alias", None)
        return out

    def list_page(self, catalog_type_id, page_size, after):
        with self._lock:
            ordered = sorted(
                (e for e in self.entries.values() if e["catalog_type_id"] == catalog_type_id),
                key=lambda e: e["id"],
            )
            if after:
                ordered = [e for e in ordered if e["id"] > after]
            page = ordered[:page_size]
            return {
                "catalog_type": self.catalog_type,
                "catalog_entries": [self._wire(e) for e in page],
                "pagination_meta": {"after": page[-1]["id"] if page else None, "page_size": page_size},
            }

    def create(self, body):
        with self._lock:
            ext = body.get("external_id")
            if ext and any(e["external_id"] == ext for e in self.entries.values()):
                return 422, {"type": "validation_error", "errors": [{"message": "external_id taken"}]}
            self._seq += 1
            entry_id = f"01NEW{self._seq:04d}"
            self.entries[entry_id] = {
                "id": entry_id,
                "catalog_type_id": body["catalog_type_id"],
                "name": body["name"],
                "alias": body.get("alias"),
                "rank": body.get("rank", 0),
                "external_id": ext,
                "attribute_values": body.get("attribute_values") or {},
            }
            return 201, {"catalog_entry": self._wire(self.entries[entry_id])}

    def update(self, entry_id, body):
        with self._lock:
            current = self.entries.get(entry_id)
            if current is None:
                return 404, {"type": "not_found"}
            current.update({
                "name": body["name"],
                "alias": body.get("alias"),
                "rank": body.get("rank", current["rank"]),
                "external_id": body.get("external_id"),
                "attribute_values": body.get("attribute_values") or {},
            })
            return 200, {"catalog_entry": self._wire(current)}

    def destroy(self, entry_id):
        with self._lock:
            if self.entries.pop(entry_id, None) is None:
                return 404, {"type": "not_found"}
            return 204, None


class _CatalogHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    @property
    def api(self):
        return self.server.api

    def _send_json(self, status, obj):
        raw = b"" if obj is None else json.dumps(obj).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        if raw:
            self.wfile.write(raw)

    def _body(self):
        length = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(length) if length else b"{}"
        return json.loads(raw.decode("utf-8"))

    def _pre(self, method):
        parsed = urlparse(self.path)
        body = self._body() if method in ("POST", "PUT") else None
        self.api.requests.append((method, parsed.path, parse_qs(parsed.query), body))
        if self.headers.get("Authorization", "").strip() != f"Bearer {self.api.token}":
            self._send_json(401, {"type": "authentication_error"})
            return None
        status = self.api.override_for(method, parsed.path)
        if status is not None:
            self._send_json(status, {"type": "injected", "status": status})
            return None
        return parsed, body

    def do_GET(self):  # noqa: N802
        pre = self._pre("GET")
        if pre is None:
            return
        parsed, _ = pre
        if parsed.path != "/v2/catalog_entries":
            self._send_json(404, {"type": "not_found"})
            return
        q = parse_qs(parsed.query)
        self.api.calls["list"] += 1
        page = self.api.list_page(
            q["catalog_type_id"][0],
            int(q.get("page_size", ["250"])[0]),
            q.get("after", [None])[0],
        )
        self._send_json(200, page)

    def do_POST(self):  # noqa: N802
        pre = self._pre("POST")
        if pre is None:
            return
        parsed, body = pre
        if parsed.path != "/v2/catalog_entries":
            self._send_json(404, {"type": "not_found"})
            return
        self.api.calls["create"] += 1
        self._send_json(*self.api.create(body))

    def do_PUT(self):  # noqa: N802
        pre = self._pre("PUT")
        if pre is None:
            return
        parsed, body = pre
        self.api.calls["update"] += 1
        self._send_json(*self.api.update(parsed.path.rsplit("/", 1)[-1], body))

    def do_DELETE(self):  # noqa: N802
        pre = self._pre("DELETE")
        if pre is None:
            return
        parsed, _ = pre
        self.api.calls["destroy"] += 1
        self._send_json(*self.api.destroy(parsed.path.rsplit("/", 1)[-1]))

    def log_message(self, fmt, *args):  # silence server logs during tests
        return


@pytest.fixture()
def catalog_api():
    """Yields (api_state, base_url) for an in-process fake catalog API."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _CatalogHandler)
    server.daemon_threads = True
    server.api = FakeCatalogApi()
    host, port = server.server_address
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.api, f"http://{host}:{port}"
    server.shutdown()
    server.server_close()
    thread.join(timeout=1.0)
