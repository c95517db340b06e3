"""
Shared pytest fixtures for sbupload tests.

Async code is driven from plain test functions with asyncio.run().
"""

import copy
import itertools
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from sbupload.blob.local import LocalBlobStore
from sbupload.core.tagged import from_tagged_value
from sbupload.core.types import BuildCoverage
from sbupload.metadata.credentials import ServiceAccountCredentials
from sbupload.metadata.rest import FirestoreRestClient
from sbupload.metadata.sqlite import SQLiteMetadataStore
from sbupload.apikeys.sqlite import SQLiteApiKeyStore


GCP_PROJECT = "demo-gcp"
DOCUMENTS_ROOT = f"projects/{GCP_PROJECT}/databases/(default)/documents"


# ------------------------------------------------------------
# Payloads
# ------------------------------------------------------------

def flat_coverage_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "reportUrl": "https://evil.example.com/report.json",
        "summary": {
            "componentCoverage": 0.9,
            "propCoverage": 0.8,
            "variantCoverage": 0.7,
            "passRate": 0.95,
            "totalComponents": 10,
            "componentsWithStories": 9,
            "failingStories": 1,
        },
        "qualityGate": {
            "passed": True,
            "checks": [
                {"name": "componentCoverage", "threshold": 0.8, "actual": 0.9, "passed": True},
            ],
        },
        "generatedAt": "2026-01-01T00:00:00.000Z",
    }
    payload.update(overrides)
    return payload


def nested_coverage_payload(**overrides) -> Dict[str, Any]:
    payload = {
        "summary": {
            "totalComponents": 10,
            "componentsWithStories": 9,
            "metrics": {
                "componentCoverage": 0.9,
                "propCoverage": 0.8,
                "variantCoverage": 0.7,
            },
            "health": {
                "passRate": 0.95,
                "failingStories": 1,
            },
        },
        "qualityGate": {
            "passed": True,
            "checks": [
                {"name": "componentCoverage", "threshold": 0.8, "actual": 0.9, "passed": True},
            ],
        },
        "generatedAt": "2026-01-01T00:00:00.000Z",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def flat_coverage() -> Dict[str, Any]:
    return flat_coverage_payload()


@pytest.fixture
def nested_coverage() -> Dict[str, Any]:
    return nested_coverage_payload()


@pytest.fixture
def example_coverage() -> BuildCoverage:
    """The coverage record from the demo scenario."""
    return BuildCoverage.from_dict({
        "reportUrl": "https://x/demo/v1/coverage-report.json",
        "summary": {
            "componentCoverage": 0.9,
            "propCoverage": 0.8,
            "variantCoverage": 0.7,
            "passRate": 0.95,
            "totalComponents": 10,
            "componentsWithStories": 9,
            "failingStories": 1,
        },
        "qualityGate": {"passed": True, "checks": []},
        "generatedAt": "2026-01-01T00:00:00.000Z",
    })


# ------------------------------------------------------------
# Local stores
# ------------------------------------------------------------

@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "metadata.db"


@pytest.fixture
def sqlite_store(db_path: Path) -> SQLiteMetadataStore:
    store = SQLiteMetadataStore(db_path)
    store.init_schema()
    return store


@pytest.fixture
def sqlite_key_store(db_path: Path) -> SQLiteApiKeyStore:
    store = SQLiteApiKeyStore(db_path)
    store.init_schema()
    return store


@pytest.fixture
def blob_store(tmp_path: Path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs", public_base_url="https://cdn.example.com")


# ------------------------------------------------------------
# Service account key
# ------------------------------------------------------------

@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_private_key) -> str:
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


# ------------------------------------------------------------
# In-process fake of the document REST API
# ------------------------------------------------------------

def _error(status: int, reason: str, message: str) -> web.Response:
    return web.json_response(
        {"error": {"code": status, "status": reason, "message": message}},
        status=status,
    )


class FakeFirestore:
    """
    Just enough of the Firestore v1 REST surface for the REST stores:
    token exchange, document GET/PATCH/DELETE with currentDocument
    preconditions and update masks, and runQuery with equality filters,
    a single orderBy and a limit.
    """

    def __init__(self, private_key_pem: str):
        self.private_key_pem = private_key_pem
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.token_requests = 0
        self.requests: List[Dict[str, Any]] = []
        self.expires_in = 3600

        # Return (status, reason) to force a write failure for a path
        self.fail_write: Optional[Callable[[str], Optional[tuple]]] = None
        # Same, for document reads
        self.fail_read: Optional[Callable[[str], Optional[tuple]]] = None

        self._clock = itertools.count(1)
        self._tokens = set()

    # -- helpers ---------------------------------------------------

    def _update_time(self) -> str:
        return f"2026-01-01T00:00:00.{next(self._clock):06d}Z"

    def _wire(self, path: str) -> Dict[str, Any]:
        doc = self.documents[path]
        return {
            "name": f"{DOCUMENTS_ROOT}/{path}",
            "fields": copy.deepcopy(doc["fields"]),
            "createTime": doc["createTime"],
            "updateTime": doc["updateTime"],
        }

    def field(self, path: str, name: str) -> Any:
        """Decoded value of one stored field, for assertions."""
        return from_tagged_value(self.documents[path]["fields"].get(name))

    def _authorized(self, request: web.Request) -> bool:
        auth = request.headers.get("Authorization", "")
        return auth.startswith("Bearer ") and auth[len("Bearer "):] in self._tokens

    # -- handlers --------------------------------------------------

    async def token(self, request: web.Request) -> web.Response:
        form = await request.post()
        if form.get("grant_type") != "urn:ietf:params:oauth:grant-type:jwt-bearer" or not form.get("assertion"):
            return web.json_response({"error": "invalid_grant"}, status=400)
        self.token_requests += 1
        token = f"token-{self.token_requests}"
        self._tokens.add(token)
        return web.json_response({"access_token": token, "expires_in": self.expires_in, "token_type": "Bearer"})

    async def documents_handler(self, request: web.Request) -> web.Response:
        if not self._authorized(request):
            return _error(401, "UNAUTHENTICATED", "Request had invalid authentication credentials.")

        tail = request.match_info["tail"]
        prefix = DOCUMENTS_ROOT + "/"
        if not tail.startswith(prefix):
            return _error(404, "NOT_FOUND", f"Unknown database path {tail}")
        path = tail[len(prefix):]

        self.requests.append({"method": request.method, "path": path, "query": list(request.query.items())})

        if request.method == "POST" and path.endswith(":runQuery"):
            return await self._run_query(request, path[: -len(":runQuery")])
        if request.method == "GET":
            if self.fail_read is not None:
                failure = self.fail_read(path)
                if failure:
                    status, reason = failure
                    return _error(status, reason, f"Injected failure for {path}")
            if path not in self.documents:
                return _error(404, "NOT_FOUND", f"Document {path} not found")
            return web.json_response(self._wire(path))
        if request.method == "PATCH":
            return await self._patch(request, path)
        if request.method == "DELETE":
            if path not in self.documents:
                return _error(404, "NOT_FOUND", f"Document {path} not found")
            del self.documents[path]
            return web.json_response({})
        return _error(405, "INVALID_ARGUMENT", "Unsupported method")

    async def _patch(self, request: web.Request, path: str) -> web.Response:
        if self.fail_write is not None:
            failure = self.fail_write(path)
            if failure:
                status, reason = failure
                return _error(status, reason, f"Injected failure for {path}")

        existing = self.documents.get(path)
        exists = request.query.get("currentDocument.exists")
        update_time = request.query.get("currentDocument.updateTime")

        if exists == "true" and existing is None:
            return _error(404, "NOT_FOUND", f"No document to update: {path}")
        if exists == "false" and existing is not None:
            return _error(409, "ALREADY_EXISTS", f"Document already exists: {path}")
        if update_time is not None and (existing is None or existing["updateTime"] != update_time):
            return _error(400, "FAILED_PRECONDITION", "the stored version does not match the required base version")

        body = await request.json()
        fields = body.get("fields") or {}
        mask = request.query.getall("updateMask.fieldPaths", [])

        now = self._update_time()
        if existing is None:
            existing = {"fields": {}, "createTime": now}
        if mask:
            merged = dict(existing["fields"])
            for name in mask:
                if name in fields:
                    merged[name] = fields[name]
                else:
                    merged.pop(name, None)
        else:
            merged = dict(fields)

        self.documents[path] = {"fields": merged, "createTime": existing["createTime"], "updateTime": now}
        return web.json_response(self._wire(path))

    def _matches(self, fields: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
        if where is None:
            return True
        if "compositeFilter" in where:
            return all(self._matches(fields, f) for f in where["compositeFilter"]["filters"])
        flt = where["fieldFilter"]
        assert flt["op"] == "EQUAL", f"unsupported op {flt['op']}"
        name = flt["field"]["fieldPath"]
        return name in fields and from_tagged_value(fields[name]) == from_tagged_value(flt["value"])

    async def _run_query(self, request: web.Request, parent: str) -> web.Response:
        query = (await request.json())["structuredQuery"]
        collection = query["from"][0]["collectionId"]
        base = f"{parent}/{collection}/"

        paths = [
            p for p in self.documents
            if p.startswith(base) and "/" not in p[len(base):]
            and self._matches(self.documents[p]["fields"], query.get("where"))
        ]

        for order in reversed(query.get("orderBy", [])):
            name = order["field"]["fieldPath"]
            paths = [p for p in paths if name in self.documents[p]["fields"]]
            paths.sort(
                key=lambda p: from_tagged_value(self.documents[p]["fields"][name]),
                reverse=order.get("direction") == "DESCENDING",
            )

        if "limit" in query:
            paths = paths[: query["limit"]]

        if not paths:
            return web.json_response([{"readTime": self._update_time()}])
        return web.json_response([
            {"document": self._wire(p), "readTime": self._update_time()} for p in paths
        ])

    # -- wiring ----------------------------------------------------

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/token", self.token)
        app.router.add_route("*", "/v1/{tail:.*}", self.documents_handler)
        return app

    @asynccontextmanager
    async def serve(self):
        """Yield a FirestoreRestClient talking to this fake."""
        server = TestServer(self.app())
        await server.start_server()
        credentials = ServiceAccountCredentials(
            project_id=GCP_PROJECT,
            client_email="upload-service@demo-gcp.iam.gserviceaccount.com",
            private_key=self.private_key_pem,
            token_url=str(server.make_url("/token")),
        )
        client = FirestoreRestClient(credentials, base_url=str(server.make_url("/v1")))
        try:
            yield client
        finally:
            await client.close()
            await server.close()


@pytest.fixture
def fake_firestore(private_key_pem) -> FakeFirestore:
    return FakeFirestore(private_key_pem)
