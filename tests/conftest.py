"""Pytest configuration and fixtures."""
import base64
import json
from datetime import timedelta

import httpx
import pytest

from shared import database
from shared.context import NodeContext
from shared.credentials import MULTIMODAL_PROVIDER, RELAY_PROVIDER, IntegrationConfig, mask_secret
from shared.models import Edge, Node, Project, utc_now
from shared.storage import configure_storage

PROJECT_ID = "proj_test"
SOURCE_NODE_ID = "ai_source"
SOURCE_BBOX = {"x1": 100, "y1": 50, "x2": 460, "y2": 330}

RELAY_TOKEN = "relay-secret-token-1234"
GOOGLE_KEY = "google-secret-key-5678"

# 1x1 transparent PNG
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
)
PNG_BASE64 = base64.b64encode(PNG_BYTES).decode("ascii")


def assert_secret_masked(logs, secret, expect_masked=True):
    """No captured log entry carries `secret`; optionally one carries its masked form."""
    assert secret not in str(logs)
    if expect_masked:
        assert mask_secret(secret) in str(logs)


class StaticResolver:
    """CredentialResolver backed by a fixed set of credentials."""

    def __init__(self, *credentials: IntegrationConfig):
        self.credentials = {credential.provider_id: credential for credential in credentials}
        self.calls = []

    async def resolve(self, provider_id):
        self.calls.append(provider_id)
        return self.credentials.get(provider_id)


class MockRemote:
    """
    Routes httpx requests to canned handlers by (method, path).

    Handlers receive the request and return an httpx.Response; every request
    is recorded.
    """

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, handler):
        self.routes[(method, path)] = handler

    def add_json(self, method, path, payload, status_code=200):
        self.add(method, path, lambda request: httpx.Response(status_code, json=payload))

    def add_png(self, url_path):
        self.add(
            "GET",
            url_path,
            lambda request: httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"}),
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, text=f"no route for {request.method} {request.url.path}")
        return handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    def calls_to(self, path):
        return [request for request in self.requests if request.url.path == path]

    @staticmethod
    def body(request: httpx.Request) -> dict:
        return json.loads(request.content)


class GraphSeeder:
    """Inserts nodes and edges for a test."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        self._edge_offset = 0

    async def add_node(self, node_id, node_type="text", title="", content="", meta=None, ui=None):
        async with database.get_db_session() as db:
            db.add(Node(
                project_id=self.project_id,
                node_id=node_id,
                type=node_type,
                title=title,
                content=content,
                meta=meta or {},
                ui=ui or {},
            ))
        return node_id

    async def link(self, from_node, to_node):
        # Explicit timestamps keep upstream ordering stable
        self._edge_offset += 1
        async with database.get_db_session() as db:
            db.add(Edge(
                project_id=self.project_id,
                from_node=from_node,
                to_node=to_node,
                created_at=utc_now() + timedelta(seconds=self._edge_offset),
            ))


@pytest.fixture
async def db(tmp_path):
    """Fresh SQLite database per test."""
    await database.configure_database(f"sqlite+aiosqlite:///{tmp_path / 'mediagen.db'}")
    await database.init_db()
    yield database
    await database.engine.dispose()


@pytest.fixture
def storage_root(tmp_path):
    root = tmp_path / "storage"
    configure_storage(root)
    return root


@pytest.fixture
async def project(db, storage_root):
    """A project with one AI source node."""
    async with database.get_db_session() as session:
        session.add(Project(project_id=PROJECT_ID, title="Test project"))
        session.add(Node(
            project_id=PROJECT_ID,
            node_id=SOURCE_NODE_ID,
            type="ai",
            title="Fox",
            content="a red fox in snow",
            meta={},
            ui={"bbox": dict(SOURCE_BBOX)},
        ))
    return PROJECT_ID


@pytest.fixture
def graph(project):
    return GraphSeeder(project)


@pytest.fixture
def ctx():
    return NodeContext()


@pytest.fixture
def relay_credential():
    return IntegrationConfig(
        provider_id=RELAY_PROVIDER,
        integration_id="int_relay",
        base_url="https://relay.test",
        auth_token=RELAY_TOKEN,
        mode="photo",
    )


@pytest.fixture
def google_credential():
    return IntegrationConfig(
        provider_id=MULTIMODAL_PROVIDER,
        integration_id="int_google",
        base_url="https://gemini.test",
        auth_token=GOOGLE_KEY,
        mode="image",
        model="gemini-test",
        max_outputs=4,
    )


@pytest.fixture
def resolver(relay_credential, google_credential):
    return StaticResolver(relay_credential, google_credential)


@pytest.fixture
def remote():
    return MockRemote()


@pytest.fixture
async def http_client(remote):
    async with remote.client() as client:
        yield client
