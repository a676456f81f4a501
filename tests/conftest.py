"""
Pytest fixtures for tier_relay tests.

Provides every order store implementation (Upstash through a fake REST
session), lifecycle instances in direct and voucher mode, and a Flask test client.
"""

import json

import pytest
import requests

from tier_relay.catalog import TierCatalog
from tier_relay.lifecycle import OrderLifecycle, VoucherTierResolver
from tier_relay.order_store import FileOrderStore, MemoryOrderStore, UpstashOrderStore
from tier_relay.payment_server import create_app
from tier_relay.sql_store import OrderRow, SqlOrderStore
from tier_relay.vouchers import VoucherSigner

ADMIN_SECRET = "s3cret"
VOUCHER_SECRET = "voucher-test-secret"


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeUpstash:
    """Upstash REST 의 HGET/HSET/HSETNX/HGETALL/EVAL 만 흉내내는 세션."""

    def __init__(self):
        self.hashes = {}
        self.down = False
        self.before_eval = None
        self.commands = []

    def post(self, url, headers=None, json=None, timeout=None):
        if self.down:
            raise requests.ConnectionError("upstash unreachable")
        assert headers["Authorization"].startswith("Bearer ")
        cmd, *args = json
        self.commands.append(cmd)

        if cmd == "HGET":
            return FakeResponse({"result": self.hashes.get(args[0], {}).get(args[1])})
        if cmd == "HSET":
            self.hashes.setdefault(args[0], {})[args[1]] = args[2]
            return FakeResponse({"result": 1})
        if cmd == "HSETNX":
            h = self.hashes.setdefault(args[0], {})
            if args[1] in h:
                return FakeResponse({"result": 0})
            h[args[1]] = args[2]
            return FakeResponse({"result": 1})
        if cmd == "HGETALL":
            flat = []
            for k, v in self.hashes.get(args[0], {}).items():
                flat.extend([k, v])
            return FakeResponse({"result": flat})
        if cmd == "EVAL":
            if self.before_eval is not None:
                hook, self.before_eval = self.before_eval, None
                hook(self)
            _script, _numkeys, key, field, expected, new = args
            h = self.hashes.setdefault(key, {})
            if h.get(field) == expected:
                h[field] = new
                return FakeResponse({"result": 1})
            return FakeResponse({"result": 0})
        return FakeResponse({"error": f"ERR unknown command '{cmd}'"}, status_code=400)


@pytest.fixture
def fake_upstash():
    return FakeUpstash()


def _make_store(kind, tmp_path, fake_upstash):
    if kind == "memory":
        return MemoryOrderStore()
    if kind == "file":
        return FileOrderStore(tmp_path / "data")
    if kind == "sql":
        return SqlOrderStore(f"sqlite:///{tmp_path / 'orders.db'}")
    if kind == "upstash":
        return UpstashOrderStore("https://fake.upstash.io", "token", session=fake_upstash)
    raise ValueError(kind)


@pytest.fixture(params=["memory", "file", "sql", "upstash"])
def store(request, tmp_path, fake_upstash):
    """Every store implementation against the same contract."""
    return _make_store(request.param, tmp_path, fake_upstash)


@pytest.fixture
def memory_store():
    return MemoryOrderStore()


@pytest.fixture
def file_store(tmp_path):
    return FileOrderStore(tmp_path / "data")


def inject_malformed(store, fake_upstash=None):
    """저장소에 깨진 레코드 두 개(객체 아님, 필드 누락)를 직접 넣는다."""
    if store.name == "memory":
        store._data["junk"] = "not-an-object"
        store._data["partial"] = {"id": "partial", "status": "pending"}
    elif store.name == "file":
        data = json.loads(store.path.read_text(encoding="utf-8"))
        data["junk"] = "not-an-object"
        data["partial"] = {"id": "partial", "status": "pending"}
        store.path.write_text(json.dumps(data), encoding="utf-8")
    elif store.name == "upstash":
        h = fake_upstash.hashes.setdefault(store.key, {})
        h["junk"] = "{not json"
        h["partial"] = json.dumps({"id": "partial", "status": "pending"})
    elif store.name == "sql":
        session = store.Session()
        session.add(
            OrderRow(id="junk", tier="tier1", price=10, credits=100, status="refunded", created_at="x")
        )
        session.commit()
        session.close()
        return ["junk"]
    return ["junk", "partial"]


@pytest.fixture
def malformed_keys(store, fake_upstash):
    return inject_malformed(store, fake_upstash)


@pytest.fixture
def catalog():
    return TierCatalog()


@pytest.fixture
def lifecycle(memory_store, catalog):
    return OrderLifecycle(memory_store, catalog)


@pytest.fixture
def signer():
    return VoucherSigner(VOUCHER_SECRET, ttl_seconds=3600)


@pytest.fixture
def voucher_lifecycle(memory_store, catalog, signer):
    return OrderLifecycle(
        memory_store, catalog, resolver=VoucherTierResolver(catalog, signer), id_style="alnum"
    )


class ServerConfig:
    ADMIN_PASSWORD = ADMIN_SECRET
    CORS_ALLOWED_ORIGINS = ["http://127.0.0.1:8000", "http://localhost:8000"]


@pytest.fixture
def app(lifecycle):
    app = create_app(ServerConfig, lifecycle=lifecycle)
    app.config.update({"TESTING": True})
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def voucher_client(voucher_lifecycle):
    app = create_app(ServerConfig, lifecycle=voucher_lifecycle)
    app.config.update({"TESTING": True})
    return app.test_client()
