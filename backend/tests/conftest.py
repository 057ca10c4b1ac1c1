"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import os

# Skip MongoDB connection when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import pytest
from unittest.mock import patch
from pymongo.errors import DuplicateKeyError, PyMongoError
from pymongo import ReturnDocument

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from database import database
from auth import create_access_token

KIWIFY_ENV_VARS = (
    "KIWIFY_WEBHOOK_TOKEN",
    "KIWIFY_CHECKOUT_URLS",
    "KIWIFY_CHECKOUT_URL_STARTER",
    "KIWIFY_CHECKOUT_URL_PRO",
    "KIWIFY_CHECKOUT_URL_BUSINESS",
    "KIWIFY_PRODUCT_PLAN_MAP",
    "KIWIFY_API_BASE",
    "KIWIFY_API_KEY",
    "KIWIFY_ACCOUNT_ID",
    "SUBSCRIPTION_PERIOD_DAYS",
)


def _matches(doc, query):
    """Subset of Mongo query semantics used by the billing services."""
    for key, expected in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in expected):
                return False
            continue
        if key == "$nor":
            if any(_matches(doc, sub) for sub in expected):
                return False
            continue
        actual = doc.get(key)
        if isinstance(expected, dict):
            for op, operand in expected.items():
                if op == "$lte":
                    if actual is None or not actual <= operand:
                        return False
                elif op == "$in":
                    if actual not in operand:
                        return False
                else:
                    raise NotImplementedError(op)
        elif expected is None:
            if actual is not None:
                return False
        elif actual != expected:
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    doc.pop("_id", None)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        return {k: doc[k] for k in included if k in doc}
    return doc


class _Cursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs = sorted(
            self._docs, key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction == -1
        )
        return self

    def skip(self, n):
        self._docs = self._docs[n:]
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]


class InMemoryCollection:
    """Async collection fake. unique_key mimics a unique index."""

    def __init__(self, unique_key=None):
        self.docs = []
        self.unique_key = unique_key
        self.fail = False
        self.calls = []

    def _check(self, op):
        self.calls.append(op)
        if self.fail:
            raise PyMongoError(f"simulated {op} failure")

    def find(self, query=None, projection=None):
        self._check("find")
        return _Cursor([_project(d, projection) for d in self.docs if _matches(d, query or {})])

    async def find_one(self, query=None, projection=None):
        self._check("find_one")
        for d in self.docs:
            if _matches(d, query or {}):
                return _project(d, projection)
        return None

    async def count_documents(self, query):
        self._check("count_documents")
        return len([d for d in self.docs if _matches(d, query)])

    async def insert_one(self, doc):
        self._check("insert_one")
        self._assert_unique(doc)
        self.docs.append(copy.deepcopy(doc))

    def _assert_unique(self, doc):
        key = self.unique_key
        if key and any(d.get(key) == doc.get(key) for d in self.docs):
            raise DuplicateKeyError(f"E11000 duplicate key error {key}: {doc.get(key)}")

    async def find_one_and_update(
        self, query, update, upsert=False, projection=None, return_document=ReturnDocument.BEFORE
    ):
        self._check("find_one_and_update")
        for d in self.docs:
            if _matches(d, query):
                before = _project(d, projection)
                d.update(copy.deepcopy(update.get("$set", {})))
                after = _project(d, projection)
                return after if return_document == ReturnDocument.AFTER else before

        if not upsert:
            return None
        new_doc = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
        new_doc.update(copy.deepcopy(update.get("$setOnInsert", {})))
        new_doc.update(copy.deepcopy(update.get("$set", {})))
        self._assert_unique(new_doc)
        self.docs.append(new_doc)
        return _project(new_doc, projection) if return_document == ReturnDocument.AFTER else None


class InMemoryDb:
    def __init__(self):
        self.subscriptions = InMemoryCollection(unique_key="tenant_id")
        self.profiles = InMemoryCollection()
        self.tenant_members = InMemoryCollection()
        self.sales_config = InMemoryCollection(unique_key="tenant_id")
        self.transactions = InMemoryCollection()
        self.audit_logs = InMemoryCollection()
        self.billing_webhook_events = InMemoryCollection()

    def add_member(self, email, user_id, tenant_id):
        self.profiles.docs.append({"id": user_id, "email": email})
        self.tenant_members.docs.append({"user_id": user_id, "tenant_id": tenant_id})


@pytest.fixture(autouse=True)
def clean_kiwify_env(monkeypatch):
    for name in KIWIFY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def memory_db():
    """In-memory stand-in for the motor database, patched into every service."""
    db = InMemoryDb()
    with patch.object(database, "get_db", return_value=db):
        yield db


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


def auth_headers(tenant_id="tenant-1", role="OWNER", user_id="user-1"):
    token = create_access_token({"user_id": user_id, "tenant_id": tenant_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def owner_headers():
    return auth_headers()


@pytest.fixture
def viewer_headers():
    return auth_headers(role="VIEWER")


@pytest.fixture
def admin_headers():
    return auth_headers(tenant_id=None, role="ADMIN", user_id="admin-1")


@pytest.fixture
def make_headers():
    return auth_headers
