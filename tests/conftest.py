import copy
import hashlib
import hmac
import json
import operator
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from orderledger.core.cache import TaggedTTLCache
from orderledger.core.config import (
    AppConfig,
    DatabaseConfig,
    EnumerationConfig,
    LedgerConfig,
    SecurityConfig,
    set_config,
)
from orderledger.dependencies import build_services
from orderledger.main import app
from orderledger.models import ACCOUNTS, TRANSACTIONS, OrderStatus, OrderType, Transaction

HMAC_SECRET = "test_secret_key"
INTERNAL_SECRET = "test_internal_secret"
MONITORING_KEY = "test_monitoring_key"

BASE_TIME = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

_MISSING = object()


# In-memory stand-in for the parts of the motor API the ledger uses


def _compare(value, arg, op) -> bool:
    if value is _MISSING or value is None:
        return False
    try:
        return op(value, arg)
    except TypeError:
        return False


_COMPARISONS = {
    "$lt": operator.lt,
    "$lte": operator.le,
    "$gt": operator.gt,
    "$gte": operator.ge,
}


def matches(document: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, condition in query.items():
        if key == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
            continue
        if key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
            continue

        value = document.get(key, _MISSING)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, arg in condition.items():
                if op in _COMPARISONS:
                    ok = _compare(value, arg, _COMPARISONS[op])
                elif op == "$in":
                    ok = value is not _MISSING and value in arg
                elif op == "$nin":
                    ok = value is _MISSING or value not in arg
                elif op == "$ne":
                    ok = (arg is not None) if value is _MISSING else value != arg
                elif op == "$exists":
                    ok = (value is not _MISSING) == bool(arg)
                else:
                    raise NotImplementedError(op)
                if not ok:
                    return False
        elif value is _MISSING:
            if condition is not None:
                return False
        elif value != condition:
            return False
    return True


def project(document: Dict[str, Any], projection) -> Dict[str, Any]:
    if not projection:
        return dict(document)
    result = {k: document[k] for k, include in projection.items() if include and k in document}
    if projection.get("_id", 1) and "_id" in document:
        result["_id"] = document["_id"]
    return result


def apply_update(document: Dict[str, Any], update: Dict[str, Any], inserting: bool = False) -> None:
    for op, fields in update.items():
        if op == "$set":
            document.update(fields)
        elif op == "$inc":
            for key, amount in fields.items():
                document[key] = document.get(key, 0) + amount
        elif op == "$setOnInsert":
            if inserting:
                document.update(fields)
        elif op == "$unset":
            for key in fields:
                document.pop(key, None)
        else:
            raise NotImplementedError(op)


class FakeCursor:
    def __init__(self, collection: "FakeCollection", query, projection):
        self.collection = collection
        self.query = query or {}
        self.projection = projection
        self._sort = None
        self._skip = 0
        self._limit = 0

    def sort(self, keys):
        self._sort = list(keys)
        return self

    def skip(self, n):
        self._skip = n
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        self.collection._maybe_fail()
        self.collection.calls.append(
            ("find", {"filter": self.query, "sort": self._sort, "skip": self._skip, "limit": self._limit})
        )

        wanted = self._skip + self._limit if self._limit else None
        found = []
        for document in self.collection._ordered(self._sort):
            if matches(document, self.query):
                found.append(document)
                if wanted is not None and len(found) >= wanted:
                    break

        window = found[self._skip:]
        if self._limit:
            window = window[:self._limit]
        if length is not None:
            window = window[:length]
        return [project(document, self.projection) for document in window]


class FakeCollection:
    """Enough of AsyncIOMotorCollection for the ledger: single-document atomic updates"""

    def __init__(self, name: str, unique_fields=()):
        self.name = name
        self.unique_fields = set(unique_fields)
        self.documents: Dict[Any, Dict[str, Any]] = {}
        self.failures: List[Exception] = []
        self.hidden: Dict[Any, int] = {}
        self.calls: List[Any] = []
        self.indexes: List[Any] = []
        self._sorted_cache: Dict[Any, List[Dict[str, Any]]] = {}

    # test helpers

    def seed(self, documents) -> None:
        for document in documents:
            self.documents[document["_id"]] = dict(document)
        self._sorted_cache.clear()

    def fail_next(self, *errors: Exception) -> None:
        self.failures.extend(errors)

    def hide(self, record_id, lookups: int) -> None:
        """Make a document invisible to the next `lookups` keyed lookups."""
        self.hidden[record_id] = lookups

    # internals

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    def _ordered(self, sort):
        if not sort:
            return list(self.documents.values())
        key = tuple(sort)
        if key not in self._sorted_cache:
            ordered = list(self.documents.values())
            for field, direction in reversed(sort):
                ordered.sort(key=lambda d: d.get(field), reverse=direction < 0)
            self._sorted_cache[key] = ordered
        return self._sorted_cache[key]

    def _first_visible(self, query):
        for document in self.documents.values():
            if matches(document, query):
                remaining = self.hidden.get(document["_id"], 0)
                if remaining > 0:
                    self.hidden[document["_id"]] = remaining - 1
                    return None
                return document
        return None

    def _check_unique(self, document, ignore_id=None):
        if document["_id"] in self.documents and document["_id"] != ignore_id:
            raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: _id_")
        for field in self.unique_fields:
            if field not in document:
                continue
            for other in self.documents.values():
                if other["_id"] != ignore_id and other.get(field) == document[field]:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {field}")

    def _mutated(self):
        self._sorted_cache.clear()

    # motor API

    def find(self, query=None, projection=None):
        return FakeCursor(self, query, projection)

    async def find_one(self, query=None, projection=None):
        self._maybe_fail()
        self.calls.append(("find_one", {"filter": query}))
        document = self._first_visible(query or {})
        return project(document, projection) if document is not None else None

    async def insert_one(self, document):
        self._maybe_fail()
        document = dict(document)
        self._check_unique(document)
        self.documents[document["_id"]] = document
        self._mutated()
        return SimpleNamespace(inserted_id=document["_id"])

    def _upsert(self, query, update):
        document = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
        apply_update(document, update, inserting=True)
        self._check_unique(document)
        self.documents[document["_id"]] = document
        self._mutated()
        return document

    async def find_one_and_update(
        self, query, update, return_document=ReturnDocument.BEFORE, upsert=False, projection=None
    ):
        self._maybe_fail()
        self.calls.append(("find_one_and_update", {"filter": query, "update": update}))
        document = self._first_visible(query)
        if document is None:
            if not upsert:
                return None
            created = self._upsert(query, update)
            return project(created, projection) if return_document == ReturnDocument.AFTER else None

        before = copy.copy(document)
        apply_update(document, update)
        self._mutated()
        return project(document if return_document == ReturnDocument.AFTER else before, projection)

    async def update_one(self, query, update, upsert=False):
        self._maybe_fail()
        document = self._first_visible(query)
        if document is None:
            if upsert:
                created = self._upsert(query, update)
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=created["_id"])
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        before = dict(document)
        apply_update(document, update)
        self._mutated()
        return SimpleNamespace(matched_count=1, modified_count=int(before != document), upserted_id=None)

    async def delete_one(self, query):
        self._maybe_fail()
        document = self._first_visible(query)
        if document is None:
            return SimpleNamespace(deleted_count=0)
        del self.documents[document["_id"]]
        self._mutated()
        return SimpleNamespace(deleted_count=1)

    async def update_many(self, query, update):
        self._maybe_fail()
        matched = modified = 0
        for document in self.documents.values():
            if matches(document, query):
                matched += 1
                before = dict(document)
                apply_update(document, update)
                modified += int(before != document)
        self._mutated()
        return SimpleNamespace(matched_count=matched, modified_count=modified)

    async def create_index(self, keys, unique=False, name=None):
        self.indexes.append((keys, unique, name))
        if unique and len(keys) == 1:
            self.unique_fields.add(keys[0][0])
        return name


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {
            TRANSACTIONS: FakeCollection(TRANSACTIONS, unique_fields=("odrId",)),
        }

    def __getitem__(self, name) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


# Builders


def make_transaction(index: int = 0, **overrides) -> Transaction:
    """A ledger row with consistent amounts; createdAt steps back one second per index."""
    amount = overrides.pop("amount", 100000)
    status = overrides.pop("status", OrderStatus.PROCESSING)
    order_type = overrides.pop("order_type", OrderType.DEPOSIT)
    paid = overrides.pop("paid_amount", amount if status == OrderStatus.COMPLETED else 0)
    fields = dict(
        order_id=f"DP{index:06d}",
        order_type=order_type,
        status=status,
        amount=amount,
        paid_amount=paid,
        unpaid_amount=amount - paid,
        positive_account="ACC_MERCHANT",
        created_at=BASE_TIME - timedelta(seconds=index),
        updated_at=BASE_TIME - timedelta(seconds=index),
    )
    if order_type == OrderType.WITHDRAW:
        fields.update(order_id=f"WD{index:06d}", positive_account=None, negative_account="ACC_SOURCE")
    fields.update(overrides)
    return Transaction(**fields)


def seed_transactions(database: FakeDatabase, count: int, shared_timestamps: int = 1, **overrides) -> List[Transaction]:
    """
    Insert `count` rows straight into the fake store.

    With shared_timestamps=n, every n consecutive rows share one createdAt.
    """
    rows = []
    for index in range(count):
        row = make_transaction(index, **overrides)
        created = BASE_TIME - timedelta(seconds=index // shared_timestamps)
        rows.append(row.model_copy(update={"created_at": created, "updated_at": created}))
    database[TRANSACTIONS].seed(row.to_document() for row in rows)
    return rows


def seed_account(database: FakeDatabase, account_id: str, current: int = 0, available: int = 0) -> None:
    database[ACCOUNTS].seed([{
        "_id": account_id,
        "name": account_id,
        "currentBalance": current,
        "availableBalance": available,
        "updatedAt": BASE_TIME,
    }])


def make_config(**enumeration_overrides) -> AppConfig:
    return AppConfig(
        database=DatabaseConfig(url="mongodb://localhost:27017/orderledger_test"),
        security=SecurityConfig(
            hmac_secret_key=HMAC_SECRET,
            internal_api_secret=INTERNAL_SECRET,
            monitoring_api_key=MONITORING_KEY,
        ),
        ledger=LedgerConfig(
            store_retry_base_delay_ms=0,
            store_retry_max_delay_ms=0,
            expiry_pause_ms=0,
        ),
        enumeration=EnumerationConfig(export_batch_delay_ms=0, **enumeration_overrides),
    )


def generate_signature(payload: dict, secret: str, timestamp: int = None):
    """Sign a payload the way a settlement portal does; returns (body, signature, timestamp)."""
    if timestamp is None:
        timestamp = int(time.time())

    body = json.dumps(payload, separators=(",", ":")).encode()
    signature = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return body, signature, timestamp


def signed_headers(signature: str, timestamp: int) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-Signature": signature,
        "X-Timestamp": str(timestamp),
    }


# Fixtures


@pytest.fixture
def database():
    return FakeDatabase()


@pytest.fixture
def config():
    config = make_config()
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def cache():
    return TaggedTTLCache(ttl_seconds=30)


@pytest.fixture
def services(database, config, cache):
    return build_services(database, config, cache=cache)


@pytest.fixture
def client(services):
    """TestClient without lifespan: services are wired onto app.state directly"""
    app.state.services = services
    yield TestClient(app)
    app.state.services = None


@pytest.fixture
def internal_headers():
    return {"Authorization": f"Bearer {INTERNAL_SECRET}"}
