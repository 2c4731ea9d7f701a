"""Shared helpers for tests.

Intended usage:
- build an in-memory document store with real ``bson.ObjectId`` internal ids
- seed it with a small uniform-distribution dataset
- inject write failures and count writes

These utilities keep tests independent of a running MongoDB server.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any

from bson import ObjectId

from uniform_reconcile.store import DocumentStore, StoreWriteError, is_hex_id

__all__ = [
    "InMemoryStore",
    "oid",
    "seed_uniform_data",
]


def oid(hex_id: str | None = None) -> ObjectId:
    """ObjectId from a short suffix ("1" -> 000...001) or a fresh one."""

    if hex_id is None:
        return ObjectId()
    return ObjectId(hex_id.rjust(24, "0"))


def _matches(document: dict[str, Any], filter: dict[str, Any] | None) -> bool:
    for key, condition in (filter or {}).items():
        actual = document.get(key)
        if isinstance(condition, dict) and "$in" in condition:
            if actual not in condition["$in"]:
                return False
        elif condition is None:
            if actual is not None:
                return False
        elif key not in document or actual != condition or type(actual) is not type(condition):
            return False
    return True


class InMemoryStore(DocumentStore):
    """Dict-of-lists store supporting the filters the package issues.

    Filters are equality on top-level fields (``None`` also matches a
    missing field, values must have the same type) and ``{"$in": [...]}``.
    """

    def __init__(self, collections: dict[str, list[dict[str, Any]]] | None = None):
        self.collections: dict[str, list[dict[str, Any]]] = {
            name: [copy.deepcopy(doc) for doc in docs] for name, docs in (collections or {}).items()
        }
        self.write_calls = 0
        self.bulk_failures: list[StoreWriteError] = []
        self.update_failures: list[StoreWriteError] = []
        self.delete_failures: list[StoreWriteError] = []
        self.insert_failures: list[StoreWriteError] = []
        self.before_bulk_update = None
        self.closed = False
        self.connected = False

    # helpers

    def add(self, collection: str, **fields: Any) -> dict[str, Any]:
        document = {"_id": fields.pop("_id", None) or ObjectId(), **fields}
        self.collections.setdefault(collection, []).append(document)
        return document

    def get(self, collection: str, doc_id: Any) -> dict[str, Any] | None:
        for document in self.collections.get(collection, []):
            if document["_id"] == doc_id:
                return document
        return None

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        return copy.deepcopy(self.collections)

    # DocumentStore

    def connect(self):
        self.connected = True
        return self

    def close(self):
        self.closed = True

    def is_internal_id(self, value):
        return isinstance(value, ObjectId)

    def to_internal_id(self, value):
        if isinstance(value, ObjectId):
            return value
        return ObjectId(value) if is_hex_id(value) else None

    def list_collections(self):
        return sorted(self.collections)

    def count(self, collection, filter=None):
        return sum(1 for doc in self.collections.get(collection, []) if _matches(doc, filter))

    def find(self, collection, filter=None, projection=None):
        matching = [doc for doc in self.collections.get(collection, []) if _matches(doc, filter)]
        for document in matching:
            result = copy.deepcopy(document)
            if projection:
                result = {key: value for key, value in result.items() if key == "_id" or projection.get(key)}
            yield result

    def bulk_update(self, collection, updates):
        self.write_calls += 1
        if self.before_bulk_update is not None:
            self.before_bulk_update(collection, updates)
        if self.bulk_failures:
            raise self.bulk_failures.pop(0)
        matched = modified = 0
        for filter, fields in updates:
            for document in self.collections.get(collection, []):
                if _matches(document, filter):
                    matched += 1
                    if any(document.get(key) != value for key, value in fields.items()):
                        modified += 1
                    document.update(copy.deepcopy(fields))
                    break
        return {"matched": matched, "modified": modified}

    def update_one(self, collection, filter, fields):
        self.write_calls += 1
        if self.update_failures:
            raise self.update_failures.pop(0)
        for document in self.collections.get(collection, []):
            if _matches(document, filter):
                document.update(copy.deepcopy(fields))
                return 1
        return 0

    def delete_one(self, collection, filter):
        self.write_calls += 1
        if self.delete_failures:
            raise self.delete_failures.pop(0)
        documents = self.collections.get(collection, [])
        for index, document in enumerate(documents):
            if _matches(document, filter):
                del documents[index]
                return 1
        return 0

    def insert_one(self, collection, document):
        self.write_calls += 1
        if self.insert_failures:
            raise self.insert_failures.pop(0)
        documents = self.collections.setdefault(collection, [])
        document = copy.deepcopy(document)
        document.setdefault("_id", ObjectId())
        if any(existing["_id"] == document["_id"] for existing in documents):
            raise StoreWriteError(f"E11000 duplicate key error collection: {collection}")
        documents.append(document)
        return document["_id"]


def seed_uniform_data(store: InMemoryStore) -> dict[str, Any]:
    """Small consistent dataset with a handful of legacy references.

    Returns the internal ids of the seeded entities by name.
    """

    ids = {
        "company": oid("c1"),
        "vendor": oid("a1"),
        "product": oid("b1"),
        "product2": oid("b2"),
        "location": oid("d1"),
        "employee": oid("e1"),
    }
    store.add("companies", _id=ids["company"], id="100001", name="Acme")
    store.add("vendors", _id=ids["vendor"], id="100002", name="Threads Ltd")
    store.add("uniforms", _id=ids["product"], id="200001", name="Shirt")
    store.add("uniforms", _id=ids["product2"], id="200002", name="Trousers")
    store.add("locations", _id=ids["location"], id="400001", name="Mumbai", companyId="100001")
    store.add("employees", _id=ids["employee"], id="300001", employeeId="EMP1",
              companyId=ids["company"], locationId="400001")

    # Legacy references: typed ObjectId and hex string
    store.add("productvendors", productId=ids["product"], vendorId="100002")
    store.add("productvendors", productId=str(ids["product2"]), vendorId=str(ids["vendor"]))
    store.add("vendorinventories", vendorId="100002", productId="200001",
              sizeInventory={"S": 1}, totalStock=1, updatedAt=datetime(2024, 1, 1))
    store.add("orders", id="ORD1", companyId="100001", employeeId="300001",
              items=[{"uniformId": str(ids["product"]), "quantity": 2}, {"uniformId": "200002", "quantity": 1}])
    return ids
