from __future__ import annotations

from datetime import datetime, timezone

from pytests.common import InMemoryStore
from uniform_reconcile.catalog import load_catalog
from uniform_reconcile.dedupe import dedupe_relationship, merge_quantities, plan_merge, updated_at
from uniform_reconcile.store import StoreWriteError

T1 = datetime(2024, 3, 1)
T2 = datetime(2024, 3, 2)


def _inventory_store():
    store = InMemoryStore()
    older = store.add("vendorinventories", vendorId="100002", productId="300045",
                      sizeInventory={"S": 5, "M": 3}, totalStock=8, updatedAt=T1)
    newer = store.add("vendorinventories", vendorId="100002", productId="300045",
                      sizeInventory={"M": 2, "L": 4}, totalStock=6, updatedAt=T2)
    other = store.add("vendorinventories", vendorId="100002", productId="300046",
                      sizeInventory={"S": 1}, totalStock=1, updatedAt=T1)
    return store, older, newer, other


def test_duplicates_are_merged_into_most_recent_row(table):
    store, older, newer, other = _inventory_store()

    stats = dedupe_relationship(store, table.relationship("vendorinventories"), execute=True)

    rows = store.collections["vendorinventories"]
    assert len(rows) == 2
    kept = store.get("vendorinventories", newer["_id"])
    assert kept["sizeInventory"] == {"S": 5, "M": 5, "L": 4}
    assert kept["totalStock"] == 14
    assert store.get("vendorinventories", older["_id"]) is None
    assert store.get("vendorinventories", other["_id"]) is not None
    assert stats["groups"] == 1
    assert stats["merged"] == 1
    assert stats["deleted"] == 1
    assert stats["errors"] == 0


def test_merge_keeps_every_quantity():
    documents = [
        {"sizeInventory": {"S": 5, "M": 3}},
        {"sizeInventory": {"M": 2, "L": 4, "XL": 0}},
        {"sizeInventory": {"L": 1.5}},
        {"sizeInventory": None},
    ]
    merged = merge_quantities(documents, "sizeInventory")
    for key in ("S", "M", "L", "XL"):
        expected = sum((doc["sizeInventory"] or {}).get(key, 0) for doc in documents)
        assert merged[key] == expected


def test_dry_run_reports_without_writing(table):
    store, _, newer, _ = _inventory_store()
    before = store.snapshot()

    stats = dedupe_relationship(store, table.relationship("vendorinventories"))

    assert store.snapshot() == before
    assert store.write_calls == 0
    assert stats["deleted"] == 1
    assert stats["samples"][0]["keep"] == str(newer["_id"])
    assert stats["samples"][0]["merge"]["sizeInventory"] == {"S": 5, "M": 5, "L": 4}


def test_nothing_deleted_when_merge_write_fails(table):
    store, older, newer, _ = _inventory_store()
    store.update_failures = [StoreWriteError("write concern error")]

    stats = dedupe_relationship(store, table.relationship("vendorinventories"), execute=True)

    assert len(store.collections["vendorinventories"]) == 3
    assert store.get("vendorinventories", newer["_id"])["sizeInventory"] == {"M": 2, "L": 4}
    assert stats["errors"] == 1
    assert stats["deleted"] == 0
    assert "nothing deleted" in stats["error_messages"][0]


def test_failed_delete_is_reported(table):
    store, older, _, _ = _inventory_store()
    store.delete_failures = [StoreWriteError("not primary")]

    stats = dedupe_relationship(store, table.relationship("vendorinventories"), execute=True)

    assert store.get("vendorinventories", older["_id"]) is not None
    assert stats["errors"] == 1
    assert "counted twice" in stats["error_messages"][0]


def test_rows_without_merge_field_keep_latest(table):
    store = InMemoryStore()
    first = store.add("productvendors", productId="200001", vendorId="100002", updatedAt="2024-01-01T00:00:00Z")
    second = store.add("productvendors", productId="200001", vendorId="100002", updatedAt="2024-02-01T00:00:00Z")
    store.add("productvendors", productId="200002", vendorId="100002")

    stats = dedupe_relationship(store, table.relationship("productvendors"), execute=True)

    assert store.get("productvendors", second["_id"]) is not None
    assert store.get("productvendors", first["_id"]) is None
    assert stats["merged"] == 0
    assert stats["deleted"] == 1


def test_legacy_and_string_keys_group_by_hex(table):
    store = InMemoryStore()
    hex_id = "507f1f77bcf86cd799439011"
    store.add("productvendors", productId=hex_id.upper(), vendorId="100002")
    store.add("productvendors", productId=hex_id, vendorId="100002")

    stats = dedupe_relationship(store, table.relationship("productvendors"))
    assert stats["groups"] == 1


def test_rows_with_empty_key_are_ignored(table):
    store = InMemoryStore()
    store.add("productvendors", productId=None, vendorId="100002")
    store.add("productvendors", productId=None, vendorId="100002")

    stats = dedupe_relationship(store, table.relationship("productvendors"), execute=True)
    assert stats["groups"] == 0
    assert len(store.collections["productvendors"]) == 2


def test_updated_at_handles_mixed_values():
    assert updated_at({"updatedAt": T2}) > updated_at({"updatedAt": T1})
    aware = datetime(2024, 3, 3, tzinfo=timezone.utc)
    assert updated_at({"updatedAt": aware}) > updated_at({"updatedAt": T2})
    assert updated_at({"updatedAt": "2024-03-04T00:00:00Z"}) > updated_at({"updatedAt": aware})
    assert updated_at({"updatedAt": "garbage"}) == datetime.min
    assert updated_at({}) == datetime.min


def test_plan_keeps_first_row_on_tie(table):
    rel = table.relationship("productvendors")
    documents = [{"_id": 1, "updatedAt": T1}, {"_id": 2, "updatedAt": T1}]
    plan = plan_merge(rel, documents)
    assert plan["keeper"]["_id"] == 1
    assert plan["merge"] == {}


def test_legacy_row_groups_with_its_migrated_twin_when_catalogs_are_given(table):
    store = InMemoryStore()
    vendor = store.add("vendors", id="100002")
    store.add("uniforms", id="200001")
    legacy = store.add("vendorinventories", vendorId=vendor["_id"], productId="200001",
                       sizeInventory={"S": 1}, totalStock=1, updatedAt=T1)
    migrated = store.add("vendorinventories", vendorId="100002", productId="200001",
                         sizeInventory={"M": 2}, totalStock=2, updatedAt=T2)
    rel = table.relationship("vendorinventories")

    assert dedupe_relationship(store, rel)["groups"] == 0

    catalogs = load_catalog(store, table)
    stats = dedupe_relationship(store, rel, execute=True, catalogs=catalogs)

    assert stats["groups"] == 1
    assert stats["deleted"] == 1
    assert store.get("vendorinventories", legacy["_id"]) is None
    kept = store.get("vendorinventories", migrated["_id"])
    assert kept["sizeInventory"] == {"M": 2, "S": 1}
    assert kept["totalStock"] == 3
