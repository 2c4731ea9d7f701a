from __future__ import annotations

from pytests.common import InMemoryStore, oid
from uniform_reconcile.catalog import load_catalog, load_entity_catalog
from uniform_reconcile.store import ReadOnlyStore


def test_loads_string_ids_and_internal_id_map(seeded_store, table):
    catalogs = load_catalog(seeded_store, table)
    products = catalogs["Product"]

    assert set(products.valid_ids) == {"200001", "200002"}
    assert products.by_string_id["200001"]["name"] == "Shirt"
    assert products.by_string_id["200001"]["internal_id"] == seeded_store.ids["product"]
    assert products.resolve(seeded_store.ids["product"]) == "200001"
    assert "200002" in products
    assert "999999" not in products


def test_resolve_accepts_hex_strings_in_any_case(catalogs, seeded_store):
    hex_id = str(seeded_store.ids["vendor"]).upper()
    assert catalogs["Vendor"].resolve(hex_id) == "100002"
    assert catalogs["Vendor"].resolve("not-an-id") is None
    assert catalogs["Vendor"].resolve(None) is None
    assert catalogs["Vendor"].resolve(oid("ffff")) is None


def test_entities_without_string_id_are_skipped(table):
    store = InMemoryStore()
    store.add("companies", id="100001", name="Acme")
    store.add("companies", name="No id yet")
    store.add("companies", id="", name="Empty id")
    store.add("companies", id=100003, name="Numeric id")

    catalog = load_entity_catalog(store, table.entity("Company"))

    assert list(catalog.valid_ids) == ["100001"]
    assert catalog.missing_string_id == 3
    assert catalog.total == 4


def test_duplicate_string_ids_are_reported(table):
    store = InMemoryStore()
    first = store.add("vendors", id="100002", name="A")
    second = store.add("vendors", id="100002", name="B")

    catalog = load_entity_catalog(store, table.entity("Vendor"))

    assert catalog.by_string_id["100002"]["internal_id"] == first["_id"]
    assert catalog.duplicates == {"100002": [str(second["_id"])]}
    assert catalog.resolve(second["_id"]) == "100002"
    assert catalog.summary()["duplicate_string_ids"] == ["100002"]


def test_next_string_id_uses_prefix_and_max(table):
    store = InMemoryStore()
    catalog = load_entity_catalog(store, table.entity("Company"))
    assert catalog.next_string_id() == "100001"

    store.add("companies", id="100007")
    catalog = load_entity_catalog(store, table.entity("Company"))
    assert catalog.next_string_id() == "100008"

    branches = load_entity_catalog(store, table.entity("Branch"))
    assert branches.next_string_id() is None


def test_loading_is_read_only(seeded_store, table):
    load_catalog(ReadOnlyStore(seeded_store), table)
    assert seeded_store.write_calls == 0


def test_hex_shaped_string_ids_are_not_valid_ids(table):
    store = InMemoryStore()
    product = store.add("uniforms", id="200001")
    copied = store.add("uniforms")
    copied["id"] = str(copied["_id"])

    catalog = load_entity_catalog(store, table.entity("Product"))

    assert list(catalog.valid_ids) == ["200001"]
    assert catalog.hex_string_id == 1
    assert catalog.resolve(copied["_id"]) is None
    assert catalog.resolve(product["_id"]) == "200001"
    assert catalog.summary()["hex_string_id"] == 1
