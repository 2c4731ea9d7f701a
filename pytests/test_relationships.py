from __future__ import annotations

import pytest

from uniform_reconcile.relationships import RelationshipConfigError, load_relationship_table


def test_packaged_table_covers_known_relationships(table):
    inventory = table.relationship("vendorinventories")
    assert inventory is not None
    assert inventory.unique_key == ("vendorId", "productId")
    assert inventory.merge_field == "sizeInventory"
    assert inventory.total_field == "totalStock"
    assert inventory.orphan_check is True

    assert table.relationship("productvendors").field("productId").target == "Product"
    assert table.relationship("orders").field("items.uniformId").top_level == "items"
    assert table.relationship("orders").field("site_admin_approved_by").optional is True


def test_every_target_is_a_known_entity(table):
    for rel in table.relationships:
        for ref in rel.fields:
            assert ref.target in table.entities


def test_entity_collections_come_first(table):
    names = table.collections()
    entity_names = table.entity_collections()
    assert names[: len(entity_names)] == entity_names
    assert "vendorinventories" in names
    assert len(names) == len(set(names))


def test_entity_for_collection(table):
    assert table.entity_for_collection("uniforms").name == "Product"
    assert table.entity_for_collection("vendorinventories") is None


def test_select_single_collection(table):
    assert [rel.collection for rel in table.select("grns")] == ["grns"]
    assert table.select("companies") == []
    assert len(table.select()) == len(table.relationships)


def _write(tmp_path, text):
    path = tmp_path / "relationships.yaml"
    path.write_text(text)
    return path


def test_unknown_target_is_rejected(tmp_path):
    path = _write(tmp_path, """
entities:
  Company: {collection: companies}
relationships:
  - collection: employees
    fields:
      - {field: companyId, target: Firm}
""")
    with pytest.raises(RelationshipConfigError, match="unknown target entity type Firm"):
        load_relationship_table(path)


def test_unique_key_must_be_a_reference_field(tmp_path):
    path = _write(tmp_path, """
entities:
  Company: {collection: companies}
relationships:
  - collection: companyadmins
    fields:
      - {field: companyId, target: Company}
    unique_key: [companyId, employeeId]
""")
    with pytest.raises(RelationshipConfigError, match="unique_key field employeeId"):
        load_relationship_table(path)


def test_duplicate_field_is_rejected(tmp_path):
    path = _write(tmp_path, """
entities:
  Company: {collection: companies}
relationships:
  - collection: employees
    fields:
      - {field: companyId, target: Company}
      - {field: companyId, target: Company, optional: true}
""")
    with pytest.raises(RelationshipConfigError, match="listed twice"):
        load_relationship_table(path)


def test_invalid_yaml_is_a_config_error(tmp_path):
    path = _write(tmp_path, "entities: [unclosed")
    with pytest.raises(RelationshipConfigError, match="Invalid YAML"):
        load_relationship_table(path)


def test_missing_file_is_a_config_error(tmp_path):
    with pytest.raises(RelationshipConfigError, match="Cannot read"):
        load_relationship_table(tmp_path / "nope.yaml")


def test_id_owner(table):
    assert table.id_owner("uniforms").name == "Product"
    assert table.id_owner("orders").id_prefix is None
    owner = table.id_owner("productvendors")
    assert (owner.collection, owner.id_field, owner.id_prefix) == ("productvendors", "id", 900)
    assert table.id_owner("locationadmins").id_prefix == 800
    assert table.id_owner("shipments").id_prefix == 700
    assert table.id_owner("invoices") is None


def test_row_id_prefix_on_entity_collection_is_rejected(tmp_path):
    path = _write(tmp_path, """
entities:
  Company: {collection: companies}
relationships:
  - collection: companies
    fields:
      - {field: parentId, target: Company, optional: true}
    id_prefix: 500
""")
    with pytest.raises(RelationshipConfigError, match="set id_prefix on its entity type"):
        load_relationship_table(path)


def test_invalid_row_id_prefix_is_rejected(tmp_path):
    path = _write(tmp_path, """
entities:
  Company: {collection: companies}
relationships:
  - collection: companyadmins
    fields:
      - {field: companyId, target: Company}
    id_prefix: 1000
""")
    with pytest.raises(RelationshipConfigError, match="id_prefix must be an integer"):
        load_relationship_table(path)
