"""
Declarative table of entity types and reference fields.

The table lives in ``relationships.yaml`` next to this module and is the
single source the scanner, reconciler, dedupe, orphan cleanup and verifier
read their field lists from.
"""

from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import yaml

RELATIONSHIPS_YAML = Path(__file__).parent / "relationships.yaml"


class RelationshipConfigError(ValueError):
    """The relationship table is malformed."""


class EntityType(NamedTuple):
    name: str
    collection: str
    id_field: str = "id"
    name_field: Optional[str] = None
    id_prefix: Optional[int] = None


class ReferenceField(NamedTuple):
    path: str
    target: str
    optional: bool = False

    @property
    def top_level(self) -> str:
        return self.path.split(".", 1)[0]


class Relationship(NamedTuple):
    collection: str
    fields: Tuple[ReferenceField, ...]
    unique_key: Tuple[str, ...] = ()
    merge_field: Optional[str] = None
    total_field: Optional[str] = None
    orphan_check: bool = False
    id_field: str = "id"
    id_prefix: Optional[int] = None  # regenerate hex-shaped row ids with this prefix

    def field(self, path: str) -> ReferenceField:
        for ref in self.fields:
            if ref.path == path:
                return ref
        raise KeyError(path)


class RelationshipTable:
    def __init__(self, entities: Dict[str, EntityType], relationships: List[Relationship]):
        self.entities = entities
        self.relationships = relationships
        self._by_collection = {rel.collection: rel for rel in relationships}

    def entity(self, name: str) -> EntityType:
        try:
            return self.entities[name]
        except KeyError:
            raise RelationshipConfigError(f"Unknown entity type: {name}")

    def entity_for_collection(self, collection: str) -> Optional[EntityType]:
        for entity in self.entities.values():
            if entity.collection == collection:
                return entity
        return None

    def relationship(self, collection: str) -> Optional[Relationship]:
        return self._by_collection.get(collection)

    def id_owner(self, collection: str) -> Optional[EntityType]:
        """Who assigns string ids in ``collection``: its entity type, or a
        relationship with an ``id_prefix`` (as a pseudo entity type named
        after the collection). None when nobody does.
        """
        entity = self.entity_for_collection(collection)
        if entity is not None:
            return entity
        rel = self._by_collection.get(collection)
        if rel is None or rel.id_prefix is None:
            return None
        return EntityType(name=collection, collection=collection, id_field=rel.id_field, id_prefix=rel.id_prefix)

    def entity_collections(self) -> List[str]:
        return [entity.collection for entity in self.entities.values()]

    def collections(self) -> List[str]:
        """Every collection the table knows about, entity collections first."""
        names = self.entity_collections()
        for rel in self.relationships:
            if rel.collection not in names:
                names.append(rel.collection)
        return names

    def unique_relationships(self) -> List[Relationship]:
        return [rel for rel in self.relationships if rel.unique_key]

    def orphan_relationships(self) -> List[Relationship]:
        return [rel for rel in self.relationships if rel.orphan_check]

    def select(self, collection: Optional[str] = None) -> List[Relationship]:
        """Relationships to process, all of them or the one for ``collection``."""
        if collection is None:
            return list(self.relationships)
        rel = self._by_collection.get(collection)
        return [rel] if rel else []


def _parse_prefix(owner: str, prefix: Any) -> Optional[int]:
    if prefix is not None and (isinstance(prefix, bool) or not isinstance(prefix, int) or not 0 < prefix < 1000):
        raise RelationshipConfigError(f"{owner}: id_prefix must be an integer between 1 and 999")
    return prefix


def _parse_entities(raw: Any) -> Dict[str, EntityType]:
    if not isinstance(raw, dict) or not raw:
        raise RelationshipConfigError("'entities' must be a non-empty mapping")

    entities = {}
    collections = set()
    for name, entry in raw.items():
        if not isinstance(entry, dict) or not entry.get("collection"):
            raise RelationshipConfigError(f"Entity {name} needs a collection")
        prefix = _parse_prefix(f"Entity {name}", entry.get("id_prefix"))
        if entry["collection"] in collections:
            raise RelationshipConfigError(f"Collection {entry['collection']} is used by two entity types")
        collections.add(entry["collection"])
        entities[name] = EntityType(
            name=name,
            collection=entry["collection"],
            id_field=entry.get("id_field", "id"),
            name_field=entry.get("name_field"),
            id_prefix=prefix,
        )
    return entities


def _parse_relationship(raw: Any, entities: Dict[str, EntityType]) -> Relationship:
    if not isinstance(raw, dict) or not raw.get("collection"):
        raise RelationshipConfigError(f"Relationship entry without a collection: {raw!r}")
    collection = raw["collection"]

    fields = []
    seen = set()
    for entry in raw.get("fields") or []:
        if not isinstance(entry, dict):
            raise RelationshipConfigError(f"{collection}: field entries must be mappings")
        path = entry.get("field")
        target = entry.get("target")
        if not path or not target:
            raise RelationshipConfigError(f"{collection}: every field needs 'field' and 'target'")
        if target not in entities:
            raise RelationshipConfigError(f"{collection}.{path}: unknown target entity type {target}")
        if path in seen:
            raise RelationshipConfigError(f"{collection}.{path} is listed twice")
        seen.add(path)
        fields.append(ReferenceField(path=path, target=target, optional=bool(entry.get("optional", False))))
    if not fields:
        raise RelationshipConfigError(f"{collection}: no reference fields")

    unique_key = tuple(raw.get("unique_key") or ())
    for key in unique_key:
        if key not in seen or "." in key:
            raise RelationshipConfigError(f"{collection}: unique_key field {key} is not a top-level reference field")

    merge_field = raw.get("merge_field")
    total_field = raw.get("total_field")
    if total_field and not merge_field:
        raise RelationshipConfigError(f"{collection}: total_field requires merge_field")
    if merge_field and not unique_key:
        raise RelationshipConfigError(f"{collection}: merge_field requires unique_key")

    return Relationship(
        collection=collection,
        fields=tuple(fields),
        unique_key=unique_key,
        merge_field=merge_field,
        total_field=total_field,
        orphan_check=bool(raw.get("orphan_check", False)),
        id_field=raw.get("id_field", "id"),
        id_prefix=_parse_prefix(collection, raw.get("id_prefix")),
    )


def load_relationship_table(path: Optional[Path] = None) -> RelationshipTable:
    """Load and validate the relationship table (the packaged one by default)."""
    yaml_path = Path(path) if path else RELATIONSHIPS_YAML
    try:
        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except OSError as exc:
        raise RelationshipConfigError(f"Cannot read {yaml_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise RelationshipConfigError(f"Invalid YAML in {yaml_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise RelationshipConfigError(f"{yaml_path} must contain a mapping")

    entities = _parse_entities(data.get("entities"))
    relationships = []
    collections = set()
    for raw in data.get("relationships") or []:
        rel = _parse_relationship(raw, entities)
        if rel.id_prefix is not None and any(e.collection == rel.collection for e in entities.values()):
            raise RelationshipConfigError(f"{rel.collection}: set id_prefix on its entity type, not the relationship")
        if rel.collection in collections:
            raise RelationshipConfigError(f"Collection {rel.collection} has two relationship entries")
        collections.add(rel.collection)
        relationships.append(rel)

    return RelationshipTable(entities, relationships)
