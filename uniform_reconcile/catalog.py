"""
Reference catalog: the valid string ids of each entity type.

Each ``EntityCatalog`` maps string id -> minimal projection of the entity
and internal id -> string id, so legacy references can be resolved without
a lookup per document.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from tqdm import tqdm

from .relationships import EntityType, RelationshipTable
from .store import DocumentStore, is_hex_id

logger = logging.getLogger(__name__)


class EntityCatalog:
    def __init__(self, entity_type: EntityType):
        self.entity_type = entity_type
        self.by_string_id: Dict[str, Dict[str, Any]] = {}
        self.by_internal_id: Dict[str, str] = {}  # lowercase hex -> string id
        self.missing_string_id = 0
        self.hex_string_id = 0  # string id that is just an internal-id hex
        self.duplicates: Dict[str, List[str]] = {}  # string id -> internal ids of the extra copies
        self.total = 0

    @property
    def valid_ids(self):
        return self.by_string_id.keys()

    def __contains__(self, string_id: Any) -> bool:
        return isinstance(string_id, str) and string_id in self.by_string_id

    def __len__(self) -> int:
        return len(self.by_string_id)

    def add(self, internal_id: Any, string_id: str, name: Optional[str] = None) -> None:
        hex_id = str(internal_id).lower()
        if string_id in self.by_string_id:
            self.duplicates.setdefault(string_id, []).append(hex_id)
        else:
            self.by_string_id[string_id] = {
                "internal_id": internal_id,
                "string_id": string_id,
                "name": name,
            }
        self.by_internal_id[hex_id] = string_id

    def resolve(self, value: Any) -> Optional[str]:
        """String id of the entity whose internal id is ``value`` (typed or hex), else None."""
        if value is None:
            return None
        key = str(value)
        if not is_hex_id(key):
            return None
        return self.by_internal_id.get(key.lower())

    def max_numeric_id(self) -> int:
        numeric = [int(sid) for sid in self.by_string_id if sid.isdigit()]
        return max(numeric) if numeric else 0

    def next_string_id(self) -> Optional[str]:
        """Next free 6-digit id for this entity type, None without an id prefix."""
        prefix = self.entity_type.id_prefix
        if prefix is None:
            return None
        next_id = max(self.max_numeric_id(), prefix * 1000) + 1
        return str(next_id).zfill(6)

    def summary(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type.name,
            "collection": self.entity_type.collection,
            "documents": self.total,
            "string_ids": len(self.by_string_id),
            "missing_string_id": self.missing_string_id,
            "hex_string_id": self.hex_string_id,
            "duplicate_string_ids": sorted(self.duplicates),
        }


def load_entity_catalog(store: DocumentStore, entity_type: EntityType) -> EntityCatalog:
    """Load one entity type.

    Documents without a usable string id (absent, blank, not a string or a
    24-hex copy of the internal id) are counted and skipped.
    """
    catalog = EntityCatalog(entity_type)
    projection = {"_id": 1, entity_type.id_field: 1}
    if entity_type.name_field:
        projection[entity_type.name_field] = 1

    cursor = store.find(entity_type.collection, {}, projection)
    for document in tqdm(cursor, desc=f"Loading {entity_type.collection}", unit="doc", leave=False, disable=None):
        catalog.total += 1
        string_id = document.get(entity_type.id_field)
        if not isinstance(string_id, str) or not string_id.strip():
            catalog.missing_string_id += 1
            continue
        if is_hex_id(string_id):
            # Left behind by an `id = str(_id)` backfill, regenerated by migrate
            catalog.hex_string_id += 1
            continue
        name = document.get(entity_type.name_field) if entity_type.name_field else None
        catalog.add(document["_id"], string_id, name)

    logger.info(
        "Loaded %d %s ids from %s (%d without string id, %d hex-shaped, %d duplicated)",
        len(catalog), entity_type.name, entity_type.collection,
        catalog.missing_string_id, catalog.hex_string_id, len(catalog.duplicates),
    )
    if catalog.duplicates:
        logger.warning("Duplicate %s string ids: %s", entity_type.name, sorted(catalog.duplicates)[:20])
    return catalog


def load_catalog(
    store: DocumentStore,
    table: RelationshipTable,
    entity_types: Optional[Iterable[str]] = None,
) -> Dict[str, EntityCatalog]:
    """Load catalogs for ``entity_types`` (all entity types in the table by default)."""
    names = list(entity_types) if entity_types is not None else list(table.entities)
    return {name: load_entity_catalog(store, table.entity(name)) for name in names}
