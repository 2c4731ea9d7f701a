"""
Duplicate merge for compound-unique relationship collections.

For every group of rows sharing a unique key the most recently updated
row is kept, quantity sub-fields of the others are summed into it and the
others are deleted. Per group the sequence is: re-read, compute merge,
write merge (conditional), delete losers (conditional). Losers are never
deleted when the merge write did not apply.
"""

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from tqdm import tqdm

from .catalog import EntityCatalog
from .config import SAMPLE_LIMIT
from .relationships import Relationship
from .store import DocumentStore, StoreWriteError, is_hex_id

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _key_part(store: DocumentStore, value: Any, catalog: Optional[EntityCatalog] = None) -> Optional[str]:
    if value is None or value == "":
        return None
    if store.is_internal_id(value) or is_hex_id(value):
        resolved = catalog.resolve(value) if catalog is not None else None
        return resolved or str(value).lower()
    return str(value)


def group_key(
    store: DocumentStore,
    relationship: Relationship,
    document: Dict[str, Any],
    catalogs: Optional[Dict[str, EntityCatalog]] = None,
) -> Optional[Tuple[str, ...]]:
    """Unique-key tuple of a row, None if any key field is empty.

    With ``catalogs``, internal ids and hex strings are replaced by the
    string id they resolve to, so a legacy row and its migrated twin group
    together.
    """
    parts = tuple(
        _key_part(
            store,
            document.get(field),
            catalogs.get(relationship.field(field).target) if catalogs else None,
        )
        for field in relationship.unique_key
    )
    if any(part is None for part in parts):
        return None
    return parts


def updated_at(document: Dict[str, Any]) -> datetime:
    """``updatedAt`` as a naive UTC datetime; rows without one sort last."""
    value = document.get("updatedAt")
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return datetime.min
    if not isinstance(value, datetime):
        return datetime.min
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def merge_quantities(documents: List[Dict[str, Any]], merge_field: str) -> Dict[str, Any]:
    """Sum numeric sub-fields of ``merge_field`` across ``documents``.

    Non-numeric entries are taken from the first document that has them.
    """
    merged: Dict[str, Any] = {}
    for document in documents:
        values = document.get(merge_field)
        if not isinstance(values, dict):
            continue
        for key, quantity in values.items():
            if _is_number(quantity):
                current = merged.get(key, 0)
                merged[key] = (current if _is_number(current) else 0) + quantity
            elif key not in merged:
                merged[key] = quantity
    return merged


def plan_merge(relationship: Relationship, documents: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Pick the keeper of a duplicate group and compute the merged fields."""
    ordered = sorted(documents, key=updated_at, reverse=True)
    keeper, losers = ordered[0], ordered[1:]
    plan = {"keeper": keeper, "losers": losers, "merge": {}, "merge_filter": {"_id": keeper["_id"]}}

    merge_field = relationship.merge_field
    if merge_field:
        merged = merge_quantities(ordered, merge_field)
        if merged != (keeper.get(merge_field) or {}):
            plan["merge"][merge_field] = merged
        if relationship.total_field:
            total = sum(value for value in merged.values() if _is_number(value))
            if total != keeper.get(relationship.total_field):
                plan["merge"][relationship.total_field] = total
        plan["merge_filter"][merge_field] = keeper.get(merge_field)
    return plan


def _delete_filter(relationship: Relationship, document: Dict[str, Any]) -> Dict[str, Any]:
    delete_filter = {"_id": document["_id"]}
    for field in relationship.unique_key:
        delete_filter[field] = document.get(field)
    if relationship.merge_field:
        delete_filter[relationship.merge_field] = document.get(relationship.merge_field)
    return delete_filter


def find_duplicate_groups(
    store: DocumentStore,
    relationship: Relationship,
    stop_event: Optional[threading.Event] = None,
    catalogs: Optional[Dict[str, EntityCatalog]] = None,
) -> Tuple["OrderedDict[Tuple[str, ...], List[Dict[str, Any]]]", int, bool]:
    """Group rows by unique key. Returns ``(groups with 2+ rows, rows scanned, interrupted)``."""
    projection = {"_id": 1, "updatedAt": 1}
    for field in relationship.unique_key:
        projection[field] = 1
    if relationship.merge_field:
        projection[relationship.merge_field] = 1
    if relationship.total_field:
        projection[relationship.total_field] = 1

    groups: "OrderedDict[Tuple[str, ...], List[Dict[str, Any]]]" = OrderedDict()
    scanned = 0
    interrupted = False
    cursor = store.find(relationship.collection, {}, projection)
    for document in tqdm(cursor, desc=f"Grouping {relationship.collection}", unit="doc", leave=False, disable=None):
        if stop_event is not None and stop_event.is_set():
            interrupted = True
            break
        scanned += 1
        key = group_key(store, relationship, document, catalogs)
        if key is not None:
            groups.setdefault(key, []).append(document)

    duplicates = OrderedDict((key, docs) for key, docs in groups.items() if len(docs) > 1)
    return duplicates, scanned, interrupted


def dedupe_relationship(
    store: DocumentStore,
    relationship: Relationship,
    execute: bool = False,
    sample_limit: int = SAMPLE_LIMIT,
    stop_event: Optional[threading.Event] = None,
    catalogs: Optional[Dict[str, EntityCatalog]] = None,
) -> Dict[str, Any]:
    """Merge duplicate rows of one compound-unique relationship collection.

    In dry-run mode ``merged``/``deleted`` count what would happen. Pass
    ``catalogs`` to group legacy key values with their string-id form.
    """
    collection = relationship.collection
    stats = {
        "collection": collection,
        "documents": 0,
        "groups": 0,
        "duplicates": 0,
        "merged": 0,
        "deleted": 0,
        "conflicts": 0,
        "errors": 0,
        "error_messages": [],
        "samples": [],
        "interrupted": False,
    }
    if not relationship.unique_key:
        return stats

    groups, stats["documents"], stats["interrupted"] = find_duplicate_groups(store, relationship, stop_event, catalogs)
    if stats["interrupted"]:
        logger.warning("%s: grouping interrupted, no duplicates processed", collection)
        return stats

    for key, documents in groups.items():
        if stop_event is not None and stop_event.is_set():
            stats["interrupted"] = True
            logger.warning("%s: stopped with %d group(s) left", collection, len(groups) - stats["groups"])
            break
        stats["groups"] += 1

        if execute:
            # Work from the current state, rows may have changed since grouping
            ids = [document["_id"] for document in documents]
            documents = [
                document for document in store.find(collection, {"_id": {"$in": ids}})
                if group_key(store, relationship, document, catalogs) == key
            ]
            if len(documents) < 2:
                stats["conflicts"] += 1
                logger.info("%s %s: no longer duplicated, skipped", collection, key)
                continue

        plan = plan_merge(relationship, documents)
        stats["duplicates"] += len(plan["losers"])
        if len(stats["samples"]) < sample_limit:
            stats["samples"].append({
                "key": list(key),
                "keep": str(plan["keeper"]["_id"]),
                "delete": [str(document["_id"]) for document in plan["losers"]],
                "merge": dict(plan["merge"]),
            })

        if not execute:
            stats["merged"] += 1 if plan["merge"] else 0
            stats["deleted"] += len(plan["losers"])
            continue

        if plan["merge"]:
            try:
                matched = store.update_one(collection, plan["merge_filter"], plan["merge"])
            except StoreWriteError as exc:
                stats["errors"] += 1
                stats["error_messages"].append(f"{collection} {key}: merge write failed, nothing deleted: {exc}")
                logger.error(stats["error_messages"][-1])
                continue
            if not matched:
                stats["conflicts"] += 1
                logger.warning("%s %s: kept row changed during merge, nothing deleted", collection, key)
                continue
            stats["merged"] += 1

        for loser in plan["losers"]:
            try:
                deleted = store.delete_one(collection, _delete_filter(relationship, loser))
            except StoreWriteError as exc:
                deleted = 0
                reason = str(exc)
            else:
                reason = "row changed after merge"
            if deleted:
                stats["deleted"] += 1
                continue
            stats["errors"] += 1
            message = f"{collection} {key}: duplicate {loser['_id']} not deleted ({reason})"
            if plan["merge"]:
                message += ", its quantities are now counted twice"
            stats["error_messages"].append(message)
            logger.error(stats["error_messages"][-1])

    if stats["groups"]:
        logger.info("%s: %d duplicate group(s), %d row(s) %s",
                    collection, stats["groups"], stats["deleted"], "deleted" if execute else "to delete")
    return stats
