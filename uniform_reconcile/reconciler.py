"""
Reconciler: rewrite legacy references to string ids.

Runs in two phases over the selected collections:

1. string-id backfill for entity documents that have none or only a
   hex copy of their internal id, plus regeneration of hex-shaped row ids
   in relationship collections that declare an ``id_prefix``
2. rewrite of ``legacy-internal-id`` / ``legacy-hex-string`` reference
   values to the string id of the entity they point at

Every write is a single-document ``$set`` filtered on ``_id`` plus the
values read during planning, so a document changed by someone else in the
meantime is skipped instead of overwritten. Dry-run (the default) plans
the exact same writes and applies none of them.
"""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from .catalog import EntityCatalog, load_entity_catalog
from .config import ARRAY_SCAN_LIMIT, BATCH_SIZE, WRITE_RETRIES
from .relationships import EntityType, RelationshipTable
from .scanner import LEGACY_CATEGORIES, LEGACY_INTERNAL_ID, classify_document, describe
from .store import DocumentStore, StoreWriteError, is_hex_id

logger = logging.getLogger(__name__)

MAX_REPORTED_WRITES = 1000  # per collection, in the returned summary


def _new_stats(collection: str) -> Dict[str, Any]:
    return {
        "collection": collection,
        "total": 0,
        "needs_id_field": 0,
        "needs_relationship_update": 0,
        "updated": 0,
        "conflicts": 0,
        "errors": 0,
        "error_messages": [],
        "writes": [],
        "manual_review": [],
        "interrupted": False,
    }


def _set_path(container: Any, parts: List[str], new_value: Any) -> None:
    for part in parts[:-1]:
        container = container[int(part)] if isinstance(container, list) else container[part]
    last = parts[-1]
    if isinstance(container, list):
        container[int(last)] = new_value
    else:
        container[last] = new_value


def _manual_review(collection: str, doc_id: Any, path: str, value: Any, reason: str) -> Dict[str, Any]:
    return {
        "collection": collection,
        "doc_id": str(doc_id),
        "path": path,
        "value": describe(value),
        "reason": reason,
    }


def plan_id_backfill(
    store: DocumentStore,
    entity_type: EntityType,
    catalog: EntityCatalog,
    stats: Dict[str, Any],
    stop_event: Optional[threading.Event] = None,
    fill_missing: bool = True,
) -> List[Dict[str, Any]]:
    """Plan string-id assignment for documents without a usable one.

    A hex-shaped id (a copy of the internal id) is always regenerated; an
    absent or blank one only when ``fill_missing`` is set. New ids are
    registered in ``catalog`` as they are planned so later references to
    these entities resolve in the same run.
    """
    writes = []
    id_field = entity_type.id_field
    cursor = store.find(entity_type.collection, {}, {"_id": 1, id_field: 1})
    for document in tqdm(cursor, desc=f"Checking {entity_type.collection} ids", unit="doc", leave=False, disable=None):
        if stop_event is not None and stop_event.is_set():
            stats["interrupted"] = True
            break
        current = document.get(id_field)
        hex_shaped = is_hex_id(current)
        if isinstance(current, str) and current.strip() and not hex_shaped:
            continue
        if not fill_missing and not hex_shaped:
            continue

        stats["needs_id_field"] += 1
        new_id = catalog.next_string_id()
        if new_id is None:
            stats["manual_review"].append(_manual_review(
                entity_type.collection, document["_id"], id_field, current,
                f"{'hex-shaped' if hex_shaped else 'no'} string id and no id prefix configured for {entity_type.name}",
            ))
            continue
        catalog.add(document["_id"], new_id)
        writes.append({
            "doc_id": document["_id"],
            "filter": {"_id": document["_id"], id_field: current},
            "set": {id_field: new_id},
            "changes": [{"path": id_field, "old": describe(current), "new": new_id}],
        })
    return writes


def plan_reference_rewrites(
    store: DocumentStore,
    table: RelationshipTable,
    collection: str,
    catalogs: Dict[str, EntityCatalog],
    stats: Dict[str, Any],
    array_limit: int = ARRAY_SCAN_LIMIT,
    stop_event: Optional[threading.Event] = None,
) -> List[Dict[str, Any]]:
    """Plan rewrites of legacy reference values in ``collection``.

    Unresolvable typed internal ids fall back to their hex string and are
    flagged for manual review; unresolvable hex strings are only flagged.
    """
    rel = table.relationship(collection)
    if rel is None:
        return []

    writes = []
    projection = {ref.top_level: 1 for ref in rel.fields}
    stats["total"] = store.count(collection)
    cursor = store.find(collection, {}, projection)
    for document in tqdm(cursor, total=stats["total"], desc=f"Planning {collection}", unit="doc", leave=False, disable=None):
        if stop_event is not None and stop_event.is_set():
            stats["interrupted"] = True
            logger.warning("Planning of %s interrupted", collection)
            break

        doc_id = document["_id"]
        findings, _ = classify_document(store, document, rel.fields, catalogs, array_limit)
        new_values: Dict[str, Any] = {}
        changes = []
        for finding in findings:
            if finding["category"] not in LEGACY_CATEGORIES:
                continue
            ref = finding["field"]
            value = finding["value"]
            resolved = catalogs[ref.target].resolve(value)
            if resolved is None:
                stats["manual_review"].append(_manual_review(
                    collection, doc_id, finding["path"], value,
                    f"references no existing {ref.target}",
                ))
                if finding["category"] != LEGACY_INTERNAL_ID:
                    continue
                resolved = str(value)
                logger.warning("%s %s: %s %s not found, keeping %s as string",
                               collection, doc_id, ref.target, value, resolved)

            top = ref.top_level
            if top not in new_values:
                new_values[top] = copy.deepcopy(document.get(top))
            if finding["path"] == top:
                new_values[top] = resolved
            else:
                _set_path(new_values[top], finding["path"].split(".")[1:], resolved)
            changes.append({"path": finding["path"], "old": describe(value), "new": resolved})

        if not changes:
            continue
        stats["needs_relationship_update"] += 1
        write_filter = {"_id": doc_id}
        for top in new_values:
            write_filter[top] = document.get(top)
        writes.append({"doc_id": doc_id, "filter": write_filter, "set": new_values, "changes": changes})
    return writes


def apply_writes(
    store: DocumentStore,
    collection: str,
    writes: List[Dict[str, Any]],
    stats: Dict[str, Any],
    batch_size: int = BATCH_SIZE,
    retries: int = WRITE_RETRIES,
    stop_event: Optional[threading.Event] = None,
) -> None:
    """Apply planned writes in unordered batches.

    A failed batch is retried up to ``retries`` times (every write is
    conditional, so a retry never reapplies a change). Batches that still
    fail are counted as errors and the run moves on. ``stop_event`` is
    checked between batches only.
    """
    for start in range(0, len(writes), batch_size):
        if stop_event is not None and stop_event.is_set():
            stats["interrupted"] = True
            logger.warning("%s: stopped before batch at offset %d", collection, start)
            break

        batch = writes[start:start + batch_size]
        updates = [(write["filter"], write["set"]) for write in batch]
        applied = 0
        result = None
        last_error = None
        for attempt in range(retries + 1):
            try:
                result = store.bulk_update(collection, updates)
                break
            except StoreWriteError as exc:
                applied += exc.modified
                logger.warning("%s: batch at offset %d failed (attempt %d/%d): %s",
                               collection, start, attempt + 1, retries + 1, exc)
                last_error = exc

        if result is None:
            failed = len(batch) - applied
            stats["updated"] += applied
            stats["errors"] += failed
            stats["error_messages"].append(
                f"{collection}: batch at offset {start} failed after {retries + 1} attempt(s), "
                f"{failed} document(s) not written: {last_error}"
            )
            logger.error(stats["error_messages"][-1])
            continue

        stats["updated"] += applied + result["modified"]
        conflicts = len(batch) - applied - result["matched"]
        if conflicts > 0:
            stats["conflicts"] += conflicts
            logger.warning("%s: %d document(s) changed since planning and were skipped", collection, conflicts)


def _finish_plan(stats: Dict[str, Any], writes: List[Dict[str, Any]], execute: bool) -> None:
    for write in writes[:MAX_REPORTED_WRITES - len(stats["writes"])]:
        stats["writes"].append({
            "doc_id": str(write["doc_id"]),
            "changes": write["changes"],
        })
    if not execute:
        stats["updated"] += len(writes)


def reconcile(
    store: DocumentStore,
    table: RelationshipTable,
    catalogs: Dict[str, EntityCatalog],
    collection: Optional[str] = None,
    execute: bool = False,
    batch_size: int = BATCH_SIZE,
    retries: int = WRITE_RETRIES,
    array_limit: int = ARRAY_SCAN_LIMIT,
    stop_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Backfill string ids and rewrite legacy references.

    ``collection`` limits the run to one collection (None = every collection
    in the table). In dry-run mode ``updated`` counts the writes that would
    be applied. Returns ``{"mode", "collections": [stats...], "totals", "interrupted"}``.
    """
    names = [collection] if collection else table.collections()
    rows: Dict[str, Dict[str, Any]] = {name: _new_stats(name) for name in names}
    summary = {
        "mode": "execute" if execute else "dry-run",
        "collections": list(rows.values()),
        "totals": {},
        "interrupted": False,
    }

    def interrupted() -> bool:
        return stop_event is not None and stop_event.is_set()

    # Phase 1: string-id backfill
    for name in names:
        owner = table.id_owner(name)
        if owner is None or interrupted():
            continue
        entity_type = table.entity_for_collection(name)
        stats = rows[name]
        stats["total"] = store.count(name)
        if entity_type is not None:
            catalog = catalogs[entity_type.name]
        else:
            # Row ids of a relationship collection, nothing references them
            catalog = load_entity_catalog(store, owner)
        writes = plan_id_backfill(store, owner, catalog, stats, stop_event, fill_missing=entity_type is not None)
        _finish_plan(stats, writes, execute)
        if execute and writes:
            apply_writes(store, name, writes, stats, batch_size, retries, stop_event)
            if entity_type is not None:
                # Only ids that actually landed may be used by reference rewrites
                catalogs[entity_type.name] = load_entity_catalog(store, entity_type)
        if writes:
            logger.info("%s: %d string id(s) %s", name, len(writes), "assigned" if execute else "to assign")

    # Phase 2: reference rewrites
    for name in names:
        if interrupted():
            break
        stats = rows[name]
        writes = plan_reference_rewrites(store, table, name, catalogs, stats, array_limit, stop_event)
        if stats["interrupted"]:
            # A partially planned collection is not applied
            writes = []
        _finish_plan(stats, writes, execute)
        if execute and writes:
            apply_writes(store, name, writes, stats, batch_size, retries, stop_event)
        if writes:
            logger.info("%s: %d document(s) with legacy references", name, len(writes))

    totals = {key: 0 for key in ("total", "needs_id_field", "needs_relationship_update", "updated", "conflicts", "errors")}
    for stats in rows.values():
        for key in totals:
            totals[key] += stats[key]
        stats["interrupted"] = stats["interrupted"] or interrupted()
    totals["manual_review"] = sum(len(stats["manual_review"]) for stats in rows.values())
    summary["totals"] = totals
    summary["interrupted"] = interrupted()
    return summary
