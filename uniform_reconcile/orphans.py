"""
Orphaned relationship rows.

A row is orphaned when none of its references is legacy-shaped (those can
still be repaired by the reconciler) and at least one of them resolves to
nothing. Cleanup copies each orphan into ``<collection>_orphan_backup``
and deletes the original only once the copy exists.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tqdm import tqdm

from .catalog import EntityCatalog
from .config import ARRAY_SCAN_LIMIT, SAMPLE_LIMIT
from .relationships import Relationship
from .scanner import BROKEN, LEGACY_CATEGORIES, classify_document, describe
from .store import DocumentStore, StoreWriteError

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = "_orphan_backup"


def backup_collection(collection: str) -> str:
    return f"{collection}{BACKUP_SUFFIX}"


def orphan_reasons(
    store: DocumentStore,
    document: Dict[str, Any],
    relationship: Relationship,
    catalogs: Dict[str, EntityCatalog],
    array_limit: int = ARRAY_SCAN_LIMIT,
) -> List[str]:
    """Why ``document`` is orphaned, empty when it is not."""
    findings, _ = classify_document(store, document, relationship.fields, catalogs, array_limit)
    if any(finding["category"] in LEGACY_CATEGORIES for finding in findings):
        return []
    return [
        f"{finding['path']}={describe(finding['value'])}: {finding['reason']}"
        for finding in findings
        if finding["category"] == BROKEN or finding["missing"]
    ]


def find_orphans(
    store: DocumentStore,
    relationship: Relationship,
    catalogs: Dict[str, EntityCatalog],
    array_limit: int = ARRAY_SCAN_LIMIT,
    stop_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Read-only. Returns ``{"collection", "documents", "orphans": [(document, reasons)], "interrupted"}``."""
    result = {"collection": relationship.collection, "documents": 0, "orphans": [], "interrupted": False}
    cursor = store.find(relationship.collection)
    for document in tqdm(cursor, desc=f"Orphans in {relationship.collection}", unit="doc", leave=False, disable=None):
        if stop_event is not None and stop_event.is_set():
            result["interrupted"] = True
            break
        result["documents"] += 1
        reasons = orphan_reasons(store, document, relationship, catalogs, array_limit)
        if reasons:
            result["orphans"].append((document, reasons))
    return result


def cleanup_orphans(
    store: DocumentStore,
    relationship: Relationship,
    catalogs: Dict[str, EntityCatalog],
    execute: bool = False,
    sample_limit: int = SAMPLE_LIMIT,
    array_limit: int = ARRAY_SCAN_LIMIT,
    stop_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Back up then delete orphaned rows of one relationship collection."""
    collection = relationship.collection
    backup = backup_collection(collection)
    found = find_orphans(store, relationship, catalogs, array_limit, stop_event)
    stats = {
        "collection": collection,
        "backup_collection": backup,
        "documents": found["documents"],
        "orphans": len(found["orphans"]),
        "backed_up": 0,
        "deleted": 0,
        "errors": 0,
        "error_messages": [],
        "samples": [],
        "interrupted": found["interrupted"],
    }
    for document, reasons in found["orphans"][:sample_limit]:
        stats["samples"].append({"doc_id": str(document["_id"]), "reasons": reasons})

    if not execute or found["interrupted"]:
        if execute:
            logger.warning("%s: orphan search interrupted, nothing deleted", collection)
        return stats

    for document, reasons in found["orphans"]:
        if stop_event is not None and stop_event.is_set():
            stats["interrupted"] = True
            break

        backup_document = dict(document)
        backup_document["_orphanReasons"] = reasons
        backup_document["_orphanedAt"] = datetime.now(timezone.utc)
        try:
            store.insert_one(backup, backup_document)
        except StoreWriteError as exc:
            # A previous interrupted run may already have copied it
            if store.find_one(backup, {"_id": document["_id"]}) is None:
                stats["errors"] += 1
                stats["error_messages"].append(f"{collection} {document['_id']}: backup failed, not deleted: {exc}")
                logger.error(stats["error_messages"][-1])
                continue
        stats["backed_up"] += 1

        delete_filter = {"_id": document["_id"]}
        for ref in relationship.fields:
            delete_filter[ref.top_level] = document.get(ref.top_level)
        try:
            deleted = store.delete_one(collection, delete_filter)
        except StoreWriteError as exc:
            stats["errors"] += 1
            stats["error_messages"].append(f"{collection} {document['_id']}: delete failed: {exc}")
            logger.error(stats["error_messages"][-1])
            continue
        if deleted:
            stats["deleted"] += 1
        else:
            logger.warning("%s %s: changed since it was found, kept (backup copy remains)", collection, document["_id"])

    logger.info("%s: %d orphan(s), %d backed up, %d deleted",
                collection, stats["orphans"], stats["backed_up"], stats["deleted"])
    return stats
