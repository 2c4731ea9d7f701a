"""
Integrity verifier.

Read-only pass over every relationship in the table plus orphan checks
on the two-sided collections. The verdict is PASS only when there are no
broken references, no legacy-shaped references and no orphans; a run that
was interrupted or had no relationship to check is INCOMPLETE.
"""

import logging
import threading
from typing import Any, Dict, Optional

from .catalog import load_catalog
from .config import ARRAY_SCAN_LIMIT, SAMPLE_LIMIT
from .orphans import find_orphans
from .relationships import RelationshipTable
from .scanner import scan_collection
from .store import DocumentStore, ReadOnlyStore, ReadOnlyStoreError

logger = logging.getLogger(__name__)

PASS = "PASS"
FAIL = "FAIL"
INCOMPLETE = "INCOMPLETE"


class WriteForbiddenError(ReadOnlyStoreError):
    """The verifier was asked to write."""


class IntegrityVerifier:
    def __init__(
        self,
        store: DocumentStore,
        table: RelationshipTable,
        write: bool = False,
        sample_limit: int = SAMPLE_LIMIT,
        array_limit: int = ARRAY_SCAN_LIMIT,
    ):
        if write:
            raise WriteForbiddenError("IntegrityVerifier is read-only and cannot be created with write=True")
        self.store = store if store.read_only else ReadOnlyStore(store)
        self.table = table
        self.sample_limit = sample_limit
        self.array_limit = array_limit

    def verify(self, collection: Optional[str] = None, stop_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        relationships = self.table.select(collection)
        if not relationships:
            logger.warning("No relationship fields configured for %s, nothing to verify", collection)
        catalogs = load_catalog(self.store, self.table)

        report = {
            "relationships": [],
            "orphans": [],
            "catalogs": [catalog.summary() for catalog in catalogs.values()],
            "summary": {"checked_fields": 0, "valid": 0, "legacy": 0, "broken": 0, "orphans": 0},
            "verdict": INCOMPLETE,
            "interrupted": False,
        }
        summary = report["summary"]

        for rel in relationships:
            scan = scan_collection(
                self.store, rel.collection, rel.fields, catalogs,
                self.sample_limit, self.array_limit, stop_event,
            )
            for stats in scan["fields"].values():
                report["relationships"].append(stats)
                summary["checked_fields"] += 1
                summary["valid"] += stats["valid"]
                summary["legacy"] += stats["legacy_internal_id"] + stats["legacy_hex_string"]
                summary["broken"] += stats["broken"]
            if scan["interrupted"]:
                report["interrupted"] = True
                break

            if rel.orphan_check:
                found = find_orphans(self.store, rel, catalogs, self.array_limit, stop_event)
                report["orphans"].append({
                    "collection": rel.collection,
                    "documents": found["documents"],
                    "orphans": len(found["orphans"]),
                    "samples": [
                        {"doc_id": str(document["_id"]), "reasons": reasons}
                        for document, reasons in found["orphans"][:self.sample_limit]
                    ],
                })
                summary["orphans"] += len(found["orphans"])
                if found["interrupted"]:
                    report["interrupted"] = True
                    break

        if report["interrupted"] or not relationships:
            report["verdict"] = INCOMPLETE
        elif summary["broken"] or summary["legacy"] or summary["orphans"]:
            report["verdict"] = FAIL
        else:
            report["verdict"] = PASS
        logger.info("Verification %s: %d legacy, %d broken, %d orphaned",
                    report["verdict"], summary["legacy"], summary["broken"], summary["orphans"])
        return report
