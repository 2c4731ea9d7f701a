"""
Reference scanner.

Classifies every reference field value of a collection as one of
``valid``, ``legacy-internal-id``, ``legacy-hex-string``, ``null`` or
``broken`` and keeps a bounded sample of offending documents per category.
Also contains the whole-document discovery scan used to find fields the
relationship table does not list yet.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from tqdm import tqdm

from .catalog import EntityCatalog
from .config import ARRAY_SCAN_LIMIT, SAMPLE_LIMIT
from .relationships import ReferenceField
from .store import DocumentStore, is_hex_id

logger = logging.getLogger(__name__)

VALID = "valid"
LEGACY_INTERNAL_ID = "legacy-internal-id"
LEGACY_HEX_STRING = "legacy-hex-string"
NULL = "null"
BROKEN = "broken"

CATEGORIES = (VALID, LEGACY_INTERNAL_ID, LEGACY_HEX_STRING, NULL, BROKEN)
LEGACY_CATEGORIES = (LEGACY_INTERNAL_ID, LEGACY_HEX_STRING)

# Keys of the per-field stats dict for each category
COUNT_KEYS = {
    VALID: "valid",
    LEGACY_INTERNAL_ID: "legacy_internal_id",
    LEGACY_HEX_STRING: "legacy_hex_string",
    NULL: "null",
    BROKEN: "broken",
}

DISCOVERY_SKIP_KEYS = {"_id", "__v"}
DISCOVERY_EXAMPLES = 3


def classify_value(store: DocumentStore, value: Any, valid_ids) -> str:
    """Classify one reference value.

    Order matters: a typed internal id and a 24-hex string are legacy even
    if the same text happens to be a valid id, and anything that is not an
    exact string match is broken.
    """
    if value is None or value == "":
        return NULL
    if store.is_internal_id(value):
        return LEGACY_INTERNAL_ID
    if is_hex_id(value):
        return LEGACY_HEX_STRING
    if isinstance(value, str) and value in valid_ids:
        return VALID
    return BROKEN


def _join(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


def _collect(value: Any, parts: Sequence[str], prefix: str, limit: int, out: List[Tuple[str, Any]]) -> bool:
    truncated = False
    if isinstance(value, list):
        for index, item in enumerate(value):
            if index >= limit:
                return True
            truncated = _collect(item, parts, _join(prefix, str(index)), limit, out) or truncated
        return truncated
    if not parts:
        out.append((prefix, value))
        return False
    if isinstance(value, dict):
        return _collect(value.get(parts[0]), parts[1:], _join(prefix, parts[0]), limit, out)
    # Missing or scalar parent: the reference itself is absent
    out.append((_join(prefix, ".".join(parts)), None))
    return False


def iter_field_values(
    document: Dict[str, Any], path: str, array_limit: int = ARRAY_SCAN_LIMIT
) -> Tuple[List[Tuple[str, Any]], bool]:
    """Values at a dotted ``path``, walking arrays element-wise.

    Returns ``([(concrete_path, value), ...], truncated)`` where concrete
    paths carry array indexes (``items.0.uniformId``) and ``truncated`` is
    True when an array had more than ``array_limit`` elements. An empty
    array yields no values.
    """
    values: List[Tuple[str, Any]] = []
    truncated = _collect(document, path.split("."), "", array_limit, values)
    return values, truncated


def describe(value: Any) -> Any:
    """JSON-friendly rendering of a raw field value for samples."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _reason(category: str, value: Any, ref: ReferenceField) -> str:
    if category == NULL:
        return "null" if ref.optional else "missing"
    if category == LEGACY_INTERNAL_ID:
        return "internal id instead of string id"
    if category == LEGACY_HEX_STRING:
        return "hex string shaped like an internal id"
    if not isinstance(value, str):
        return f"unexpected type {type(value).__name__}"
    return f"no {ref.target} with this id"


def classify_document(
    store: DocumentStore,
    document: Dict[str, Any],
    fields: Iterable[ReferenceField],
    catalogs: Dict[str, EntityCatalog],
    array_limit: int = ARRAY_SCAN_LIMIT,
) -> Tuple[List[Dict[str, Any]], bool]:
    """Classify every reference value of one document.

    Returns ``(findings, truncated)``; each finding has ``field`` (the
    ReferenceField), ``path``, ``value``, ``category``, ``reason`` and
    ``missing`` (a required reference that is null or absent).
    """
    findings = []
    truncated = False
    for ref in fields:
        values, field_truncated = iter_field_values(document, ref.path, array_limit)
        truncated = truncated or field_truncated
        valid_ids = catalogs[ref.target].valid_ids
        for path, value in values:
            category = classify_value(store, value, valid_ids)
            findings.append({
                "field": ref,
                "path": path,
                "value": value,
                "category": category,
                "reason": _reason(category, value, ref),
                "missing": category == NULL and not ref.optional,
            })
    return findings, truncated


def new_field_stats(collection: str, ref: ReferenceField) -> Dict[str, Any]:
    stats = {
        "collection": collection,
        "field": ref.path,
        "target": ref.target,
        "optional": ref.optional,
        "documents": 0,
        "values": 0,
        "missing": 0,
        "truncated_documents": 0,
        "samples": {category: [] for category in CATEGORIES if category != VALID},
    }
    for key in COUNT_KEYS.values():
        stats[key] = 0
    return stats


def record_finding(stats: Dict[str, Any], doc_id: Any, finding: Dict[str, Any], sample_limit: int) -> None:
    category = finding["category"]
    stats["values"] += 1
    stats[COUNT_KEYS[category]] += 1
    if finding["missing"]:
        # A required null is both a null and a broken reference
        stats["missing"] += 1
        stats["broken"] += 1

    sample_categories = [category] if category != VALID else []
    if finding["missing"]:
        sample_categories.append(BROKEN)
    for sample_category in sample_categories:
        samples = stats["samples"][sample_category]
        if len(samples) < sample_limit:
            samples.append({
                "doc_id": str(doc_id),
                "path": finding["path"],
                "value": describe(finding["value"]),
                "reason": finding["reason"],
            })


def scan_collection(
    store: DocumentStore,
    collection: str,
    fields: Sequence[ReferenceField],
    catalogs: Dict[str, EntityCatalog],
    sample_limit: int = SAMPLE_LIMIT,
    array_limit: int = ARRAY_SCAN_LIMIT,
    stop_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Scan ``fields`` of ``collection`` in one pass over its documents.

    Returns ``{"collection", "documents", "fields": {path: stats}, "interrupted"}``.
    Read-only.
    """
    per_field = {ref.path: new_field_stats(collection, ref) for ref in fields}
    result = {"collection": collection, "documents": 0, "fields": per_field, "interrupted": False}

    projection = {ref.top_level: 1 for ref in fields}
    total = store.count(collection)
    cursor = store.find(collection, {}, projection)
    for document in tqdm(cursor, total=total, desc=f"Scanning {collection}", unit="doc", leave=False, disable=None):
        if stop_event is not None and stop_event.is_set():
            result["interrupted"] = True
            logger.warning("Scan of %s interrupted after %d documents", collection, result["documents"])
            break
        result["documents"] += 1

        for ref in fields:
            stats = per_field[ref.path]
            stats["documents"] += 1
            findings, truncated = classify_document(store, document, [ref], catalogs, array_limit)
            if truncated:
                stats["truncated_documents"] += 1
            for finding in findings:
                record_finding(stats, document.get("_id"), finding, sample_limit)

    for stats in per_field.values():
        if stats["broken"] or stats["legacy_internal_id"] or stats["legacy_hex_string"]:
            logger.info(
                "%s.%s: %d valid, %d legacy, %d broken",
                collection, stats["field"], stats["valid"],
                stats["legacy_internal_id"] + stats["legacy_hex_string"], stats["broken"],
            )
    return result


def _discover(store: DocumentStore, value: Any, path: str, found: Dict[str, Dict[str, Any]], doc_id: Any) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            if key in DISCOVERY_SKIP_KEYS:
                continue
            _discover(store, item, _join(path, key), found, doc_id)
        return
    if isinstance(value, list):
        for item in value:
            _discover(store, item, f"{path}[]", found, doc_id)
        return

    if store.is_internal_id(value):
        kind = "internal_id"
    elif is_hex_id(value):
        kind = "hex_string"
    else:
        return
    entry = found[path]
    entry[kind] += 1
    if len(entry["examples"]) < DISCOVERY_EXAMPLES:
        entry["examples"].append({"doc_id": str(doc_id), "value": str(value), "kind": kind})


def discover_legacy_fields(
    store: DocumentStore,
    collections: Optional[Iterable[str]] = None,
    stop_event: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Walk every field of every document looking for internal-id shaped values.

    ``_id`` and ``__v`` keys are skipped at every depth (sub-document ids are
    not references). Array elements are reported under ``path[]``.
    Returns ``{"collections": {name: {path: {...}}}, "documents": n, "interrupted"}``.
    """
    names = list(collections) if collections is not None else store.list_collections()
    report = {"collections": {}, "documents": 0, "interrupted": False}

    for name in names:
        found: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"internal_id": 0, "hex_string": 0, "examples": []})
        for document in tqdm(store.find(name), desc=f"Discovering {name}", unit="doc", leave=False, disable=None):
            if stop_event is not None and stop_event.is_set():
                report["interrupted"] = True
                break
            report["documents"] += 1
            _discover(store, document, "", found, document.get("_id"))
        if found:
            report["collections"][name] = dict(sorted(found.items()))
            logger.info("%s: %d field(s) with internal-id shaped values", name, len(found))
        if report["interrupted"]:
            logger.warning("Discovery interrupted in %s", name)
            break
    return report
