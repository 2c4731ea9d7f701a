#!/usr/bin/env python3
"""
ID reconciliation for the uniform-distribution MongoDB database.

Rewrites legacy ObjectId references to string ids, merges duplicate
relationship rows, cleans up orphans and verifies relationship integrity.
Nothing is written without --execute.

Usage:
    uniform-reconcile migrate [--execute] [--collection NAME] [--yes] [--out FILE]
    uniform-reconcile verify [--collection NAME] [--out FILE]
    uniform-reconcile dedupe [--execute] [--collection NAME] [--yes]
    uniform-reconcile cleanup-orphans [--execute] [--collection NAME] [--yes]
    uniform-reconcile scan [--collection NAME]
    uniform-reconcile runs [--limit N] [--command NAME]

Exit codes: 0 success, 1 write errors (or verification FAIL),
2 configuration error or store unreachable, 130 interrupted.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import tracker
from .catalog import load_catalog
from .config import Settings, load_environment, mask_uri
from .dedupe import dedupe_relationship
from .orphans import cleanup_orphans
from .reconciler import reconcile
from .relationships import RelationshipConfigError, RelationshipTable, load_relationship_table
from .scanner import BROKEN, LEGACY_HEX_STRING, LEGACY_INTERNAL_ID, discover_legacy_fields
from .store import DocumentStore, MongoStore, StoreConnectionError, StoreWriteError
from .verifier import FAIL, PASS, IntegrityVerifier

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
MAX_LISTED = 20  # errors / review items printed per section
READ_ONLY_COMMANDS = {"verify", "scan", "runs"}


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def open_store(args: argparse.Namespace, settings: Settings, read_only: bool) -> DocumentStore:
    return MongoStore(
        args.uri,
        database=args.database,
        read_only=read_only,
        server_selection_timeout_ms=settings.server_selection_timeout_ms,
    )


def _install_interrupt_handler(stop_event: threading.Event):
    """First Ctrl+C asks for a stop between batches, a second one aborts."""
    if threading.current_thread() is not threading.main_thread():
        return None

    def handle(signum, frame):
        if stop_event.is_set():
            raise KeyboardInterrupt
        stop_event.set()
        print("\n⚠️  Interrupt received, stopping after the current batch (Ctrl+C again to abort)",
              file=sys.stderr)

    return signal.signal(signal.SIGINT, handle)


# Output helpers

def _banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def _print_list(title: str, items: List[str], limit: int = MAX_LISTED) -> None:
    if not items:
        return
    print(f"\n{title} ({len(items)}):")
    for item in items[:limit]:
        print(f"  - {item}")
    if len(items) > limit:
        print(f"  ... and {len(items) - limit} more")


def _print_table(headers: List[str], rows: List[List[Any]]) -> None:
    widths = [max(len(str(value)) for value in column) for column in zip(headers, *rows)]
    line = "  ".join(
        str(header).ljust(width) if index == 0 else str(header).rjust(width)
        for index, (header, width) in enumerate(zip(headers, widths))
    )
    print(line)
    print("-" * len(line))
    for row in rows:
        print("  ".join(
            str(value).ljust(width) if index == 0 else str(value).rjust(width)
            for index, (value, width) in enumerate(zip(row, widths))
        ))


def _write_report(path: Optional[Path], data: Any) -> None:
    if not path:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, default=str)
    print(f"\nReport written to {path}")


def _exit_code(errors: int, interrupted: bool) -> int:
    if interrupted:
        return EXIT_INTERRUPTED
    return EXIT_ERRORS if errors else EXIT_OK


def _grace_period(args: argparse.Namespace, settings: Settings, stop_event: threading.Event) -> bool:
    """Give the operator a chance to cancel before the first write."""
    print("\n⚠️  EXECUTE MODE - Changes will be made to the database")
    if args.yes or settings.execute_grace_seconds == 0:
        return True
    print(f"   Press Ctrl+C within {settings.execute_grace_seconds} seconds to cancel...\n")
    if stop_event.wait(settings.execute_grace_seconds):
        print("Cancelled. Nothing was written.")
        return False
    return True


def _start_run(store: DocumentStore, args: argparse.Namespace) -> Optional[str]:
    options = {"collection": getattr(args, "collection", None), "batch_size": args.batch_size}
    try:
        return tracker.start_run(store, args.command, options)
    except StoreWriteError as exc:
        logger.warning("Could not record run in %s: %s", tracker.MIGRATIONS_COLLECTION, exc)
        return None


def _finish_run(store: DocumentStore, run_id: Optional[str], errors: int, interrupted: bool,
                summary: Dict[str, Any]) -> None:
    if run_id is None:
        return
    if interrupted:
        status = tracker.STATUS_INTERRUPTED
    elif errors:
        status = tracker.STATUS_FAILED
    else:
        status = tracker.STATUS_COMPLETED
    try:
        tracker.finish_run(store, run_id, status, summary)
    except StoreWriteError as exc:
        logger.warning("Could not update run %s: %s", run_id, exc)


# Commands

def cmd_migrate(store, table, args, settings, stop_event) -> int:
    execute = args.execute
    _banner("OBJECTID TO STRING ID RECONCILIATION")
    print(f"Mode: {'EXECUTE (WILL MODIFY DATA)' if execute else 'DRY RUN (NO CHANGES)'}")
    if args.collection:
        print(f"Target collection: {args.collection}")
    if execute and not _grace_period(args, settings, stop_event):
        return EXIT_INTERRUPTED

    run_id = _start_run(store, args) if execute else None
    catalogs = load_catalog(store, table)
    result = reconcile(
        store, table, catalogs,
        collection=args.collection,
        execute=execute,
        batch_size=args.batch_size,
        retries=settings.write_retries,
        array_limit=settings.array_scan_limit,
        stop_event=stop_event,
    )
    totals = result["totals"]

    _banner("RECONCILIATION SUMMARY")
    headers = ["Collection", "Total", "Needs id", "Needs rel", "Updated" if execute else "Would update", "Errors"]
    rows = [
        [s["collection"], s["total"], s["needs_id_field"], s["needs_relationship_update"], s["updated"], s["errors"]]
        for s in result["collections"]
    ]
    rows.append(["TOTAL", totals["total"], totals["needs_id_field"], totals["needs_relationship_update"],
                 totals["updated"], totals["errors"]])
    _print_table(headers, rows)

    if totals["conflicts"]:
        print(f"\nSkipped (changed by another writer since planning): {totals['conflicts']}")
    review = [
        f"{item['collection']} {item['doc_id']} {item['path']}={item['value']}: {item['reason']}"
        for s in result["collections"] for item in s["manual_review"]
    ]
    _print_list("Needs manual review", review)
    _print_list("Errors", [message for s in result["collections"] for message in s["error_messages"]])

    _write_report(args.out, result)
    _finish_run(store, run_id, totals["errors"], result["interrupted"], totals)

    if result["interrupted"]:
        print("\n⚠️  Interrupted: results above are partial")
    elif not execute:
        print("\n[DRY RUN] No changes were written to the database")
        if totals["updated"]:
            print("   Run again with --execute to apply these changes")
    else:
        print("\nReconciliation completed!")
    return _exit_code(totals["errors"], result["interrupted"])


def cmd_verify(store, table, args, settings, stop_event) -> int:
    if args.collection and not table.select(args.collection):
        print(f"❌ No relationship fields configured for {args.collection}", file=sys.stderr)
        return EXIT_CONFIG

    _banner("RELATIONSHIP INTEGRITY VERIFICATION")
    verifier = IntegrityVerifier(
        store, table, sample_limit=settings.sample_limit, array_limit=settings.array_scan_limit,
    )
    report = verifier.verify(args.collection, stop_event)

    for stats in report["relationships"]:
        legacy = stats["legacy_internal_id"] + stats["legacy_hex_string"]
        name = f"{stats['collection']}.{stats['field']} -> {stats['target']}"
        if not legacy and not stats["broken"]:
            print(f"✅ {name}: {stats['valid']} valid")
            continue
        print(f"❌ {name}: {stats['valid']} valid, {legacy} legacy, {stats['broken']} broken "
              f"({stats['missing']} missing)")
        for category in (LEGACY_INTERNAL_ID, LEGACY_HEX_STRING, BROKEN):
            for sample in stats["samples"][category]:
                print(f"     {category}: {sample['doc_id']} {sample['path']}={sample['value']} ({sample['reason']})")

    for orphan in report["orphans"]:
        marker = "✅" if not orphan["orphans"] else "❌"
        print(f"{marker} {orphan['collection']}: {orphan['orphans']} orphaned of {orphan['documents']}")
        for sample in orphan["samples"]:
            print(f"     {sample['doc_id']}: {'; '.join(sample['reasons'])}")

    for catalog in report["catalogs"]:
        if catalog["duplicate_string_ids"]:
            print(f"⚠️  {catalog['entity_type']}: duplicate string ids {catalog['duplicate_string_ids'][:MAX_LISTED]}")
        if catalog["missing_string_id"]:
            print(f"⚠️  {catalog['entity_type']}: {catalog['missing_string_id']} document(s) without string id")
        if catalog["hex_string_id"]:
            print(f"⚠️  {catalog['entity_type']}: {catalog['hex_string_id']} document(s) whose string id is an "
                  f"internal-id hex (migrate regenerates them)")

    summary = report["summary"]
    _banner(f"VERDICT: {report['verdict']}")
    print(f"Fields checked: {summary['checked_fields']}")
    print(f"Valid references: {summary['valid']}")
    print(f"Legacy references: {summary['legacy']}")
    print(f"Broken references: {summary['broken']}")
    print(f"Orphaned documents: {summary['orphans']}")

    _write_report(args.out, report)
    if report["verdict"] == PASS:
        return EXIT_OK
    if report["verdict"] == FAIL:
        return EXIT_ERRORS
    return EXIT_INTERRUPTED


def cmd_dedupe(store, table, args, settings, stop_event) -> int:
    relationships = [rel for rel in table.select(args.collection) if rel.unique_key]
    if not relationships:
        print(f"❌ No unique key configured for {args.collection}", file=sys.stderr)
        return EXIT_CONFIG

    _banner("DUPLICATE RELATIONSHIP MERGE")
    print(f"Mode: {'EXECUTE (WILL MODIFY DATA)' if args.execute else 'DRY RUN (NO CHANGES)'}")
    if args.execute and not _grace_period(args, settings, stop_event):
        return EXIT_INTERRUPTED

    run_id = _start_run(store, args) if args.execute else None
    catalogs = load_catalog(store, table)
    results = []
    for rel in relationships:
        if stop_event.is_set():
            break
        results.append(dedupe_relationship(
            store, rel, execute=args.execute, sample_limit=settings.sample_limit, stop_event=stop_event,
            catalogs=catalogs,
        ))

    errors = sum(s["errors"] for s in results)
    interrupted = stop_event.is_set() or any(s["interrupted"] for s in results)
    _banner("DEDUPE SUMMARY")
    _print_table(
        ["Collection", "Rows", "Groups", "Duplicates", "Merged", "Deleted", "Errors"],
        [[s["collection"], s["documents"], s["groups"], s["duplicates"], s["merged"], s["deleted"], s["errors"]]
         for s in results],
    )
    for s in results:
        for sample in s["samples"]:
            print(f"  {s['collection']} {tuple(sample['key'])}: keep {sample['keep']}, delete {sample['delete']}")
    _print_list("Errors", [message for s in results for message in s["error_messages"]])

    _write_report(args.out, results)
    _finish_run(store, run_id, errors, interrupted, {
        "groups": sum(s["groups"] for s in results),
        "deleted": sum(s["deleted"] for s in results),
        "errors": errors,
    })
    if not args.execute and not interrupted:
        print("\n[DRY RUN] No changes were written to the database")
    return _exit_code(errors, interrupted)


def cmd_cleanup_orphans(store, table, args, settings, stop_event) -> int:
    relationships = [rel for rel in table.select(args.collection) if rel.orphan_check]
    if not relationships:
        print(f"❌ No orphan check configured for {args.collection}", file=sys.stderr)
        return EXIT_CONFIG

    _banner("ORPHANED RELATIONSHIP CLEANUP")
    print(f"Mode: {'EXECUTE (WILL MODIFY DATA)' if args.execute else 'DRY RUN (NO CHANGES)'}")
    if args.execute and not _grace_period(args, settings, stop_event):
        return EXIT_INTERRUPTED

    run_id = _start_run(store, args) if args.execute else None
    catalogs = load_catalog(store, table)
    results = []
    for rel in relationships:
        if stop_event.is_set():
            break
        results.append(cleanup_orphans(
            store, rel, catalogs,
            execute=args.execute,
            sample_limit=settings.sample_limit,
            array_limit=settings.array_scan_limit,
            stop_event=stop_event,
        ))

    errors = sum(s["errors"] for s in results)
    interrupted = stop_event.is_set() or any(s["interrupted"] for s in results)
    _banner("ORPHAN CLEANUP SUMMARY")
    _print_table(
        ["Collection", "Rows", "Orphans", "Backed up", "Deleted", "Errors"],
        [[s["collection"], s["documents"], s["orphans"], s["backed_up"], s["deleted"], s["errors"]] for s in results],
    )
    for s in results:
        for sample in s["samples"]:
            print(f"  {s['collection']} {sample['doc_id']}: {'; '.join(sample['reasons'])}")
    _print_list("Errors", [message for s in results for message in s["error_messages"]])

    _write_report(args.out, results)
    _finish_run(store, run_id, errors, interrupted, {
        "orphans": sum(s["orphans"] for s in results),
        "deleted": sum(s["deleted"] for s in results),
        "errors": errors,
    })
    if not args.execute and not interrupted:
        print("\n[DRY RUN] No changes were written to the database")
    return _exit_code(errors, interrupted)


def cmd_scan(store, table, args, settings, stop_event) -> int:
    _banner("LEGACY ID FIELD DISCOVERY")
    collections = [args.collection] if args.collection else None
    report = discover_legacy_fields(store, collections, stop_event)

    if not report["collections"]:
        print(f"No internal-id shaped values found in {report['documents']} documents")
    for name, fields in report["collections"].items():
        print(f"\n📁 {name}")
        for path, entry in fields.items():
            print(f"   {path}: {entry['internal_id']} internal id, {entry['hex_string']} hex string")
            for example in entry["examples"]:
                print(f"      e.g. {example['doc_id']}: {example['value']} ({example['kind']})")

    _write_report(args.out, report)
    return EXIT_INTERRUPTED if report["interrupted"] else EXIT_OK


def cmd_runs(store, table, args, settings, stop_event) -> int:
    runs = tracker.list_runs(store, limit=args.limit, command=args.run_command)
    if not runs:
        print("No recorded runs")
    for run in runs:
        print(f"{run.get('started_at')}  {run.get('command', '?'):<16} {run.get('status', '?'):<12} "
              f"{run.get('applied_by', '?')}  {run.get('summary') or ''}")
    _write_report(args.out, runs)
    return EXIT_OK


COMMANDS: Dict[str, Callable[..., int]] = {
    "migrate": cmd_migrate,
    "verify": cmd_verify,
    "dedupe": cmd_dedupe,
    "cleanup-orphans": cmd_cleanup_orphans,
    "scan": cmd_scan,
    "runs": cmd_runs,
}


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--uri", default=settings.mongodb_uri, help="MongoDB connection string (default: MONGODB_URI)")
    common.add_argument("--database", default=settings.database,
                        help="Database name (default: MONGODB_DATABASE or the one in the URI)")
    common.add_argument("--batch-size", type=int, default=settings.batch_size,
                        help=f"Documents per bulk write (default: {settings.batch_size})")
    common.add_argument("--relationships", type=Path, help="Relationship table YAML (default: packaged table)")
    common.add_argument("--out", type=Path, help="Write the structured result as JSON to this file")
    common.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    parser = argparse.ArgumentParser(
        description="Reconcile ObjectId references to string ids in the uniform-distribution database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Without --execute nothing is written.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    def add_write_options(sub):
        sub.add_argument("--execute", action="store_true", help="Apply changes (default is a dry run)")
        sub.add_argument("--yes", action="store_true", help="Skip the cancel window before writing")

    def add_collection(sub):
        sub.add_argument("--collection", type=str.lower, help="Only this collection (default: all known)")

    migrate_parser = subparsers.add_parser("migrate", parents=[common],
                                           help="Backfill string ids and rewrite legacy references")
    add_write_options(migrate_parser)
    add_collection(migrate_parser)

    verify_parser = subparsers.add_parser("verify", parents=[common], help="Read-only relationship integrity report")
    add_collection(verify_parser)

    dedupe_parser = subparsers.add_parser("dedupe", parents=[common],
                                          help="Merge duplicate rows of compound-unique collections")
    add_write_options(dedupe_parser)
    add_collection(dedupe_parser)

    orphans_parser = subparsers.add_parser("cleanup-orphans", parents=[common],
                                           help="Back up and delete orphaned relationship rows")
    add_write_options(orphans_parser)
    add_collection(orphans_parser)

    scan_parser = subparsers.add_parser("scan", parents=[common],
                                        help="Find every field still holding ObjectId-shaped values")
    add_collection(scan_parser)

    runs_parser = subparsers.add_parser("runs", parents=[common], help="List recorded execute runs")
    runs_parser.add_argument("--limit", type=int, default=20, help="Number of runs to show (default: 20)")
    runs_parser.add_argument("--command", dest="run_command", help="Only runs of this command")

    return parser


def main(argv: Optional[List[str]] = None, store_factory=None) -> int:
    load_environment()
    try:
        settings = Settings.from_env()
    except ValueError as exc:
        print(f"❌ Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG

    parser = build_parser(settings)
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_CONFIG
    configure_logging(args.verbose)

    if args.batch_size < 1:
        print("❌ --batch-size must be at least 1", file=sys.stderr)
        return EXIT_CONFIG
    try:
        table: RelationshipTable = load_relationship_table(args.relationships)
    except RelationshipConfigError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return EXIT_CONFIG

    collection = getattr(args, "collection", None)
    if collection and args.command != "scan" and collection not in table.collections():
        print(f"❌ Unknown collection: {collection}", file=sys.stderr)
        print(f"   Known collections: {', '.join(table.collections())}", file=sys.stderr)
        return EXIT_CONFIG

    print(f"MongoDB: {mask_uri(args.uri)}")
    if args.database:
        print(f"Database: {args.database}")

    stop_event = threading.Event()
    previous_handler = _install_interrupt_handler(stop_event)
    factory = store_factory or open_store
    store = factory(args, settings, args.command in READ_ONLY_COMMANDS)
    try:
        store.connect()
        return COMMANDS[args.command](store, table, args, settings, stop_event)
    except StoreConnectionError as exc:
        print(f"\n❌ Database unreachable: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    finally:
        store.close()
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)


if __name__ == "__main__":
    sys.exit(main())
