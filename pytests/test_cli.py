from __future__ import annotations

import json

import pytest

from pytests.common import InMemoryStore, seed_uniform_data
from uniform_reconcile import tracker
from uniform_reconcile.cli import EXIT_CONFIG, EXIT_ERRORS, EXIT_OK, main
from uniform_reconcile.store import ReadOnlyStore, StoreConnectionError, StoreWriteError


class UnreachableStore(InMemoryStore):
    def connect(self):
        raise StoreConnectionError("No servers found yet")


@pytest.fixture()
def cli_store():
    store = InMemoryStore()
    seed_uniform_data(store)
    return store


def _factory(store, seen=None):
    def factory(args, settings, read_only):
        if seen is not None:
            seen.append(read_only)
        return ReadOnlyStore(store) if read_only else store

    return factory


def test_migrate_defaults_to_dry_run(cli_store, capsys):
    before = cli_store.snapshot()

    code = main(["migrate"], store_factory=_factory(cli_store))

    out = capsys.readouterr().out
    assert code == EXIT_OK
    assert "DRY RUN" in out
    assert "Would update" in out
    assert "productvendors" in out
    assert "TOTAL" in out
    assert cli_store.snapshot() == before
    assert cli_store.closed is True


def test_migrate_execute_applies_and_records_run(cli_store, capsys):
    code = main(["migrate", "--execute", "--yes"], store_factory=_factory(cli_store))

    assert code == EXIT_OK
    assert cli_store.collections["productvendors"][0]["productId"] == "200001"
    runs = tracker.list_runs(cli_store)
    assert runs[0]["command"] == "migrate"
    assert runs[0]["status"] == tracker.STATUS_COMPLETED
    assert runs[0]["summary"]["updated"] == 4
    assert "Reconciliation completed!" in capsys.readouterr().out


def test_grace_period_can_be_disabled_by_environment(cli_store, monkeypatch):
    monkeypatch.setenv("RECONCILE_EXECUTE_GRACE_SECONDS", "0")

    code = main(["migrate", "--execute", "--collection", "Orders"], store_factory=_factory(cli_store))

    assert code == EXIT_OK
    assert cli_store.collections["orders"][0]["items"][0]["uniformId"] == "200001"


def test_write_errors_give_non_zero_exit(cli_store, capsys):
    cli_store.bulk_failures = [StoreWriteError("boom")] * 50

    code = main(["migrate", "--execute", "--yes"], store_factory=_factory(cli_store))

    assert code == EXIT_ERRORS
    assert "Errors (" in capsys.readouterr().out
    assert tracker.list_runs(cli_store)[0]["status"] == tracker.STATUS_FAILED


def test_verify_fails_before_and_passes_after_migrate(cli_store, tmp_path):
    seen = []
    out_file = tmp_path / "reports" / "verify.json"

    assert main(["verify", "--out", str(out_file)], store_factory=_factory(cli_store, seen)) == EXIT_ERRORS
    assert json.loads(out_file.read_text())["verdict"] == "FAIL"

    main(["migrate", "--execute", "--yes"], store_factory=_factory(cli_store, seen))

    assert main(["verify", "--out", str(out_file)], store_factory=_factory(cli_store, seen)) == EXIT_OK
    assert json.loads(out_file.read_text())["verdict"] == "PASS"
    assert seen == [True, False, True]


def test_unreachable_store_exits_2(capsys):
    store = UnreachableStore()

    code = main(["verify"], store_factory=_factory(store))

    assert code == EXIT_CONFIG
    assert "unreachable" in capsys.readouterr().err
    assert store.closed is True


def test_unknown_collection_exits_2(cli_store, capsys):
    code = main(["migrate", "--collection", "nope"], store_factory=_factory(cli_store))
    assert code == EXIT_CONFIG
    assert "Unknown collection: nope" in capsys.readouterr().err


def test_dedupe_needs_a_unique_key(cli_store):
    assert main(["dedupe", "--collection", "companies"], store_factory=_factory(cli_store)) == EXIT_CONFIG


def test_verify_rejects_collection_without_relationship(cli_store, capsys):
    assert main(["verify", "--collection", "uniforms"], store_factory=_factory(cli_store)) == EXIT_CONFIG
    assert "No relationship fields configured for uniforms" in capsys.readouterr().err


def test_dedupe_execute(cli_store):
    cli_store.add("vendorinventories", vendorId="100002", productId="200001", sizeInventory={"M": 2}, totalStock=2)

    code = main(["dedupe", "--execute", "--yes", "--collection", "vendorinventories"],
                store_factory=_factory(cli_store))

    assert code == EXIT_OK
    rows = cli_store.collections["vendorinventories"]
    assert len(rows) == 1
    assert rows[0]["sizeInventory"] == {"S": 1, "M": 2}
    assert rows[0]["totalStock"] == 3


def test_cleanup_orphans_dry_run(cli_store, capsys):
    cli_store.add("vendorinventories", vendorId="100999", productId="200001")
    before = cli_store.snapshot()

    code = main(["cleanup-orphans"], store_factory=_factory(cli_store))

    assert code == EXIT_OK
    assert cli_store.snapshot() == before
    assert "no Vendor with this id" in capsys.readouterr().out


def test_scan_lists_legacy_fields(cli_store, capsys):
    code = main(["scan", "--collection", "productvendors"], store_factory=_factory(cli_store))

    out = capsys.readouterr().out
    assert code == EXIT_OK
    assert "productId: 1 internal id, 1 hex string" in out
    assert "vendorId: 0 internal id, 1 hex string" in out


def test_runs_command(cli_store, capsys):
    main(["migrate", "--execute", "--yes"], store_factory=_factory(cli_store))
    capsys.readouterr()

    assert main(["runs", "--limit", "5"], store_factory=_factory(cli_store)) == EXIT_OK
    assert "migrate" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert main([]) == EXIT_CONFIG
    assert "usage" in capsys.readouterr().out
