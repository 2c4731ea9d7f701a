from __future__ import annotations

import pytest

from pytests.common import InMemoryStore, seed_uniform_data
from uniform_reconcile.catalog import load_catalog
from uniform_reconcile.relationships import load_relationship_table


@pytest.fixture(scope="session")
def table():
    return load_relationship_table()


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture()
def seeded_store(store):
    """In-memory store holding the small dataset from ``seed_uniform_data``."""

    store.ids = seed_uniform_data(store)
    return store


@pytest.fixture()
def catalogs(seeded_store, table):
    return load_catalog(seeded_store, table)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    # Keep developer .env files and MONGODB_* variables out of tests
    monkeypatch.chdir(tmp_path)
    for name in (
        "MONGODB_URI",
        "MONGODB_DATABASE",
        "RECONCILE_BATCH_SIZE",
        "RECONCILE_SAMPLE_LIMIT",
        "RECONCILE_ARRAY_SCAN_LIMIT",
        "RECONCILE_WRITE_RETRIES",
        "RECONCILE_EXECUTE_GRACE_SECONDS",
        "MONGODB_SERVER_SELECTION_TIMEOUT_MS",
    ):
        monkeypatch.delenv(name, raising=False)
