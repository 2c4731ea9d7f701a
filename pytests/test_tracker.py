from __future__ import annotations

from datetime import datetime, timezone

from uniform_reconcile import tracker


def test_runs_are_recorded_and_listed_newest_first(store):
    first = tracker.start_run(store, "migrate", {"collection": None}, now=datetime(2024, 5, 1, tzinfo=timezone.utc))
    second = tracker.start_run(store, "dedupe", {}, now=datetime(2024, 5, 2, tzinfo=timezone.utc))
    tracker.finish_run(store, first, tracker.STATUS_COMPLETED, {"updated": 4})

    runs = tracker.list_runs(store)

    assert [run["_id"] for run in runs] == [second, first]
    assert runs[1]["status"] == tracker.STATUS_COMPLETED
    assert runs[1]["summary"] == {"updated": 4}
    assert runs[1]["finished_at"] is not None
    assert runs[0]["status"] == tracker.STATUS_RUNNING
    assert first.startswith("migrate_20240501T")


def test_list_runs_filters_by_command(store):
    tracker.start_run(store, "migrate")
    tracker.start_run(store, "dedupe")

    runs = tracker.list_runs(store, command="dedupe")
    assert [run["command"] for run in runs] == ["dedupe"]
    assert tracker.list_runs(store, limit=1)[0]["mode"] == "execute"
