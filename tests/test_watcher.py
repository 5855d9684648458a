from __future__ import annotations

import json
import time

import pytest

from fiscalbridge.models.invoice import PENDING
from fiscalbridge.watcher import FileWatcher, load_invoice_file
from tests.conftest import messages


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def inbox(tmp_path):
    path = tmp_path / "inbox"
    path.mkdir()
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def watcher(inbox, engine, store, activity, clock):
    return FileWatcher(
        inbox,
        engine.ingest,
        activity,
        lookup=store.find_by_number,
        debounce=0.5,
        clock=clock,
    )


def drop(inbox, name, data):
    path = inbox / name
    path.write_text(data if isinstance(data, str) else json.dumps(data))
    return path


def settle(watcher, clock):
    """Run two scans across the debounce window; return what the second ingested."""
    watcher.scan()
    clock.advance(1.0)
    return watcher.scan()


class TestLoadInvoiceFile:
    def test_json_integer_is_minor_units(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text('{"number": "INV-010", "amount": 1999}')
        assert load_invoice_file(path) == ("INV-010", 1999)

    def test_json_decimal_is_major_units(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text('{"number": "INV-010", "amount": 19.99}')
        assert load_invoice_file(path) == ("INV-010", 1999)

    def test_yaml(self, tmp_path):
        path = tmp_path / "a.yaml"
        path.write_text('number: INV-011\namount: "250.50"\n')
        assert load_invoice_file(path) == ("INV-011", 25050)

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text("{oops")
        with pytest.raises(ValueError, match="Malformed JSON"):
            load_invoice_file(path)

    def test_missing_fields(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text('{"number": "INV-1"}')
        with pytest.raises(ValueError, match="amount"):
            load_invoice_file(path)


class TestScan:
    def test_debounces_before_reading(self, watcher, inbox, store):
        drop(inbox, "INV-010.json", {"number": "INV-010", "amount": 1999})
        assert watcher.scan() == []
        assert len(store) == 0

    def test_ingests_stable_file(self, watcher, inbox, store, clock):
        drop(inbox, "INV-010.json", {"number": "INV-010", "amount": 1999})
        ingested = settle(watcher, clock)
        assert [inv.number for inv in ingested] == ["INV-010"]
        inv = store.find_by_number("INV-010")
        assert inv.status == PENDING
        assert inv.amount == 1999
        assert inv.source == "INV-010.json"

    def test_archives_ingested_file(self, watcher, inbox, clock):
        drop(inbox, "INV-010.json", {"number": "INV-010", "amount": 1999})
        settle(watcher, clock)
        assert not (inbox / "INV-010.json").exists()
        assert (inbox / "processed" / "INV-010.json").exists()

    def test_growing_file_restarts_debounce(self, watcher, inbox, store, clock):
        path = drop(inbox, "INV-010.json", '{"number": "INV-010",')
        watcher.scan()
        clock.advance(1.0)
        path.write_text('{"number": "INV-010", "amount": 1999}')
        assert watcher.scan() == []
        clock.advance(1.0)
        assert len(watcher.scan()) == 1
        assert len(store) == 1

    def test_ignores_other_files(self, watcher, inbox, store, clock):
        drop(inbox, "notes.txt", "hello")
        drop(inbox, ".INV-1.json", {"number": "INV-1", "amount": 1})
        (inbox / "sub.json").mkdir()
        assert settle(watcher, clock) == []
        assert len(store) == 0

    def test_uppercase_suffix_accepted(self, watcher, inbox, store, clock):
        drop(inbox, "INV-1.JSON", {"number": "INV-1", "amount": 100})
        assert len(settle(watcher, clock)) == 1

    def test_files_ingested_in_name_order(self, watcher, inbox, engine, clock):
        drop(inbox, "b.json", {"number": "INV-002", "amount": 100})
        drop(inbox, "a.json", {"number": "INV-001", "amount": 100})
        ingested = settle(watcher, clock)
        assert [inv.number for inv in ingested] == ["INV-001", "INV-002"]
        assert engine.queue == [inv.id for inv in ingested]

    def test_missing_inbox_is_empty_scan(self, tmp_path, engine, activity):
        w = FileWatcher(tmp_path / "nope", engine.ingest, activity)
        assert w.scan() == []


class TestRejects:
    def test_unparseable_file_logged_and_kept(self, watcher, inbox, store, activity, clock):
        drop(inbox, "bad.json", "{oops")
        assert settle(watcher, clock) == []
        assert (inbox / "bad.json").exists()
        errors = messages(activity, "error")
        assert len(errors) == 1
        assert errors[0].startswith("Cannot parse bad.json")
        assert len(store) == 0

    def test_rejected_file_not_retried_until_changed(self, watcher, inbox, activity, clock):
        path = drop(inbox, "bad.json", "{oops")
        settle(watcher, clock)
        clock.advance(1.0)
        watcher.scan()
        clock.advance(1.0)
        watcher.scan()
        assert len(messages(activity, "error")) == 1

        path.write_text('{"number": "INV-020", "amount": 500}')
        assert len(settle(watcher, clock)) == 1

    def test_invalid_amount_rejected(self, watcher, inbox, activity, clock):
        drop(inbox, "neg.json", {"number": "INV-1", "amount": -5})
        settle(watcher, clock)
        assert messages(activity, "error")[0].startswith("Cannot parse neg.json")

    def test_duplicate_number_rejected(self, watcher, inbox, store, activity, clock):
        drop(inbox, "a.json", {"number": "INV-001", "amount": 100})
        settle(watcher, clock)
        drop(inbox, "b.json", {"number": "INV-001", "amount": 100})
        assert settle(watcher, clock) == []
        assert len(store) == 1
        assert (inbox / "b.json").exists()
        assert messages(activity, "error")[0].startswith("Rejected b.json")

    def test_redelivery_after_crash_is_archived(self, watcher, inbox, store, activity, clock):
        drop(inbox, "a.json", {"number": "INV-001", "amount": 100})
        store.create("INV-001", 100, source="a.json")
        assert settle(watcher, clock) == []
        assert not (inbox / "a.json").exists()
        assert (inbox / "processed" / "a.json").exists()
        assert messages(activity, "error") == []

    def test_redelivery_with_different_amount_rejected(
        self, watcher, inbox, store, activity, clock
    ):
        drop(inbox, "a.json", {"number": "INV-001", "amount": 200})
        store.create("INV-001", 100, source="a.json")
        settle(watcher, clock)
        assert (inbox / "a.json").exists()
        assert messages(activity, "error")[0].startswith("Rejected a.json")

    def test_archive_name_collision(self, watcher, inbox, clock):
        (inbox / "processed").mkdir()
        (inbox / "processed" / "a.json").write_text("old")
        drop(inbox, "a.json", {"number": "INV-001", "amount": 100})
        settle(watcher, clock)
        archived = sorted(p.name for p in (inbox / "processed").iterdir())
        assert len(archived) == 2
        assert (inbox / "processed" / "a.json").read_text() == "old"


class TestLifecycle:
    def test_start_and_stop(self, inbox, engine, activity):
        w = FileWatcher(inbox, engine.ingest, activity, debounce=0.0, poll_interval=0.01)
        w.start()
        try:
            assert w.running
            assert (inbox / "processed").is_dir()
        finally:
            w.stop()
        assert not w.running
        assert messages(activity) == [f"Watching {inbox} for invoices", "Inbox watcher stopped"]

    def test_background_polling_ingests(self, inbox, engine, store, activity):
        w = FileWatcher(inbox, engine.ingest, activity, debounce=0.0, poll_interval=0.01)
        w.start()
        drop(inbox, "INV-1.json", {"number": "INV-1", "amount": 100})
        try:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline and len(store) == 0:
                time.sleep(0.01)
        finally:
            w.stop()
        assert len(store) == 1

    def test_nothing_ingested_after_stop(self, watcher, inbox, store, clock):
        drop(inbox, "INV-1.json", {"number": "INV-1", "amount": 100})
        watcher.stop()
        assert settle(watcher, clock) == []
        assert len(store) == 0
        assert (inbox / "INV-1.json").exists()
