"""
Tests for record sinks and the finalize worker.
"""

import csv
import threading
from datetime import datetime

import pytest
import requests

from smash_tracker.errors import SinkError
from smash_tracker.record import BattleRecord, PlayerGroup, Rule
from smash_tracker.sink import (
    CSV_FIELDNAMES,
    CsvRecordSink,
    FinalizeWorker,
    HttpRecordSink,
    MemorySink,
    RecordSink,
    record_to_row,
)


def finished_record(player_count=2, power=(1200, -1)):
    record = BattleRecord(datetime(2024, 5, 1, 20, 0, 0))
    record.fix_player_count(player_count)
    record.rule_name = Rule.STOCK
    record.max_time = 420
    record.set_slot('chara_list', 0, "MARIO")
    record.set_slot('group_list', 0, PlayerGroup.RED)
    record.set_slot('order_list', 0, 1)
    for slot, value in enumerate(power[:player_count]):
        record.set_slot('power_list', slot, value)
    if -1 in power:
        record.mark_unresolved('power_list[1]')
    record.finalize(datetime(2024, 5, 1, 20, 6, 30))
    return record


class FlakySink(RecordSink):
    """Fails the first `failures` commits."""

    def __init__(self, failures):
        self.failures = failures
        self.attempts = 0
        self.committed = []

    def commit(self, record):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise SinkError(f"attempt {self.attempts} failed")
        self.committed.append(record)
        return f"id-{len(self.committed)}"


class TestMemorySink:

    def test_commit_assigns_ids(self):
        sink = MemorySink()
        assert sink.commit(finished_record()) == "mem-1"
        assert sink.commit(finished_record()) == "mem-2"
        assert len(sink) == 2

    def test_limit_keeps_latest(self):
        sink = MemorySink(limit=2)
        for _ in range(3):
            sink.commit(finished_record())
        assert len(sink) == 2
        assert [record_id for record_id, _ in sink.records] == ["mem-2", "mem-3"]

    def test_open_record_rejected(self):
        with pytest.raises(SinkError):
            MemorySink().commit(BattleRecord(datetime.now()))


class TestCsvRecordSink:

    def test_row_formatting(self):
        row = record_to_row(finished_record())

        assert row['start_time'] == "2024-05-01 20:00:00"
        assert row['end_time'] == "2024-05-01 20:06:30"
        assert row['rule'] == "Stock"
        assert row['p1_character'] == "MARIO"
        assert row['p1_group'] == "Red"
        assert row['p1_power'] == 1200
        assert row['p2_character'] == "N/A"
        assert row['p2_power'] == "N/A"
        assert row['p3_character'] == ""
        assert row['unresolved'] == "power_list[1]"

    def test_writes_header_once(self, tmp_path):
        path = tmp_path / "battles.csv"
        sink = CsvRecordSink(str(path))

        assert sink.commit(finished_record()) == "battles.csv:1"
        assert sink.commit(finished_record()) == "battles.csv:2"

        with open(path, newline='') as f:
            rows = list(csv.reader(f))
        assert rows[0] == list(CSV_FIELDNAMES)
        assert len(rows) == 3

    def test_continues_existing_file(self, tmp_path):
        path = tmp_path / "battles.csv"
        CsvRecordSink(str(path)).commit(finished_record())

        assert CsvRecordSink(str(path)).commit(finished_record()) == "battles.csv:2"

    def test_too_many_players(self, tmp_path):
        sink = CsvRecordSink(str(tmp_path / "battles.csv"))
        with pytest.raises(SinkError):
            sink.commit(finished_record(player_count=8, power=(-1,) * 8))

    def test_unwritable_path(self, tmp_path):
        sink = CsvRecordSink(str(tmp_path / "missing" / "battles.csv"))
        with pytest.raises(SinkError):
            sink.commit(finished_record())


class FakeResponse:

    def __init__(self, status_code=200, data=None):
        self.status_code = status_code
        self._data = data

    def json(self):
        if self._data is None:
            raise ValueError("no body")
        return self._data


class TestHttpRecordSink:

    def test_posts_row(self, monkeypatch):
        posted = {}

        def fake_post(url, json, timeout):
            posted.update(url=url, json=json, timeout=timeout)
            return FakeResponse(data={"id": 17})

        monkeypatch.setattr(requests, "post", fake_post)
        sink = HttpRecordSink("http://stats.local:8000/", timeout=3)

        assert sink.commit(finished_record()) == "remote:17"
        assert posted["url"] == "http://stats.local:8000/api/battles"
        assert posted["json"]["p1_character"] == "MARIO"
        assert posted["timeout"] == 3

    def test_response_without_id(self, monkeypatch):
        monkeypatch.setattr(requests, "post", lambda url, json, timeout: FakeResponse())
        assert HttpRecordSink("http://stats.local").commit(finished_record()) == "remote"

    def test_error_status(self, monkeypatch):
        monkeypatch.setattr(requests, "post", lambda url, json, timeout: FakeResponse(status_code=500))
        with pytest.raises(SinkError):
            HttpRecordSink("http://stats.local").commit(finished_record())

    def test_connection_error(self, monkeypatch):
        def refuse(url, json, timeout):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(requests, "post", refuse)
        with pytest.raises(SinkError):
            HttpRecordSink("http://stats.local").commit(finished_record())


class TestFinalizeWorker:

    def test_retries_exactly_once(self):
        sink = FlakySink(failures=1)
        committed = []
        worker = FinalizeWorker(sink, on_committed=lambda r, i: committed.append(i))

        assert worker.commit_now(finished_record()) == "id-1"
        assert sink.attempts == 2
        assert committed == ["id-1"]
        assert worker.unsaved == []

    def test_keeps_record_after_second_failure(self):
        sink = FlakySink(failures=2)
        failed = []
        worker = FinalizeWorker(sink, on_failed=lambda r, e: failed.append((r, e)))
        record = finished_record()

        assert worker.commit_now(record) is None
        assert sink.attempts == 2
        assert worker.unsaved == [record]
        assert failed[0][0] is record
        assert isinstance(failed[0][1], SinkError)

        assert worker.retry_unsaved() == ["id-1"]
        assert worker.unsaved == []

    def test_background_commit(self):
        sink = MemorySink()
        done = threading.Event()
        worker = FinalizeWorker(sink, on_committed=lambda r, i: done.set()).start()
        try:
            worker.submit(finished_record())
            assert done.wait(timeout=5)
            worker.join()
            assert len(sink) == 1
        finally:
            worker.stop()

    def test_commit_runs_off_the_calling_thread(self):
        threads = []
        worker = FinalizeWorker(MemorySink(), on_committed=lambda r, i: threads.append(threading.current_thread().name))
        worker.start()
        try:
            worker.submit(finished_record())
            worker.join()
        finally:
            worker.stop()
        assert threads == ["finalize"]

    def test_worker_survives_unexpected_errors(self):
        class BrokenSink(MemorySink):
            failed = False

            def commit(self, record):
                if not self.failed:
                    self.failed = True
                    raise RuntimeError("disk exploded")
                return super().commit(record)

        sink = BrokenSink()
        callbacks = []

        def on_committed(record, record_id):
            callbacks.append(record_id)
            raise ValueError("callback failed")

        worker = FinalizeWorker(sink, on_committed=on_committed).start()
        try:
            for _ in range(3):
                worker.submit(finished_record())
            worker.join()
        finally:
            worker.stop()

        assert callbacks == ["mem-1", "mem-2"]
        assert len(sink) == 2
