"""
Record sinks and the asynchronous finalizer.

The core only needs commit(record) -> record id. Finished records are handed
to a FinalizeWorker so a slow sink never stalls capture; a failed commit is
retried once and then kept in memory for the operator.
"""

import csv
import logging
import os
import queue
import threading
from collections import deque
from typing import Callable, List, Optional

import requests

from smash_tracker.errors import SinkError
from smash_tracker.record import UNKNOWN_NAME, UNKNOWN_NUMBER, BattleRecord


logger = logging.getLogger(__name__)

RecordId = str

CSV_MAX_PLAYERS = 4
CSV_PLAYER_FIELDS = ('character', 'group', 'max_stock', 'max_hp', 'stock', 'order', 'power')
CSV_FIELDNAMES = (
    ['start_time', 'end_time', 'player_count', 'rule', 'max_time']
    + [f'p{n}_{name}' for n in range(1, CSV_MAX_PLAYERS + 1) for name in CSV_PLAYER_FIELDS]
    + ['unresolved']
)
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class RecordSink:
    """Durable storage for finalized battle records."""

    def commit(self, record: BattleRecord) -> RecordId:
        """Persist one finalized record. Raises SinkError on failure."""
        raise NotImplementedError


class MemorySink(RecordSink):
    """Keeps the most recent `limit` records in memory."""

    def __init__(self, limit: Optional[int] = None):
        self.records = deque(maxlen=limit)
        self._lock = threading.Lock()
        self._next_id = 1

    def commit(self, record: BattleRecord) -> RecordId:
        if not record.finalized:
            raise SinkError("Only finalized records can be committed")
        with self._lock:
            record_id = f"mem-{self._next_id}"
            self._next_id += 1
            self.records.append((record_id, record))
        return record_id

    def __len__(self):
        with self._lock:
            return len(self.records)


def record_to_row(record: BattleRecord) -> dict:
    """Flatten a record into one CSV row, unknown values as N/A."""
    def fmt(value):
        if value is None or value == UNKNOWN_NUMBER or value == UNKNOWN_NAME:
            return "N/A"
        return getattr(value, 'value', value)

    row = {
        'start_time': record.start_time.strftime(DATETIME_FORMAT) if record.start_time else "N/A",
        'end_time': record.end_time.strftime(DATETIME_FORMAT) if record.end_time else "N/A",
        'player_count': record.player_count,
        'rule': record.rule_name.value,
        'max_time': fmt(record.max_time),
        'unresolved': ";".join(record.unresolved_fields),
    }
    columns = {
        'character': record.chara_list, 'group': record.group_list,
        'max_stock': record.max_stock_list, 'max_hp': record.max_hp_list,
        'stock': record.stock_list, 'order': record.order_list, 'power': record.power_list,
    }
    for slot in range(CSV_MAX_PLAYERS):
        for name in CSV_PLAYER_FIELDS:
            values = columns[name]
            row[f'p{slot + 1}_{name}'] = fmt(values[slot]) if slot < len(values) else ""
    return row


class CsvRecordSink(RecordSink):
    """Append one row per record to a CSV file, writing the header once."""

    def __init__(self, csv_path: str):
        self.csv_path = csv_path
        self._lock = threading.Lock()
        self._rows = 0
        if os.path.exists(csv_path):
            with open(csv_path, 'r', newline='') as f:
                self._rows = max(0, sum(1 for _ in csv.reader(f)) - 1)

    def commit(self, record: BattleRecord) -> RecordId:
        if not record.finalized:
            raise SinkError("Only finalized records can be committed")
        if (record.player_count or 0) > CSV_MAX_PLAYERS:
            raise SinkError(f"CSV sink supports at most {CSV_MAX_PLAYERS} players")

        row = record_to_row(record)
        with self._lock:
            file_exists = os.path.exists(self.csv_path)
            try:
                with open(self.csv_path, 'a', newline='') as csvfile:
                    writer = csv.DictWriter(csvfile, fieldnames=CSV_FIELDNAMES)
                    if not file_exists:
                        writer.writeheader()
                    writer.writerow(row)
            except OSError as e:
                raise SinkError(f"Could not write {self.csv_path}: {e}") from e
            self._rows += 1
            return f"{os.path.basename(self.csv_path)}:{self._rows}"


class HttpRecordSink(RecordSink):
    """
    POST each record as JSON to a results server.

    The server is expected to answer 200 with the stored row, including
    its assigned id.
    """

    def __init__(self, remote_url: str, timeout: float = 10.0):
        self.api_url = f"{remote_url.rstrip('/')}/api/battles"
        self.timeout = timeout

    def commit(self, record: BattleRecord) -> RecordId:
        if not record.finalized:
            raise SinkError("Only finalized records can be committed")

        try:
            response = requests.post(self.api_url, json=record_to_row(record), timeout=self.timeout)
        except requests.RequestException as e:
            raise SinkError(f"Could not reach {self.api_url}: {e}") from e
        if response.status_code != 200:
            raise SinkError(f"{self.api_url} answered with status {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            data = None
        record_id = data.get("id") if isinstance(data, dict) else None
        return f"remote:{record_id}" if record_id is not None else "remote"


_STOP = object()


class FinalizeWorker:
    """
    Commit finished records on a background thread.

    The hand-off queue holds one record: at most one match can finish while
    the previous one is still being committed. Completion and failure are
    reported through the callbacks, never to the capture path.

    Args:
        sink: RecordSink to commit to
        on_committed: Callback(record, record_id) after a successful commit
        on_failed: Callback(record, error) after the retry also failed
    """

    def __init__(self, sink: RecordSink,
                 on_committed: Optional[Callable[[BattleRecord, RecordId], None]] = None,
                 on_failed: Optional[Callable[[BattleRecord, SinkError], None]] = None):
        self.sink = sink
        self.on_committed = on_committed
        self.on_failed = on_failed
        self.unsaved: List[BattleRecord] = []
        self._queue = queue.Queue(maxsize=1)
        self._lock = threading.Lock()
        self._thread = None

    def start(self):
        if self._thread is None or not self._thread.is_alive():
            self._thread = threading.Thread(target=self._run, name="finalize", daemon=True)
            self._thread.start()
        return self

    def submit(self, record: BattleRecord):
        """Queue a finalized record for commit. Returns immediately unless one is already waiting."""
        self._queue.put(record)

    def _run(self):
        while True:
            record = self._queue.get()
            try:
                if record is _STOP:
                    return
                self.commit_now(record)
            except Exception:
                # Keep the worker alive, a dead worker would block the next submit()
                logger.exception(f"Unexpected error while committing record started {record.start_time}")
            finally:
                self._queue.task_done()

    def commit_now(self, record: BattleRecord) -> Optional[RecordId]:
        """Commit synchronously with one retry. Returns the record id, or None if kept unsaved."""
        try:
            record_id = self.sink.commit(record)
        except SinkError as e:
            logger.warning(f"Commit failed ({e}), retrying once")
            try:
                record_id = self.sink.commit(record)
            except SinkError as e:
                logger.error(f"Commit failed again, keeping record in memory: {e}")
                with self._lock:
                    self.unsaved.append(record)
                if self.on_failed:
                    self.on_failed(record, e)
                return None

        logger.info(f"Record committed: {record_id}")
        if self.on_committed:
            self.on_committed(record, record_id)
        return record_id

    def retry_unsaved(self) -> List[RecordId]:
        """Try again to commit records that failed twice. Returns the new ids."""
        with self._lock:
            pending, self.unsaved = self.unsaved, []
        ids = []
        for record in pending:
            record_id = self.commit_now(record)
            if record_id is not None:
                ids.append(record_id)
        return ids

    def join(self):
        """Block until every submitted record has been handled."""
        self._queue.join()

    def stop(self, timeout: float = 5.0):
        if self._thread is not None and self._thread.is_alive():
            self._queue.put(_STOP)
            self._thread.join(timeout=timeout)
        self._thread = None
