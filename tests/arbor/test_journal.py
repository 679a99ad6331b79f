"""Tests for journal.py - OperationJournal with efficient tail."""

import json
import threading
from datetime import UTC, datetime

import pytest
import time_machine

from arbor.journal import OperationJournal


@pytest.fixture
def journal(tmp_path):
    return OperationJournal(tmp_path / "meta" / "journal.jsonl")


def test_creates_file_and_parents_on_first_log(journal):
    assert not journal.journal_file.exists()

    journal.log("create", branch="feature/x")

    assert journal.journal_file.exists()


def test_records_event_fields_and_timestamp(journal):
    with time_machine.travel(datetime(2024, 5, 6, 7, 8, 9, tzinfo=UTC), tick=False):
        journal.log("remove", path="/w/x", branch_deleted=True)

    (line,) = journal.journal_file.read_text().splitlines()
    record = json.loads(line)
    assert record == {
        "ts": "2024-05-06T07:08:09+00:00",
        "event": "remove",
        "path": "/w/x",
        "branch_deleted": True,
    }


def test_tail_returns_last_n_in_order(journal):
    for i in range(20):
        journal.log("create", n=i)

    events = journal.tail(3)

    assert [e["n"] for e in events] == [17, 18, 19]


def test_tail_edge_cases(journal):
    assert journal.tail(5) == []
    journal.log("cleanup")
    assert journal.tail(0) == []
    assert len(journal.tail(10)) == 1


def test_tail_skips_torn_lines(journal):
    journal.log("create", n=1)
    with journal.journal_file.open("ab") as f:
        f.write(b'{"event": "crea\n')
    journal.log("create", n=2)

    events = journal.tail(10)

    assert [e.get("n") for e in events] == [1, 2]


def test_tail_spans_multiple_blocks(journal):
    for i in range(500):
        journal.log("create", n=i, padding="x" * 50)

    events = journal.tail(100)

    assert len(events) == 100
    assert events[0]["n"] == 400
    assert events[-1]["n"] == 499


def test_concurrent_appends_do_not_interleave(journal):
    num_threads = 8
    per_thread = 25
    barrier = threading.Barrier(num_threads)

    def write(thread_id):
        barrier.wait()
        for i in range(per_thread):
            journal.log("create", thread=thread_id, n=i)

    threads = [threading.Thread(target=write, args=(tid,)) for tid in range(num_threads)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    lines = journal.journal_file.read_text().splitlines()
    assert len(lines) == num_threads * per_thread
    for line in lines:
        assert "thread" in json.loads(line)
