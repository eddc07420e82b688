from __future__ import annotations

import time

import pytest

from treeguard.batcher import StatsBatcher, WriteBatcher, highest
from treeguard.errors import ValidationError


pytestmark = pytest.mark.unit


class Sink:
    def __init__(self, failures: int = 0) -> None:
        self.batches = []
        self.failures = failures

    def __call__(self, key, batch):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("store unavailable")
        self.batches.append((key, batch.count, batch.value, dict(batch.fields)))


def test_flushes_on_event_count(clock):
    sink = Sink()
    batcher = WriteBatcher(sink, interval=10, maxcount=3, clock=clock)
    assert batcher.add("p", 2) is False
    assert batcher.add("p", 2) is False
    assert batcher.add("p", 2, name="Pat") is True
    assert sink.batches == [("p", 3, 6, {"name": "Pat"})]
    assert len(batcher) == 0


def test_flushes_on_time_window(clock):
    sink = Sink()
    batcher = WriteBatcher(sink, interval=10, clock=clock)
    batcher.add("p", 1)
    clock.advance(9)
    assert batcher.sweep() == 0
    clock.advance(1)
    assert batcher.sweep() == 1
    assert sink.batches == [("p", 1, 1, {})]


def test_flushes_on_value_threshold(clock):
    sink = Sink()
    batcher = WriteBatcher(sink, interval=30, maxvalue=1000, clock=clock)
    batcher.add("p", 600)
    assert sink.batches == []
    batcher.add("p", 400)
    assert sink.batches == [("p", 2, 1000, {})]


def test_keys_are_independent(clock):
    sink = Sink()
    batcher = WriteBatcher(sink, interval=10, maxcount=2, clock=clock)
    batcher.add("a", 1)
    batcher.add("b", 1)
    assert sink.batches == []
    batcher.add("a", 1)
    assert [key for key, *_ in sink.batches] == ["a"]
    assert batcher.peek("b").count == 1


def test_failed_flush_keeps_accumulator(clock):
    sink = Sink(failures=1)
    batcher = WriteBatcher(sink, interval=10, maxcount=2, clock=clock)
    batcher.add("p", 5)
    assert batcher.add("p", 5) is False
    assert batcher.peek("p").value == 10

    batcher.add("p", 5)
    assert sink.batches == [("p", 3, 15, {})]
    assert batcher.peek("p") is None


def test_stop_flushes_remaining(clock):
    sink = Sink()
    batcher = WriteBatcher(sink, interval=60, clock=clock)
    batcher.add("a", 1)
    batcher.add("b", 2)
    batcher.stop()
    assert sorted(key for key, *_ in sink.batches) == ["a", "b"]


def test_sweep_thread_flushes_in_background():
    sink = Sink()
    batcher = WriteBatcher(sink, interval=0.05)
    batcher.start()
    try:
        batcher.add("p", 1)
        deadline = time.monotonic() + 2
        while not sink.batches and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        batcher.stop()
    assert sink.batches == [("p", 1, 1, {})]


def test_highest_keeps_maximum():
    assert highest({"a": 5, "b": 1}, {"a": 3, "b": 4, "c": 0}) == {"a": 5, "b": 4, "c": 0}


def test_stats_flush_on_jump_and_window(clock):
    writes = []
    stats = StatsBatcher(lambda *args: writes.append(args), interval=30, threshold=1000, clock=clock)
    assert stats.record("p", 400, 100) is False
    assert stats.record("p", 1200, 300) is True
    assert writes == [("p", 1200, 300)]

    stats.record("p", 1300, 300)
    clock.advance(30)
    stats.batcher.sweep()
    assert writes[-1] == ("p", 1300, 300)


def test_stats_keep_highest_report(clock):
    writes = []
    stats = StatsBatcher(lambda *args: writes.append(args), interval=30, threshold=10_000, clock=clock)
    stats.record("p", 5000, 50)
    stats.record("p", 3000, 80)
    stats.stop()
    assert writes == [("p", 5000, 80)]


def test_stats_reject_anomalous_totals(clock):
    stats = StatsBatcher(lambda *args: None, clock=clock)
    with pytest.raises(ValidationError) as exc:
        stats.record("p", -1, 0)
    assert exc.value.code == "anomalous_damage"
    with pytest.raises(ValidationError) as exc:
        stats.record("p", 0, 1_000_000_001)
    assert exc.value.code == "anomalous_gold"


def test_stats_remember_a_bounded_number_of_accounts(clock):
    stats = StatsBatcher(lambda *args: None, threshold=10_000, clock=clock, maxseen=2)
    for key in ("a", "b", "a", "c"):
        stats.record(key, 10, 1)
    assert list(stats._seen) == ["a", "c"]
