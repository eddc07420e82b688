"""Coalesce high-frequency writes into periodic flushes.

A ``WriteBatcher`` keeps one accumulator per key. ``add`` merges an event
into it and flushes that key when its time window, event count or value
threshold is reached. A sweep thread flushes whatever the event path left
behind. An accumulator is only dropped once its flush callable returns; a
failing flush keeps it for the next sweep.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from threading import Event, Lock, Thread
from typing import Callable

from treeguard.errors import ValidationError


logger = logging.getLogger(__name__)


@dataclass
class Pending:
    value: float = 0
    count: int = 0
    lastflush: float = 0.0
    fields: dict = field(default_factory=dict)


def overwrite(old: dict, new: dict) -> dict:
    return {**old, **new}


def highest(old: dict, new: dict) -> dict:
    merged = dict(old)
    for name, value in new.items():
        merged[name] = max(merged.get(name, value), value)
    return merged


class WriteBatcher:
    def __init__(
        self,
        flush: Callable[[str, Pending], None],
        interval: float,
        maxcount: int | None = None,
        maxvalue: float | None = None,
        combine: Callable[[dict, dict], dict] = overwrite,
        clock: Callable[[], float] = time.monotonic,
        name: str = "batcher",
    ) -> None:
        self._flush = flush
        self.interval = float(interval)
        self.maxcount = maxcount
        self.maxvalue = maxvalue
        self.combine = combine
        self.clock = clock
        self.name = name
        self._lock = Lock()
        self._pending: dict[str, Pending] = {}
        self._flushing: set[str] = set()
        self._stop = Event()
        self._thread: Thread | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def peek(self, key: str) -> Pending | None:
        with self._lock:
            p = self._pending.get(str(key))
            return replace(p, fields=dict(p.fields)) if p else None

    def _due(self, p: Pending, now: float) -> bool:
        if p.count <= 0:
            return False
        if now - p.lastflush >= self.interval:
            return True
        if self.maxcount is not None and p.count >= self.maxcount:
            return True
        return self.maxvalue is not None and p.value >= self.maxvalue

    def add(self, key: str, value: float = 0, count: int = 1, **fields) -> bool:
        """Record an event; returns True when it caused a successful flush."""
        key = str(key)
        now = self.clock()
        with self._lock:
            p = self._pending.get(key)
            if p is None:
                p = self._pending[key] = Pending(lastflush=now)
            p.value += value
            p.count += int(count)
            p.fields = self.combine(p.fields, fields)
            due = self._due(p, now)
        if due:
            return self.flush(key)
        return False

    def flush(self, key: str) -> bool:
        key = str(key)
        with self._lock:
            p = self._pending.get(key)
            if p is None or p.count <= 0 or key in self._flushing:
                return False
            self._flushing.add(key)
            batch = replace(p, fields=dict(p.fields))
        try:
            self._flush(key, batch)
        except Exception:
            logger.error("%s flush failed for %s, keeping %d events", self.name, key, batch.count, exc_info=True)
            with self._lock:
                self._flushing.discard(key)
            return False
        with self._lock:
            self._flushing.discard(key)
            p = self._pending.get(key)
            if p is not None:
                p.value -= batch.value
                p.count -= batch.count
                p.lastflush = self.clock()
                if p.count <= 0:
                    del self._pending[key]
        return True

    def sweep(self, force: bool = False) -> int:
        now = self.clock()
        with self._lock:
            keys = [k for k, p in self._pending.items() if force or self._due(p, now)]
        flushed = 0
        for key in keys:
            if self.flush(key):
                flushed += 1
        return flushed

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception:
                logger.error("%s sweep failed", self.name, exc_info=True)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = Thread(target=self._run, name=f"{self.name}-sweep", daemon=True)
        self._thread.start()

    def stop(self, flush: bool = True) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=max(1.0, self.interval))
            self._thread = None
        if flush:
            self.sweep(force=True)


class StatsBatcher:
    """Batch lifetime damage and gold totals reported by clients.

    Reports are absolute totals. The batcher keeps the highest value seen per
    account and flushes when the total rose by ``threshold`` or the window
    elapsed; the writer only ever raises stored values.
    """

    LIMIT = 1_000_000_000
    MAX_SEEN = 10_000

    def __init__(
        self,
        write: Callable[[str, int, int], object],
        interval: float = 30,
        threshold: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        maxseen: int = MAX_SEEN,
    ) -> None:
        self.write = write
        self.maxseen = int(maxseen)
        self.batcher = WriteBatcher(self._flush, interval=interval, maxvalue=threshold, combine=highest, clock=clock, name="stats")
        self._lock = Lock()
        self._seen: OrderedDict[str, tuple[int, int]] = OrderedDict()

    def record(self, accountid: str, totaldamage: int = 0, totalgoldearned: int = 0) -> bool:
        damage = int(totaldamage)
        gold = int(totalgoldearned)
        if not 0 <= damage <= self.LIMIT:
            raise ValidationError("anomalous_damage")
        if not 0 <= gold <= self.LIMIT:
            raise ValidationError("anomalous_gold")
        key = str(accountid)
        with self._lock:
            olddamage, oldgold = self._seen.get(key, (0, 0))
            self._seen[key] = (max(olddamage, damage), max(oldgold, gold))
            self._seen.move_to_end(key)
            # the least recently reporting account is forgotten first
            while len(self._seen) > self.maxseen:
                self._seen.popitem(last=False)
        jump = max(0, damage - olddamage) + max(0, gold - oldgold)
        return self.batcher.add(key, value=jump, totaldamage=damage, totalgoldearned=gold)

    def _flush(self, key: str, batch: Pending) -> None:
        self.write(key, int(batch.fields.get("totaldamage", 0)), int(batch.fields.get("totalgoldearned", 0)))

    def start(self) -> None:
        self.batcher.start()

    def stop(self) -> None:
        self.batcher.stop()
