"""Transactional document store on top of sqlite.

Documents live in named collections and carry a version number. A
transaction records the version of everything it reads and commits its
buffered writes only if none of those versions moved in the meantime.
"""

from __future__ import annotations

import json
import logging
import random
import secrets
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable

from treeguard.errors import ConflictError, TransientError


logger = logging.getLogger(__name__)

TX_ATTEMPTS = 5
RETRIES = 3
RETRY_DELAY = 0.1
RNG = random.SystemRandom()

_DELETE = object()


@dataclass
class Snapshot:
    collection: str
    key: str
    data: dict
    version: int
    createdat: float


def _row(collection: str, row) -> Snapshot:
    return Snapshot(collection=collection, key=row[0], data=json.loads(row[1]), version=int(row[2]), createdat=float(row[3]))


def _path(field: str) -> str:
    if not field or not field.replace("_", "").isalnum():
        raise ValueError(f"invalid field name: {field!r}")
    return f"$.{field}"


def retry(fn: Callable, retries: int = RETRIES, delay: float = RETRY_DELAY, sleep: Callable = time.sleep):
    """Call ``fn`` again after a conflict, waiting a little longer each time."""
    attempt = 0
    while True:
        try:
            return fn()
        except ConflictError:
            if attempt >= retries:
                logger.error("transaction still conflicting after %d retries", retries)
                raise
            attempt += 1
            wait = delay * attempt + RNG.uniform(0, delay / 2)
            logger.warning("transaction conflict, retry %d/%d in %.3fs", attempt, retries, wait)
            sleep(wait)


class Transaction:
    def __init__(self, store: "Store") -> None:
        self._store = store
        self.reads: dict[tuple[str, str], int] = {}
        self.writes: dict[tuple[str, str], tuple[object, bool]] = {}

    def get(self, collection: str, key: str) -> Snapshot | None:
        ref = (collection, str(key))
        if ref in self.writes:
            data, merge = self.writes[ref]
            if data is _DELETE:
                return None
            base = self._store.get(collection, key) if merge else None
            merged = {**(base.data if base else {}), **data}
            return Snapshot(collection, str(key), merged, self.reads.get(ref, 0), base.createdat if base else 0.0)
        snap = self._store.get(collection, key)
        self.reads.setdefault(ref, snap.version if snap else 0)
        return snap

    def set(self, collection: str, key: str, data: dict, merge: bool = False) -> None:
        ref = (collection, str(key))
        if merge and ref in self.writes and self.writes[ref][0] is not _DELETE:
            previous, wasmerge = self.writes[ref]
            self.writes[ref] = ({**previous, **data}, wasmerge)
            return
        self.writes[ref] = (dict(data), merge)

    def update(self, collection: str, key: str, fields: dict) -> None:
        self.set(collection, key, fields, merge=True)

    def delete(self, collection: str, key: str) -> None:
        self.writes[(collection, str(key))] = (_DELETE, False)


class _Subscription:
    def __init__(self, collection: str, callback: Callable, key=None, where=(), order=None, desc=False, limit=None) -> None:
        self.collection = collection
        self.callback = callback
        self.key = key
        self.where = tuple(where)
        self.order = order
        self.desc = desc
        self.limit = limit
        self.active = True


class Store:
    def __init__(self, root, name: str = "treeguard", clock: Callable[[], float] = time.time) -> None:
        self.root = Path(root)
        self.name = name
        self.clock = clock
        self._lock = Lock()
        self._subs: list[_Subscription] = []

    def path(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root / f"{self.name}.db"

    @contextmanager
    def connect(self):
        try:
            db = sqlite3.connect(self.path(), timeout=20, isolation_level=None)
        except sqlite3.OperationalError as exc:
            raise TransientError("unavailable", str(exc)) from exc
        try:
            db.execute("PRAGMA busy_timeout = 20000")
            yield db
        except sqlite3.OperationalError as exc:
            raise TransientError("unavailable", str(exc)) from exc
        finally:
            db.close()

    def setup(self) -> None:
        with self.connect() as db:
            db.execute("PRAGMA journal_mode=WAL")
            db.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    createdat REAL NOT NULL,
                    updatedat REAL NOT NULL,
                    PRIMARY KEY (collection, key)
                )
                """
            )

    def get(self, collection: str, key: str) -> Snapshot | None:
        with self.connect() as db:
            row = db.execute(
                "SELECT key, data, version, createdat FROM documents WHERE collection = ? AND key = ?",
                (collection, str(key)),
            ).fetchone()
        return _row(collection, row) if row else None

    def set(self, collection: str, key: str, data: dict, merge: bool = False) -> None:
        with self.connect() as db:
            db.execute("BEGIN IMMEDIATE")
            self._write(db, collection, str(key), data, merge)
            db.execute("COMMIT")
        self._notify({collection})

    def add(self, collection: str, data: dict) -> str:
        key = f"{int(self.clock() * 1000):015d}-{secrets.token_hex(6)}"
        self.set(collection, key, data)
        return key

    def delete(self, collection: str, key: str) -> None:
        self.deletemany(collection, [key])

    def deletemany(self, collection: str, keys) -> int:
        keys = [str(k) for k in keys]
        if not keys:
            return 0
        marks = ",".join(["?"] * len(keys))
        with self.connect() as db:
            cur = db.execute(f"DELETE FROM documents WHERE collection = ? AND key IN ({marks})", (collection, *keys))
            removed = cur.rowcount
        if removed:
            self._notify({collection})
        return removed

    def clear(self, collection: str) -> int:
        with self.connect() as db:
            removed = db.execute("DELETE FROM documents WHERE collection = ?", (collection,)).rowcount
        if removed:
            self._notify({collection})
        return removed

    def query(self, collection: str, where=(), order: str | None = None, desc: bool = False, limit: int | None = None) -> list[Snapshot]:
        sql = "SELECT key, data, version, createdat FROM documents WHERE collection = ?"
        args: list = [collection]
        for field, value in where:
            sql += " AND json_extract(data, ?) = ?"
            args += [_path(field), int(value) if isinstance(value, bool) else value]
        direction = "DESC" if desc else "ASC"
        if order:
            sql += f" ORDER BY json_extract(data, ?) {direction}, rowid {direction}"
            args.append(_path(order))
        else:
            sql += f" ORDER BY rowid {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            args.append(int(limit))
        with self.connect() as db:
            rows = db.execute(sql, tuple(args)).fetchall()
        return [_row(collection, r) for r in rows]

    def count(self, collection: str) -> int:
        with self.connect() as db:
            row = db.execute("SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)).fetchone()
        return int(row[0]) if row else 0

    def transaction(self, fn: Callable[[Transaction], object], attempts: int = TX_ATTEMPTS):
        """Run ``fn`` until it commits without conflicting writers."""
        for attempt in range(1, int(attempts) + 1):
            tx = Transaction(self)
            result = fn(tx)
            try:
                touched = self._commit(tx)
            except ConflictError:
                if attempt >= attempts:
                    raise
                logger.debug("transaction conflict, attempt %d/%d", attempt, attempts)
                continue
            if touched:
                self._notify(touched)
            return result
        raise ConflictError()

    def _commit(self, tx: Transaction) -> set[str]:
        if not tx.writes:
            return set()
        with self.connect() as db:
            db.execute("BEGIN IMMEDIATE")
            for (collection, key), version in tx.reads.items():
                row = db.execute(
                    "SELECT version FROM documents WHERE collection = ? AND key = ?",
                    (collection, key),
                ).fetchone()
                if (int(row[0]) if row else 0) != version:
                    db.execute("ROLLBACK")
                    raise ConflictError()
            for (collection, key), (data, merge) in tx.writes.items():
                if data is _DELETE:
                    db.execute("DELETE FROM documents WHERE collection = ? AND key = ?", (collection, key))
                else:
                    self._write(db, collection, key, data, merge)
            db.execute("COMMIT")
        return {collection for collection, _ in tx.writes}

    def _write(self, db: sqlite3.Connection, collection: str, key: str, data: dict, merge: bool) -> None:
        if merge:
            row = db.execute("SELECT data FROM documents WHERE collection = ? AND key = ?", (collection, key)).fetchone()
            if row:
                data = {**json.loads(row[0]), **data}
        now = float(self.clock())
        db.execute(
            """
            INSERT INTO documents (collection, key, data, version, createdat, updatedat)
            VALUES (?, ?, ?, 1, ?, ?)
            ON CONFLICT(collection, key) DO UPDATE SET
                data = excluded.data,
                version = documents.version + 1,
                updatedat = excluded.updatedat
            """,
            (collection, key, json.dumps(data, separators=(",", ":")), now, now),
        )

    def subscribe(self, collection: str, callback: Callable, key=None, where=(), order=None, desc=False, limit=None) -> Callable[[], None]:
        """Deliver the current value now and again after every change.

        Single-document subscriptions receive a ``Snapshot`` or ``None``;
        query subscriptions receive a list of snapshots.
        """
        sub = _Subscription(collection, callback, key, where, order, desc, limit)
        with self._lock:
            self._subs.append(sub)
        self._deliver(sub)

        def unsubscribe() -> None:
            with self._lock:
                sub.active = False
                if sub in self._subs:
                    self._subs.remove(sub)

        return unsubscribe

    def _notify(self, collections: set[str]) -> None:
        with self._lock:
            subs = [s for s in self._subs if s.collection in collections]
        for sub in subs:
            self._deliver(sub)

    def _deliver(self, sub: _Subscription) -> None:
        if not sub.active:
            return
        try:
            if sub.key is not None:
                value = self.get(sub.collection, sub.key)
            else:
                value = self.query(sub.collection, sub.where, sub.order, sub.desc, sub.limit)
            sub.callback(value)
        except Exception:
            logger.error("subscription callback failed for %s", sub.collection, exc_info=True)
