"""Pytest fixtures shared across the store, service and HTTP tests."""

from __future__ import annotations

import random
from collections.abc import Sequence

import pytest

from treeguard.game import Game
from treeguard.store import Store


class Clock:
    """Manually advanced clock usable for both wall and monotonic time."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(tmp_path, clock) -> Store:
    s = Store(tmp_path / "db", clock=clock)
    s.setup()
    return s


@pytest.fixture
def cfg(tmp_path) -> dict:
    return {
        "secret": "test",
        "dbroot": str(tmp_path / "db"),
        "maxhealth": 1_000_000,
        "dormantdays": 3,
        "attackretention": 200,
        "attackflushseconds": 10,
        "attackflushcount": 50,
        "statsflushseconds": 30,
        "statsflushthreshold": 1000,
        "adminemails": ("boss@example.com",),
    }


@pytest.fixture
def game(cfg, store, clock):
    """A fully wired game over a seeded catalog with deterministic randomness."""
    g = Game(cfg, store=store, clock=clock, monotonic=clock, rng=random.Random(7), retries=10)
    g.catalog.seed()
    yield g
    g.stop()


@pytest.fixture
def player(game):
    return game.identity.register("Alice", "secret1")


@pytest.fixture
def rich(game, player):
    game.ledger.changegold(player.id, 5_000_000, batched=True)
    return game.ledger.account(player.id)


def pytest_collection_modifyitems(items: Sequence[pytest.Item]) -> None:
    """Enforce that every test has exactly one speed marker.

    - `unit`: pure, fast tests with no store access.
    - `integration`: tests touching the store, threads or the HTTP layer.
    """

    invalid: list[str] = []
    for item in items:
        has_unit = item.get_closest_marker("unit") is not None
        has_integration = item.get_closest_marker("integration") is not None
        if has_unit == has_integration:
            invalid.append(item.nodeid)

    if invalid:
        joined = "\n".join(f"- {nodeid}" for nodeid in invalid)
        raise pytest.UsageError(
            "Each test must have exactly one speed marker: `@pytest.mark.unit` or "
            "`@pytest.mark.integration`.\n"
            f"Offending tests:\n{joined}"
        )
