from __future__ import annotations

import threading

import pytest

from treeguard.errors import NotFoundError, ValidationError
from treeguard.schema import ACCOUNTS, ATTACKS, CURRENT, WORLD
from treeguard.world import World


pytestmark = pytest.mark.integration


def test_state_is_created_lazily(game, store):
    assert store.get(WORLD, CURRENT) is None
    world = game.world.state()
    assert (world.health, world.maxhealth, world.round, world.defeatcount) == (1_000_000, 1_000_000, 1, 0)
    assert store.get(WORLD, CURRENT) is not None


def test_attack_damages_tree_and_credits_account(game, player):
    result = game.world.attack(player.id, player.displayname, 1, 2)
    assert result.damage == 4
    assert result.health == 1_000_000 - 4
    assert not result.dormant
    account = game.ledger.account(player.id)
    assert account.stats.totaldamage == 4
    assert account.gold == 500 + result.gold
    assert account.stats.totalgoldearned == result.gold


def test_attack_rejects_unknown_weapon_and_bad_damage(game, player):
    with pytest.raises(NotFoundError) as exc:
        game.world.attack(player.id, player.displayname, 999, 1)
    assert exc.value.code == "weapon_not_found"
    with pytest.raises(ValidationError) as exc:
        game.world.attack(player.id, player.displayname, 20, 30)
    assert exc.value.code == "anomalous_damage"
    with pytest.raises(ValidationError):
        game.world.attack(player.id, player.displayname, 1, "high")
    assert game.world.state().health == 1_000_000


def test_dormant_account_attack_is_a_noop(game, player, clock, store):
    before = game.world.state()
    clock.advance(4 * 86400)
    result = game.world.attack(player.id, player.displayname, 1, 1)
    assert result.dormant
    assert result.damage == 0
    assert game.world.state().health == before.health
    assert game.ledger.account(player.id).stats.totaldamage == 0
    assert len(game.attacklog) == 0

    game.identity.touch(player.id)
    assert not game.world.attack(player.id, player.displayname, 1, 1).dormant


def test_dormant_account_is_ignored_before_weapon_checks(game, player, clock):
    clock.advance(4 * 86400)
    assert game.world.attack(player.id, player.displayname, 999, 1).dormant
    assert game.world.attack(player.id, player.displayname, 20, 30).dormant
    assert game.world.state().health == 1_000_000
    with pytest.raises(NotFoundError) as exc:
        game.world.attack("nobody", "Nobody", 1, 1)
    assert exc.value.code == "account_not_found"


def test_account_without_login_is_dormant(game, player, store):
    snap = store.get(ACCOUNTS, player.id)
    store.set(ACCOUNTS, player.id, {**snap.data, "lastlogin": None})
    assert game.world.attack(player.id, player.displayname, 1, 1).dormant


def test_defeat_resets_tree_and_counts(game, player, store):
    game.world.state()
    store.set(WORLD, CURRENT, {"health": 2}, merge=True)
    result = game.world.attack(player.id, player.displayname, 1, 1)
    assert result.defeated
    assert (result.health, result.round, result.defeatcount) == (1_000_000, 2, 1)
    assert game.ledger.account(player.id).stats.treedefeatedcount == 1


def test_concurrent_attacks_lose_no_damage(game):
    players = [game.identity.register(f"chopper{i}", "secret1") for i in range(8)]
    game.world.state()
    errors = []

    def swing(account):
        try:
            for _ in range(3):
                game.world.attack(account.id, account.displayname, 1, 1)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=swing, args=(p,)) for p in players]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert game.world.state().health == 1_000_000 - 8 * 3 * 3
    assert sum(game.ledger.account(p.id).stats.totaldamage for p in players) == 8 * 3 * 3


def test_attack_log_is_batched_per_player(game, player):
    for _ in range(3):
        game.world.attack(player.id, player.displayname, 1, 1)
    assert game.world.recentattacks() == []
    pending = game.attacklog.peek(player.id)
    assert (pending.count, pending.value) == (3, 9)

    game.attacklog.sweep(force=True)
    [record] = game.world.recentattacks()
    assert (record.ownername, record.damage, record.count, record.weaponname) == ("Alice", 9, 3, "Hand Chop")


def test_attack_log_flushes_after_window(game, player, clock):
    game.world.attack(player.id, player.displayname, 1, 1)
    clock.advance(11)
    game.world.attack(player.id, player.displayname, 1, 1)
    [record] = game.world.recentattacks()
    assert record.damage == 6


def test_prune_keeps_newest_records(store, game, clock):
    world = World(store, game.catalog, retention=5, clock=clock)
    for n in range(12):
        clock.advance(1)
        world.recordattack("p", "Pat", n + 1, "Hand Chop")
    assert world.prune() == 7
    assert [r.damage for r in world.recentattacks(10)] == [12, 11, 10, 9, 8]
    assert store.count(ATTACKS) == 5


def test_unbatched_world_records_each_attack(store, game, player):
    world = World(store, game.catalog, clock=game.world.clock, rng=game.world.rng)
    world.attack(player.id, player.displayname, 1, 1)
    [record] = world.recentattacks()
    assert record.count is None
    assert record.damage == 3


def test_subscribe_delivers_world_updates(game, player):
    seen = []
    unsubscribe = game.world.subscribe(lambda w: seen.append(w.health))
    game.world.attack(player.id, player.displayname, 1, 1)
    unsubscribe()
    game.world.attack(player.id, player.displayname, 1, 1)
    assert seen == [1_000_000, 1_000_000 - 3]


def test_attack_feed_subscription(store, game, clock):
    world = World(store, game.catalog, clock=clock)
    seen = []
    unsubscribe = world.subscribeattacks(lambda records: seen.append([r.damage for r in records]), limit=2)
    for amount in (5, 6, 7):
        clock.advance(1)
        world.recordattack("p", "Pat", amount, "Hand Chop")
    unsubscribe()
    assert seen == [[], [5], [6, 5], [7, 6]]


def test_catalog_lookups(game):
    assert [w.id for w in game.catalog.weaponsbyrarity("epic")] == [11, 12, 13, 14, 15]
    assert [w.name for w in game.catalog.weaponsbyids([3, 404, "1"])] == ["Phone Axe", "Hand Chop"]
    assert game.catalog.weaponbyid("axe") is None
