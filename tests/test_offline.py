from __future__ import annotations

import pytest

from treeguard.errors import ValidationError
from treeguard.offline import MAX_OFFLINE
from treeguard.schema import OfflineState, Weapon


pytestmark = pytest.mark.integration


def test_short_absence_earns_nothing(game, player, clock):
    game.offline.save(player.id, 1, 1, 2200)
    clock.advance(30)
    assert game.offline.preview(player.id) is None
    assert game.offline.apply(player.id) is None
    assert game.ledger.account(player.id).offline is not None


def test_reward_counts_attacks_from_interval(game, player, clock):
    game.offline.save(player.id, 1, 2, 2200)
    clock.advance(2 * 3600)
    reward = game.offline.preview(player.id)
    assert reward.attackcount == 7200 * 1000 // 2200
    assert reward.totaldamage == 4 * reward.attackcount
    assert reward.weaponname == "Hand Chop"
    assert reward.hours == 2.0


def test_absence_is_capped_at_a_day(game, player, clock):
    game.offline.save(player.id, 1, 1, 2000)
    clock.advance(3 * 86400)
    reward = game.offline.preview(player.id)
    assert reward.seconds == MAX_OFFLINE
    assert reward.attackcount == MAX_OFFLINE * 1000 // 2200


def test_apply_credits_once(game, player, clock):
    game.offline.save(player.id, 1, 1, 2200)
    clock.advance(3600)
    before = game.ledger.account(player.id)
    health = game.world.state().health

    reward = game.offline.apply(player.id)
    assert reward is not None
    after = game.ledger.account(player.id)
    assert after.gold == before.gold + reward.totalgold
    assert after.stats.totaldamage == reward.totaldamage
    assert after.offline is None
    assert game.world.state().health == health - reward.totaldamage

    assert game.offline.apply(player.id) is None
    assert game.ledger.account(player.id).gold == after.gold


def test_apply_logs_a_summary_attack(game, player, clock):
    game.offline.save(player.id, 1, 1, 2200)
    clock.advance(600)
    reward = game.offline.apply(player.id)
    # a summary carries more events than the count threshold, so it is written at once
    [record] = game.world.recentattacks()
    assert record.count == reward.attackcount
    assert record.damage == reward.totaldamage


def test_unknown_weapon_earns_nothing(game, player, clock):
    game.offline.save(player.id, 999, 1, 2000)
    clock.advance(3600)
    assert game.offline.apply(player.id) is None


def test_save_validates_and_clear_removes(game, player):
    with pytest.raises(ValidationError):
        game.offline.save(player.id, "axe", 1, 2000)
    with pytest.raises(ValidationError):
        game.offline.save(player.id, 1, 1, -5)
    game.offline.save(player.id, 1, 1, 2000)
    game.offline.clear(player.id)
    assert game.ledger.account(player.id).offline is None


def test_calculate_without_snapshot(game):
    assert game.offline.calculate(None) is None
    assert game.offline.calculate(OfflineState(weaponid=1, lastactive=0)) is None


def test_faster_client_interval_is_ignored(game, player, clock):
    game.offline.save(player.id, 1, 1, 100)
    clock.advance(3600)
    reward = game.offline.preview(player.id)
    assert reward.attackcount == 3600 * 1000 // 2200


def test_anomalous_level_is_rejected_and_kept(game, player, clock):
    game.offline.save(player.id, 20, 1000, 580)
    clock.advance(86400)
    health = game.world.state().health
    with pytest.raises(ValidationError) as exc:
        game.offline.apply(player.id)
    assert exc.value.code == "anomalous_damage"
    account = game.ledger.account(player.id)
    assert account.gold == 500
    assert account.offline is not None
    assert game.world.state().health == health


def test_gold_above_batched_limit_is_rejected(game, player, clock):
    game.catalog.seed([Weapon(id=90, name="Gilded Axe", rarity="COMMON", attack=1, attackinterval=1000, goldchance=1.0, goldmin=1000, goldmax=1000).todoc()])
    game.offline.save(player.id, 90, 1, 1000)
    clock.advance(86400)
    assert game.offline.preview(player.id).totalgold == 86_400_000
    with pytest.raises(ValidationError) as exc:
        game.offline.apply(player.id)
    assert exc.value.code == "anomalous_change"
    assert game.ledger.balance(player.id) == 500
