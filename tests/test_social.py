from __future__ import annotations

import time

import pytest

from treeguard.chat import Chat
from treeguard.errors import ValidationError
from treeguard.feeds import Throttle, throttled
from treeguard.presence import Presence


pytestmark = pytest.mark.integration


def test_chat_keeps_order_and_retention(store, clock):
    chat = Chat(store, clock=clock, retention=3)
    for n in range(5):
        clock.advance(1)
        chat.send("p", "Pat", f"hello {n}")
    assert [m.text for m in chat.recent()] == ["hello 2", "hello 3", "hello 4"]
    assert [m.text for m in chat.recent(2)] == ["hello 3", "hello 4"]


def test_chat_validates_messages(store):
    chat = Chat(store)
    for text in ("", "   ", "x" * 201):
        with pytest.raises(ValidationError):
            chat.send("p", "Pat", text)
    with pytest.raises(ValidationError):
        chat.send("p", "Pat", "hi", kind="shout")


def test_announcements(game, player):
    game.chat.announcelegendary(player.id, "Alice", "Rocket Axe")
    game.chat.announceachievement(player.id, "Alice", "First Blood")
    legendary, achievement = game.chat.recent()
    assert legendary.kind == "legendary"
    assert "Rocket Axe" in legendary.text
    assert achievement.kind == "achievement"


def test_chat_subscription(store):
    chat = Chat(store)
    seen = []
    unsubscribe = chat.subscribe(lambda messages: seen.append([m.text for m in messages]))
    chat.send("p", "Pat", "one")
    unsubscribe()
    assert seen == [[], ["one"]]


def test_presence_roster_and_cleanup(store, clock):
    presence = Presence(store, clock=clock)
    presence.online("a", "Ann")
    presence.online("b", "Bob")
    presence.offline("b")
    assert [u["displayname"] for u in presence.roster()] == ["Ann"]

    clock.advance(200)
    presence.heartbeat("c", "Cid")
    clock.advance(200)
    assert presence.cleanup() == 1
    assert [u["id"] for u in presence.roster()] == ["c"]


def test_throttle_delivers_latest_value():
    seen = []
    throttle = Throttle(seen.append, 0.05)
    throttle(1)
    throttle(2)
    throttle(3)
    assert seen == [1]
    deadline = time.monotonic() + 2
    while len(seen) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert seen == [1, 3]


def test_cancelled_throttle_drops_pending():
    seen = []
    throttle = Throttle(seen.append, 0.05)
    throttle("a")
    throttle("b")
    throttle.cancel()
    time.sleep(0.15)
    throttle("c")
    assert seen == ["a"]


def test_throttled_subscription_detaches(game, player):
    seen = []
    detach = throttled(game.world.subscribe, seen.append, 60)
    game.world.attack(player.id, player.displayname, 1, 1)
    detach()
    assert [w.health for w in seen] == [1_000_000]


def test_presence_subscription(store, clock):
    presence = Presence(store, clock=clock)
    seen = []
    unsubscribe = presence.subscribe(lambda users: seen.append([u["id"] for u in users]))
    presence.online("a", "Ann")
    presence.offline("a")
    unsubscribe()
    assert seen == [[], ["a"], []]
