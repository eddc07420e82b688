import logging
import time
from typing import Callable

from treeguard.errors import ValidationError
from treeguard.schema import CHAT, ChatMessage
from treeguard.store import Store


logger = logging.getLogger(__name__)

KINDS = {"normal", "legendary", "achievement"}
MAX_TEXT = 200
RETENTION = 100


class Chat:
    def __init__(self, store: Store, clock: Callable[[], float] = time.time, retention: int = RETENTION) -> None:
        self.store = store
        self.clock = clock
        self.retention = int(retention)

    def send(self, ownerid: str, name: str, text: str, kind: str = "normal") -> ChatMessage:
        body = str(text or "").strip()
        if not body or len(body) > MAX_TEXT:
            raise ValidationError("invalid_message")
        if kind not in KINDS:
            raise ValidationError("invalid_kind")
        message = ChatMessage(
            ownerid=str(ownerid or "unknown"),
            ownername=str(name or "unknown"),
            text=body,
            kind=kind,
            timestamp=float(self.clock()),
        )
        self.store.add(CHAT, message.todoc())
        try:
            self.prune()
        except Exception:
            logger.error("failed to prune chat log", exc_info=True)
        return message

    def announcelegendary(self, ownerid: str, name: str, weaponname: str) -> ChatMessage:
        return self.send(ownerid, name, f"🎉 {name} drew the legendary weapon {weaponname}!", "legendary")

    def announceachievement(self, ownerid: str, name: str, achievementname: str) -> ChatMessage:
        return self.send(ownerid, name, f"🏆 {name} completed the achievement {achievementname}!", "achievement")

    def recent(self, limit: int = 50) -> list[ChatMessage]:
        rows = self.store.query(CHAT, order="timestamp", desc=True, limit=max(1, int(limit)))
        return [ChatMessage.fromdoc(s.data) for s in reversed(rows)]

    def prune(self) -> int:
        if self.store.count(CHAT) <= self.retention:
            return 0
        rows = self.store.query(CHAT, order="timestamp", desc=True)
        return self.store.deletemany(CHAT, [s.key for s in rows[self.retention:]])

    def subscribe(self, callback: Callable[[list[ChatMessage]], None], limit: int = 50) -> Callable[[], None]:
        def deliver(rows):
            callback([ChatMessage.fromdoc(s.data) for s in reversed(rows)])

        return self.store.subscribe(CHAT, deliver, order="timestamp", desc=True, limit=max(1, int(limit)))
