import logging
import time
from typing import Callable

from treeguard.errors import TransientError
from treeguard.schema import ONLINE
from treeguard.store import Store


logger = logging.getLogger(__name__)

IDLE_SECONDS = 5 * 60


class Presence:
    """Who is online right now. Every write here is best-effort."""

    def __init__(self, store: Store, clock: Callable[[], float] = time.time, idle: float = IDLE_SECONDS) -> None:
        self.store = store
        self.clock = clock
        self.idle = float(idle)

    def _write(self, accountid: str, fields: dict) -> bool:
        try:
            self.store.set(ONLINE, str(accountid), {**fields, "lastactive": float(self.clock())}, merge=True)
            return True
        except TransientError:
            logger.warning("presence update for %s dropped", accountid, exc_info=True)
            return False

    def online(self, accountid: str, name: str, **extra) -> bool:
        return self._write(accountid, {**extra, "displayname": name, "online": True})

    def offline(self, accountid: str) -> bool:
        return self._write(accountid, {"online": False})

    def heartbeat(self, accountid: str, name: str | None = None) -> bool:
        fields = {"online": True}
        if name:
            fields["displayname"] = name
        return self._write(accountid, fields)

    def roster(self) -> list[dict]:
        rows = self.store.query(ONLINE, where=[("online", True)], order="displayname")
        return [{"id": s.key, **s.data} for s in rows]

    def cleanup(self) -> int:
        cutoff = self.clock() - self.idle
        stale = [s.key for s in self.store.query(ONLINE, where=[("online", True)]) if float(s.data.get("lastactive") or 0) < cutoff]
        for key in stale:
            self.offline(key)
        return len(stale)

    def subscribe(self, callback: Callable[[list[dict]], None]) -> Callable[[], None]:
        def deliver(rows):
            callback([{"id": s.key, **s.data} for s in rows])

        return self.store.subscribe(ONLINE, deliver, where=[("online", True)], order="displayname")
