import logging
import time

from treeguard.accounts import Identity
from treeguard.batcher import StatsBatcher, WriteBatcher
from treeguard.chat import Chat
from treeguard.ledger import Ledger
from treeguard.offline import Offline
from treeguard.presence import Presence
from treeguard.store import RETRIES, Store
from treeguard.weapons import Catalog
from treeguard.world import World


logger = logging.getLogger(__name__)


class Game:
    """Wires the services together and owns the batchers' lifecycle."""

    def __init__(self, cfg: dict, store: Store | None = None, clock=time.time, monotonic=time.monotonic, rng=None, retries: int = RETRIES) -> None:
        self.cfg = cfg
        self.store = store or Store(cfg["dbroot"], clock=clock)
        self.store.setup()
        self.catalog = Catalog(self.store)
        self.world = World(
            self.store,
            self.catalog,
            maxhealth=cfg.get("maxhealth", 1_000_000),
            dormantdays=cfg.get("dormantdays", 3),
            retention=cfg.get("attackretention", 200),
            clock=clock,
            rng=rng,
            retries=retries,
        )
        self.attacklog = WriteBatcher(
            self.world.flushattacks,
            interval=cfg.get("attackflushseconds", 10),
            maxcount=cfg.get("attackflushcount", 50),
            clock=monotonic,
            name="attacklog",
        )
        self.world.attacklog = self.attacklog
        self.ledger = Ledger(self.store, self.catalog, clock=clock, rng=rng, retries=retries)
        self.stats = StatsBatcher(
            self.ledger.raisestats,
            interval=cfg.get("statsflushseconds", 30),
            threshold=cfg.get("statsflushthreshold", 1000),
            clock=monotonic,
        )
        self.offline = Offline(self.store, self.catalog, self.world, clock=clock, rng=rng, retries=retries)
        self.identity = Identity(self.store, self.catalog, cfg.get("adminemails", ()), clock=clock, retries=retries)
        self.chat = Chat(self.store, clock=clock)
        self.presence = Presence(self.store, clock=clock)

    def start(self) -> None:
        if not self.catalog.allweapons():
            logger.warning("weapon catalog is empty, run tools/admin.py seed")
        self.attacklog.start()
        self.stats.start()

    def stop(self) -> None:
        self.attacklog.stop()
        self.stats.stop()
