import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable

from treeguard.batcher import Pending, WriteBatcher
from treeguard.errors import NotFoundError, ValidationError
from treeguard.ledger import loadaccount, saveaccount
from treeguard.schema import ACCOUNTS, ATTACKS, CURRENT, MAX_TREE_HEALTH, WORLD, Account, AttackRecord, WorldState
from treeguard.store import RETRIES, Store, Transaction, retry
from treeguard.weapons import MAX_DAMAGE, MIN_DAMAGE, Catalog, damage, rollgold


logger = logging.getLogger(__name__)

DORMANT_DAYS = 3
RETENTION = 200
PRUNE_CHUNK = 100


@dataclass
class AttackResult:
    damage: int
    gold: int
    health: int
    maxhealth: int
    round: int
    defeatcount: int
    defeated: bool = False
    dormant: bool = False

    def todict(self) -> dict:
        return asdict(self)


class World:
    """The shared tree every player chops at."""

    def __init__(
        self,
        store: Store,
        catalog: Catalog,
        attacklog: WriteBatcher | None = None,
        maxhealth: int = MAX_TREE_HEALTH,
        dormantdays: float = DORMANT_DAYS,
        retention: int = RETENTION,
        clock: Callable[[], float] = time.time,
        rng=None,
        retries: int = RETRIES,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.attacklog = attacklog
        self.maxhealth = int(maxhealth)
        self.dormantdays = float(dormantdays)
        self.retention = int(retention)
        self.clock = clock
        self.rng = rng
        self.retries = retries

    def _load(self, tx: Transaction) -> WorldState:
        snap = tx.get(WORLD, CURRENT)
        if not snap:
            return WorldState(health=self.maxhealth, maxhealth=self.maxhealth)
        return WorldState.fromdoc(snap.data, self.maxhealth)

    def _save(self, tx: Transaction, world: WorldState) -> None:
        world.updatedat = float(self.clock())
        tx.set(WORLD, CURRENT, world.todoc())

    def state(self) -> WorldState:
        snap = self.store.get(WORLD, CURRENT)
        if snap:
            return WorldState.fromdoc(snap.data, self.maxhealth)

        def create(tx):
            world = self._load(tx)
            if not tx.get(WORLD, CURRENT):
                self._save(tx, world)
            return world

        return retry(lambda: self.store.transaction(create), retries=self.retries)

    def dormant(self, account: Account) -> bool:
        if account.lastlogin is None:
            return True
        return self.clock() - account.lastlogin > self.dormantdays * 86400

    def strike(self, tx: Transaction, account: Account, amount: int, gold: int = 0) -> tuple[WorldState, bool]:
        """Damage the tree and credit the attacker inside ``tx``."""
        world = self._load(tx)
        defeated = world.hit(amount)
        account.gold += int(gold)
        account.stats.totaldamage += int(amount)
        account.stats.totalgoldearned += int(gold)
        if defeated:
            account.stats.treedefeatedcount += 1
        self._save(tx, world)
        saveaccount(tx, account)
        return world, defeated

    def idle(self, accountid: str) -> AttackResult:
        world = self.state()
        logger.info("ignoring attack from dormant account %s", accountid)
        return AttackResult(0, 0, world.health, world.maxhealth, world.round, world.defeatcount, dormant=True)

    def attack(self, accountid: str, name: str, weaponid, level=1) -> AttackResult:
        snap = self.store.get(ACCOUNTS, str(accountid))
        if not snap:
            raise NotFoundError("account_not_found")
        if self.dormant(Account.fromdoc(snap.key, snap.data)):
            return self.idle(accountid)

        weapon = self.catalog.weaponbyid(weaponid)
        if weapon is None:
            raise NotFoundError("weapon_not_found")
        try:
            level = int(level)
        except (TypeError, ValueError):
            raise ValidationError("invalid_level") from None
        hit = damage(weapon.attack, level)
        if not MIN_DAMAGE <= hit <= MAX_DAMAGE:
            logger.error("anomalous damage %d (weapon %s, level %s)", hit, weapon.id, level)
            raise ValidationError("anomalous_damage")
        gold = rollgold(weapon, self.rng)

        def apply(tx):
            account = loadaccount(tx, accountid)
            if self.dormant(account):
                return None
            return self.strike(tx, account, hit, gold)

        outcome = retry(lambda: self.store.transaction(apply), retries=self.retries)
        if outcome is None:
            return self.idle(accountid)

        world, defeated = outcome
        self.after(accountid, name, hit, weapon.name, defeated)
        return AttackResult(hit, gold, world.health, world.maxhealth, world.round, world.defeatcount, defeated=defeated)

    def after(self, accountid: str, name: str, amount: int, weaponname: str, defeated: bool, count: int = 1) -> None:
        try:
            if self.attacklog is not None:
                self.attacklog.add(accountid, value=amount, count=count, ownername=name, weaponname=weaponname)
            else:
                self.recordattack(accountid, name, amount, weaponname, count if count > 1 else None)
        except Exception:
            logger.error("failed to log attack for %s", accountid, exc_info=True)
        if defeated:
            logger.info("tree defeated by %s", name)
            try:
                self.prune()
            except Exception:
                logger.error("failed to prune attack records", exc_info=True)

    def recordattack(self, ownerid: str, name: str, amount: int, weaponname: str, count: int | None = None) -> str:
        record = AttackRecord(
            ownerid=str(ownerid or "unknown"),
            ownername=str(name or "unknown"),
            damage=int(amount),
            weaponname=str(weaponname or ""),
            timestamp=float(self.clock()),
            count=count,
        )
        return self.store.add(ATTACKS, record.todoc())

    def flushattacks(self, key: str, batch: Pending) -> None:
        fields = batch.fields
        self.recordattack(key, fields.get("ownername"), int(batch.value), fields.get("weaponname"), batch.count if batch.count > 1 else None)

    def prune(self) -> int:
        rows = self.store.query(ATTACKS, order="timestamp", desc=True)
        stale = [s.key for s in rows[self.retention:]]
        removed = 0
        for start in range(0, len(stale), PRUNE_CHUNK):
            removed += self.store.deletemany(ATTACKS, stale[start:start + PRUNE_CHUNK])
        if removed:
            logger.info("pruned %d attack records", removed)
        return removed

    def recentattacks(self, limit: int = 20) -> list[AttackRecord]:
        rows = self.store.query(ATTACKS, order="timestamp", desc=True, limit=max(1, int(limit)))
        return [AttackRecord.fromdoc(s.data) for s in rows]

    def subscribe(self, callback: Callable[[WorldState], None]) -> Callable[[], None]:
        self.state()

        def deliver(snap):
            if snap:
                callback(WorldState.fromdoc(snap.data, self.maxhealth))

        return self.store.subscribe(WORLD, deliver, key=CURRENT)

    def subscribeattacks(self, callback: Callable[[list[AttackRecord]], None], limit: int = 20) -> Callable[[], None]:
        def deliver(rows):
            callback([AttackRecord.fromdoc(s.data) for s in rows])

        return self.store.subscribe(ATTACKS, deliver, order="timestamp", desc=True, limit=max(1, int(limit)))
