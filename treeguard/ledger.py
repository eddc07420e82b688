import logging
import time
from dataclasses import dataclass
from typing import Callable

from treeguard.errors import NotFoundError, ValidationError
from treeguard.schema import ACCOUNTS, RARITIES, Account, Achievement, InventoryItem, Weapon
from treeguard.store import RETRIES, Store, Transaction, retry
from treeguard.weapons import PRICES, Catalog, pickweapon


logger = logging.getLogger(__name__)

INVENTORY_CAP = 1000
SINGLE_LIMIT = 1_000_000
BATCH_LIMIT = 10_000_000
SELL_MAX = 100_000


def loadaccount(tx: Transaction, accountid: str) -> Account:
    snap = tx.get(ACCOUNTS, accountid)
    if not snap:
        raise NotFoundError("account_not_found")
    return Account.fromdoc(snap.key, snap.data)


def saveaccount(tx: Transaction, account: Account) -> None:
    tx.set(ACCOUNTS, account.id, account.todoc())


def aftersell(equipped: int | None, index: int, remaining: int) -> int | None:
    if equipped is None:
        return None
    if equipped == index:
        return 0 if remaining > 0 else None
    if equipped > index:
        return equipped - 1
    return equipped


def aftersacrifice(equipped: int | None, target: int, sacrifices: set[int], remaining: int) -> int | None:
    """Where the equipped slot lands once ``sacrifices`` are removed."""
    if equipped is None or equipped < 0:
        return None
    offset = sum(1 for i in sacrifices if i < equipped)
    if equipped == target:
        # the upgraded item keeps its position among the survivors
        return target - sum(1 for i in sacrifices if i < target)
    moved = equipped - offset
    if 0 <= moved < remaining:
        return moved
    return 0 if remaining > 0 else None


@dataclass
class DrawResult:
    weapon: Weapon
    gold: int
    index: int | None = None

    def todict(self) -> dict:
        return {"weapon": self.weapon.todoc(), "gold": self.gold, "index": self.index}


class Ledger:
    """Currency, inventory and statistics mutations for a single account."""

    def __init__(self, store: Store, catalog: Catalog, clock: Callable[[], float] = time.time, rng=None, retries: int = RETRIES) -> None:
        self.store = store
        self.catalog = catalog
        self.clock = clock
        self.rng = rng
        self.retries = retries

    def _run(self, fn):
        return retry(lambda: self.store.transaction(fn), retries=self.retries)

    def account(self, accountid: str) -> Account:
        snap = self.store.get(ACCOUNTS, str(accountid))
        if not snap:
            raise NotFoundError("account_not_found")
        return Account.fromdoc(snap.key, snap.data)

    def balance(self, accountid: str) -> int:
        return self.account(accountid).gold

    def changegold(self, accountid: str, delta: int, batched: bool = False) -> int:
        value = int(delta)
        limit = BATCH_LIMIT if batched else SINGLE_LIMIT
        if abs(value) > limit:
            raise ValidationError("anomalous_change")

        def apply(tx):
            account = loadaccount(tx, accountid)
            if account.gold + value < 0:
                raise ValidationError("insufficient_funds")
            account.gold += value
            if value > 0:
                account.stats.totalgoldearned += value
            saveaccount(tx, account)
            return account.gold

        gold = self._run(apply)
        logger.debug("gold %s %+d -> %d", accountid, value, gold)
        return gold

    def draw(self, accountid: str, floor: str, cost: int, keep: bool = True) -> DrawResult:
        """Buy one weapon at the price fixed for ``floor``.

        The weapon is always chosen here from the stored catalog. With
        ``keep`` the weapon is appended to the inventory in the same
        transaction that takes the gold.
        """
        floor = str(floor or "").upper()
        if floor not in PRICES:
            raise ValidationError("invalid_rarity")
        if int(cost) != PRICES[floor]:
            raise ValidationError("invalid_price")
        weapon = pickweapon(self.catalog.allweapons(), floor, self.rng)
        if weapon is None:
            raise NotFoundError("no_weapon_available")

        def apply(tx):
            account = loadaccount(tx, accountid)
            if account.gold < PRICES[floor]:
                raise ValidationError("insufficient_funds")
            index = None
            if keep:
                if len(account.inventory) >= INVENTORY_CAP:
                    raise ValidationError("inventory_full")
                account.inventory.append(InventoryItem.fromweapon(weapon))
                index = len(account.inventory) - 1
                if account.equipped is None:
                    account.equipped = index
                account.stats.maxweaponlevel = max(account.stats.maxweaponlevel, 1)
            account.gold -= PRICES[floor]
            account.stats.drawcount += 1
            account.stats.countrarity(weapon.rarity)
            saveaccount(tx, account)
            return DrawResult(weapon=weapon, gold=account.gold, index=index)

        result = self._run(apply)
        logger.info("draw %s floor=%s -> %s (%s)", accountid, floor, weapon.name, weapon.rarity)
        return result

    def additem(self, accountid: str, payload) -> list[InventoryItem]:
        item = InventoryItem.frompayload(payload)

        def apply(tx):
            account = loadaccount(tx, accountid)
            if len(account.inventory) >= INVENTORY_CAP:
                raise ValidationError("inventory_full")
            account.inventory.append(item)
            account.stats.maxweaponlevel = max(account.stats.maxweaponlevel, item.level)
            saveaccount(tx, account)
            return account.inventory

        return self._run(apply)

    def upgrade(self, accountid: str, index: int, payload) -> list[InventoryItem]:
        item = InventoryItem.frompayload(payload)
        slot = int(index)

        def apply(tx):
            account = loadaccount(tx, accountid)
            if not 0 <= slot < len(account.inventory):
                raise ValidationError("invalid_index")
            account.inventory[slot] = item
            account.stats.maxweaponlevel = max(account.stats.maxweaponlevel, item.level)
            saveaccount(tx, account)
            return account.inventory

        return self._run(apply)

    def sell(self, accountid: str, index: int, price: int) -> Account:
        slot = int(index)
        value = int(price)

        def apply(tx):
            account = loadaccount(tx, accountid)
            if not 0 <= slot < len(account.inventory):
                raise ValidationError("invalid_index")
            if not 0 <= value <= SELL_MAX:
                raise ValidationError("invalid_price")
            if len(account.inventory) <= 1:
                raise ValidationError("must_keep_one")
            del account.inventory[slot]
            account.equipped = aftersell(account.equipped, slot, len(account.inventory))
            account.gold += value
            saveaccount(tx, account)
            return account

        return self._run(apply)

    def sacrifice(self, accountid: str, target: int, sacrifices, payload, gold=None) -> Account:
        """Upgrade ``target`` by consuming the ``sacrifices`` slots.

        ``gold`` is accepted for client compatibility and ignored; the
        stored balance is returned untouched.
        """
        item = InventoryItem.frompayload(payload)
        slot = int(target)
        victims = {int(i) for i in sacrifices or []}

        def apply(tx):
            account = loadaccount(tx, accountid)
            size = len(account.inventory)
            if not 0 <= slot < size:
                raise ValidationError("invalid_index")
            if any(not 0 <= i < size for i in victims):
                raise ValidationError("invalid_index")
            if slot in victims:
                raise ValidationError("target_in_sacrifices")
            if size - len(victims) < 1:
                raise ValidationError("must_keep_one")

            survivors = []
            for i, current in enumerate(account.inventory):
                if i == slot:
                    survivors.append(item)
                elif i not in victims:
                    survivors.append(current)
            account.equipped = aftersacrifice(account.equipped, slot, victims, len(survivors))
            account.inventory = survivors
            account.stats.sacrificecount += 1
            account.stats.maxweaponlevel = max(account.stats.maxweaponlevel, item.level)
            saveaccount(tx, account)
            return account

        if gold is not None:
            logger.debug("ignoring client gold %r on sacrifice for %s", gold, accountid)
        return self._run(apply)

    def equip(self, accountid: str, index) -> int | None:
        slot = None if index is None else int(index)

        def apply(tx):
            account = loadaccount(tx, accountid)
            if slot is not None and not 0 <= slot < len(account.inventory):
                raise ValidationError("invalid_index")
            account.equipped = slot
            saveaccount(tx, account)
            return slot

        return self._run(apply)

    def achievement(self, accountid: str, achievementid: str, unlocked: bool = False, progress: float = 0) -> bool:
        """Upsert an achievement; True when this call unlocked it."""
        key = str(achievementid or "").strip()
        if not key:
            raise ValidationError("invalid_achievement")
        record = Achievement(id=key, unlocked=bool(unlocked), progress=float(progress or 0))

        def apply(tx):
            account = loadaccount(tx, accountid)
            before = False
            for i, current in enumerate(account.achievements):
                if current.id == key:
                    before = current.unlocked
                    account.achievements[i] = record
                    break
            else:
                account.achievements.append(record)
            saveaccount(tx, account)
            return record.unlocked and not before

        return self._run(apply)

    def raisestats(self, accountid: str, totaldamage: int = 0, totalgoldearned: int = 0) -> dict:
        """Write lifetime totals without ever lowering a stored value."""

        def apply(tx):
            account = loadaccount(tx, accountid)
            stats = account.stats
            raised = {
                "totaldamage": max(stats.totaldamage, int(totaldamage)),
                "totalgoldearned": max(stats.totalgoldearned, int(totalgoldearned)),
            }
            if raised["totaldamage"] != stats.totaldamage or raised["totalgoldearned"] != stats.totalgoldearned:
                stats.totaldamage = raised["totaldamage"]
                stats.totalgoldearned = raised["totalgoldearned"]
                saveaccount(tx, account)
            return raised

        return self._run(apply)

    def counts(self, accountid: str) -> dict:
        stats = self.account(accountid).stats
        return {rarity: getattr(stats, f"{rarity.lower()}count") for rarity in RARITIES}
