import logging
import time
from dataclasses import dataclass
from typing import Callable

from treeguard.errors import NotFoundError, ValidationError
from treeguard.ledger import BATCH_LIMIT, loadaccount, saveaccount
from treeguard.schema import ACCOUNTS, DEFAULT_INTERVAL, Account, OfflineState
from treeguard.store import RETRIES, Store, retry
from treeguard.weapons import MAX_DAMAGE, MIN_DAMAGE, Catalog, damage, rollgold
from treeguard.world import World


logger = logging.getLogger(__name__)

MIN_OFFLINE = 60
MAX_OFFLINE = 24 * 60 * 60


@dataclass
class OfflineReward:
    attackcount: int
    totaldamage: int
    totalgold: int
    seconds: float
    weaponname: str = ""

    @property
    def hours(self) -> float:
        return round(self.seconds / 3600, 1)

    def todict(self) -> dict:
        return {
            "attackcount": self.attackcount,
            "totaldamage": self.totaldamage,
            "totalgold": self.totalgold,
            "seconds": self.seconds,
            "hours": self.hours,
            "weaponname": self.weaponname,
        }


class Offline:
    def __init__(self, store: Store, catalog: Catalog, world: World, clock: Callable[[], float] = time.time, rng=None, retries: int = RETRIES) -> None:
        self.store = store
        self.catalog = catalog
        self.world = world
        self.clock = clock
        self.rng = rng
        self.retries = retries

    def _run(self, fn):
        return retry(lambda: self.store.transaction(fn), retries=self.retries)

    def save(self, accountid: str, weaponid, level=1, interval=DEFAULT_INTERVAL, since: float | None = None) -> OfflineState:
        """Remember what the player had equipped when they went idle."""
        try:
            snapshot = OfflineState(
                weaponid=int(weaponid),
                weaponlevel=max(1, int(level or 1)),
                attackinterval=int(interval or DEFAULT_INTERVAL),
                lastactive=float(since if since is not None else self.clock()),
            )
        except (TypeError, ValueError):
            raise ValidationError("invalid_offline_state") from None
        if snapshot.attackinterval <= 0:
            raise ValidationError("invalid_offline_state")

        def apply(tx):
            account = loadaccount(tx, accountid)
            account.offline = snapshot
            saveaccount(tx, account)
            return snapshot

        return self._run(apply)

    def clear(self, accountid: str) -> None:
        def apply(tx):
            account = loadaccount(tx, accountid)
            if account.offline is not None:
                account.offline = None
                saveaccount(tx, account)

        self._run(apply)

    def calculate(self, snapshot: OfflineState | None, now: float | None = None) -> OfflineReward | None:
        if snapshot is None or not snapshot.lastactive:
            return None
        now = float(self.clock() if now is None else now)
        elapsed = now - snapshot.lastactive
        if elapsed < MIN_OFFLINE:
            return None
        elapsed = min(elapsed, MAX_OFFLINE)
        weapon = self.catalog.weaponbyid(snapshot.weaponid)
        if weapon is None:
            logger.warning("offline snapshot references unknown weapon %s", snapshot.weaponid)
            return None
        hit = damage(weapon.attack, snapshot.weaponlevel)
        if not MIN_DAMAGE <= hit <= MAX_DAMAGE:
            logger.error("anomalous offline damage %d (weapon %s, level %s)", hit, weapon.id, snapshot.weaponlevel)
            raise ValidationError("anomalous_damage")
        # a client may report a slower swing, never a faster one
        interval = max(snapshot.attackinterval or DEFAULT_INTERVAL, weapon.attackinterval)
        attacks = int(elapsed * 1000 // interval)
        if attacks <= 0:
            return None
        total = hit * attacks
        gold = sum(rollgold(weapon, self.rng) for _ in range(attacks))
        return OfflineReward(attackcount=attacks, totaldamage=total, totalgold=gold, seconds=elapsed, weaponname=weapon.name)

    def preview(self, accountid: str) -> OfflineReward | None:
        snap = self.store.get(ACCOUNTS, str(accountid))
        if not snap:
            raise NotFoundError("account_not_found")
        return self.calculate(Account.fromdoc(snap.key, snap.data).offline)

    def apply(self, accountid: str) -> OfflineReward | None:
        """Credit the pending offline reward once and clear the snapshot.

        The reward is computed from the snapshot read inside the same
        transaction that clears it, so a repeated call finds nothing left.
        """

        def credit(tx):
            account = loadaccount(tx, accountid)
            reward = self.calculate(account.offline)
            if reward is None:
                return None
            if reward.totalgold > BATCH_LIMIT:
                raise ValidationError("anomalous_change")
            account.offline = None
            _, defeated = self.world.strike(tx, account, reward.totaldamage, reward.totalgold)
            return reward, account.displayname, defeated

        outcome = self._run(credit)
        if outcome is None:
            return None
        reward, name, defeated = outcome
        logger.info("offline reward for %s: %d attacks, %d damage, %d gold", accountid, reward.attackcount, reward.totaldamage, reward.totalgold)
        self.world.after(accountid, name, reward.totaldamage, reward.weaponname, defeated, count=reward.attackcount)
        return reward

