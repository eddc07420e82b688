import logging
import time
from collections import defaultdict
from typing import Callable
from uuid import uuid4

from werkzeug.security import check_password_hash, generate_password_hash

from treeguard.errors import NotFoundError, ValidationError
from treeguard.ledger import loadaccount, saveaccount
from treeguard.schema import ACCOUNTS, NAMES, Account, InventoryItem
from treeguard.store import RETRIES, Store, retry
from treeguard.weapons import Catalog


logger = logging.getLogger(__name__)

NAME_MIN = 3
NAME_MAX = 20
PASSWORD_MIN = 6
STARTER_WEAPON = 1


def isadmin(email: str | None, policy) -> bool:
    if not email:
        return False
    return str(email).strip().lower() in {str(e).strip().lower() for e in policy}


def role(email: str | None, policy) -> str:
    return "admin" if isadmin(email, policy) else "player"


def namekey(name: str) -> str:
    return str(name or "").strip().lower()


class Identity:
    def __init__(self, store: Store, catalog: Catalog, adminemails=(), clock: Callable[[], float] = time.time, retries: int = RETRIES) -> None:
        self.store = store
        self.catalog = catalog
        self.adminemails = tuple(adminemails)
        self.clock = clock
        self.retries = retries

    def _run(self, fn):
        return retry(lambda: self.store.transaction(fn), retries=self.retries)

    def register(self, name: str, password: str, email: str | None = None) -> Account:
        display = str(name or "").strip()
        if not NAME_MIN <= len(display) <= NAME_MAX:
            raise ValidationError("invalid_name")
        if len(password or "") < PASSWORD_MIN:
            raise ValidationError("invalid_password")
        key = namekey(display)
        now = float(self.clock())
        starter = self.catalog.weaponbyid(STARTER_WEAPON)
        account = Account(
            id=uuid4().hex,
            displayname=display,
            passwordhash=generate_password_hash(password),
            email=(email or "").strip().lower() or None,
            inventory=[InventoryItem.fromweapon(starter)] if starter else [],
            equipped=0 if starter else None,
            lastlogin=now,
            createdat=now,
        )
        account.admin = isadmin(account.email, self.adminemails)

        def apply(tx):
            if tx.get(NAMES, key):
                raise ValidationError("name_taken")
            tx.set(NAMES, key, {"accountid": account.id, "createdat": now})
            saveaccount(tx, account)
            return account

        created = self._run(apply)
        logger.info("registered %s (%s)", display, account.id)
        return created

    def login(self, name: str, password: str) -> Account:
        account = self.accountbyname(name)
        if account is None or not check_password_hash(account.passwordhash, password or ""):
            raise ValidationError("invalid_login")
        return self.touch(account.id)

    def touch(self, accountid: str) -> Account:
        """Stamp the login time and re-derive the admin flag."""

        def apply(tx):
            account = loadaccount(tx, accountid)
            account.lastlogin = float(self.clock())
            account.admin = account.admin or isadmin(account.email, self.adminemails)
            saveaccount(tx, account)
            return account

        return self._run(apply)

    def account(self, accountid: str) -> Account:
        snap = self.store.get(ACCOUNTS, str(accountid))
        if not snap:
            raise NotFoundError("account_not_found")
        return Account.fromdoc(snap.key, snap.data)

    def accountbyname(self, name: str) -> Account | None:
        reservation = self.store.get(NAMES, namekey(name))
        if not reservation:
            return None
        snap = self.store.get(ACCOUNTS, str(reservation.data.get("accountid")))
        return Account.fromdoc(snap.key, snap.data) if snap else None

    def setadmin(self, name: str, flag: bool = True) -> Account:
        account = self.accountbyname(name)
        if account is None:
            raise NotFoundError("account_not_found")

        def apply(tx):
            current = loadaccount(tx, account.id)
            current.admin = bool(flag)
            saveaccount(tx, current)
            return current

        return self._run(apply)

    def admins(self) -> list[Account]:
        return [Account.fromdoc(s.key, s.data) for s in self.store.query(ACCOUNTS, where=[("admin", True)])]

    def duplicates(self) -> dict[str, list[Account]]:
        """Accounts sharing a case-insensitive name, earliest created first."""
        groups: dict[str, list[Account]] = defaultdict(list)
        for snap in self.store.query(ACCOUNTS):
            account = Account.fromdoc(snap.key, snap.data)
            groups[account.usernamelower].append(account)
        return {k: sorted(v, key=lambda a: a.createdat) for k, v in groups.items() if len(v) > 1}

    def reset(self) -> int:
        removed = self.store.clear(ACCOUNTS)
        self.store.clear(NAMES)
        logger.warning("deleted %d accounts", removed)
        return removed
