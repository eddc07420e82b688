from __future__ import annotations

import argparse
import json
import sys

from treeguard import logs
from treeguard.accounts import Identity
from treeguard.config import load
from treeguard.errors import GameError
from treeguard.store import Store
from treeguard.weapons import Catalog


def services(dbroot: str | None = None) -> tuple[Catalog, Identity]:
    cfg = load()
    store = Store(dbroot or cfg["dbroot"])
    store.setup()
    catalog = Catalog(store)
    return catalog, Identity(store, catalog, cfg["adminemails"])


def seed(args) -> int:
    catalog, _ = services(args.dbroot)
    weapons = None
    if args.file:
        with open(args.file, "r", encoding="utf-8") as handle:
            weapons = json.load(handle)
    count = catalog.seed(weapons)
    print(f"seeded {count} weapons")
    return 0


def reset(args) -> int:
    if not args.yes:
        print("refusing to delete every account without --yes", file=sys.stderr)
        return 2
    _, identity = services(args.dbroot)
    print(f"deleted {identity.reset()} accounts")
    return 0


def setadmin(args) -> int:
    _, identity = services(args.dbroot)
    flag = str(args.flag).strip().lower() != "false"
    account = identity.setadmin(args.name, flag)
    print(f"{account.displayname} ({account.id}) admin={account.admin}")
    return 0


def listadmins(args) -> int:
    _, identity = services(args.dbroot)
    admins = identity.admins()
    for account in admins:
        print(f"{account.displayname}\t{account.id}")
    print(f"{len(admins)} admins")
    return 0


def dedupe(args) -> int:
    _, identity = services(args.dbroot)
    groups = identity.duplicates()
    for name, accounts in sorted(groups.items()):
        keep, *rest = accounts
        print(f"{name}: keep {keep.id}, duplicates {', '.join(a.id for a in rest)}")
    print(f"{len(groups)} duplicated names")
    return 1 if groups else 0


def parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Operator tooling for the tree game store.")
    p.add_argument("--dbroot", default=None, help="Database directory (defaults to DBROOT)")
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("seed", help="Write the weapon catalog")
    s.add_argument("--file", default=None, help="JSON list of weapons instead of the built-in catalog")
    s.set_defaults(func=seed)

    r = sub.add_parser("reset", help="Delete every account")
    r.add_argument("--yes", action="store_true", help="Confirm the deletion")
    r.set_defaults(func=reset)

    a = sub.add_parser("set-admin", help="Grant or revoke admin by display name")
    a.add_argument("name")
    a.add_argument("flag", nargs="?", default="true")
    a.set_defaults(func=setadmin)

    sub.add_parser("list-admins", help="List admin accounts").set_defaults(func=listadmins)
    sub.add_parser("dedupe-names", help="Report accounts sharing a name").set_defaults(func=dedupe)
    return p


def main(argv=None) -> int:
    args = parser().parse_args(argv)
    logs.setup("INFO")
    try:
        return args.func(args)
    except GameError as exc:
        print(f"error: {exc.code}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
