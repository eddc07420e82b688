"""Document shapes stored in the game collections.

Every document is decoded once at the storage boundary with ``fromdoc`` and
written back with ``todoc``. Missing fields fall back to the defaults declared
here, so older documents keep loading after new fields are added.
"""

from dataclasses import asdict, dataclass, field

from treeguard.errors import ValidationError


SCHEMA_VERSION = 1

ACCOUNTS = "accounts"
NAMES = "names"
WEAPONS = "weapons"
WORLD = "world"
ATTACKS = "attacks"
CHAT = "chat"
ONLINE = "online"

CURRENT = "current"

RARITIES = ("COMMON", "RARE", "EPIC", "LEGENDARY")

STARTING_GOLD = 500
MAX_TREE_HEALTH = 1_000_000
DEFAULT_INTERVAL = 2000


def _int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Weapon:
    id: int
    name: str
    rarity: str
    attack: int
    attackinterval: int = DEFAULT_INTERVAL
    goldchance: float = 0.0
    goldmin: int = 0
    goldmax: int = 0
    icon: str = ""
    description: str = ""

    def todoc(self) -> dict:
        return asdict(self)

    @classmethod
    def fromdoc(cls, data: dict, key=None) -> "Weapon":
        goldmin = _int(data.get("goldmin"))
        return cls(
            id=_int(data.get("id", key)),
            name=str(data.get("name") or ""),
            rarity=str(data.get("rarity") or "COMMON").upper(),
            attack=_int(data.get("attack")),
            attackinterval=_int(data.get("attackinterval"), DEFAULT_INTERVAL) or DEFAULT_INTERVAL,
            goldchance=min(1.0, max(0.0, _float(data.get("goldchance")))),
            goldmin=goldmin,
            goldmax=max(goldmin, _int(data.get("goldmax"), goldmin)),
            icon=str(data.get("icon") or ""),
            description=str(data.get("description") or ""),
        )


@dataclass
class InventoryItem:
    id: int
    name: str
    rarity: str = "COMMON"
    attack: int = 0
    attackinterval: int = DEFAULT_INTERVAL
    level: int = 1

    def todoc(self) -> dict:
        return asdict(self)

    @classmethod
    def fromdoc(cls, data: dict) -> "InventoryItem":
        return cls(
            id=_int(data.get("id")),
            name=str(data.get("name") or ""),
            rarity=str(data.get("rarity") or "COMMON").upper(),
            attack=_int(data.get("attack")),
            attackinterval=_int(data.get("attackinterval"), DEFAULT_INTERVAL) or DEFAULT_INTERVAL,
            level=max(1, _int(data.get("level"), 1)),
        )

    @classmethod
    def fromweapon(cls, weapon: Weapon, level: int = 1) -> "InventoryItem":
        return cls(
            id=weapon.id,
            name=weapon.name,
            rarity=weapon.rarity,
            attack=weapon.attack,
            attackinterval=weapon.attackinterval,
            level=max(1, int(level)),
        )

    @classmethod
    def frompayload(cls, payload) -> "InventoryItem":
        """Validate a client-supplied weapon instance."""
        if not isinstance(payload, dict):
            raise ValidationError("invalid_weapon")
        if _int(payload.get("id")) <= 0 or not str(payload.get("name") or "").strip():
            raise ValidationError("invalid_weapon")
        return cls.fromdoc(payload)


@dataclass
class Achievement:
    id: str
    unlocked: bool = False
    progress: float = 0

    def todoc(self) -> dict:
        return asdict(self)

    @classmethod
    def fromdoc(cls, data: dict) -> "Achievement":
        return cls(
            id=str(data.get("id") or ""),
            unlocked=bool(data.get("unlocked")),
            progress=_float(data.get("progress")),
        )


@dataclass
class OfflineState:
    weaponid: int
    weaponlevel: int = 1
    attackinterval: int = DEFAULT_INTERVAL
    lastactive: float = 0.0

    def todoc(self) -> dict:
        return asdict(self)

    @classmethod
    def fromdoc(cls, data):
        if not isinstance(data, dict) or not data.get("lastactive"):
            return None
        return cls(
            weaponid=_int(data.get("weaponid")),
            weaponlevel=max(1, _int(data.get("weaponlevel"), 1)),
            attackinterval=_int(data.get("attackinterval"), DEFAULT_INTERVAL) or DEFAULT_INTERVAL,
            lastactive=_float(data.get("lastactive")),
        )


@dataclass
class Stats:
    totaldamage: int = 0
    totalgoldearned: int = 0
    drawcount: int = 0
    sacrificecount: int = 0
    commoncount: int = 0
    rarecount: int = 0
    epiccount: int = 0
    legendarycount: int = 0
    maxweaponlevel: int = 0
    treedefeatedcount: int = 0

    def countrarity(self, rarity: str) -> None:
        attr = f"{str(rarity).lower()}count"
        if hasattr(self, attr):
            setattr(self, attr, getattr(self, attr) + 1)

    def todoc(self) -> dict:
        return asdict(self)

    @classmethod
    def fromdoc(cls, data) -> "Stats":
        data = data if isinstance(data, dict) else {}
        return cls(**{name: max(0, _int(data.get(name))) for name in cls.__dataclass_fields__})


@dataclass
class Account:
    id: str
    displayname: str
    passwordhash: str = ""
    email: str | None = None
    gold: int = STARTING_GOLD
    inventory: list[InventoryItem] = field(default_factory=list)
    equipped: int | None = None
    stats: Stats = field(default_factory=Stats)
    achievements: list[Achievement] = field(default_factory=list)
    offline: OfflineState | None = None
    lastlogin: float | None = None
    createdat: float = 0.0
    admin: bool = False

    @property
    def usernamelower(self) -> str:
        return self.displayname.strip().lower()

    @property
    def weapon(self) -> InventoryItem | None:
        if self.equipped is None:
            return None
        return self.inventory[self.equipped]

    def todoc(self) -> dict:
        return {
            "schema": SCHEMA_VERSION,
            "displayname": self.displayname,
            "usernamelower": self.usernamelower,
            "passwordhash": self.passwordhash,
            "email": self.email,
            "gold": int(self.gold),
            "inventory": [i.todoc() for i in self.inventory],
            "equipped": self.equipped,
            "stats": self.stats.todoc(),
            "achievements": [a.todoc() for a in self.achievements],
            "offline": self.offline.todoc() if self.offline else None,
            "lastlogin": self.lastlogin,
            "createdat": self.createdat,
            "admin": bool(self.admin),
        }

    def public(self) -> dict:
        out = self.todoc()
        out.pop("passwordhash")
        out["id"] = self.id
        return out

    @classmethod
    def fromdoc(cls, key: str, data: dict) -> "Account":
        inventory = [InventoryItem.fromdoc(i) for i in data.get("inventory") or [] if isinstance(i, dict)]
        equipped = data.get("equipped")
        if equipped is not None:
            equipped = _int(equipped, -1)
            if not 0 <= equipped < len(inventory):
                equipped = None
        lastlogin = data.get("lastlogin")
        return cls(
            id=str(key),
            displayname=str(data.get("displayname") or ""),
            passwordhash=str(data.get("passwordhash") or ""),
            email=data.get("email") or None,
            gold=max(0, _int(data.get("gold"), STARTING_GOLD)),
            inventory=inventory,
            equipped=equipped,
            stats=Stats.fromdoc(data.get("stats")),
            achievements=[Achievement.fromdoc(a) for a in data.get("achievements") or [] if isinstance(a, dict)],
            offline=OfflineState.fromdoc(data.get("offline")),
            lastlogin=_float(lastlogin) if lastlogin is not None else None,
            createdat=_float(data.get("createdat")),
            admin=bool(data.get("admin")),
        )


@dataclass
class WorldState:
    health: int = MAX_TREE_HEALTH
    maxhealth: int = MAX_TREE_HEALTH
    defeatcount: int = 0
    round: int = 1
    updatedat: float = 0.0

    def hit(self, damage: int) -> bool:
        """Apply damage; on defeat reset to a fresh tree and report True."""
        self.health = max(0, int(self.health) - max(0, int(damage)))
        if self.health > 0:
            return False
        self.health = self.maxhealth
        self.defeatcount += 1
        self.round += 1
        return True

    def todoc(self) -> dict:
        return asdict(self)

    @classmethod
    def fromdoc(cls, data: dict, maxhealth: int = MAX_TREE_HEALTH) -> "WorldState":
        top = max(1, _int(data.get("maxhealth"), maxhealth))
        return cls(
            health=min(top, max(0, _int(data.get("health"), top))),
            maxhealth=top,
            defeatcount=max(0, _int(data.get("defeatcount"))),
            round=max(1, _int(data.get("round"), 1)),
            updatedat=_float(data.get("updatedat")),
        )


@dataclass
class AttackRecord:
    ownerid: str
    ownername: str
    damage: int
    weaponname: str
    timestamp: float
    count: int | None = None

    def todoc(self) -> dict:
        return asdict(self)

    @classmethod
    def fromdoc(cls, data: dict) -> "AttackRecord":
        count = data.get("count")
        return cls(
            ownerid=str(data.get("ownerid") or "unknown"),
            ownername=str(data.get("ownername") or "unknown"),
            damage=_int(data.get("damage")),
            weaponname=str(data.get("weaponname") or ""),
            timestamp=_float(data.get("timestamp")),
            count=_int(count) if count is not None else None,
        )


@dataclass
class ChatMessage:
    ownerid: str
    ownername: str
    text: str
    kind: str = "normal"
    timestamp: float = 0.0

    def todoc(self) -> dict:
        return asdict(self)

    @classmethod
    def fromdoc(cls, data: dict) -> "ChatMessage":
        return cls(
            ownerid=str(data.get("ownerid") or "unknown"),
            ownername=str(data.get("ownername") or "unknown"),
            text=str(data.get("text") or ""),
            kind=str(data.get("kind") or "normal"),
            timestamp=_float(data.get("timestamp")),
        )
