import math
import random

from treeguard.schema import RARITIES, WEAPONS, Weapon
from treeguard.store import Store


RNG = random.SystemRandom()

RARITY_ODDS = {
    "COMMON": 0.50,
    "RARE": 0.30,
    "EPIC": 0.15,
    "LEGENDARY": 0.05,
}

if not math.isclose(sum(RARITY_ODDS.values()), 1.0):
    raise RuntimeError("rarity odds must sum to 1.0")

PRICES = {
    "COMMON": 200,
    "RARE": 2000,
    "EPIC": 20000,
    "LEGENDARY": 200000,
}

MIN_DAMAGE = 1
MAX_DAMAGE = 1000

CATALOG = [
    {"id": 1, "name": "Hand Chop", "icon": "✋", "rarity": "COMMON", "attack": 3, "attackinterval": 2200, "goldchance": 0.25, "goldmin": 3, "goldmax": 10, "description": "Painful but it works."},
    {"id": 2, "name": "Cardboard Axe", "icon": "📦", "rarity": "COMMON", "attack": 4, "attackinterval": 2100, "goldchance": 0.28, "goldmin": 4, "goldmax": 12, "description": "Light, cheap and recyclable."},
    {"id": 3, "name": "Phone Axe", "icon": "📱", "rarity": "COMMON", "attack": 5, "attackinterval": 2000, "goldchance": 0.30, "goldmin": 5, "goldmax": 15, "description": "Chopping wood with a flagship phone."},
    {"id": 4, "name": "Noodle Fork Axe", "icon": "🍜", "rarity": "COMMON", "attack": 4, "attackinterval": 2050, "goldchance": 0.27, "goldmin": 4, "goldmax": 13, "description": "Doubles as dinner."},
    {"id": 5, "name": "Keyboard Axe", "icon": "⌨️", "rarity": "COMMON", "attack": 6, "attackinterval": 1950, "goldchance": 0.32, "goldmin": 6, "goldmax": 16, "description": "Every engineer's favourite."},
    {"id": 6, "name": "Skateboard Axe", "icon": "🛹", "rarity": "RARE", "attack": 12, "attackinterval": 1700, "goldchance": 0.40, "goldmin": 10, "goldmax": 25, "description": "Chop while you cruise."},
    {"id": 7, "name": "Headphone Axe", "icon": "🎧", "rarity": "RARE", "attack": 15, "attackinterval": 1600, "goldchance": 0.45, "goldmin": 12, "goldmax": 28, "description": "Wireless, until it disconnects."},
    {"id": 8, "name": "Bubble Tea Axe", "icon": "🧋", "rarity": "RARE", "attack": 14, "attackinterval": 1650, "goldchance": 0.42, "goldmin": 11, "goldmax": 26, "description": "Sip and swing."},
    {"id": 9, "name": "French Fry Axe", "icon": "🍟", "rarity": "RARE", "attack": 13, "attackinterval": 1680, "goldchance": 0.40, "goldmin": 10, "goldmax": 24, "description": "Dangerously high in calories."},
    {"id": 10, "name": "Gamepad Axe", "icon": "🎮", "rarity": "RARE", "attack": 16, "attackinterval": 1550, "goldchance": 0.48, "goldmin": 13, "goldmax": 30, "description": "Combo after combo."},
    {"id": 11, "name": "Meme Axe", "icon": "💀", "rarity": "EPIC", "attack": 35, "attackinterval": 1200, "goldchance": 0.65, "goldmin": 25, "goldmax": 50, "description": "Damage goes viral."},
    {"id": 12, "name": "NFT Axe", "icon": "🖼️", "rarity": "EPIC", "attack": 40, "attackinterval": 1100, "goldchance": 0.70, "goldmin": 28, "goldmax": 55, "description": "Priceless, allegedly."},
    {"id": 13, "name": "Short Video Axe", "icon": "🎵", "rarity": "EPIC", "attack": 38, "attackinterval": 1150, "goldchance": 0.68, "goldmin": 26, "goldmax": 52, "description": "Catchy rhythm, endless loop."},
    {"id": 14, "name": "Cat Axe", "icon": "🐱", "rarity": "EPIC", "attack": 42, "attackinterval": 1050, "goldchance": 0.72, "goldmin": 30, "goldmax": 58, "description": "Adorable and ruthless."},
    {"id": 15, "name": "Coffee Axe", "icon": "☕", "rarity": "EPIC", "attack": 36, "attackinterval": 1180, "goldchance": 0.66, "goldmin": 24, "goldmax": 48, "description": "No sleep until the tree falls."},
    {"id": 16, "name": "Full Send Axe", "icon": "🔥", "rarity": "LEGENDARY", "attack": 85, "attackinterval": 650, "goldchance": 0.85, "goldmin": 60, "goldmax": 100, "description": "Charge first, think later."},
    {"id": 17, "name": "One Shot Axe", "icon": "✨", "rarity": "LEGENDARY", "attack": 95, "attackinterval": 600, "goldchance": 0.90, "goldmin": 70, "goldmax": 120, "description": "Ends fights instantly."},
    {"id": 18, "name": "Vibe Axe", "icon": "🌊", "rarity": "LEGENDARY", "attack": 88, "attackinterval": 630, "goldchance": 0.87, "goldmin": 65, "goldmax": 110, "description": "Maximum chill."},
    {"id": 19, "name": "Elegant Axe", "icon": "💅", "rarity": "LEGENDARY", "attack": 92, "attackinterval": 610, "goldchance": 0.88, "goldmin": 68, "goldmax": 115, "description": "Chops with poise."},
    {"id": 20, "name": "Rocket Axe", "icon": "🚀", "rarity": "LEGENDARY", "attack": 100, "attackinterval": 580, "goldchance": 0.92, "goldmin": 75, "goldmax": 130, "description": "Strong. Really strong."},
    {"id": 21, "name": "Suspicious Axe", "icon": "😳", "rarity": "LEGENDARY", "attack": 90, "attackinterval": 620, "goldchance": 0.89, "goldmin": 67, "goldmax": 112, "description": "Somehow it works."},
    {"id": 22, "name": "Serious Axe", "icon": "🎯", "rarity": "LEGENDARY", "attack": 98, "attackinterval": 590, "goldchance": 0.91, "goldmin": 73, "goldmax": 125, "description": "No jokes, just damage."},
]


def damage(attack: int, level: int = 1) -> int:
    return math.floor(int(attack) * (1 + (int(level) - 1) * 0.5))


def rollgold(weapon: Weapon, rng=None) -> int:
    rng = rng or RNG
    if weapon.goldchance <= 0 or rng.random() > weapon.goldchance:
        return 0
    return rng.randint(int(weapon.goldmin), int(weapon.goldmax))


def _pool(catalog: list[Weapon], floor: str | None = None) -> list[tuple[Weapon, float]]:
    if floor is None:
        allowed = RARITIES
    else:
        floor = str(floor).upper()
        if floor not in RARITIES:
            return []
        allowed = RARITIES[: RARITIES.index(floor) + 1]

    pool: list[tuple[Weapon, float]] = []
    for rarity in allowed:
        tier = [w for w in catalog if w.rarity == rarity]
        if not tier:
            continue
        top = max(w.attack for w in tier)
        odds = RARITY_ODDS[rarity]
        # weaker weapons in a tier are favoured quadratically
        pool.extend((w, float((top - w.attack + 1) ** 2) * odds) for w in tier)
    return pool


def drawodds(catalog: list[Weapon], floor: str | None = None) -> dict[int, float]:
    """Exact selection probability per weapon id."""
    pool = _pool(catalog, floor)
    total = sum(weight for _, weight in pool)
    if total <= 0:
        return {}
    odds: dict[int, float] = {}
    for weapon, weight in pool:
        odds[weapon.id] = odds.get(weapon.id, 0.0) + weight / total
    return odds


def pickweapon(catalog: list[Weapon], floor: str | None = None, rng=None) -> Weapon | None:
    pool = _pool(catalog, floor)
    if not pool:
        return None
    rng = rng or RNG
    total = sum(weight for _, weight in pool)
    target = rng.random() * total
    upto = 0.0
    for weapon, weight in pool:
        upto += weight
        if target <= upto:
            return weapon
    return pool[0][0]


class Catalog:
    def __init__(self, store: Store) -> None:
        self.store = store

    def allweapons(self) -> list[Weapon]:
        weapons = [Weapon.fromdoc(s.data, s.key) for s in self.store.query(WEAPONS)]
        return sorted(weapons, key=lambda w: w.id)

    def weaponbyid(self, weaponid) -> Weapon | None:
        try:
            key = int(weaponid)
        except (TypeError, ValueError):
            return None
        snap = self.store.get(WEAPONS, str(key))
        return Weapon.fromdoc(snap.data, snap.key) if snap else None

    def weaponsbyrarity(self, rarity: str) -> list[Weapon]:
        rows = self.store.query(WEAPONS, where=[("rarity", str(rarity).upper())])
        return sorted((Weapon.fromdoc(s.data, s.key) for s in rows), key=lambda w: w.id)

    def weaponsbyids(self, ids) -> list[Weapon]:
        out = []
        for weaponid in ids:
            weapon = self.weaponbyid(weaponid)
            if weapon:
                out.append(weapon)
        return out

    def seed(self, weapons=None) -> int:
        rows = [Weapon.fromdoc(w) for w in (weapons if weapons is not None else CATALOG)]
        for weapon in rows:
            self.store.set(WEAPONS, str(weapon.id), weapon.todoc())
        return len(rows)
