import os
from pathlib import Path

from dotenv import load_dotenv


ROOT = Path(__file__).resolve().parent.parent


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _emails(raw: str) -> tuple[str, ...]:
    return tuple(e.strip().lower() for e in raw.split(",") if e.strip())


def load():
    load_dotenv()
    return {
        "host": os.getenv("HOST", "127.0.0.1"),
        "port": int(os.getenv("PORT", "5000")),
        "debug": _flag("DEBUG", "true"),
        "secret": os.getenv("SECRET", "devsecret"),
        "dbroot": os.getenv("DBROOT", str(ROOT / "database")),
        "loglevel": os.getenv("LOG_LEVEL", "INFO").upper(),
        "maxhealth": int(os.getenv("MAX_TREE_HEALTH", "1000000")),
        "dormantdays": int(os.getenv("DORMANT_DAYS", "3")),
        "attackretention": int(os.getenv("ATTACK_RETENTION", "200")),
        "attackflushseconds": float(os.getenv("ATTACK_FLUSH_SECONDS", "10")),
        "attackflushcount": int(os.getenv("ATTACK_FLUSH_COUNT", "50")),
        "statsflushseconds": float(os.getenv("STATS_FLUSH_SECONDS", "30")),
        "statsflushthreshold": int(os.getenv("STATS_FLUSH_THRESHOLD", "1000")),
        "adminemails": _emails(os.getenv("ADMIN_EMAILS", "admin@example.com")),
    }
