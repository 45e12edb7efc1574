"""Runtime configuration read from the environment (.env supported)."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

MODULE_DIR = Path(__file__).resolve().parent
REPO_ROOT = MODULE_DIR.parent

# Priority: existing process env > sajumin/.env > repo/.env
load_dotenv(dotenv_path=MODULE_DIR / ".env", override=False)
load_dotenv(dotenv_path=REPO_ROOT / ".env", override=False)


def env_int(name: str, default: int, minimum: int | None = None) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        return default
    if minimum is not None:
        value = max(minimum, value)
    return value


def env_float(name: str, default: float, minimum: float | None = None) -> float:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except ValueError:
        return default
    if minimum is not None:
        value = max(minimum, value)
    return value


def env_list(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


# ------------------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./sajumin.db")
SIGNUP_BONUS_COINS = env_int("SIGNUP_BONUS_COINS", 50, minimum=0)
COIN_UNIT_PRICE_KRW = env_int("COIN_UNIT_PRICE_KRW", 200, minimum=1)
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")
CORS_ORIGINS = env_list("CORS_ORIGINS", "http://localhost:5000")

PORTONE_API_BASE = os.getenv("PORTONE_API_BASE", "https://api.portone.io").rstrip("/")
PORTONE_API_SECRET = os.getenv("PORTONE_API_SECRET", "")
PORTONE_STORE_ID = os.getenv("PORTONE_STORE_ID", "")
PORTONE_TIMEOUT_SEC = env_float("PORTONE_TIMEOUT_SEC", 10.0, minimum=1.0)

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_MAX_TOKENS = env_int("OPENAI_MAX_TOKENS", 4000, minimum=256)
