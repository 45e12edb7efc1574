"""Uvicorn launcher with environment-driven concurrency controls."""

import os

import uvicorn

from sajumin.config import env_int


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def main() -> None:
    uvicorn.run(
        "sajumin.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=env_int("PORT", 8000, minimum=1),
        # SQLite serializes writers; more workers only help on a server database.
        workers=env_int("WEB_CONCURRENCY", 1, minimum=1),
        backlog=env_int("UVICORN_BACKLOG", 2048, minimum=16),
        timeout_keep_alive=env_int("UVICORN_TIMEOUT_KEEP_ALIVE", 5, minimum=1),
        limit_concurrency=_env_optional_int("UVICORN_LIMIT_CONCURRENCY"),
        log_level=os.getenv("UVICORN_LOG_LEVEL", "info").strip() or "info",
    )


if __name__ == "__main__":
    main()
