from __future__ import annotations

import itertools
from pathlib import Path

import pytest

from sajumin.ledger import CoinLedger
from sajumin.storage import Database, init_database


@pytest.fixture
def db(tmp_path: Path) -> Database:
    # File-backed so separate threads get separate connections.
    database = init_database(f"sqlite:///{tmp_path / 'sajumin_test.db'}")
    yield database
    database.dispose()


@pytest.fixture
def ledger(db: Database) -> CoinLedger:
    return CoinLedger(db)


@pytest.fixture
def make_user(ledger: CoinLedger):
    counter = itertools.count(1)

    def _make(balance: int = 0) -> int:
        n = next(counter)
        user = ledger.open_account(f"user{n}", f"user{n}@example.com", f"User {n}", signup_bonus=balance)
        return user.id

    return _make
