from __future__ import annotations

import pytest

from sajumin.accounts import AccountService, AccountSuspended
from sajumin.ledger import UserNotFound


@pytest.fixture
def accounts(db) -> AccountService:
    return AccountService(db)


def test_suspend_and_reactivate(accounts: AccountService, make_user) -> None:
    user_id = make_user(balance=10)
    assert accounts.ensure_active(user_id).status == "normal"

    suspended = accounts.suspend(user_id, "결제 분쟁")
    assert suspended.status == "suspended"
    assert suspended.suspended_at is not None
    with pytest.raises(AccountSuspended) as exc:
        accounts.ensure_active(user_id)
    assert exc.value.reason == "결제 분쟁"

    restored = accounts.reactivate(user_id)
    assert restored.status == "normal"
    assert restored.suspended_reason is None
    assert accounts.ensure_active(user_id).id == user_id


def test_unknown_user(accounts: AccountService) -> None:
    with pytest.raises(UserNotFound):
        accounts.ensure_active(404)
    with pytest.raises(UserNotFound):
        accounts.suspend(404, "reason")
    with pytest.raises(UserNotFound):
        accounts.reactivate(404)


def test_list_users_pages_and_searches(accounts: AccountService, make_user) -> None:
    for _ in range(3):
        make_user(balance=5)

    first = accounts.list_users(page=1, limit=2)
    assert first["total"] == 3
    assert first["total_pages"] == 2
    assert [u["username"] for u in first["users"]] == ["user3", "user2"]
    assert first["users"][0]["coin_balance"] == 5

    found = accounts.list_users(search="USER2@")
    assert [u["username"] for u in found["users"]] == ["user2"]
    assert accounts.list_users(search="nobody")["total"] == 0
