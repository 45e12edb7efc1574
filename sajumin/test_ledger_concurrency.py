from __future__ import annotations

import threading

from sajumin.ledger import CoinLedger, DuplicateTransaction, InsufficientBalance


def _race(workers: int, fn) -> list:
    barrier = threading.Barrier(workers)
    outcomes: list = [None] * workers

    def run(i: int) -> None:
        barrier.wait()
        try:
            outcomes[i] = fn(i)
        except Exception as exc:
            outcomes[i] = exc

    threads = [threading.Thread(target=run, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


def test_racing_spends_cannot_overdraw(ledger: CoinLedger, make_user) -> None:
    user_id = make_user(balance=20)

    outcomes = _race(2, lambda i: ledger.spend(user_id, 20, f"race {i}"))

    successes = [o for o in outcomes if not isinstance(o, Exception)]
    failures = [o for o in outcomes if isinstance(o, InsufficientBalance)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert successes[0].balance_after == 0
    assert ledger.get_balance(user_id) == 0
    assert ledger.verify_account(user_id)["consistent"] is True


def test_many_small_spends_stop_at_zero(ledger: CoinLedger, make_user) -> None:
    user_id = make_user(balance=5)

    outcomes = _race(8, lambda i: ledger.spend(user_id, 1, f"spend {i}"))

    assert sum(1 for o in outcomes if not isinstance(o, Exception)) == 5
    assert all(isinstance(o, InsufficientBalance) for o in outcomes if isinstance(o, Exception))
    assert ledger.get_balance(user_id) == 0
    assert ledger.audit()["consistent"] is True


def test_concurrent_charges_conserve(ledger: CoinLedger, make_user) -> None:
    user_id = make_user()

    outcomes = _race(6, lambda i: ledger.charge(user_id, 10, f"charge {i}", payment_id=f"pay_{i}"))

    assert not any(isinstance(o, Exception) for o in outcomes)
    assert ledger.get_balance(user_id) == 60
    assert sorted(o.balance_after for o in outcomes) == [10, 20, 30, 40, 50, 60]
    assert ledger.verify_account(user_id)["consistent"] is True


def test_replayed_payment_id_credits_once_under_race(ledger: CoinLedger, make_user) -> None:
    user_id = make_user()

    outcomes = _race(4, lambda i: ledger.charge(user_id, 100, "충전", payment_id="pay_same"))

    credited = [o for o in outcomes if not isinstance(o, Exception)]
    duplicates = [o for o in outcomes if isinstance(o, DuplicateTransaction)]
    assert len(credited) == 1
    assert len(duplicates) == 3
    assert {d.transaction.id for d in duplicates} == {credited[0].id}
    assert ledger.get_balance(user_id) == 100
