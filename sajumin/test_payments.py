from __future__ import annotations

import json

import httpx
import pytest

from sajumin.ledger import CoinLedger, IdempotencyConflict
from sajumin.payments import (
    PaymentService,
    PaymentVerificationError,
    PortOneClient,
    coins_for_amount,
)


def _portone(payments: dict[str, dict], calls: list[httpx.Request]) -> PortOneClient:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        payment_id = request.url.path.rsplit("/", 1)[-1]
        if payment_id not in payments:
            return httpx.Response(404, json={"type": "PAYMENT_NOT_FOUND"})
        return httpx.Response(200, json=payments[payment_id])

    return PortOneClient(
        api_secret="test-secret",
        base_url="https://portone.test",
        timeout_sec=1.0,
        transport=httpx.MockTransport(handler),
    )


def _paid(total: int, user_id: int = 1, status: str = "PAID") -> dict:
    return {"status": status, "amount": {"total": total}, "storeId": "store-1", "customData": {"userId": user_id}}


@pytest.fixture
def calls() -> list:
    return []


def test_confirm_credits_once_per_payment_id(ledger: CoinLedger, make_user, calls) -> None:
    user_id = make_user()
    service = PaymentService(ledger, _portone({"pay_abc": _paid(20000, user_id)}, calls), store_id="store-1")

    first = service.confirm_payment(user_id, "pay_abc", amount=20000, coin_amount=100)
    second = service.confirm_payment(user_id, "pay_abc", amount=20000, coin_amount=100)

    assert first.already_processed is False
    assert first.coin_amount == 100
    assert second.already_processed is True
    assert second.transaction.id == first.transaction.id
    assert ledger.get_balance(user_id) == 100
    assert len(calls) == 1
    assert calls[0].headers["Authorization"] == "PortOne test-secret"
    assert calls[0].url.path == "/payments/pay_abc"


def test_webhook_after_confirm_is_a_replay(ledger: CoinLedger, make_user, calls) -> None:
    user_id = make_user()
    service = PaymentService(ledger, _portone({"pay_wh": _paid(2000, user_id)}, calls))

    credit = service.handle_webhook("pay_wh", "PAID")
    replay = service.confirm_payment(user_id, "pay_wh", amount=2000)

    assert credit.already_processed is False
    assert credit.coin_amount == 10
    assert replay.already_processed is True
    assert ledger.get_balance(user_id) == 10


def test_webhook_ignores_non_paid_status(ledger: CoinLedger, make_user, calls) -> None:
    user_id = make_user()
    service = PaymentService(ledger, _portone({}, calls))

    assert service.handle_webhook("pay_x", "CANCELLED") is None
    assert calls == []
    assert ledger.get_balance(user_id) == 0


def test_webhook_requires_payer_in_psp_record(ledger: CoinLedger, make_user, calls) -> None:
    user_id = make_user()
    record = {"status": "PAID", "amount": {"total": 2000}}
    service = PaymentService(ledger, _portone({"pay_anon": record}, calls))

    with pytest.raises(PaymentVerificationError):
        service.handle_webhook("pay_anon", "PAID")
    assert ledger.get_balance(user_id) == 0


def test_webhook_credits_the_payer_named_by_the_psp(ledger: CoinLedger, make_user, calls) -> None:
    payer = make_user()
    make_user()
    service = PaymentService(ledger, _portone({"pay_1": _paid(20000, payer)}, calls))

    credit = service.handle_webhook("pay_1", "PAID")

    assert credit.transaction.user_id == payer
    assert ledger.get_balance(payer) == 100
    assert ledger.get_balance(payer + 1) == 0


def test_confirm_rejects_a_user_the_psp_record_does_not_name(ledger: CoinLedger, make_user, calls) -> None:
    payer = make_user()
    other = make_user()
    service = PaymentService(ledger, _portone({"pay_1": _paid(20000, payer)}, calls))

    with pytest.raises(PaymentVerificationError):
        service.confirm_payment(other, "pay_1", amount=20000)

    assert ledger.get_balance(other) == 0
    assert ledger.find_by_idempotency_key("pay_1") is None
    assert service.confirm_payment(payer, "pay_1", amount=20000).coin_amount == 100


def test_custom_data_sent_as_json_string(ledger: CoinLedger, make_user, calls) -> None:
    payer = make_user()
    other = make_user()
    record = {"status": "PAID", "amount": {"total": 2000}, "customData": json.dumps({"userId": payer})}
    service = PaymentService(ledger, _portone({"pay_str": record}, calls))

    with pytest.raises(PaymentVerificationError):
        service.confirm_payment(other, "pay_str", amount=2000)
    assert service.handle_webhook("pay_str", "PAID").transaction.user_id == payer


@pytest.mark.parametrize(
    ("payload", "amount", "coin_amount"),
    [
        (_paid(2000, status="READY"), 2000, None),
        (_paid(2000), 3000, None),
        (_paid(2000), 2000, 99),
        (_paid(100), 100, None),
        ({"status": "PAID", "amount": {}}, 2000, None),
    ],
    ids=["not-paid", "amount-mismatch", "coin-mismatch", "below-unit-price", "no-amount"],
)
def test_rejected_payments_credit_nothing(ledger: CoinLedger, make_user, calls, payload, amount, coin_amount) -> None:
    user_id = make_user()
    service = PaymentService(ledger, _portone({"pay_bad": payload}, calls))

    with pytest.raises(PaymentVerificationError):
        service.confirm_payment(user_id, "pay_bad", amount=amount, coin_amount=coin_amount)

    assert ledger.get_balance(user_id) == 0
    assert ledger.find_by_idempotency_key("pay_bad") is None


def test_store_mismatch_is_rejected(ledger: CoinLedger, make_user, calls) -> None:
    user_id = make_user()
    service = PaymentService(ledger, _portone({"pay_s": _paid(2000)}, calls), store_id="store-2")
    with pytest.raises(PaymentVerificationError):
        service.confirm_payment(user_id, "pay_s", amount=2000)


def test_psp_timeout_credits_nothing(ledger: CoinLedger, make_user) -> None:
    user_id = make_user()

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    client = PortOneClient(api_secret="s", base_url="https://portone.test", transport=httpx.MockTransport(handler))
    service = PaymentService(ledger, client)

    with pytest.raises(PaymentVerificationError):
        service.confirm_payment(user_id, "pay_slow", amount=2000)
    assert ledger.get_balance(user_id) == 0


def test_psp_error_status_and_bad_body(calls) -> None:
    client = _portone({}, calls)
    with pytest.raises(PaymentVerificationError):
        client.get_payment("missing")

    garbage = PortOneClient(
        api_secret="s",
        base_url="https://portone.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>")),
    )
    with pytest.raises(PaymentVerificationError):
        garbage.get_payment("pay_1")

    listed = PortOneClient(
        api_secret="s",
        base_url="https://portone.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=json.dumps([1, 2]).encode())),
    )
    with pytest.raises(PaymentVerificationError):
        listed.get_payment("pay_1")


def test_missing_secret_fails_before_request(calls) -> None:
    client = PortOneClient(api_secret="", base_url="https://portone.test", transport=httpx.MockTransport(
        lambda request: calls.append(request) or httpx.Response(200, json=_paid(2000))
    ))
    with pytest.raises(PaymentVerificationError):
        client.get_payment("pay_1")
    assert calls == []


def test_payment_id_reuse_across_users_conflicts(ledger: CoinLedger, make_user, calls) -> None:
    alice = make_user()
    bob = make_user()
    service = PaymentService(ledger, _portone({"pay_shared": _paid(2000, alice)}, calls))

    service.confirm_payment(alice, "pay_shared", amount=2000)
    with pytest.raises(IdempotencyConflict):
        service.confirm_payment(bob, "pay_shared", amount=2000)

    assert ledger.get_balance(alice) == 10
    assert ledger.get_balance(bob) == 0


def test_coins_for_amount() -> None:
    assert coins_for_amount(20000) == 100
    assert coins_for_amount(199) == 0
    assert coins_for_amount(1000, unit_price=100) == 10
