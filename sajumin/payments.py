"""PortOne payment verification and the verified-payment → coin credit path.

Coins are credited only after the PSP reports the payment as PAID for the
expected amount, and only to the user its own record names. The payment id
is the ledger idempotency key, so a retried webhook or a double-submitted
confirmation credits once.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from sajumin import config
from sajumin.ledger import CoinLedger, DuplicateTransaction, TransactionType
from sajumin.storage import CoinTransaction

logger = logging.getLogger("sajumin")


class PaymentVerificationError(Exception):
    pass


@dataclass(frozen=True)
class VerifiedPayment:
    payment_id: str
    amount: int
    status: str
    store_id: str
    custom_data: dict[str, Any]


@dataclass(frozen=True)
class PaymentCredit:
    transaction: CoinTransaction
    coin_amount: int
    already_processed: bool


class PortOneClient:
    def __init__(
        self,
        api_secret: str = config.PORTONE_API_SECRET,
        base_url: str = config.PORTONE_API_BASE,
        timeout_sec: float = config.PORTONE_TIMEOUT_SEC,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_sec)
        self.transport = transport

    def get_payment(self, payment_id: str) -> dict[str, Any]:
        if not self.api_secret:
            raise PaymentVerificationError("PORTONE_API_SECRET is not configured")
        headers = {
            "Authorization": f"PortOne {self.api_secret}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(f"{self.base_url}/payments/{payment_id}", headers=headers)
        except httpx.HTTPError as exc:
            raise PaymentVerificationError(f"PortOne request failed: {type(exc).__name__}: {exc}") from exc
        if response.status_code != 200:
            raise PaymentVerificationError(f"PortOne returned HTTP {response.status_code} for {payment_id}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise PaymentVerificationError("PortOne returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise PaymentVerificationError("PortOne returned an unexpected body")
        return payload


def _paid_total(payload: dict[str, Any]) -> Optional[int]:
    amount = payload.get("amount")
    total = amount.get("total") if isinstance(amount, dict) else amount
    try:
        return int(total)
    except (TypeError, ValueError):
        return None


def _custom_data(raw: Any) -> dict[str, Any]:
    # V2 returns customData as the JSON string the checkout sent.
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    return raw if isinstance(raw, dict) else {}


def _payer_id(verified: VerifiedPayment) -> Optional[int]:
    try:
        return int(verified.custom_data.get("userId"))
    except (TypeError, ValueError):
        return None


def coins_for_amount(amount_krw: int, unit_price: int = config.COIN_UNIT_PRICE_KRW) -> int:
    return max(0, int(amount_krw) // max(1, int(unit_price)))


class PaymentService:
    def __init__(
        self,
        ledger: CoinLedger,
        client: PortOneClient,
        *,
        store_id: str = config.PORTONE_STORE_ID,
        unit_price: int = config.COIN_UNIT_PRICE_KRW,
    ):
        self.ledger = ledger
        self.client = client
        self.store_id = store_id
        self.unit_price = unit_price

    def verify(self, payment_id: str, expected_amount: Optional[int] = None) -> VerifiedPayment:
        payload = self.client.get_payment(payment_id)
        status = str(payload.get("status") or "")
        total = _paid_total(payload)
        store_id = str(payload.get("storeId") or "")
        custom = _custom_data(payload.get("customData"))

        if status != "PAID":
            raise PaymentVerificationError(f"payment {payment_id} status is {status or 'missing'}")
        if total is None:
            raise PaymentVerificationError(f"payment {payment_id} has no paid amount")
        if expected_amount is not None and total != int(expected_amount):
            raise PaymentVerificationError(
                f"payment {payment_id} amount mismatch expected={expected_amount} paid={total}"
            )
        if self.store_id and store_id != self.store_id:
            raise PaymentVerificationError(f"payment {payment_id} belongs to another store")
        return VerifiedPayment(payment_id=payment_id, amount=total, status=status, store_id=store_id, custom_data=custom)

    def confirm_payment(
        self,
        user_id: int,
        payment_id: str,
        amount: Optional[int] = None,
        coin_amount: Optional[int] = None,
    ) -> PaymentCredit:
        payment_id = (payment_id or "").strip()
        if not payment_id:
            raise PaymentVerificationError("paymentId is required")

        # Replays skip the PSP round trip. Raises IdempotencyConflict for another user's payment.
        existing = self.ledger.find_replay(payment_id, user_id, TransactionType.charge)
        if existing is not None:
            return self._acknowledge_replay(existing)

        verified = self.verify(payment_id, expected_amount=amount)
        return self._credit(user_id, verified, coin_amount=coin_amount)

    def handle_webhook(self, payment_id: str, status: str) -> Optional[PaymentCredit]:
        """Credit the user named in the PSP's own record; the webhook body only triggers the check."""
        payment_id = (payment_id or "").strip()
        if not payment_id:
            raise PaymentVerificationError("paymentId is required")
        if status != "PAID":
            logger.info("Webhook acknowledged without credit payment_id=%s status=%s", payment_id, status)
            return None
        verified = self.verify(payment_id)
        user_id = _payer_id(verified)
        if user_id is None:
            raise PaymentVerificationError(f"payment {payment_id} record has no valid customData.userId")
        existing = self.ledger.find_replay(payment_id, user_id, TransactionType.charge)
        if existing is not None:
            return self._acknowledge_replay(existing)
        return self._credit(user_id, verified)

    def _credit(self, user_id: int, verified: VerifiedPayment, coin_amount: Optional[int] = None) -> PaymentCredit:
        payer = _payer_id(verified)
        if "userId" in verified.custom_data and payer != user_id:
            raise PaymentVerificationError(
                f"payment {verified.payment_id} was made by user {verified.custom_data.get('userId')!r}, not {user_id}"
            )
        coins = coins_for_amount(verified.amount, self.unit_price)
        if coins <= 0:
            raise PaymentVerificationError(f"paid amount {verified.amount} buys no coins")
        if coin_amount is not None and int(coin_amount) != coins:
            raise PaymentVerificationError(f"coinAmount {coin_amount} does not match paid amount ({coins} coins)")

        try:
            transaction = self.ledger.charge(
                user_id,
                coins,
                f"{coins}냥 충전 (결제ID: {verified.payment_id})",
                payment_id=verified.payment_id,
                service_type="payment",
            )
        except DuplicateTransaction as dup:
            return self._acknowledge_replay(dup.transaction)
        logger.info(
            "Payment credited user_id=%s payment_id=%s amount=%s coins=%s balance_after=%s",
            user_id,
            verified.payment_id,
            verified.amount,
            coins,
            transaction.balance_after,
        )
        return PaymentCredit(transaction=transaction, coin_amount=coins, already_processed=False)

    def _acknowledge_replay(self, original: CoinTransaction) -> PaymentCredit:
        logger.info(
            "Payment already processed payment_id=%s transaction_id=%s",
            original.idempotency_key,
            original.id,
        )
        return PaymentCredit(transaction=original, coin_amount=original.amount, already_processed=True)
