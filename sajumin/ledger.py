"""Coin ledger.

Every balance change is a signed, append-only ``CoinTransaction`` row written in
the same database transaction as a single conditional ``UPDATE`` of
``users.coin_balance``. The guard ``coin_balance + amount >= 0`` lives in that
UPDATE, so two racing debits can never both pass a stale read.

Invariant: ``users.coin_balance == SUM(coin_transactions.amount)`` per user.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import pytz
from sqlalchemy import case, event, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sajumin.storage import CoinTransaction, Database, User

logger = logging.getLogger("sajumin")
coin_audit_logger = logging.getLogger("coin_audit")

KST = pytz.timezone("Asia/Seoul")
MAX_PAGE_SIZE = 100


class TransactionType(str, Enum):
    charge = "charge"
    spend = "spend"
    refund = "refund"


class LedgerError(Exception):
    """Base class for ledger failures."""


class InvalidTransaction(LedgerError, ValueError):
    pass


class UserNotFound(LedgerError):
    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"user not found: {user_id}")


class InsufficientBalance(LedgerError):
    def __init__(self, user_id: int, required: int, balance: int):
        self.user_id = user_id
        self.required = required
        self.balance = balance
        super().__init__(f"insufficient balance user_id={user_id} required={required} balance={balance}")


class DuplicateTransaction(LedgerError):
    """The idempotency key was already applied; ``transaction`` is the original row."""

    def __init__(self, transaction: CoinTransaction):
        self.transaction = transaction
        super().__init__(f"idempotency key already applied: {transaction.idempotency_key}")


class IdempotencyConflict(LedgerError):
    """The idempotency key already belongs to a different user, type or amount."""

    def __init__(self, original: CoinTransaction, *, user_id: int, tx_type: str, amount: Optional[int]):
        self.original = original
        self.user_id = user_id
        self.tx_type = tx_type
        self.amount = amount
        super().__init__(
            f"idempotency key {original.idempotency_key} is bound to another request "
            f"(user_id={original.user_id} type={original.type} amount={original.amount})"
        )


def _canonical_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def _replay_or_conflict(
    original: CoinTransaction, user_id: int, kind: TransactionType, amount: Optional[int]
) -> DuplicateTransaction:
    """A replay must repeat the original user, type and (when given) amount."""
    if original.user_id != user_id or original.type != kind.value or (amount is not None and original.amount != amount):
        logger.error(
            "Idempotency key reused for a different request key=%s original=(%s,%s,%s) requested=(%s,%s,%s)",
            original.idempotency_key,
            original.user_id,
            original.type,
            original.amount,
            user_id,
            kind.value,
            amount,
        )
        raise IdempotencyConflict(original, user_id=user_id, tx_type=kind.value, amount=amount)
    return DuplicateTransaction(original)


_PENDING_AUDIT = "coin_audit_pending"


@event.listens_for(Session, "after_commit")
def _emit_coin_audit(session: Session) -> None:
    for line in session.info.pop(_PENDING_AUDIT, []):
        coin_audit_logger.info(line)


@event.listens_for(Session, "after_transaction_end")
def _discard_coin_audit(session: Session, transaction) -> None:
    # Anything still pending when the outermost transaction ends was rolled back.
    if transaction.parent is None:
        session.info.pop(_PENDING_AUDIT, None)


def _validate_amount(amount: Any, tx_type: TransactionType) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidTransaction(f"amount must be an integer, got {amount!r}")
    if amount == 0:
        raise InvalidTransaction("amount must be non-zero")
    if tx_type in (TransactionType.charge, TransactionType.refund) and amount < 0:
        raise InvalidTransaction(f"{tx_type.value} amount must be positive")
    if tx_type == TransactionType.spend and amount > 0:
        raise InvalidTransaction("spend amount must be negative")
    return amount


def _coerce_type(tx_type: Any) -> TransactionType:
    try:
        return TransactionType(tx_type)
    except ValueError:
        raise InvalidTransaction(f"unknown transaction type: {tx_type!r}") from None


def kst_day_window(day: Optional[date] = None) -> tuple[datetime, datetime]:
    """UTC [start, end) of a calendar day in Korea Standard Time."""
    if day is None:
        day = datetime.now(KST).date()
    start = KST.localize(datetime.combine(day, time.min))
    end = KST.localize(datetime.combine(day + timedelta(days=1), time.min))
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def _as_utc(value: datetime, *, naive: bool) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    # SQLite drops tzinfo on write; rows there are naive UTC.
    return value.replace(tzinfo=None) if naive else value


class CoinLedger:
    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------------------
    def apply_transaction(
        self,
        user_id: int,
        amount: int,
        tx_type: TransactionType | str,
        description: str,
        *,
        service_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> CoinTransaction:
        try:
            with self.db.transaction() as session:
                return self.apply_in_session(
                    session,
                    user_id,
                    amount,
                    tx_type,
                    description,
                    service_type=service_type,
                    reference_id=reference_id,
                    idempotency_key=idempotency_key,
                )
        except IntegrityError as exc:
            # Lost the race on the unique key to a concurrent replay.
            if idempotency_key:
                original = self.find_by_idempotency_key(idempotency_key)
                if original is not None:
                    raise _replay_or_conflict(original, user_id, _coerce_type(tx_type), amount) from exc
            raise

    def apply_in_session(
        self,
        session: Session,
        user_id: int,
        amount: int,
        tx_type: TransactionType | str,
        description: str,
        *,
        service_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> CoinTransaction:
        """Apply inside a caller-owned transaction; the caller commits or rolls back."""
        kind = _coerce_type(tx_type)
        amount = _validate_amount(amount, kind)
        key = (idempotency_key or "").strip() or None

        if key is not None:
            original = session.scalar(select(CoinTransaction).where(CoinTransaction.idempotency_key == key))
            if original is not None:
                # Detach so the rollback that follows does not expire it.
                session.expunge(original)
                duplicate = _replay_or_conflict(original, user_id, kind, amount)
                logger.info("Duplicate ledger request ignored key=%s transaction_id=%s", key, original.id)
                raise duplicate

        result = session.execute(
            update(User)
            .where(User.id == user_id, User.coin_balance + amount >= 0)
            .values(coin_balance=User.coin_balance + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            balance = session.scalar(select(User.coin_balance).where(User.id == user_id))
            if balance is None:
                raise UserNotFound(user_id)
            raise InsufficientBalance(user_id, required=-amount, balance=int(balance))

        balance_after = int(session.scalar(select(User.coin_balance).where(User.id == user_id)))
        transaction = CoinTransaction(
            user_id=user_id,
            type=kind.value,
            amount=amount,
            balance_after=balance_after,
            description=description,
            service_type=service_type,
            reference_id=reference_id,
            idempotency_key=key,
        )
        session.add(transaction)
        session.flush()

        # Written once the enclosing transaction commits.
        session.info.setdefault(_PENDING_AUDIT, []).append(
            _canonical_json(
                {
                    "transaction_id": transaction.id,
                    "user_id": user_id,
                    "type": kind.value,
                    "amount": amount,
                    "balance_after": balance_after,
                    "service_type": service_type,
                    "idempotency_key": key,
                }
            )
        )
        return transaction

    def charge(self, user_id: int, coins: int, description: str, *, payment_id: Optional[str] = None,
               service_type: Optional[str] = None) -> CoinTransaction:
        return self.apply_transaction(
            user_id,
            coins,
            TransactionType.charge,
            description,
            service_type=service_type,
            idempotency_key=payment_id,
        )

    def spend(self, user_id: int, coins: int, description: str, *, service_type: Optional[str] = None,
              reference_id: Optional[int] = None) -> CoinTransaction:
        if isinstance(coins, bool) or not isinstance(coins, int) or coins <= 0:
            raise InvalidTransaction("spend magnitude must be a positive integer")
        return self.apply_transaction(
            user_id,
            -coins,
            TransactionType.spend,
            description,
            service_type=service_type,
            reference_id=reference_id,
        )

    def refund(self, user_id: int, coins: int, description: str, *, reference_id: Optional[int] = None,
               idempotency_key: Optional[str] = None) -> CoinTransaction:
        return self.apply_transaction(
            user_id,
            coins,
            TransactionType.refund,
            description,
            service_type="refund",
            reference_id=reference_id,
            idempotency_key=idempotency_key,
        )

    def adjust(self, user_id: int, delta: int, reason: str) -> CoinTransaction:
        """Admin correction: credits are charges, debits are spends (still balance-guarded)."""
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise InvalidTransaction("adjustment must be a non-zero integer")
        if delta > 0:
            return self.apply_transaction(user_id, delta, TransactionType.charge, reason, service_type="admin_credit")
        return self.apply_transaction(user_id, delta, TransactionType.spend, reason, service_type="admin_debit")

    def open_account(self, username: str, email: str, name: str, *, signup_bonus: int = 0) -> User:
        """Create a user; the signup bonus goes through the ledger like any other credit."""
        with self.db.transaction() as session:
            user = User(username=username, email=email, name=name, coin_balance=0)
            session.add(user)
            session.flush()
            if signup_bonus > 0:
                self.apply_in_session(
                    session,
                    user.id,
                    signup_bonus,
                    TransactionType.charge,
                    "회원가입 축하 코인",
                    service_type="signup_bonus",
                )
            session.refresh(user)
        logger.info("Account opened user_id=%s signup_bonus=%s", user.id, signup_bonus)
        return user

    # ------------------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------------------
    def get_balance(self, user_id: int) -> int:
        with self.db.session() as session:
            balance = session.scalar(select(User.coin_balance).where(User.id == user_id))
        if balance is None:
            raise UserNotFound(user_id)
        return int(balance)

    def list_transactions(self, user_id: int, page: int = 1, page_size: int = 20) -> list[CoinTransaction]:
        page = max(1, int(page))
        page_size = max(1, min(MAX_PAGE_SIZE, int(page_size)))
        with self.db.session() as session:
            if session.get(User, user_id) is None:
                raise UserNotFound(user_id)
            rows = session.scalars(
                select(CoinTransaction)
                .where(CoinTransaction.user_id == user_id)
                .order_by(CoinTransaction.created_at.desc(), CoinTransaction.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).all()
        return list(rows)

    def find_by_idempotency_key(self, key: str) -> Optional[CoinTransaction]:
        with self.db.session() as session:
            return session.scalar(select(CoinTransaction).where(CoinTransaction.idempotency_key == key))

    def find_replay(
        self, key: str, user_id: int, tx_type: TransactionType | str, amount: Optional[int] = None
    ) -> Optional[CoinTransaction]:
        """Row already applied under ``key`` for this same request, or None when the key is unused.

        Raises IdempotencyConflict when the key belongs to another user or type.
        """
        original = self.find_by_idempotency_key(key)
        if original is None:
            return None
        return _replay_or_conflict(original, user_id, _coerce_type(tx_type), amount).transaction

    def verify_account(self, user_id: int) -> dict[str, Any]:
        with self.db.session() as session:
            balance = session.scalar(select(User.coin_balance).where(User.id == user_id))
            if balance is None:
                raise UserNotFound(user_id)
            ledger_sum = session.scalar(
                select(func.coalesce(func.sum(CoinTransaction.amount), 0)).where(CoinTransaction.user_id == user_id)
            )
        return {
            "user_id": user_id,
            "balance": int(balance),
            "ledger_sum": int(ledger_sum),
            "consistent": int(balance) == int(ledger_sum),
        }

    def audit(self) -> dict[str, Any]:
        """Check the conservation invariant for every account."""
        sums = (
            select(CoinTransaction.user_id, func.sum(CoinTransaction.amount).label("ledger_sum"))
            .group_by(CoinTransaction.user_id)
            .subquery()
        )
        with self.db.session() as session:
            rows = session.execute(
                select(User.id, User.coin_balance, func.coalesce(sums.c.ledger_sum, 0))
                .outerjoin(sums, sums.c.user_id == User.id)
                .order_by(User.id)
            ).all()
        mismatches = [
            {"user_id": user_id, "balance": int(balance), "ledger_sum": int(ledger_sum)}
            for user_id, balance, ledger_sum in rows
            if int(balance) != int(ledger_sum)
        ]
        if mismatches:
            logger.error("Ledger audit found %s inconsistent accounts: %s", len(mismatches), mismatches)
        digest = hashlib.sha256(_canonical_json([list(map(int, r)) for r in rows]).encode("utf-8")).hexdigest()
        return {
            "accounts_checked": len(rows),
            "mismatches": mismatches,
            "consistent": not mismatches,
            "snapshot_hash": digest,
        }

    # ------------------------------------------------------------------------------
    # Admin views
    # ------------------------------------------------------------------------------
    def list_all_transactions(self, page: int = 1, limit: int = 50, tx_type: Optional[str] = None) -> dict[str, Any]:
        page = max(1, int(page))
        limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
        filters = []
        if tx_type and tx_type != "all":
            filters.append(CoinTransaction.type == _coerce_type(tx_type).value)
        with self.db.session() as session:
            rows = session.execute(
                select(CoinTransaction, User.username)
                .outerjoin(User, User.id == CoinTransaction.user_id)
                .where(*filters)
                .order_by(CoinTransaction.created_at.desc(), CoinTransaction.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            total = int(session.scalar(select(func.count(CoinTransaction.id)).where(*filters)) or 0)
        transactions = []
        for transaction, username in rows:
            item = transaction.to_dict()
            item["username"] = username
            transactions.append(item)
        return {
            "transactions": transactions,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    def sales_stats(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict[str, Any]:
        naive = self.db.url.startswith("sqlite")
        filters = []
        if start is not None:
            filters.append(CoinTransaction.created_at >= _as_utc(start, naive=naive))
        if end is not None:
            filters.append(CoinTransaction.created_at < _as_utc(end, naive=naive))

        def _sum_of(kind: TransactionType):
            return func.coalesce(
                func.sum(case((CoinTransaction.type == kind.value, CoinTransaction.amount), else_=0)), 0
            )

        with self.db.session() as session:
            charged, spent, refunded, count = session.execute(
                select(
                    _sum_of(TransactionType.charge),
                    _sum_of(TransactionType.spend),
                    _sum_of(TransactionType.refund),
                    func.count(CoinTransaction.id),
                ).where(*filters)
            ).one()
        return {
            "charged_coins": int(charged),
            "spent_coins": -int(spent),
            "refunded_coins": int(refunded),
            "total_transactions": int(count),
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
        }

    def today_sales_stats(self) -> dict[str, Any]:
        start, end = kst_day_window()
        return self.sales_stats(start, end)
