"""SQLAlchemy schema and session plumbing."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Boolean,
    create_engine,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

logger = logging.getLogger("sajumin")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("coin_balance >= 0", name="ck_users_coin_balance_non_negative"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    # Written only by CoinLedger.
    coin_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    suspended_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    suspended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "name": self.name,
            "coin_balance": self.coin_balance,
            "status": self.status,
            "suspended_reason": self.suspended_reason,
            "suspended_at": self.suspended_at.isoformat() if self.suspended_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class CoinTransaction(Base):
    """Append-only ledger row. ``amount`` is signed; ``balance_after`` is the post-apply snapshot."""

    __tablename__ = "coin_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    service_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reference_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # External payment id for charges; unique so a replayed confirmation cannot insert twice.
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "description": self.description,
            "service_type": self.service_type,
            "reference_id": self.reference_id,
            "idempotency_key": self.idempotency_key,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ServicePrice(Base):
    __tablename__ = "service_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    service_type: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    coin_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "service_type": self.service_type,
            "coin_cost": self.coin_cost,
            "description": self.description,
            "display_order": self.display_order,
            "is_active": self.is_active,
        }


class SajuAnalysis(Base):
    __tablename__ = "saju_analyses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    analysis_type: Mapped[str] = mapped_column(String(64), nullable=False)
    service_type: Mapped[str] = mapped_column(String(64), nullable=False)
    birth_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    chart: Mapped[dict] = mapped_column(JSON, nullable=False)
    elements: Mapped[dict] = mapped_column(JSON, nullable=False)
    result: Mapped[dict] = mapped_column(JSON, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    coins_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "analysis_type": self.analysis_type,
            "service_type": self.service_type,
            "birth_data": self.birth_data,
            "chart": self.chart,
            "elements": self.elements,
            "result": self.result,
            "summary": self.summary,
            "coins_spent": self.coins_spent,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


DEFAULT_SERVICE_PRICES: list[dict[str, Any]] = [
    {"service_type": "monthly_fortune", "coin_cost": 10, "description": "이번 달 운세"},
    {"service_type": "love_potential", "coin_cost": 12, "description": "연애 운세 분석"},
    {"service_type": "reunion_potential", "coin_cost": 12, "description": "재회 가능성 분석"},
    {"service_type": "job_prospects", "coin_cost": 15, "description": "직업 운세 분석"},
    {"service_type": "marriage_potential", "coin_cost": 15, "description": "결혼 운세 분석"},
    {"service_type": "comprehensive_fortune", "coin_cost": 20, "description": "나의 종합 운세"},
    {"service_type": "compatibility", "coin_cost": 20, "description": "궁합 분석"},
]


class Database:
    """Engine + session factory. ``transaction()`` commits on success and rolls back on error."""

    def __init__(self, url: str, *, echo: bool = False):
        self.url = url
        connect_args: dict[str, Any] = {}
        if url.startswith("sqlite"):
            # FastAPI runs sync endpoints on a threadpool.
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine: Engine = create_engine(url, echo=echo, future=True, connect_args=connect_args)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def seed_service_prices(self, prices: Optional[list[dict[str, Any]]] = None) -> int:
        """Insert catalog rows that do not exist yet. Returns how many were added."""
        rows = prices if prices is not None else DEFAULT_SERVICE_PRICES
        added = 0
        with self.transaction() as session:
            existing = set(session.scalars(select(ServicePrice.service_type)).all())
            for order, row in enumerate(rows):
                if row["service_type"] in existing:
                    continue
                session.add(ServicePrice(display_order=order, is_active=True, **row))
                added += 1
        if added:
            logger.info("Seeded service prices added=%s", added)
        return added

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self.session_factory() as session:
            with session.begin():
                yield session

    @contextmanager
    def session(self) -> Iterator[Session]:
        with self.session_factory() as session:
            yield session

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                return conn.execute(text("SELECT 1")).scalar_one() == 1
        except Exception as exc:
            logger.warning("Database ping failed: %s", exc)
            return False

    def dispose(self) -> None:
        self.engine.dispose()


def init_database(url: str) -> Database:
    db = Database(url)
    db.create_all()
    db.seed_service_prices()
    return db
