"""User directory for admin tooling and the account-status gate on user routes."""

from __future__ import annotations

import logging
import math
from typing import Any, Optional

from sqlalchemy import func, or_, select

from sajumin.ledger import MAX_PAGE_SIZE, UserNotFound
from sajumin.storage import Database, User, utc_now

logger = logging.getLogger("sajumin")

STATUS_NORMAL = "normal"
STATUS_SUSPENDED = "suspended"


class AccountSuspended(Exception):
    def __init__(self, user_id: int, reason: Optional[str] = None):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"account suspended: {user_id}")


class AccountService:
    def __init__(self, db: Database):
        self.db = db

    def get_user(self, user_id: int) -> User:
        with self.db.session() as session:
            user = session.get(User, user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    def ensure_active(self, user_id: int) -> User:
        user = self.get_user(user_id)
        if user.status == STATUS_SUSPENDED:
            raise AccountSuspended(user_id, user.suspended_reason)
        return user

    def list_users(self, page: int = 1, limit: int = 50, search: Optional[str] = None) -> dict[str, Any]:
        """Newest accounts first; ``search`` matches username, email or name."""
        page = max(1, int(page))
        limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
        filters = []
        term = (search or "").strip()
        if term:
            pattern = f"%{term}%"
            filters.append(or_(User.username.ilike(pattern), User.email.ilike(pattern), User.name.ilike(pattern)))
        with self.db.session() as session:
            rows = session.scalars(
                select(User)
                .where(*filters)
                .order_by(User.created_at.desc(), User.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            total = int(session.scalar(select(func.count(User.id)).where(*filters)) or 0)
        return {
            "users": [user.to_dict() for user in rows],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    def suspend(self, user_id: int, reason: str) -> User:
        with self.db.transaction() as session:
            user = session.get(User, user_id)
            if user is None:
                raise UserNotFound(user_id)
            user.status = STATUS_SUSPENDED
            user.suspended_reason = reason
            user.suspended_at = utc_now()
        logger.info("Account suspended user_id=%s reason=%s", user_id, reason)
        return user

    def reactivate(self, user_id: int) -> User:
        with self.db.transaction() as session:
            user = session.get(User, user_id)
            if user is None:
                raise UserNotFound(user_id)
            user.status = STATUS_NORMAL
            user.suspended_reason = None
            user.suspended_at = None
        logger.info("Account reactivated user_id=%s", user_id)
        return user
