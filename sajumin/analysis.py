"""Analysis purchase workflow: price lookup, element accounting, fortune text, coin spend."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional

from sqlalchemy import select

from sajumin.five_elements import SajuChart, analyze_chart
from sajumin.fortune_writer import FortuneWriter, analysis_title
from sajumin.ledger import CoinLedger, InsufficientBalance, TransactionType
from sajumin.storage import Database, SajuAnalysis, ServicePrice

logger = logging.getLogger("sajumin")

ANALYSIS_SERVICE_TYPES = {
    "monthly": "monthly_fortune",
    "love": "love_potential",
    "reunion": "reunion_potential",
    "career": "job_prospects",
    "marriage": "marriage_potential",
    "comprehensive": "comprehensive_fortune",
    "overall": "comprehensive_fortune",
    "compatibility": "compatibility",
}

SUMMARY_MAX_CHARS = 150
SUMMARY_FALLBACK = "운세 분석을 확인해보세요"


class UnknownService(LookupError):
    pass


class AnalysisNotFound(LookupError):
    pass


class PriceNotFound(LookupError):
    pass


def service_type_for(analysis_type: str) -> str:
    return ANALYSIS_SERVICE_TYPES.get(analysis_type, analysis_type)


def build_summary(result: dict[str, Any]) -> str:
    """First sentence of the headline fortune text, capped at SUMMARY_MAX_CHARS."""
    fortune = result.get("fortune") if isinstance(result, dict) else None
    content = ""
    if isinstance(fortune, dict):
        for key in ("overall", "compatibility", "love", "career", "marriage", "reunion", "monthly"):
            value = fortune.get(key)
            if isinstance(value, str) and value.strip():
                content = value.strip()
                break
    if not content:
        return SUMMARY_FALLBACK
    first_sentence = re.split(r"[.!?。]", content, maxsplit=1)[0].strip()
    if len(first_sentence) > SUMMARY_MAX_CHARS:
        return content[:SUMMARY_MAX_CHARS] + "..."
    return first_sentence if first_sentence == content else first_sentence + "..."


class AnalysisService:
    def __init__(self, db: Database, ledger: CoinLedger, writer: FortuneWriter):
        self.db = db
        self.ledger = ledger
        self.writer = writer

    def list_prices(self, include_inactive: bool = False) -> list[ServicePrice]:
        filters = [] if include_inactive else [ServicePrice.is_active.is_(True)]
        with self.db.session() as session:
            rows = session.scalars(
                select(ServicePrice)
                .where(*filters)
                .order_by(ServicePrice.display_order, ServicePrice.id)
            ).all()
        return list(rows)

    def resolve_price(self, analysis_type: str) -> ServicePrice:
        service_type = service_type_for(analysis_type)
        with self.db.session() as session:
            price = session.scalar(
                select(ServicePrice).where(ServicePrice.service_type == service_type, ServicePrice.is_active.is_(True))
            )
        if price is None:
            raise UnknownService(f"no active price for analysis_type={analysis_type} (service_type={service_type})")
        return price

    def update_price(
        self,
        price_id: int,
        *,
        coin_cost: Optional[int] = None,
        is_active: Optional[bool] = None,
        description: Optional[str] = None,
    ) -> ServicePrice:
        """Admin catalog edit. Analyses already bought keep the coins they were charged."""
        if coin_cost is not None and (isinstance(coin_cost, bool) or int(coin_cost) <= 0):
            raise ValueError("coin_cost must be a positive integer")
        with self.db.transaction() as session:
            price = session.get(ServicePrice, price_id)
            if price is None:
                raise PriceNotFound(price_id)
            if coin_cost is not None:
                price.coin_cost = int(coin_cost)
            if is_active is not None:
                price.is_active = bool(is_active)
            if description is not None:
                price.description = description
        logger.info(
            "Service price updated id=%s service_type=%s coin_cost=%s is_active=%s",
            price.id,
            price.service_type,
            price.coin_cost,
            price.is_active,
        )
        return price

    async def create_analysis(
        self,
        user_id: int,
        analysis_type: str,
        chart: SajuChart,
        *,
        birth_data: Optional[dict[str, Any]] = None,
        title: Optional[str] = None,
        request_id: str = "",
    ) -> dict[str, Any]:
        price = await asyncio.to_thread(self.resolve_price, analysis_type)

        # Fail fast before paying for LLM work; the spend below re-checks atomically.
        balance = await asyncio.to_thread(self.ledger.get_balance, user_id)
        if balance < price.coin_cost:
            raise InsufficientBalance(user_id, required=price.coin_cost, balance=balance)

        elements = analyze_chart(chart)
        if elements["unrecognized"]:
            logger.warning(
                "Chart has unrecognized symbols request_id=%s positions=%s",
                request_id,
                elements["unrecognized"],
            )
        chart_payload = chart.to_dict()
        result = await self.writer.write(
            analysis_type=analysis_type,
            chart=chart_payload,
            elements=elements,
            birth_data=birth_data or {},
            request_id=request_id,
        )
        result["elements"] = {k: elements[k] for k in ("primary", "secondary", "weakness")}

        analysis, transaction = await asyncio.to_thread(
            self._persist,
            user_id=user_id,
            analysis_type=analysis_type,
            price=price,
            title=title or analysis_title(analysis_type),
            birth_data=birth_data or {},
            chart_payload=chart_payload,
            elements=elements,
            result=result,
        )
        logger.info(
            "Analysis created request_id=%s user_id=%s analysis_id=%s coins=%s balance_after=%s",
            request_id,
            user_id,
            analysis.id,
            price.coin_cost,
            transaction.balance_after,
        )
        return {
            "analysis": analysis.to_dict(),
            "coins_used": price.coin_cost,
            "remaining_balance": transaction.balance_after,
            "transaction": transaction.to_dict(),
        }

    def _persist(
        self,
        *,
        user_id: int,
        analysis_type: str,
        price: ServicePrice,
        title: str,
        birth_data: dict[str, Any],
        chart_payload: dict[str, Any],
        elements: dict[str, Any],
        result: dict[str, Any],
    ):
        with self.db.transaction() as session:
            analysis = SajuAnalysis(
                user_id=user_id,
                title=title,
                analysis_type=analysis_type,
                service_type=price.service_type,
                birth_data=birth_data,
                chart=chart_payload,
                elements=elements,
                result=result,
                summary=build_summary(result),
                coins_spent=price.coin_cost,
            )
            session.add(analysis)
            session.flush()
            transaction = self.ledger.apply_in_session(
                session,
                user_id,
                -price.coin_cost,
                TransactionType.spend,
                title,
                service_type=price.service_type,
                reference_id=analysis.id,
            )
        return analysis, transaction

    def list_analyses(self, user_id: int) -> list[SajuAnalysis]:
        with self.db.session() as session:
            rows = session.scalars(
                select(SajuAnalysis)
                .where(SajuAnalysis.user_id == user_id)
                .order_by(SajuAnalysis.created_at.desc(), SajuAnalysis.id.desc())
            ).all()
        return list(rows)

    def get_analysis(self, user_id: int, analysis_id: int) -> SajuAnalysis:
        with self.db.session() as session:
            analysis = session.get(SajuAnalysis, analysis_id)
        if analysis is None or analysis.user_id != user_id:
            raise AnalysisNotFound(analysis_id)
        return analysis
