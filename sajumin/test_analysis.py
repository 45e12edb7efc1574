import asyncio
import json
import threading
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from sajumin.analysis import AnalysisNotFound, AnalysisService, PriceNotFound, UnknownService, build_summary
from sajumin.five_elements import parse_chart
from sajumin.fortune_writer import FortuneWriter, _candidate_models, build_fallback_fortune
from sajumin.ledger import InsufficientBalance

CHART = parse_chart({"year": "甲子", "month": "丙午", "day": "甲子", "hour": "丙午"})


def _completion(content: str):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def _fake_openai(create: AsyncMock):
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


class TestFortuneWriter(unittest.TestCase):
    ELEMENTS = {"primary": "fire", "secondary": "wood", "weakness": "earth"}

    def test_without_client_uses_deterministic_text(self):
        out = asyncio.run(
            FortuneWriter(None).write(analysis_type="monthly", chart={}, elements=self.ELEMENTS, birth_data={})
        )
        self.assertEqual(out["source"], "deterministic")
        self.assertIn("화", out["fortune"]["overall"])

    def test_openai_json_payload_is_returned(self):
        create = AsyncMock(return_value=_completion(json.dumps({"fortune": {"overall": "좋은 달입니다."}})))
        writer = FortuneWriter(_fake_openai(create), model="gpt-test")

        out = asyncio.run(
            writer.write(analysis_type="love", chart={}, elements=self.ELEMENTS, birth_data={}, request_id="rid-1")
        )

        self.assertEqual(out["fortune"]["overall"], "좋은 달입니다.")
        self.assertEqual(out["source"], "openai/gpt-test")
        kwargs = create.await_args.kwargs
        self.assertEqual(kwargs["model"], "gpt-test")
        self.assertEqual(kwargs["response_format"], {"type": "json_object"})

    def test_falls_through_models_then_deterministic(self):
        create = AsyncMock(side_effect=[RuntimeError("boom"), _completion("not json"), _completion("")])
        writer = FortuneWriter(_fake_openai(create), model="gpt-test")

        out = asyncio.run(writer.write(analysis_type="love", chart={}, elements=self.ELEMENTS, birth_data={}))

        self.assertEqual(create.await_count, 3)
        self.assertEqual(out["source"], "deterministic")

    def test_second_model_rescues_first_failure(self):
        create = AsyncMock(side_effect=[RuntimeError("rate limited"), _completion('{"fortune": {"overall": "ok"}}')])
        out = asyncio.run(
            FortuneWriter(_fake_openai(create), model="gpt-test").write(
                analysis_type="career", chart={}, elements=self.ELEMENTS, birth_data={}
            )
        )
        self.assertEqual(out["source"], "openai/gpt-4o-mini")

    def test_candidate_models_are_deduplicated(self):
        self.assertEqual(_candidate_models("gpt-4o-mini"), ["gpt-4o-mini", "gpt-4o"])
        self.assertEqual(_candidate_models(" "), ["gpt-4o-mini", "gpt-4o"])


class TestBuildSummary(unittest.TestCase):
    def test_first_sentence(self):
        self.assertEqual(build_summary({"fortune": {"overall": "불의 기운이 강합니다. 둘째 문장."}}), "불의 기운이 강합니다...")

    def test_long_text_is_truncated(self):
        text = "가" * 200
        self.assertEqual(build_summary({"fortune": {"overall": text}}), "가" * 150 + "...")

    def test_missing_fortune(self):
        self.assertEqual(build_summary({}), "운세 분석을 확인해보세요")


@pytest.fixture
def service(db, ledger):
    return AnalysisService(db, ledger, FortuneWriter(None))


def test_analysis_spends_price_and_persists(service: AnalysisService, ledger, make_user) -> None:
    user_id = make_user(balance=50)

    out = asyncio.run(service.create_analysis(user_id, "comprehensive", CHART, birth_data={"year": 1984}))

    assert out["coins_used"] == 20
    assert out["remaining_balance"] == 30
    analysis = out["analysis"]
    assert analysis["service_type"] == "comprehensive_fortune"
    assert analysis["title"] == "나의 종합 운세"
    assert analysis["result"]["elements"] == {"primary": "fire", "secondary": "wood", "weakness": "earth"}
    assert analysis["elements"]["element_counts"] == {"wood": 2, "fire": 4, "earth": 0, "metal": 0, "water": 2}
    assert out["transaction"]["reference_id"] == analysis["id"]
    assert out["transaction"]["amount"] == -20

    assert ledger.get_balance(user_id) == 30
    assert [a.id for a in service.list_analyses(user_id)] == [analysis["id"]]
    assert ledger.verify_account(user_id)["consistent"] is True


def test_insufficient_balance_stores_nothing(service: AnalysisService, ledger, make_user) -> None:
    user_id = make_user(balance=5)

    with pytest.raises(InsufficientBalance) as exc:
        asyncio.run(service.create_analysis(user_id, "monthly", CHART))

    assert exc.value.required == 10
    assert exc.value.balance == 5
    assert service.list_analyses(user_id) == []
    assert ledger.get_balance(user_id) == 5


def test_unknown_analysis_type(service: AnalysisService, make_user) -> None:
    user_id = make_user(balance=50)
    with pytest.raises(UnknownService):
        asyncio.run(service.create_analysis(user_id, "horoscope", CHART))


def test_analysis_is_private_to_its_owner(service: AnalysisService, make_user) -> None:
    owner = make_user(balance=50)
    other = make_user(balance=50)
    created = asyncio.run(service.create_analysis(owner, "monthly", CHART))["analysis"]

    assert service.get_analysis(owner, created["id"]).id == created["id"]
    with pytest.raises(AnalysisNotFound):
        service.get_analysis(other, created["id"])
    with pytest.raises(AnalysisNotFound):
        service.get_analysis(owner, 9999)


def test_price_catalog_is_seeded(service: AnalysisService) -> None:
    prices = {p.service_type: p.coin_cost for p in service.list_prices()}
    assert prices["monthly_fortune"] == 10
    assert prices["compatibility"] == 20
    assert service.resolve_price("overall").service_type == "comprehensive_fortune"


def test_fallback_fortune_names_weak_element() -> None:
    out = build_fallback_fortune("monthly", {"primary": "water", "secondary": "wood", "weakness": "fire"})
    assert "화" in out["advice"][0]


def test_database_reads_run_off_the_event_loop_thread(service: AnalysisService, make_user) -> None:
    user_id = make_user(balance=50)
    seen = {}

    def record(name, fn):
        def wrapper(*args, **kwargs):
            seen[name] = threading.current_thread() is threading.main_thread()
            return fn(*args, **kwargs)
        return wrapper

    service.resolve_price = record("resolve_price", service.resolve_price)
    service.ledger.get_balance = record("get_balance", service.ledger.get_balance)

    asyncio.run(service.create_analysis(user_id, "monthly", CHART))

    assert seen == {"resolve_price": False, "get_balance": False}


def test_price_update_changes_what_new_analyses_cost(service: AnalysisService, ledger, make_user) -> None:
    user_id = make_user(balance=50)
    monthly = service.resolve_price("monthly")

    updated = service.update_price(monthly.id, coin_cost=25, description="이번 달 운세 (개정)")
    assert (updated.coin_cost, updated.description) == (25, "이번 달 운세 (개정)")

    out = asyncio.run(service.create_analysis(user_id, "monthly", CHART))
    assert out["coins_used"] == 25
    assert ledger.get_balance(user_id) == 25


def test_deactivated_price_is_hidden_and_unpurchasable(service: AnalysisService, make_user) -> None:
    user_id = make_user(balance=50)
    love = service.resolve_price("love")

    service.update_price(love.id, is_active=False)

    assert "love_potential" not in {p.service_type for p in service.list_prices()}
    assert "love_potential" in {p.service_type for p in service.list_prices(include_inactive=True)}
    with pytest.raises(UnknownService):
        asyncio.run(service.create_analysis(user_id, "love", CHART))


def test_price_update_validation(service: AnalysisService) -> None:
    with pytest.raises(PriceNotFound):
        service.update_price(9999, coin_cost=10)
    with pytest.raises(ValueError):
        service.update_price(service.resolve_price("monthly").id, coin_cost=0)
