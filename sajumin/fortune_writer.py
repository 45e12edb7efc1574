"""LLM-backed fortune text. The result is stored as an opaque JSON payload."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from openai import AsyncOpenAI

from sajumin import config
from sajumin.five_elements import ELEMENT_LABELS_KO, Element

logger = logging.getLogger("sajumin")
llm_audit_logger = logging.getLogger("llm_audit")

ANALYSIS_TITLES_KO = {
    "monthly": "이번 달 운세",
    "love": "연애할 수 있을까?",
    "reunion": "재회 가능할까요?",
    "compatibility": "궁합 분석",
    "career": "취업이 안되면 어쩌죠?",
    "marriage": "결혼할 수 있을까요?",
    "comprehensive": "나의 종합 운세",
    "overall": "나의 종합 운세",
}

ELEMENT_TRAITS_KO = {
    Element.wood: "성장과 시작의 기운",
    Element.fire: "표현과 열정의 기운",
    Element.earth: "안정과 중재의 기운",
    Element.metal: "결단과 원칙의 기운",
    Element.water: "지혜와 유연함의 기운",
}


def analysis_title(analysis_type: str) -> str:
    return ANALYSIS_TITLES_KO.get(analysis_type, f"{analysis_type} 분석")


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _canonical_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def _sha256_hex(value: Any) -> str:
    return hashlib.sha256(_canonical_json(value).encode("utf-8")).hexdigest()


def _candidate_models(primary_model: str) -> list[str]:
    """Return de-duplicated model fallback order for chat completions."""
    candidates = [primary_model, "gpt-4o-mini", "gpt-4o"]
    out: list[str] = []
    for model in candidates:
        normalized = (model or "").strip()
        if normalized and normalized not in out:
            out.append(normalized)
    return out


def build_openai_client(api_key: str = "") -> Optional[AsyncOpenAI]:
    api_key = api_key or config.OPENAI_API_KEY
    if not api_key:
        return None
    proxy_url = (os.getenv("OPENAI_PROXY_URL") or "").strip()
    timeout = httpx.Timeout(connect=10.0, read=120.0, write=120.0, pool=120.0)
    try:
        if proxy_url:
            http_client = httpx.AsyncClient(timeout=timeout, trust_env=True, proxy=proxy_url)
        else:
            http_client = httpx.AsyncClient(timeout=timeout, trust_env=True)
        client = AsyncOpenAI(api_key=api_key, http_client=http_client)
        logger.info("OpenAI client initialized proxy_configured=%s", bool(proxy_url))
        return client
    except Exception as e:
        logger.warning("OpenAI client initialization failed: %s", e)
        return None


def build_prompt(analysis_type: str, chart: dict[str, Any], elements: dict[str, Any], birth_data: dict[str, Any]) -> str:
    return f"""
당신은 따뜻하고 통찰력 있는 사주 명리 상담가입니다.
아래 사주 원국과 오행 분포를 바탕으로 '{analysis_title(analysis_type)}' 주제의 풀이를 작성하세요.

규칙:
- 반드시 한국어로, 공감하는 말투로 작성합니다.
- 오행 분포는 이미 계산되어 있으니 다시 계산하지 말고 그대로 인용합니다.
- 극단적인 사건이나 정확한 날짜를 예언하지 않습니다.
- 출력은 JSON 객체 하나만: {{"fortune": {{"overall": "...", "{analysis_type}": "..."}}, "advice": ["..."], "lucky": {{"color": "...", "number": 0}}}}

사주 원국:
{json.dumps(chart, ensure_ascii=False, indent=2)}

오행 분석:
{json.dumps(elements, ensure_ascii=False, indent=2)}

출생 정보:
{json.dumps(birth_data, ensure_ascii=False, indent=2)}
"""


def build_fallback_fortune(analysis_type: str, elements: dict[str, Any]) -> dict[str, Any]:
    """Deterministic payload used when no LLM is reachable."""
    primary = Element(elements["primary"])
    secondary = Element(elements["secondary"])
    weakness = Element(elements["weakness"])
    overall = (
        f"{ELEMENT_LABELS_KO[primary]}({primary.value})이 가장 강해 {ELEMENT_TRAITS_KO[primary]}이 중심을 잡고, "
        f"{ELEMENT_LABELS_KO[secondary]}이 이를 받쳐줍니다. "
        f"상대적으로 약한 {ELEMENT_LABELS_KO[weakness]}의 {ELEMENT_TRAITS_KO[weakness]}을 보완하면 흐름이 안정됩니다."
    )
    return {
        "fortune": {"overall": overall},
        "advice": [f"{ELEMENT_LABELS_KO[weakness]} 기운을 채우는 생활 습관을 하나 정해 꾸준히 지켜보세요."],
        "source": "deterministic",
        "analysis_type": analysis_type,
    }


class FortuneWriter:
    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = config.OPENAI_MODEL,
                 max_tokens: int = config.OPENAI_MAX_TOKENS):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def write(
        self,
        *,
        analysis_type: str,
        chart: dict[str, Any],
        elements: dict[str, Any],
        birth_data: dict[str, Any],
        request_id: str = "",
    ) -> dict[str, Any]:
        if self.client is None:
            logger.warning("OpenAI client is None; using deterministic fortune request_id=%s", request_id)
            return build_fallback_fortune(analysis_type, elements)

        chart_hash = _sha256_hex(chart)
        prompt = build_prompt(analysis_type, chart, elements, birth_data)
        candidate_models = _candidate_models(self.model)
        for candidate_model in candidate_models:
            try:
                logger.info(
                    "LLM API call started request_id=%s selected_model=%s chart_hash=%s",
                    request_id,
                    candidate_model,
                    chart_hash,
                )
                response = await self.client.chat.completions.create(
                    model=candidate_model,
                    messages=[
                        {"role": "system", "content": "Respond with a single JSON object."},
                        {"role": "user", "content": prompt},
                    ],
                    response_format={"type": "json_object"},
                    max_completion_tokens=self.max_tokens,
                )
                text = response.choices[0].message.content if response and response.choices else ""
                if not isinstance(text, str) or not text.strip():
                    raise RuntimeError(f"LLM returned empty fortune. Model: {candidate_model}")
                payload = json.loads(text)
                if not isinstance(payload, dict):
                    raise RuntimeError("LLM fortune is not a JSON object")
                llm_audit_logger.info(
                    _canonical_json(
                        {
                            "request_id": request_id,
                            "chart_hash": chart_hash,
                            "analysis_type": analysis_type,
                            "model_used": f"openai/{candidate_model}",
                            "timestamp_utc": _utc_iso_now(),
                        }
                    )
                )
                payload.setdefault("source", f"openai/{candidate_model}")
                return payload
            except Exception as e:
                logger.warning(
                    "LLM model attempt failed request_id=%s selected_model=%s error_type=%s error=%s",
                    request_id,
                    candidate_model,
                    type(e).__name__,
                    str(e),
                )

        logger.error("LLM fortune failed for all models %s; using deterministic fortune", candidate_models)
        return build_fallback_fortune(analysis_type, elements)
