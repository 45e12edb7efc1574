"""Deterministic Five Elements (오행) calculator for Saju charts.

A chart is four pillars (year, month, day, hour), each a heavenly stem plus an
earthly branch. Every stem and branch belongs to one element, so a complete
chart yields eight element hits. The hour pillar is absent when the birth time
is unknown, which leaves six.

Unknown symbols are skipped rather than rejected so partially-known birth data
still produces a distribution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from collections.abc import Iterator, Mapping
from typing import Any, Optional

logger = logging.getLogger("sajumin")


class Element(str, Enum):
    wood = "wood"
    fire = "fire"
    earth = "earth"
    metal = "metal"
    water = "water"


# Tie-break priority for every ranking below.
ELEMENT_ORDER: tuple[Element, ...] = (
    Element.wood,
    Element.fire,
    Element.earth,
    Element.metal,
    Element.water,
)

ELEMENT_LABELS_KO: dict[Element, str] = {
    Element.wood: "목",
    Element.fire: "화",
    Element.earth: "토",
    Element.metal: "금",
    Element.water: "수",
}

STEM_ELEMENTS: dict[str, Element] = {
    "甲": Element.wood, "乙": Element.wood,
    "丙": Element.fire, "丁": Element.fire,
    "戊": Element.earth, "己": Element.earth,
    "庚": Element.metal, "辛": Element.metal,
    "壬": Element.water, "癸": Element.water,
}

BRANCH_ELEMENTS: dict[str, Element] = {
    "子": Element.water, "丑": Element.earth, "寅": Element.wood, "卯": Element.wood,
    "辰": Element.earth, "巳": Element.fire, "午": Element.fire, "未": Element.earth,
    "申": Element.metal, "酉": Element.metal, "戌": Element.earth, "亥": Element.water,
}

# Hangul readings as typed into forms.
STEM_ALIASES: dict[str, str] = {
    "갑": "甲", "을": "乙", "병": "丙", "정": "丁", "무": "戊",
    "기": "己", "경": "庚", "신": "辛", "임": "壬", "계": "癸",
}

BRANCH_ALIASES: dict[str, str] = {
    "자": "子", "축": "丑", "인": "寅", "묘": "卯", "진": "辰", "사": "巳",
    "오": "午", "미": "未", "신": "申", "유": "酉", "술": "戌", "해": "亥",
}

PILLAR_NAMES = ("year", "month", "day", "hour")


class InvalidChartInput(ValueError):
    """Raised for structurally malformed chart payloads (or unknown symbols in strict mode)."""


@dataclass(frozen=True)
class SajuPillar:
    stem: str
    branch: str

    @property
    def stem_element(self) -> Optional[Element]:
        return STEM_ELEMENTS.get(_canonical_stem(self.stem))

    @property
    def branch_element(self) -> Optional[Element]:
        return BRANCH_ELEMENTS.get(_canonical_branch(self.branch))

    def to_dict(self) -> dict[str, str]:
        return {"stem": self.stem, "branch": self.branch}


@dataclass(frozen=True)
class SajuChart:
    year: Optional[SajuPillar] = None
    month: Optional[SajuPillar] = None
    day: Optional[SajuPillar] = None
    hour: Optional[SajuPillar] = None

    def pillars(self) -> Iterator[tuple[str, SajuPillar]]:
        """Yield (position, pillar) for the pillars that are present."""
        for name in PILLAR_NAMES:
            pillar = getattr(self, name)
            if pillar is not None:
                yield name, pillar

    def to_dict(self) -> dict[str, Optional[dict[str, str]]]:
        return {
            name: (getattr(self, name).to_dict() if getattr(self, name) is not None else None)
            for name in PILLAR_NAMES
        }


@dataclass(frozen=True)
class ElementSummary:
    primary: Element
    secondary: Element
    weakness: Element

    def to_dict(self) -> dict[str, str]:
        return {
            "primary": self.primary.value,
            "secondary": self.secondary.value,
            "weakness": self.weakness.value,
        }


class ElementDistribution(Mapping[Element, int]):
    """Read-only element counts, always holding all five elements."""

    __slots__ = ("_counts",)

    def __init__(self, counts: Optional[Mapping[Any, int]] = None):
        source = counts or {}
        normalized: dict[Element, int] = {}
        for element in ELEMENT_ORDER:
            value = int(source.get(element, source.get(element.value, 0)))
            if value < 0:
                raise ValueError(f"element count must be >= 0: {element.value}={value}")
            normalized[element] = value
        self._counts = normalized

    def __getitem__(self, key: Any) -> int:
        try:
            return self._counts[Element(key)]
        except ValueError:
            raise KeyError(key) from None

    def __iter__(self) -> Iterator[Element]:
        return iter(ELEMENT_ORDER)

    def __len__(self) -> int:
        return len(ELEMENT_ORDER)

    def __repr__(self) -> str:
        inner = ", ".join(f"{e.value}={self._counts[e]}" for e in ELEMENT_ORDER)
        return f"ElementDistribution({inner})"

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    def to_dict(self) -> dict[str, int]:
        return {element.value: self._counts[element] for element in ELEMENT_ORDER}

    def to_dict_ko(self) -> dict[str, int]:
        return {ELEMENT_LABELS_KO[element]: self._counts[element] for element in ELEMENT_ORDER}


def _canonical_stem(symbol: Any) -> str:
    text = str(symbol or "").strip()
    return STEM_ALIASES.get(text, text)


def _canonical_branch(symbol: Any) -> str:
    text = str(symbol or "").strip()
    return BRANCH_ALIASES.get(text, text)


def unrecognized_positions(chart: SajuChart) -> list[str]:
    """Return positions like ``"hour.stem"`` whose symbol is not in the tables."""
    out: list[str] = []
    for name, pillar in chart.pillars():
        if pillar.stem_element is None:
            out.append(f"{name}.stem")
        if pillar.branch_element is None:
            out.append(f"{name}.branch")
    return out


def compute_distribution(chart: SajuChart) -> ElementDistribution:
    counts = {element: 0 for element in ELEMENT_ORDER}
    for name, pillar in chart.pillars():
        stem_element = pillar.stem_element
        if stem_element is not None:
            counts[stem_element] += 1
        else:
            logger.warning("Unknown stem skipped pillar=%s stem=%r", name, pillar.stem)
        branch_element = pillar.branch_element
        if branch_element is not None:
            counts[branch_element] += 1
        else:
            logger.warning("Unknown branch skipped pillar=%s branch=%r", name, pillar.branch)
    return ElementDistribution(counts)


def summarize(distribution: Mapping[Any, int]) -> ElementSummary:
    """Rank elements: primary/secondary by count, weakness is the lowest of the rest.

    Ties always resolve by ELEMENT_ORDER, so an all-zero distribution yields
    wood, fire, earth.
    """
    dist = distribution if isinstance(distribution, ElementDistribution) else ElementDistribution(distribution)
    priority = {element: idx for idx, element in enumerate(ELEMENT_ORDER)}
    ranked = sorted(ELEMENT_ORDER, key=lambda e: (-dist[e], priority[e]))
    primary, secondary = ranked[0], ranked[1]
    remaining = [e for e in ELEMENT_ORDER if e not in (primary, secondary)]
    weakness = min(remaining, key=lambda e: (dist[e], priority[e]))
    return ElementSummary(primary=primary, secondary=secondary, weakness=weakness)


def analyze_chart(chart: SajuChart) -> dict[str, Any]:
    """Distribution, summary and diagnostics in the shape stored with an analysis."""
    distribution = compute_distribution(chart)
    summary = summarize(distribution)
    return {
        "element_counts": distribution.to_dict(),
        "element_counts_ko": distribution.to_dict_ko(),
        "total_elements": distribution.total,
        **summary.to_dict(),
        "primary_ko": ELEMENT_LABELS_KO[summary.primary],
        "secondary_ko": ELEMENT_LABELS_KO[summary.secondary],
        "weakness_ko": ELEMENT_LABELS_KO[summary.weakness],
        "unrecognized": unrecognized_positions(chart),
    }


def _parse_pillar(name: str, raw: Any) -> Optional[SajuPillar]:
    if raw is None:
        return None
    if isinstance(raw, SajuPillar):
        return raw
    if isinstance(raw, str):
        # "甲子" / "갑자" shorthand
        text = raw.strip()
        if len(text) != 2:
            raise InvalidChartInput(f"{name} pillar must be two symbols, got {raw!r}")
        return SajuPillar(stem=text[0], branch=text[1])
    if isinstance(raw, Mapping):
        stem = raw.get("stem")
        branch = raw.get("branch")
        if not isinstance(stem, str) or not isinstance(branch, str):
            raise InvalidChartInput(f"{name} pillar requires string stem and branch")
        return SajuPillar(stem=stem.strip(), branch=branch.strip())
    raise InvalidChartInput(f"{name} pillar has unsupported type {type(raw).__name__}")


def parse_chart(payload: Any, *, strict: bool = False) -> SajuChart:
    if not isinstance(payload, Mapping):
        raise InvalidChartInput("chart must be an object with year/month/day/hour pillars")
    chart = SajuChart(**{name: _parse_pillar(name, payload.get(name)) for name in PILLAR_NAMES})
    if not any(True for _ in chart.pillars()):
        raise InvalidChartInput("chart has no pillars")
    if strict:
        unknown = unrecognized_positions(chart)
        if unknown:
            raise InvalidChartInput(f"unknown symbols at {', '.join(unknown)}")
    return chart
