from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

from .recyclability import LABELS, Prediction, RecyclabilityResult

_BASE_STYLE: Final[str] = "fs-3 fw-bold my-3"
RECYCLABLE_TEXT: Final[str] = "✅ Recyclable"
NON_RECYCLABLE_TEXT: Final[str] = "❌ Non-Recyclable"


@dataclass(frozen=True)
class Verdict:
    text: str
    style: str


@dataclass(frozen=True)
class ProbabilityBar:
    class_name: str
    value: float
    text: str


def verdict_for(result: RecyclabilityResult) -> Verdict:
    if result.is_recyclable:
        return Verdict(text=RECYCLABLE_TEXT, style=f"{_BASE_STYLE} text-success")
    return Verdict(text=NON_RECYCLABLE_TEXT, style=f"{_BASE_STYLE} text-danger")


def format_percent(probability: float) -> str:
    return f"{probability * 100.0:.2f}%"


def probability_bars(predictions: Sequence[Prediction]) -> list[ProbabilityBar]:
    return [
        ProbabilityBar(
            class_name=p.class_name,
            value=float(p.probability),
            text=format_percent(float(p.probability)),
        )
        for p in predictions
    ]


def empty_bars(labels: Sequence[str] = LABELS) -> list[ProbabilityBar]:
    return [ProbabilityBar(class_name=name, value=0.0, text="0%") for name in labels]
