"""Recyclability decision rule.

A classifier call yields one `Prediction` per known label. The dominant
prediction is the one with the strictly highest probability; on equal
probabilities the earliest element in input order wins. Its class name is
looked up in a static whitelist of recyclable materials.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Final

from .errors import InvalidInputError

LABELS: Final[tuple[str, ...]] = ("Cardboard", "Glass", "Metal", "Paper", "Plastic", "Trash")
RECYCLABLE_CLASSES: Final[frozenset[str]] = frozenset(
    {"Cardboard", "Glass", "Metal", "Paper", "Plastic"}
)
NON_RECYCLABLE_CLASSES: Final[frozenset[str]] = frozenset(LABELS) - RECYCLABLE_CLASSES


@dataclass(frozen=True)
class Prediction:
    class_name: str
    probability: float


@dataclass(frozen=True)
class RecyclabilityResult:
    is_recyclable: bool
    class_name: str
    confidence: float


def dominant_prediction(predictions: Sequence[Prediction]) -> Prediction:
    if len(predictions) == 0:
        raise InvalidInputError("Prediction list is empty")
    best = predictions[0]
    for p in predictions[1:]:
        # Strict comparison keeps the first of equal probabilities
        if p.probability > best.probability:
            best = p
    return best


def classify(
    predictions: Sequence[Prediction],
    recyclable: frozenset[str] = RECYCLABLE_CLASSES,
) -> RecyclabilityResult:
    top = dominant_prediction(predictions)
    return RecyclabilityResult(
        is_recyclable=top.class_name in recyclable,
        class_name=top.class_name,
        confidence=float(top.probability),
    )


def check_label_set(predictions: Iterable[Prediction], labels: Sequence[str] = LABELS) -> None:
    """Reject predictions naming classes outside the known label set.

    `classify` does not validate class names; callers receiving predictions
    from an untrusted source enforce the label contract here first.
    """
    known = set(labels)
    unknown = sorted({p.class_name for p in predictions if p.class_name not in known})
    if unknown:
        raise InvalidInputError(f"Unknown class labels: {', '.join(unknown)}")


def same_label_set(labels: Iterable[str], expected: Sequence[str] = LABELS) -> bool:
    return set(labels) == set(expected)
