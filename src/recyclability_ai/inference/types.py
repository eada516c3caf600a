from __future__ import annotations

from dataclasses import dataclass

from torch import Tensor

from ..recyclability import Prediction


@dataclass(frozen=True)
class PredictOutput:
    predictions: tuple[Prediction, ...]  # one per manifest label, in label order
    model_id: str


@dataclass(frozen=True)
class PreprocessOutput:
    tensor: Tensor
    preview_png: bytes | None
