from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.dataclasses import dataclass as pydantic_dataclass


class PredictionIn(BaseModel):
    """One class score as produced by an in-browser image model."""

    model_config = ConfigDict(populate_by_name=True)

    class_name: str = Field(alias="className", min_length=1)
    probability: float = Field(ge=0.0, le=1.0)


class RecyclabilityRequest(BaseModel):
    predictions: list[PredictionIn]


@pydantic_dataclass(frozen=True)
class PredictionOut:
    class_name: str
    probability: float


@pydantic_dataclass(frozen=True)
class ResultOut:
    is_recyclable: bool
    class_name: str
    confidence: float


@pydantic_dataclass(frozen=True)
class VerdictOut:
    text: str
    style: str


@pydantic_dataclass(frozen=True)
class BarOut:
    class_name: str
    value: float
    text: str


@pydantic_dataclass(frozen=True)
class RecyclabilityResponse:
    result: ResultOut
    verdict: VerdictOut
    bars: list[BarOut]
    uncertain: bool


@pydantic_dataclass(frozen=True)
class ClassifyResponse:
    result: ResultOut
    verdict: VerdictOut
    bars: list[BarOut]
    uncertain: bool
    predictions: list[PredictionOut]
    model_id: str
    preview_png_b64: str | None
    latency_ms: int
