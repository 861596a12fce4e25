from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class SamplingMode(BaseModel):
    """How the model picks tokens.

    Use the constructors rather than building one by hand::

        SamplingMode.greedy()
        SamplingMode.random(top=40, seed=7)
        SamplingMode.random(probability_threshold=0.9)
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["greedy", "top_k", "top_p"]
    k: int | None = None
    threshold: float | None = None
    seed: int | None = None

    @classmethod
    def greedy(cls) -> SamplingMode:
        return cls(type="greedy")

    @classmethod
    def random(
        cls,
        top: int | None = None,
        probability_threshold: float | None = None,
        seed: int | None = None,
    ) -> SamplingMode:
        if (top is None) == (probability_threshold is None):
            raise ValueError("Pass exactly one of top or probability_threshold")
        if top is not None:
            return cls(type="top_k", k=top, seed=seed)
        return cls(type="top_p", threshold=probability_threshold, seed=seed)


class GenerationOptions(BaseModel):
    """Options recorded on every prompt and forwarded to the model."""

    model_config = ConfigDict(frozen=True)

    sampling: SamplingMode | None = None
    temperature: float | None = None
    maximum_response_tokens: int | None = None
