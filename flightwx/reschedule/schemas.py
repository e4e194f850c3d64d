from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import Optional

from flightwx.clock import to_naive_utc

DEFAULT_SCORE = 80


class RescheduleOption(BaseModel):
    """One suggested slot, as returned by a provider and as stored."""
    model_config = ConfigDict(populate_by_name=True)

    date: datetime
    reasoning: str = Field(min_length=1)
    weather_forecast: Optional[str] = Field(default=None, alias="weatherForecast")
    score: int = Field(default=DEFAULT_SCORE, ge=0, le=100)   # confidence 0-100

    @field_validator("date")
    @classmethod
    def naive_utc(cls, v):
        return to_naive_utc(v)

    @field_validator("score", mode="before")
    @classmethod
    def coerce_score(cls, v):
        if v is None:
            return DEFAULT_SCORE
        if isinstance(v, float):
            return max(0, min(100, round(v)))
        if isinstance(v, int) and not isinstance(v, bool):
            return max(0, min(100, v))
        return v

    def to_record(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "reasoning": self.reasoning,
            "weatherForecast": self.weather_forecast,
            "score": self.score,
        }

    @classmethod
    def from_record(cls, record: dict) -> "RescheduleOption":
        return cls.model_validate(record)


class RescheduleResponse(BaseModel):
    """Structured JSON a reasoning service must return."""
    model_config = ConfigDict(populate_by_name=True)

    options: list[RescheduleOption] = Field(min_length=1)
    overall_reasoning: str = Field(default="", alias="overallReasoning")

    @field_validator("overall_reasoning", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return v or ""
