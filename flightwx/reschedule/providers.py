"""
Suggestion providers — the strategies the generator walks through in order.

  OpenAIProvider     primary reasoning service   (skipped without a key)
  AnthropicProvider  secondary reasoning service (skipped without a key)
  FallbackProvider   deterministic, cannot fail

A reasoning provider only has to implement `complete(system, user) -> dict`;
prompting, JSON extraction and schema validation are shared.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import anthropic
import openai
from pydantic import ValidationError as SchemaError

from flightwx.config import Settings
from flightwx.dispatch.engine import minimums_summary
from flightwx.errors import ExternalServiceError, ValidationError
from flightwx.reschedule.schemas import RescheduleOption, RescheduleResponse

logger = logging.getLogger(__name__)

FALLBACK_PROVIDER = "fallback-rules"


@dataclass
class RescheduleContext:
    booking_id: str
    student_name: str
    training_level: str
    original_date: datetime
    location: str
    violations: list[str]
    severity: str
    weather_summary: str


@dataclass
class ProviderSuggestion:
    options: list[RescheduleOption]
    reasoning: str
    provider: str
    attempts: list[str] = field(default_factory=list)


# ── Prompts ───────────────────────────────────────────────────────────────────

SYSTEM_PROMPT = """You are a flight scheduling assistant for a flight school.
Suggest reschedule times for a lesson whose weather is unsafe for the student's training level.

Weather minimums by training level:
- Student Pilot: visibility > 5 mi, clear skies (no clouds), winds < 10 kt
- Private Pilot: visibility > 3 mi, ceiling > 1000 ft, winds < 15 kt
- Instrument Rated: winds < 25 kt, no thunderstorms, no icing (IMC acceptable)

Suggest exactly 3 alternative times that:
1. fall within the next 7 days
2. are likely to have better weather
3. respect the student's training level requirements
4. prefer morning slots (08:00-12:00) for stable conditions
5. explain why each time is a good choice

Respond with JSON only, using this structure:
{
  "options": [
    {
      "date": "ISO 8601 datetime string",
      "reasoning": "Why this time is a good choice",
      "weatherForecast": "Expected weather summary",
      "score": 85
    }
  ],
  "overallReasoning": "Summary of the rescheduling strategy"
}"""


def build_user_prompt(ctx: RescheduleContext) -> str:
    return f"""Current booking:
- Student: {ctx.student_name}
- Training Level: {ctx.training_level}
- Original Date: {ctx.original_date.isoformat()}
- Location: {ctx.location}

Weather Conflict:
- Violations: {", ".join(ctx.violations)}
- Severity: {ctx.severity}
- Current Weather: {ctx.weather_summary}

Weather Requirements: {minimums_summary(ctx.training_level)}

Suggest 3 reschedule times within the next 7 days."""


# ── Base classes ──────────────────────────────────────────────────────────────

class SuggestionProvider:
    name = "provider"

    def is_configured(self) -> bool:
        return True

    def suggest(self, context: RescheduleContext) -> ProviderSuggestion:
        raise NotImplementedError


class ReasoningServiceProvider(SuggestionProvider):
    service = "reasoning"

    def __init__(self, api_key: Optional[str], model: str, timeout: float = 30.0,
                 max_tokens: int = 1000, temperature: float = 0.7):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature

    @property
    def name(self) -> str:
        return self.model

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def complete(self, system_prompt: str, user_prompt: str) -> dict:
        raise NotImplementedError

    def suggest(self, context: RescheduleContext) -> ProviderSuggestion:
        raw = self.complete(SYSTEM_PROMPT, build_user_prompt(context))
        try:
            parsed = RescheduleResponse.model_validate(raw)
        except SchemaError as e:
            raise ValidationError(
                f"malformed {self.service} response",
                details={"provider": self.name, "errors": str(e)},
            ) from e
        return ProviderSuggestion(options=parsed.options,
                                  reasoning=parsed.overall_reasoning,
                                  provider=self.name)


def parse_json_object(text: Optional[str], service: str) -> dict:
    """Pull the JSON object out of a model reply (tolerates ```json fences)."""
    if not text:
        raise ValidationError(f"empty {service} response")
    cleaned = text.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", cleaned, re.DOTALL)
    if fenced:
        cleaned = fenced.group(1)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ValidationError(f"{service} response is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"{service} response is not a JSON object")
    return data


# ── Reasoning services ────────────────────────────────────────────────────────

class OpenAIProvider(ReasoningServiceProvider):
    service = "openai"

    def complete(self, system_prompt: str, user_prompt: str) -> dict:
        client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        try:
            response = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.OpenAIError as e:
            raise ExternalServiceError("openai", str(e)) from e

        if not response.choices:
            raise ExternalServiceError("openai", "no choices returned")
        return parse_json_object(response.choices[0].message.content, self.service)


class AnthropicProvider(ReasoningServiceProvider):
    service = "anthropic"

    def complete(self, system_prompt: str, user_prompt: str) -> dict:
        client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        try:
            response = client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            )
        except anthropic.AnthropicError as e:
            raise ExternalServiceError("anthropic", str(e)) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        return parse_json_object(text, self.service)


# ── Deterministic fallback ────────────────────────────────────────────────────

# (days after original, hour, reasoning, forecast, score)
FALLBACK_SLOTS = (
    (1, 9,
     "Next day morning slot typically has better weather conditions and visibility.",
     "Expected clear conditions", 75),
    (2, 10,
     "Two-day buffer allows weather systems to pass. Mid-morning offers stable conditions.",
     "Likely improved conditions", 80),
    (3, 8,
     "Extended forecast window. Early morning minimizes afternoon weather instability.",
     "Generally favorable", 85),
)


class FallbackProvider(SuggestionProvider):
    name = FALLBACK_PROVIDER

    def suggest(self, context: RescheduleContext) -> ProviderSuggestion:
        day = context.original_date.replace(minute=0, second=0, microsecond=0)
        options = [
            RescheduleOption(
                date=(day + timedelta(days=days)).replace(hour=hour),
                reasoning=reasoning,
                weather_forecast=forecast,
                score=score,
            )
            for days, hour, reasoning, forecast, score in FALLBACK_SLOTS
        ]
        return ProviderSuggestion(
            options=options,
            reasoning="Rule-based suggestions prioritizing morning hours within 3 days "
                      "for weather stability.",
            provider=self.name,
        )


def default_providers(settings: Settings) -> list[SuggestionProvider]:
    common = dict(timeout=settings.reasoning_timeout_seconds,
                  max_tokens=settings.reasoning_max_tokens,
                  temperature=settings.reasoning_temperature)
    return [
        OpenAIProvider(settings.openai_api_key, settings.openai_model, **common),
        AnthropicProvider(settings.anthropic_api_key, settings.anthropic_model, **common),
        FallbackProvider(),
    ]
