"""
Weather minimums rule engine.

Takes a weather observation + a training level → (violations, severity).
Pure and deterministic: same inputs, same ordered violation list.

Check order (also the order of the returned strings):
  visibility → ceiling / clear skies → wind → thunderstorms → icing

Severity:
  thunderstorms, icing, or wind > 1.5 × max  → high
  two or more violations                    → medium
  otherwise                                 → low
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Protocol, Union

from flightwx.errors import ValidationError
from flightwx.models import Severity, TrainingLevel


@dataclass(frozen=True)
class TrainingMinimums:
    max_wind_kt: float
    min_visibility_mi: Optional[float] = None
    min_ceiling_ft: Optional[float] = None
    requires_clear_skies: bool = False
    allow_imc: bool = False
    allow_thunderstorms: bool = False
    allow_icing: bool = False


# ── Minimums table ────────────────────────────────────────────────────────────
# Minimums are exclusive lower bounds: a value equal to the minimum passes.

TRAINING_MINIMUMS: Mapping[TrainingLevel, TrainingMinimums] = MappingProxyType({
    TrainingLevel.STUDENT_PILOT: TrainingMinimums(
        min_visibility_mi=5, max_wind_kt=10, requires_clear_skies=True,
    ),
    TrainingLevel.PRIVATE_PILOT: TrainingMinimums(
        min_visibility_mi=3, min_ceiling_ft=1000, max_wind_kt=15,
    ),
    TrainingLevel.INSTRUMENT_RATED: TrainingMinimums(
        max_wind_kt=25, allow_imc=True,
    ),
})

HIGH_WIND_FACTOR = 1.5


class Observation(Protocol):
    visibility_mi: float
    ceiling_ft: Optional[float]
    wind_speed_kt: float
    has_thunderstorms: bool
    has_icing: bool


@dataclass
class Evaluation:
    violations: list[str] = field(default_factory=list)
    severity: Severity = Severity.LOW

    @property
    def is_safe(self) -> bool:
        return not self.violations


def evaluate(
    observation: Observation,
    training_level: Union[TrainingLevel, str],
    minimums: Mapping[TrainingLevel, TrainingMinimums] = TRAINING_MINIMUMS,
) -> Evaluation:
    mins = minimums[_level(training_level)]
    violations = _check_violations(observation, mins)

    if (
        observation.has_thunderstorms
        or observation.has_icing
        or observation.wind_speed_kt > mins.max_wind_kt * HIGH_WIND_FACTOR
    ):
        severity = Severity.HIGH
    elif len(violations) >= 2:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW

    return Evaluation(violations=violations, severity=severity)


def minimums_summary(training_level: Union[TrainingLevel, str],
                     minimums: Mapping[TrainingLevel, TrainingMinimums] = TRAINING_MINIMUMS) -> str:
    """One-line requirements text, used in reasoning prompts."""
    level = _level(training_level)
    mins = minimums[level]
    parts = []
    if mins.min_visibility_mi is not None:
        parts.append(f"Visibility > {mins.min_visibility_mi:g} miles")
    if mins.requires_clear_skies:
        parts.append("Clear skies (no clouds)")
    if mins.min_ceiling_ft is not None:
        parts.append(f"Ceiling > {mins.min_ceiling_ft:g} feet")
    parts.append(f"Winds < {mins.max_wind_kt:g} knots")
    if not mins.allow_thunderstorms:
        parts.append("No thunderstorms")
    if not mins.allow_icing:
        parts.append("No icing conditions")
    parts.append("IMC acceptable" if mins.allow_imc else "VFR conditions")
    return f"{level.value} requires: " + ", ".join(parts)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _level(training_level: Union[TrainingLevel, str]) -> TrainingLevel:
    try:
        return TrainingLevel(training_level)
    except ValueError:
        raise ValidationError(f"Unknown training level: {training_level}",
                              field="training_level") from None


def _check_violations(wx: Observation, mins: TrainingMinimums) -> list[str]:
    violations = []

    if mins.min_visibility_mi is not None and wx.visibility_mi < mins.min_visibility_mi:
        violations.append(
            f"Visibility {wx.visibility_mi:.1f} mi < {mins.min_visibility_mi:g} mi required"
        )

    if mins.min_ceiling_ft is not None:
        if wx.ceiling_ft is None:
            # missing ceiling data counts against the flight, except where the
            # clear-skies check below already covers it
            if not mins.requires_clear_skies:
                violations.append(
                    f"Ceiling data unavailable ({mins.min_ceiling_ft:g} ft required)"
                )
        elif wx.ceiling_ft < mins.min_ceiling_ft:
            violations.append(
                f"Ceiling {wx.ceiling_ft:g} ft < {mins.min_ceiling_ft:g} ft required"
            )

    if mins.requires_clear_skies and wx.ceiling_ft is not None:
        violations.append("Clouds present (clear skies required for student pilot)")

    if wx.wind_speed_kt > mins.max_wind_kt:
        violations.append(f"Wind {wx.wind_speed_kt:.1f} kt > {mins.max_wind_kt:g} kt maximum")

    if not mins.allow_thunderstorms and wx.has_thunderstorms:
        violations.append("Thunderstorms present (not allowed)")

    if not mins.allow_icing and wx.has_icing:
        violations.append("Icing conditions present (not allowed)")

    return violations
