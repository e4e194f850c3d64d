"""
Reschedule generator — booking + open conflict → a pending option set.

Steps:
  1. build context (training level, original date, violations, weather summary)
  2. walk the provider chain; any provider error falls through to the next,
     the deterministic fallback closes the chain so generation never fails
  3. persist: overwrite the booking's pending set in place, or create one
  4. notify only when a brand-new set was created

Provider calls happen before any write, so a timeout can never leave a
half-written option set behind.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flightwx.clock import Clock, utcnow
from flightwx.errors import NotFound, ValidationError
from flightwx.models import (
    FlightBooking, OptionSetStatus, RescheduleOptionSet,
    WeatherConflict, WeatherObservation,
)
from flightwx.notifications.sinks import SideEffects
from flightwx.reschedule.providers import (
    FallbackProvider, ProviderSuggestion, RescheduleContext, SuggestionProvider,
)
from flightwx.reschedule.schemas import RescheduleOption
from flightwx.store import BookingStore

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    option_set_id: str
    options: list[RescheduleOption]
    reasoning: str
    provider: str
    created: bool

    def to_dict(self) -> dict:
        return {
            "optionSetId": self.option_set_id,
            "options": [o.to_record() for o in self.options],
            "reasoning": self.reasoning,
            "provider": self.provider,
        }


def weather_summary(observation: WeatherObservation) -> str:
    return (f"{observation.conditions}, Visibility: {observation.visibility_mi:.1f} mi, "
            f"Wind: {observation.wind_speed_kt:.1f} kt")


class RescheduleGenerator:
    def __init__(
        self,
        db: Session,
        effects: SideEffects,
        providers: Sequence[SuggestionProvider] = (),
        store: Optional[BookingStore] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.effects = effects
        self.providers = list(providers)
        if not any(isinstance(p, FallbackProvider) for p in self.providers):
            self.providers.append(FallbackProvider())
        self.store = store or BookingStore(db, clock)
        self.clock = clock

    def generate(self, booking_id: str, conflict_id: str) -> GenerationResult:
        booking, conflict, context = self.build_context(booking_id, conflict_id)
        suggestion = self.suggest(context)
        option_set, created = self._persist(booking, conflict, suggestion)

        logger.info("%s %d reschedule options for booking %s via %s",
                    "created" if created else "refreshed", len(suggestion.options),
                    booking.id, suggestion.provider)
        if created:
            self.effects.options_suggested(booking, option_set.id, len(suggestion.options))
        self.effects.audit_event("reschedule", option_set.id, "options_generated", {
            "booking_id": booking.id,
            "conflict_id": conflict.id,
            "provider": suggestion.provider,
            "attempts": suggestion.attempts,
        })

        return GenerationResult(
            option_set_id=option_set.id,
            options=suggestion.options,
            reasoning=suggestion.reasoning,
            provider=suggestion.provider,
            created=created,
        )

    # ── Context ───────────────────────────────────────────────────────────────

    def build_context(self, booking_id: str, conflict_id: str
                      ) -> tuple[FlightBooking, WeatherConflict, RescheduleContext]:
        booking = self.store.get_booking(booking_id)
        if booking is None:
            raise NotFound("Booking", booking_id)
        student = self.store.get_student(booking.student_id)
        if student is None:
            raise NotFound("Student", booking.student_id)
        conflict = self.db.get(WeatherConflict, conflict_id)
        if conflict is None:
            raise NotFound("Conflict", conflict_id)
        if conflict.booking_id != booking.id:
            raise ValidationError("conflict does not belong to booking", field="conflict_id",
                                  details={"booking_id": booking_id, "conflict_id": conflict_id})
        weather = self.db.get(WeatherObservation, conflict.weather_observation_id)
        if weather is None:
            raise NotFound("WeatherObservation", conflict.weather_observation_id)

        context = RescheduleContext(
            booking_id=booking.id,
            student_name=student.name,
            training_level=student.training_level.value,
            original_date=booking.scheduled_date,
            location=booking.departure_name,
            violations=list(conflict.violations or []),
            severity=conflict.severity.value,
            weather_summary=weather_summary(weather),
        )
        return booking, conflict, context

    # ── Provider chain ────────────────────────────────────────────────────────

    def suggest(self, context: RescheduleContext) -> ProviderSuggestion:
        attempts = []
        for provider in self.providers:
            if not provider.is_configured():
                attempts.append(f"{provider.name}: not configured")
                continue
            try:
                suggestion = provider.suggest(context)
            except Exception as e:
                logger.warning("provider %s failed for booking %s: %s",
                               provider.name, context.booking_id, e)
                attempts.append(f"{provider.name}: {e}")
                continue
            suggestion.attempts = attempts
            return suggestion

        # the fallback is always appended; only a misbehaving subclass gets here
        suggestion = FallbackProvider().suggest(context)
        suggestion.attempts = attempts
        return suggestion

    # ── Persistence ───────────────────────────────────────────────────────────

    def _persist(self, booking: FlightBooking, conflict: WeatherConflict,
                 suggestion: ProviderSuggestion) -> tuple[RescheduleOptionSet, bool]:
        records = [o.to_record() for o in suggestion.options]
        for attempt in range(2):
            try:
                now = self.clock()
                existing = (
                    self.db.query(RescheduleOptionSet)
                    .filter(RescheduleOptionSet.booking_id == booking.id,
                            RescheduleOptionSet.status == OptionSetStatus.PENDING)
                    .with_for_update()
                    .first()
                )
                if existing:
                    existing.options = records
                    existing.provider = suggestion.provider
                    existing.reasoning = suggestion.reasoning
                    existing.generated_at = now
                    option_set, created = existing, False
                else:
                    option_set = RescheduleOptionSet(
                        booking_id=booking.id,
                        conflict_id=conflict.id,
                        options=records,
                        provider=suggestion.provider,
                        reasoning=suggestion.reasoning,
                        generated_at=now,
                        status=OptionSetStatus.PENDING,
                    )
                    self.db.add(option_set)
                    self.db.flush()
                    created = True
                self.db.commit()
                return option_set, created
            except IntegrityError:
                # a concurrent generation created the pending set first
                self.db.rollback()
                if attempt:
                    raise
                logger.info("concurrent option-set insert for booking %s, retrying", booking.id)
