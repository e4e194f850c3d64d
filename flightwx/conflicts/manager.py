"""
Conflict lifecycle — one unresolved WeatherConflict per booking at most.

Per booking:   none ──(violations)──▶ open ──(clear re-check | manual)──▶ none
               open ──(violations)──▶ open   (updated in place)

check_booking never fetches weather and never raises for missing data;
the batch driver just retries on its next pass.
"""
import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flightwx.clock import Clock, utcnow
from flightwx.dispatch.engine import TRAINING_MINIMUMS, Evaluation, TrainingMinimums, evaluate
from flightwx.errors import NotFound
from flightwx.models import (
    BookingStatus, FlightBooking, OptionSetStatus, RescheduleOptionSet,
    Severity, Student, TrainingLevel, WeatherConflict, WeatherObservation,
)
from flightwx.notifications.sinks import SideEffects
from flightwx.store import ACTIVE_STATUSES, BookingStore
from flightwx.weather.cache import WeatherCache

logger = logging.getLogger(__name__)

CONFLICT = "conflict"
CLEAR = "clear"
NO_DATA = "no-data"
SKIPPED = "skipped"


@dataclass
class CheckResult:
    booking_id: str
    status: str
    conflict_id: Optional[str] = None
    violations: list[str] = field(default_factory=list)
    severity: Optional[Severity] = None
    created: bool = False
    resolved_ids: list[str] = field(default_factory=list)

    @property
    def has_conflict(self) -> bool:
        return self.status == CONFLICT

    def to_dict(self) -> dict:
        out = {"hasConflict": self.has_conflict, "status": self.status}
        if self.has_conflict:
            out.update(conflictId=self.conflict_id, violations=list(self.violations),
                       severity=self.severity.value)
        return out


class ConflictManager:
    def __init__(
        self,
        db: Session,
        effects: SideEffects,
        store: Optional[BookingStore] = None,
        cache: Optional[WeatherCache] = None,
        minimums: Mapping[TrainingLevel, TrainingMinimums] = TRAINING_MINIMUMS,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.effects = effects
        self.store = store or BookingStore(db, clock)
        self.cache = cache or WeatherCache(db, clock)
        self.minimums = minimums
        self.clock = clock

    # ── Checks ────────────────────────────────────────────────────────────────

    def check_booking(self, booking_id: str) -> CheckResult:
        booking = self.store.get_booking(booking_id)
        if booking is None:
            logger.warning("booking %s not found, skipping conflict check", booking_id)
            return CheckResult(booking_id, NO_DATA)

        if booking.status not in ACTIVE_STATUSES:
            return CheckResult(booking_id, SKIPPED)

        student = self.store.get_student(booking.student_id)
        if student is None:
            logger.warning("student %s for booking %s not found", booking.student_id, booking_id)
            return CheckResult(booking_id, NO_DATA)

        weather = self.cache.lookup(booking.departure_lat, booking.departure_lon)
        if weather is None:
            logger.info("no cached weather for booking %s (%s)", booking_id, booking.departure_name)
            return CheckResult(booking_id, NO_DATA)

        evaluation = evaluate(weather, student.training_level, self.minimums)
        if evaluation.violations:
            return self._open_or_update(booking, student, weather, evaluation)
        return self._clear(booking)

    def _open_or_update(self, booking: FlightBooking, student: Student,
                        weather: WeatherObservation, evaluation: Evaluation) -> CheckResult:
        for attempt in range(2):
            try:
                conflict, created = self._upsert(booking, student, weather, evaluation)
                if booking.status == BookingStatus.SCHEDULED:
                    self.store.patch_booking(booking, status=BookingStatus.WEATHER_CONFLICT)
                self.db.commit()
                break
            except IntegrityError:
                # another check for this booking inserted first; update its row instead
                self.db.rollback()
                if attempt:
                    raise
                logger.info("concurrent conflict insert for booking %s, retrying", booking.id)

        if created:
            logger.info("conflict %s opened for booking %s (%s): %s",
                        conflict.id, booking.id, evaluation.severity.value,
                        "; ".join(evaluation.violations))
            self.effects.conflict_opened(booking, conflict.id, evaluation.violations,
                                         evaluation.severity)
            self.effects.audit_event("booking", booking.id, "conflict_detected", {
                "conflict_id": conflict.id,
                "violations": list(evaluation.violations),
                "severity": evaluation.severity.value,
            })

        return CheckResult(
            booking_id=booking.id,
            status=CONFLICT,
            conflict_id=conflict.id,
            violations=list(evaluation.violations),
            severity=evaluation.severity,
            created=created,
        )

    def _upsert(self, booking, student, weather, evaluation) -> tuple[WeatherConflict, bool]:
        now = self.clock()
        existing = (
            self.db.query(WeatherConflict)
            .filter(WeatherConflict.booking_id == booking.id,
                    WeatherConflict.resolved.is_(False))
            .with_for_update()
            .first()
        )
        if existing:
            existing.weather_observation_id = weather.id
            existing.violations = list(evaluation.violations)
            existing.severity = evaluation.severity
            existing.detected_at = now
            return existing, False

        conflict = WeatherConflict(
            booking_id=booking.id,
            detected_at=now,
            weather_observation_id=weather.id,
            training_level=student.training_level,
            violations=list(evaluation.violations),
            severity=evaluation.severity,
            resolved=False,
        )
        self.db.add(conflict)
        self.db.flush()
        return conflict, True

    def _clear(self, booking: FlightBooking) -> CheckResult:
        now = self.clock()
        open_conflicts = self._open_for_booking(booking.id)
        for conflict in open_conflicts:
            conflict.resolved = True
            conflict.resolved_at = now
            conflict.resolution_note = "weather within minimums"

        if booking.status == BookingStatus.WEATHER_CONFLICT:
            self.store.patch_booking(booking, status=BookingStatus.SCHEDULED)

        # suggestions made for weather that has since cleared are moot
        stale = (
            self.db.query(RescheduleOptionSet)
            .filter(RescheduleOptionSet.booking_id == booking.id,
                    RescheduleOptionSet.status == OptionSetStatus.PENDING)
            .all()
        )
        for option_set in stale:
            option_set.status = OptionSetStatus.EXPIRED
            option_set.finalized_at = now

        self.db.commit()

        resolved_ids = [c.id for c in open_conflicts]
        for conflict_id in resolved_ids:
            logger.info("conflict %s auto-resolved for booking %s", conflict_id, booking.id)
            self.effects.audit_event("weather", conflict_id, "conflict_resolved",
                                     {"booking_id": booking.id, "automatic": True})
        return CheckResult(booking.id, CLEAR, resolved_ids=resolved_ids)

    # ── Manual resolution ─────────────────────────────────────────────────────

    def resolve_manually(self, conflict_id: str, reason: Optional[str] = None) -> WeatherConflict:
        """Record-keeping override; the booking status is left alone."""
        conflict = self.db.get(WeatherConflict, conflict_id)
        if conflict is None:
            raise NotFound("Conflict", conflict_id)

        if not conflict.resolved:
            conflict.resolved = True
            conflict.resolved_at = self.clock()
        conflict.resolution_note = reason
        self.db.commit()

        self.effects.audit_event("weather", conflict.id, "conflict_resolved",
                                 {"reason": reason, "automatic": False})
        return conflict

    # ── Queries ───────────────────────────────────────────────────────────────

    def _open_for_booking(self, booking_id: str) -> list[WeatherConflict]:
        return (
            self.db.query(WeatherConflict)
            .filter(WeatherConflict.booking_id == booking_id,
                    WeatherConflict.resolved.is_(False))
            .all()
        )

    def open_conflict(self, booking_id: str) -> Optional[WeatherConflict]:
        conflicts = self._open_for_booking(booking_id)
        return conflicts[0] if conflicts else None

    def list_active(self) -> list[WeatherConflict]:
        return (
            self.db.query(WeatherConflict)
            .filter(WeatherConflict.resolved.is_(False))
            .order_by(WeatherConflict.detected_at.desc())
            .all()
        )

    def for_booking(self, booking_id: str) -> list[WeatherConflict]:
        return (
            self.db.query(WeatherConflict)
            .filter(WeatherConflict.booking_id == booking_id)
            .order_by(WeatherConflict.detected_at.desc())
            .all()
        )
