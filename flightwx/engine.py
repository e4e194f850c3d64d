"""
RescheduleEngine — the facade the API and the scheduler talk to.

One SQLAlchemy session per operation. The batch pass fans bookings out over
a thread pool; each worker gets its own session and its own pipeline run, so
one booking's failure only shows up in the `errors` count.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy.orm import sessionmaker

from flightwx.agent.workflow import WEATHER_ERROR, PipelineServices, run_booking_pipeline
from flightwx.clock import Clock, utcnow
from flightwx.config import Settings, get_settings
from flightwx.conflicts.manager import CLEAR, CONFLICT, ConflictManager
from flightwx.notifications.sinks import (
    DatabaseAuditSink, DatabaseNotificationSink, SideEffects, ThreadedDispatcher,
)
from flightwx.reschedule.generator import RescheduleGenerator
from flightwx.reschedule.options import OptionLifecycle
from flightwx.reschedule.providers import SuggestionProvider, default_providers
from flightwx.store import BookingStore
from flightwx.weather.cache import WeatherCache
from flightwx.weather.fetcher import OpenWeatherClient

logger = logging.getLogger(__name__)


class RescheduleEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        settings: Optional[Settings] = None,
        weather_client=None,
        providers: Optional[Sequence[SuggestionProvider]] = None,
        effects: Optional[SideEffects] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.weather_client = weather_client or OpenWeatherClient(
            self.settings.openweather_api_key,
            self.settings.openweather_url,
            self.settings.weather_timeout_seconds,
        )
        self.providers = list(providers) if providers is not None else default_providers(self.settings)
        self.effects = effects or SideEffects(
            DatabaseNotificationSink(session_factory),
            DatabaseAuditSink(session_factory),
            ThreadedDispatcher(),
        )
        self.clock = clock

    # ── Conflicts ─────────────────────────────────────────────────────────────

    def check_booking(self, booking_id: str) -> dict:
        with self.session_factory() as db:
            return self._conflicts(db).check_booking(booking_id).to_dict()

    def check_all_active(self, start: Optional[datetime] = None,
                         end: Optional[datetime] = None) -> dict:
        start = start or self.clock()
        end = end or start + timedelta(hours=self.settings.lookahead_hours)

        with self.session_factory() as db:
            booking_ids = [b.id for b in BookingStore(db, self.clock).active_bookings(start, end)]

        summary = {"total": len(booking_ids), "conflicts": 0, "resolved": 0,
                   "errors": 0, "skipped": 0}
        if not booking_ids:
            logger.info("batch check: no active bookings between %s and %s",
                        start.isoformat(), end.isoformat())
            return summary

        workers = min(self.settings.batch_max_workers, len(booking_ids))
        with ThreadPoolExecutor(max_workers=workers,
                                thread_name_prefix="flightwx-batch") as pool:
            outcomes = list(pool.map(self._run_one, booking_ids))

        for outcome in outcomes:
            status = outcome.get("status") if outcome else None
            if outcome is None or status == WEATHER_ERROR:
                summary["errors"] += 1
            elif status == CONFLICT:
                summary["conflicts"] += 1
            elif status == CLEAR:
                summary["resolved"] += len(outcome.get("resolved_ids") or [])
            else:
                summary["skipped"] += 1

        logger.info("batch check: %(total)d bookings, %(conflicts)d conflicts, "
                    "%(resolved)d resolved, %(errors)d errors, %(skipped)d skipped", summary)
        return summary

    def _run_one(self, booking_id: str) -> Optional[dict]:
        try:
            with self.session_factory() as db:
                services = PipelineServices(
                    db=db,
                    effects=self.effects,
                    weather_client=self.weather_client,
                    providers=self.providers,
                    ttl_minutes=self.settings.weather_cache_ttl_minutes,
                    clock=self.clock,
                )
                return run_booking_pipeline(services, booking_id,
                                            auto_generate=self.settings.auto_generate_reschedule)
        except Exception:
            logger.exception("batch check failed for booking %s", booking_id)
            return None

    def resolve_conflict(self, conflict_id: str, reason: Optional[str] = None) -> dict:
        with self.session_factory() as db:
            self._conflicts(db).resolve_manually(conflict_id, reason)
        return {}

    def active_conflicts(self) -> list[dict]:
        with self.session_factory() as db:
            return [conflict_dict(c) for c in self._conflicts(db).list_active()]

    def booking_conflicts(self, booking_id: str) -> list[dict]:
        with self.session_factory() as db:
            return [conflict_dict(c) for c in self._conflicts(db).for_booking(booking_id)]

    # ── Reschedule options ────────────────────────────────────────────────────

    def generate_reschedule_options(self, booking_id: str, conflict_id: str) -> dict:
        with self.session_factory() as db:
            generator = RescheduleGenerator(db, self.effects, self.providers,
                                            store=BookingStore(db, self.clock), clock=self.clock)
            return generator.generate(booking_id, conflict_id).to_dict()

    def accept_option(self, option_set_id: str, index: int) -> dict:
        with self.session_factory() as db:
            new_date = self._options(db).accept(option_set_id, index)
        return {"newDate": new_date.isoformat()}

    def reject_options(self, option_set_id: str, reason: Optional[str] = None) -> dict:
        with self.session_factory() as db:
            self._options(db).reject(option_set_id, reason)
        return {}

    def pending_option_sets(self) -> list[dict]:
        with self.session_factory() as db:
            return [option_set_dict(s) for s in self._options(db).list_pending()]

    def booking_option_sets(self, booking_id: str) -> dict:
        with self.session_factory() as db:
            lifecycle = self._options(db)
            pending = lifecycle.pending_for_booking(booking_id)
            return {
                "pending": option_set_dict(pending) if pending else None,
                "history": [option_set_dict(s) for s in lifecycle.history(booking_id)],
            }

    # ── Weather ───────────────────────────────────────────────────────────────

    def refresh_weather(self, lat: float, lon: float, location_name: str) -> dict:
        with self.session_factory() as db:
            observation = WeatherCache(db, self.clock).refresh(
                self.weather_client, lat, lon, location_name,
                ttl_minutes=self.settings.weather_cache_ttl_minutes)
            return observation_dict(observation)

    def weather_history(self, lat: float, lon: float, limit: Optional[int] = None) -> list[dict]:
        with self.session_factory() as db:
            return [observation_dict(o) for o in WeatherCache(db, self.clock).history(lat, lon, limit)]

    def sweep_weather(self) -> dict:
        with self.session_factory() as db:
            return {"deleted": WeatherCache(db, self.clock).sweep()}

    def shutdown(self) -> None:
        """Wait for queued notification and audit writes."""
        self.effects.dispatcher.shutdown(wait=True)
        logger.info("engine side effects flushed")

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _conflicts(self, db) -> ConflictManager:
        return ConflictManager(db, self.effects, store=BookingStore(db, self.clock),
                               cache=WeatherCache(db, self.clock), clock=self.clock)

    def _options(self, db) -> OptionLifecycle:
        return OptionLifecycle(db, self.effects, store=BookingStore(db, self.clock),
                               clock=self.clock)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def conflict_dict(conflict) -> dict:
    return {
        "id": conflict.id,
        "bookingId": conflict.booking_id,
        "detectedAt": _iso(conflict.detected_at),
        "weatherObservationId": conflict.weather_observation_id,
        "trainingLevel": conflict.training_level.value,
        "violations": list(conflict.violations or []),
        "severity": conflict.severity.value,
        "resolved": conflict.resolved,
        "resolvedAt": _iso(conflict.resolved_at),
        "resolutionNote": conflict.resolution_note,
    }


def option_set_dict(option_set) -> dict:
    return {
        "id": option_set.id,
        "bookingId": option_set.booking_id,
        "conflictId": option_set.conflict_id,
        "options": list(option_set.options or []),
        "provider": option_set.provider,
        "reasoning": option_set.reasoning,
        "generatedAt": _iso(option_set.generated_at),
        "status": option_set.status.value,
        "selectedOptionIndex": option_set.selected_option_index,
        "finalizedAt": _iso(option_set.finalized_at),
        "rejectionReason": option_set.rejection_reason,
    }


def observation_dict(observation) -> dict:
    return {
        "id": observation.id,
        "locationName": observation.location_name,
        "lat": observation.lat,
        "lon": observation.lon,
        "observedAt": _iso(observation.observed_at),
        "fetchedAt": _iso(observation.fetched_at),
        "expiresAt": _iso(observation.expires_at),
        "visibilityMi": observation.visibility_mi,
        "ceilingFt": observation.ceiling_ft,
        "windSpeedKt": observation.wind_speed_kt,
        "windDirectionDeg": observation.wind_direction_deg,
        "temperatureC": observation.temperature_c,
        "conditions": observation.conditions,
        "hasThunderstorms": observation.has_thunderstorms,
        "hasIcing": observation.has_icing,
    }
