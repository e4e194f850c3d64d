"""
LangGraph pipeline for one booking in a batch pass.

Workflow:
  1. ensure_weather    → cached observation for the departure (and destination), fetched on a miss
  2. check_conflict    → rule engine + conflict upsert / auto-resolve
  3. generate_options  → only when auto-generation is on and a conflict just opened
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, TypedDict

from langgraph.graph import END, StateGraph
from sqlalchemy.orm import Session

from flightwx.clock import Clock, utcnow
from flightwx.conflicts.manager import NO_DATA, ConflictManager
from flightwx.errors import ExternalServiceError
from flightwx.notifications.sinks import SideEffects
from flightwx.reschedule.generator import RescheduleGenerator
from flightwx.reschedule.providers import SuggestionProvider
from flightwx.store import BookingStore
from flightwx.weather.cache import WeatherCache

logger = logging.getLogger(__name__)

WEATHER_ERROR = "weather-error"


# ── State definition ──────────────────────────────────────────────────────────

class BookingCheckState(TypedDict):
    """State passed through the workflow."""
    # Input
    booking_id: str
    auto_generate: bool

    # Workflow state
    weather_id: Optional[str]
    status: Optional[str]
    error: Optional[str]

    # Output
    conflict_id: Optional[str]
    violations: list[str]
    severity: Optional[str]
    created: bool
    resolved_ids: list[str]
    option_set_id: Optional[str]


@dataclass
class PipelineServices:
    """Everything the nodes touch, bound to one session."""
    db: Session
    effects: SideEffects
    weather_client: object
    providers: Sequence[SuggestionProvider]
    ttl_minutes: int
    clock: Clock = utcnow

    def __post_init__(self):
        self.store = BookingStore(self.db, self.clock)
        self.cache = WeatherCache(self.db, self.clock)
        self.conflicts = ConflictManager(self.db, self.effects, store=self.store,
                                         cache=self.cache, clock=self.clock)
        self.generator = RescheduleGenerator(self.db, self.effects, self.providers,
                                             store=self.store, clock=self.clock)


# ── Graph ─────────────────────────────────────────────────────────────────────

def build_booking_graph(services: PipelineServices):
    def ensure_weather_node(state: BookingCheckState) -> dict:
        booking = services.store.get_booking(state["booking_id"])
        if booking is None:
            return {"status": NO_DATA}

        weather = services.cache.lookup(booking.departure_lat, booking.departure_lon)
        if weather is None:
            try:
                weather = services.cache.refresh(
                    services.weather_client, booking.departure_lat, booking.departure_lon,
                    booking.departure_name, ttl_minutes=services.ttl_minutes)
            except ExternalServiceError as e:
                logger.warning("weather unavailable for booking %s: %s", booking.id, e)
                return {"status": WEATHER_ERROR, "error": str(e)}

        # destination weather is informational; a failed fetch does not fail the check
        if booking.destination_lat is not None and booking.destination_lon is not None:
            if services.cache.lookup(booking.destination_lat, booking.destination_lon) is None:
                try:
                    services.cache.refresh(
                        services.weather_client, booking.destination_lat,
                        booking.destination_lon, booking.destination_name or "destination",
                        ttl_minutes=services.ttl_minutes)
                except ExternalServiceError as e:
                    logger.warning("destination weather unavailable for booking %s: %s",
                                   booking.id, e)
        return {"weather_id": weather.id}

    def check_conflict_node(state: BookingCheckState) -> dict:
        result = services.conflicts.check_booking(state["booking_id"])
        return {
            "status": result.status,
            "conflict_id": result.conflict_id,
            "violations": list(result.violations),
            "severity": result.severity.value if result.severity else None,
            "created": result.created,
            "resolved_ids": list(result.resolved_ids),
        }

    def generate_options_node(state: BookingCheckState) -> dict:
        # the conflict is already committed; a generation failure leaves it open
        try:
            generated = services.generator.generate(state["booking_id"], state["conflict_id"])
        except Exception as e:
            services.db.rollback()
            logger.warning("option generation failed for booking %s: %s",
                           state["booking_id"], e)
            return {"error": str(e)}
        return {"option_set_id": generated.option_set_id}

    def after_weather(state: BookingCheckState) -> str:
        return END if state.get("status") else "check_conflict"

    def after_check(state: BookingCheckState) -> str:
        if state["auto_generate"] and state.get("created"):
            return "generate_options"
        return END

    workflow = StateGraph(BookingCheckState)

    workflow.add_node("ensure_weather", ensure_weather_node)
    workflow.add_node("check_conflict", check_conflict_node)
    workflow.add_node("generate_options", generate_options_node)

    workflow.set_entry_point("ensure_weather")
    workflow.add_conditional_edges("ensure_weather", after_weather)
    workflow.add_conditional_edges("check_conflict", after_check)
    workflow.add_edge("generate_options", END)

    return workflow.compile()


# ── Runner ────────────────────────────────────────────────────────────────────

def run_booking_pipeline(services: PipelineServices, booking_id: str,
                         auto_generate: bool = False) -> BookingCheckState:
    graph = build_booking_graph(services)

    initial_state: BookingCheckState = {
        "booking_id": booking_id,
        "auto_generate": auto_generate,
        "weather_id": None,
        "status": None,
        "error": None,
        "conflict_id": None,
        "violations": [],
        "severity": None,
        "created": False,
        "resolved_ids": [],
        "option_set_id": None,
    }
    return graph.invoke(initial_state)
