"""
FastAPI app — conflict checks, reschedule options and weather cache:
  POST /bookings/{id}/check         GET  /bookings/{id}/conflicts
  POST /conflicts/check-all         GET  /conflicts/active
  POST /conflicts/{id}/resolve
  POST /reschedule/generate         GET  /reschedule/pending
  POST /reschedule/{id}/accept      GET  /bookings/{id}/reschedule
  POST /reschedule/{id}/reject
  POST /weather/refresh             GET  /weather/history
"""
import logging
import logging.config
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from flightwx.clock import to_naive_utc
from flightwx.config import get_settings
from flightwx.engine import RescheduleEngine
from flightwx.errors import (
    ExternalServiceError, InvariantViolation, NotFound, RescheduleError, ValidationError,
)
from flightwx.scheduler import start_scheduler

logger = logging.getLogger(__name__)

STATUS_CODES = {
    NotFound: 404,
    ValidationError: 400,
    InvariantViolation: 409,
    ExternalServiceError: 502,
}


# ── Request bodies ────────────────────────────────────────────────────────────

class CheckAllRequest(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class ResolveRequest(BaseModel):
    reason: Optional[str] = None


class GenerateRequest(BaseModel):
    booking_id: str = Field(alias="bookingId")
    conflict_id: str = Field(alias="conflictId")

    model_config = ConfigDict(populate_by_name=True)


class AcceptRequest(BaseModel):
    index: int


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class RefreshWeatherRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    name: str = Field(min_length=1)


# ── App factory ───────────────────────────────────────────────────────────────

def create_app(engine: Optional[RescheduleEngine] = None) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="FlightWX Reschedule API", version=settings.app_version)
    app.state.engine = engine
    app.state.scheduler = None

    @app.on_event("startup")
    def startup():
        logging.config.dictConfig(settings.get_log_config())
        if app.state.engine is None:
            from flightwx.database import SessionLocal, init_db
            init_db()
            app.state.engine = RescheduleEngine(SessionLocal, settings)
        if app.state.engine.settings.run_scheduler:
            app.state.scheduler = start_scheduler(app.state.engine, app.state.engine.settings)
        logger.info("%s %s started (%s)", settings.app_name, settings.app_version,
                    settings.environment)

    @app.on_event("shutdown")
    def shutdown():
        if app.state.scheduler is not None:
            app.state.scheduler.shutdown(wait=False)
        if app.state.engine is not None:
            app.state.engine.shutdown()

    @app.exception_handler(RescheduleError)
    async def handle_engine_error(request: Request, exc: RescheduleError):
        status = next((code for cls, code in STATUS_CODES.items() if isinstance(exc, cls)), 500)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content=exc.to_dict())

    _register_routes(app)
    return app


def get_engine(request: Request) -> RescheduleEngine:
    return request.app.state.engine


def _register_routes(app: FastAPI) -> None:

    # ── Conflicts ─────────────────────────────────────────────────────────────

    @app.post("/bookings/{booking_id}/check")
    def check_booking(booking_id: str, engine: RescheduleEngine = Depends(get_engine)):
        """Evaluate one booking against cached weather (never fetches)."""
        return engine.check_booking(booking_id)

    @app.post("/conflicts/check-all")
    def check_all(body: Optional[CheckAllRequest] = None,
                  engine: RescheduleEngine = Depends(get_engine)):
        """
        Batch pass over active bookings in [start, end].
        Defaults to now → now + lookahead_hours.
        """
        body = body or CheckAllRequest()
        if body.start and body.end and body.end < body.start:
            raise ValidationError("end must not be before start", field="end")
        return engine.check_all_active(_naive(body.start), _naive(body.end))

    @app.post("/conflicts/{conflict_id}/resolve")
    def resolve_conflict(conflict_id: str, body: Optional[ResolveRequest] = None,
                         engine: RescheduleEngine = Depends(get_engine)):
        reason = body.reason if body else None
        return {"success": True, **engine.resolve_conflict(conflict_id, reason)}

    @app.get("/conflicts/active")
    def active_conflicts(engine: RescheduleEngine = Depends(get_engine)):
        conflicts = engine.active_conflicts()
        return {"total": len(conflicts), "conflicts": conflicts}

    @app.get("/bookings/{booking_id}/conflicts")
    def booking_conflicts(booking_id: str, engine: RescheduleEngine = Depends(get_engine)):
        return {"conflicts": engine.booking_conflicts(booking_id)}

    # ── Reschedule ────────────────────────────────────────────────────────────

    @app.post("/reschedule/generate")
    def generate_options(body: GenerateRequest, engine: RescheduleEngine = Depends(get_engine)):
        return engine.generate_reschedule_options(body.booking_id, body.conflict_id)

    @app.post("/reschedule/{option_set_id}/accept")
    def accept_option(option_set_id: str, body: AcceptRequest,
                      engine: RescheduleEngine = Depends(get_engine)):
        return {"success": True, **engine.accept_option(option_set_id, body.index)}

    @app.post("/reschedule/{option_set_id}/reject")
    def reject_options(option_set_id: str, body: Optional[RejectRequest] = None,
                       engine: RescheduleEngine = Depends(get_engine)):
        reason = body.reason if body else None
        return {"success": True, **engine.reject_options(option_set_id, reason)}

    @app.get("/reschedule/pending")
    def pending_options(engine: RescheduleEngine = Depends(get_engine)):
        pending = engine.pending_option_sets()
        return {"total": len(pending), "optionSets": pending}

    @app.get("/bookings/{booking_id}/reschedule")
    def booking_options(booking_id: str, engine: RescheduleEngine = Depends(get_engine)):
        return engine.booking_option_sets(booking_id)

    # ── Weather ───────────────────────────────────────────────────────────────

    @app.post("/weather/refresh")
    def refresh_weather(body: RefreshWeatherRequest,
                        engine: RescheduleEngine = Depends(get_engine)):
        return engine.refresh_weather(body.lat, body.lon, body.name)

    @app.get("/weather/history")
    def weather_history(lat: float, lon: float, limit: int = 20,
                        engine: RescheduleEngine = Depends(get_engine)):
        observations = engine.weather_history(lat, lon, limit)
        return {"total": len(observations), "observations": observations}

    # ── Health check ──────────────────────────────────────────────────────────

    @app.get("/")
    def root():
        settings = get_settings()
        return {"service": settings.app_name, "version": settings.app_version, "status": "ok"}


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    return to_naive_utc(value) if value else None


app = create_app()
