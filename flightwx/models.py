from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime,
    JSON, ForeignKey, Text, Index, text, Enum as SAEnum
)
from sqlalchemy.orm import declarative_base
import enum
import uuid

from flightwx.clock import utcnow

Base = declarative_base()


def _new_id() -> str:
    return uuid.uuid4().hex


def _enum(cls):
    # store the enum *values* ("weather-conflict"), not member names
    return SAEnum(cls, values_callable=lambda e: [m.value for m in e],
                  name=cls.__name__.lower())


# ── Enums ────────────────────────────────────────────────────────────────────

class TrainingLevel(str, enum.Enum):
    STUDENT_PILOT = "student-pilot"
    PRIVATE_PILOT = "private-pilot"
    INSTRUMENT_RATED = "instrument-rated"

class BookingStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    WEATHER_CONFLICT = "weather-conflict"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class Severity(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

class OptionSetStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"

class NotificationType(str, enum.Enum):
    WEATHER_CONFLICT = "weather-conflict"
    RESCHEDULE_SUGGESTION = "reschedule-suggestion"


# ── Externally owned entities ────────────────────────────────────────────────

class Student(Base):
    __tablename__ = "students"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    training_level = Column(_enum(TrainingLevel), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Instructor(Base):
    __tablename__ = "instructors"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class FlightBooking(Base):
    __tablename__ = "flight_bookings"

    id = Column(String, primary_key=True, default=_new_id)
    student_id = Column(String, ForeignKey("students.id"), nullable=False)
    instructor_id = Column(String, ForeignKey("instructors.id"), nullable=False)
    scheduled_date = Column(DateTime, nullable=False)

    departure_name = Column(String, nullable=False)
    departure_lat = Column(Float, nullable=False)
    departure_lon = Column(Float, nullable=False)
    destination_name = Column(String, nullable=True)
    destination_lat = Column(Float, nullable=True)
    destination_lon = Column(Float, nullable=True)

    status = Column(_enum(BookingStatus), nullable=False, default=BookingStatus.SCHEDULED)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_bookings_status_date", "status", "scheduled_date"),
    )


# ── Weather cache ─────────────────────────────────────────────────────────────

class WeatherObservation(Base):
    """Append-only; a newer row for the same location supersedes an older one."""
    __tablename__ = "weather_observations"

    id = Column(String, primary_key=True, default=_new_id)
    location_name = Column(String, nullable=False)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    observed_at = Column(DateTime, nullable=False)
    fetched_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    visibility_mi = Column(Float, nullable=False)
    ceiling_ft = Column(Integer, nullable=True)        # None = clear skies
    wind_speed_kt = Column(Float, nullable=False)
    wind_direction_deg = Column(Integer, nullable=True)
    temperature_c = Column(Float, nullable=False)
    conditions = Column(String, nullable=False)        # "Clear", "Clouds", "Thunderstorm"
    has_thunderstorms = Column(Boolean, nullable=False, default=False)
    has_icing = Column(Boolean, nullable=False, default=False)
    raw = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_weather_location_expires", "lat", "lon", "expires_at"),
    )


# ── Conflicts + reschedule options ────────────────────────────────────────────

class WeatherConflict(Base):
    __tablename__ = "weather_conflicts"

    id = Column(String, primary_key=True, default=_new_id)
    booking_id = Column(String, ForeignKey("flight_bookings.id"), nullable=False)
    detected_at = Column(DateTime, nullable=False)
    weather_observation_id = Column(String, ForeignKey("weather_observations.id"), nullable=False)
    training_level = Column(_enum(TrainingLevel), nullable=False)
    violations = Column(JSON, nullable=False, default=list)   # ordered, display strings
    severity = Column(_enum(Severity), nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolution_note = Column(Text, nullable=True)

    __table_args__ = (
        # at most one unresolved conflict per booking
        Index(
            "uq_conflicts_open_per_booking", "booking_id", unique=True,
            postgresql_where=text("resolved = false"),
            sqlite_where=text("resolved = 0"),
        ),
        Index("ix_conflicts_booking", "booking_id"),
    )


class RescheduleOptionSet(Base):
    __tablename__ = "reschedule_option_sets"

    id = Column(String, primary_key=True, default=_new_id)
    booking_id = Column(String, ForeignKey("flight_bookings.id"), nullable=False)
    conflict_id = Column(String, ForeignKey("weather_conflicts.id"), nullable=False)
    options = Column(JSON, nullable=False)    # [{"date", "reasoning", "weatherForecast", "score"}]
    provider = Column(String, nullable=False)  # "gpt-4o-mini" | "claude-..." | "fallback-rules"
    reasoning = Column(Text, nullable=False, default="")
    generated_at = Column(DateTime, nullable=False)
    status = Column(_enum(OptionSetStatus), nullable=False, default=OptionSetStatus.PENDING)
    selected_option_index = Column(Integer, nullable=True)
    finalized_at = Column(DateTime, nullable=True)
    rejection_reason = Column(Text, nullable=True)

    __table_args__ = (
        # exactly one pending set per booking
        Index(
            "uq_option_sets_pending_per_booking", "booking_id", unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_option_sets_booking", "booking_id"),
    )


# ── Side-effect storage ───────────────────────────────────────────────────────

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String, nullable=True)
    recipient_type = Column(String, nullable=False)    # "student" | "instructor"
    recipient_id = Column(String, nullable=False)
    type = Column(_enum(NotificationType), nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    priority = Column(String, nullable=False, default="medium")
    read = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime, default=utcnow)
    notification_metadata = Column("metadata", JSON, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String, nullable=False)       # "booking" | "weather" | "reschedule"
    entity_id = Column(String, nullable=False)
    action = Column(String, nullable=False)            # "conflict_detected", "accepted", ...
    actor_type = Column(String, default="system")
    timestamp = Column(DateTime, default=utcnow)
    details = Column(JSON, nullable=True)
