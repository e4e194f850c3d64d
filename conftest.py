"""
Shared pytest fixtures: in-memory SQLite, a controllable clock, one seeded
student / instructor / booking, and recording side-effect sinks.
"""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from flightwx.config import Settings
from flightwx.errors import ExternalServiceError
from flightwx.models import Base, FlightBooking, Instructor, Student, TrainingLevel
from flightwx.notifications.sinks import InlineDispatcher, RecordingSink, SideEffects
from flightwx.reschedule.providers import ReasoningServiceProvider

START = datetime(2025, 7, 10, 12, 0)
DFW = ("KDFW", 32.8998, -97.0403)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class StubProvider(ReasoningServiceProvider):
    """Reasoning provider returning a canned JSON object."""

    def __init__(self, response: dict, model: str = "stub-model"):
        super().__init__(api_key="test-key", model=model)
        self.response = response
        self.calls = 0

    def complete(self, system_prompt: str, user_prompt: str) -> dict:
        self.calls += 1
        return self.response


class FailingProvider(ReasoningServiceProvider):
    def __init__(self, model: str = "down-model"):
        super().__init__(api_key="test-key", model=model)
        self.calls = 0

    def complete(self, system_prompt: str, user_prompt: str) -> dict:
        self.calls += 1
        raise ExternalServiceError("stub", "request timed out")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def effects(sink):
    return SideEffects(sink, sink, InlineDispatcher())


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        batch_max_workers=1,
        openai_api_key=None,
        anthropic_api_key=None,
        openweather_api_key=None,
    )


def add_booking(db, training_level=TrainingLevel.STUDENT_PILOT, when=START + timedelta(hours=24),
                location=DFW, name="Alex Rivera") -> FlightBooking:
    student = Student(name=name, email="student@example.com", training_level=training_level)
    instructor = Instructor(name="Sam Okafor", email="cfi@example.com")
    db.add_all([student, instructor])
    db.flush()
    booking = FlightBooking(
        student_id=student.id,
        instructor_id=instructor.id,
        scheduled_date=when,
        departure_name=location[0],
        departure_lat=location[1],
        departure_lon=location[2],
    )
    db.add(booking)
    db.commit()
    return booking


@pytest.fixture
def booking(db):
    return add_booking(db)


@pytest.fixture
def make_booking(db):
    def _make(**kwargs) -> FlightBooking:
        return add_booking(db, **kwargs)
    return _make


@pytest.fixture
def stub_provider():
    return StubProvider


@pytest.fixture
def failing_provider():
    return FailingProvider()
