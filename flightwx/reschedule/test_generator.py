"""
Reschedule generation: provider chain, fallback slots, pending-set upsert.

  pytest flightwx/reschedule/test_generator.py
"""
from datetime import datetime

import pytest

from flightwx.conflicts.manager import ConflictManager
from flightwx.errors import NotFound, ValidationError
from flightwx.models import OptionSetStatus, RescheduleOptionSet
from flightwx.reschedule.generator import RescheduleGenerator
from flightwx.reschedule.providers import (
    FALLBACK_PROVIDER, AnthropicProvider, FallbackProvider, OpenAIProvider, parse_json_object,
)
from flightwx.reschedule.schemas import RescheduleOption, RescheduleResponse
from flightwx.weather.cache import WeatherCache
from flightwx.weather.fetcher import MockWeatherClient

GOOD_RESPONSE = {
    "options": [
        {"date": "2025-07-12T08:00:00Z", "reasoning": "Calm morning after the front",
         "weatherForecast": "Clear, light winds", "score": 91.6},
        {"date": "2025-07-13T09:00:00", "reasoning": "High pressure building"},
    ],
    "overallReasoning": "Mornings after the front passes",
}


def open_conflict(db, clock, effects, booking, scenario="low_vis"):
    WeatherCache(db, clock).refresh(MockWeatherClient(scenario), booking.departure_lat,
                                    booking.departure_lon, booking.departure_name)
    return ConflictManager(db, effects, clock=clock).check_booking(booking.id).conflict_id


def suggestion_notices(sink):
    return [n for n in sink.notifications if n[1] == "reschedule-suggestion"]


def test_fallback_when_no_provider_is_configured(db, clock, effects, sink, booking):
    conflict_id = open_conflict(db, clock, effects, booking)
    providers = [OpenAIProvider(None, "gpt-4o-mini"), AnthropicProvider(None, "claude")]

    result = RescheduleGenerator(db, effects, providers, clock=clock).generate(booking.id, conflict_id)

    assert result.provider == FALLBACK_PROVIDER
    assert [(o.date, o.score) for o in result.options] == [
        (datetime(2025, 7, 12, 9, 0), 75),
        (datetime(2025, 7, 13, 10, 0), 80),
        (datetime(2025, 7, 14, 8, 0), 85),
    ]
    assert all(o.reasoning for o in result.options)
    assert result.created

    audit = sink.audit[-1]
    assert audit[2] == "options_generated"
    assert audit[3]["attempts"] == ["gpt-4o-mini: not configured", "claude: not configured"]


def test_reasoning_provider_success(db, clock, effects, booking, stub_provider):
    conflict_id = open_conflict(db, clock, effects, booking)
    provider = stub_provider(GOOD_RESPONSE)

    result = RescheduleGenerator(db, effects, [provider], clock=clock).generate(booking.id, conflict_id)

    assert provider.calls == 1
    assert result.provider == "stub-model"
    assert result.reasoning == "Mornings after the front passes"
    assert result.options[0].date == datetime(2025, 7, 12, 8, 0)
    assert result.options[0].score == 92
    assert result.options[1].score == 80

    stored = db.get(RescheduleOptionSet, result.option_set_id)
    assert stored.status == OptionSetStatus.PENDING
    assert stored.options[0] == {"date": "2025-07-12T08:00:00", "reasoning": "Calm morning after the front",
                                 "weatherForecast": "Clear, light winds", "score": 92}
    assert result.to_dict()["optionSetId"] == stored.id


def test_failures_fall_through_to_next_provider(db, clock, effects, booking,
                                                stub_provider, failing_provider):
    conflict_id = open_conflict(db, clock, effects, booking)
    malformed = stub_provider({"options": []}, model="bad-json-model")
    providers = [failing_provider, malformed, stub_provider(GOOD_RESPONSE)]

    result = RescheduleGenerator(db, effects, providers, clock=clock).generate(booking.id, conflict_id)

    assert failing_provider.calls == 1 and malformed.calls == 1
    assert result.provider == "stub-model"


def test_all_providers_failing_still_yields_fallback(db, clock, effects, booking, failing_provider):
    conflict_id = open_conflict(db, clock, effects, booking)
    second = type(failing_provider)("other-down-model")
    result = RescheduleGenerator(db, effects, [failing_provider, second], clock=clock).generate(
        booking.id, conflict_id)

    assert failing_provider.calls == 1 and second.calls == 1
    assert result.provider == FALLBACK_PROVIDER
    assert [o.score for o in result.options] == [75, 80, 85]


def test_regenerating_overwrites_pending_set(db, clock, effects, sink, booking, stub_provider):
    conflict_id = open_conflict(db, clock, effects, booking)
    first = RescheduleGenerator(db, effects, [], clock=clock).generate(booking.id, conflict_id)

    clock.advance(minutes=10)
    second = RescheduleGenerator(db, effects, [stub_provider(GOOD_RESPONSE)], clock=clock).generate(
        booking.id, conflict_id)

    assert second.option_set_id == first.option_set_id
    assert not second.created
    pending = db.query(RescheduleOptionSet).filter(
        RescheduleOptionSet.status == OptionSetStatus.PENDING).all()
    assert len(pending) == 1
    assert pending[0].provider == "stub-model"
    assert pending[0].generated_at == clock()
    # suggestion notices only for the brand-new set
    assert len(suggestion_notices(sink)) == 2


def test_context_errors(db, clock, effects, booking, make_booking):
    conflict_id = open_conflict(db, clock, effects, booking)
    other = make_booking(name="Jordan Lee")
    generator = RescheduleGenerator(db, effects, [], clock=clock)

    with pytest.raises(NotFound):
        generator.generate("missing", conflict_id)
    with pytest.raises(NotFound):
        generator.generate(booking.id, "missing")
    with pytest.raises(ValidationError):
        generator.generate(other.id, conflict_id)
    assert db.query(RescheduleOptionSet).count() == 0


def test_context_carries_weather_summary(db, clock, effects, booking):
    conflict_id = open_conflict(db, clock, effects, booking)
    _, _, context = RescheduleGenerator(db, effects, [], clock=clock).build_context(
        booking.id, conflict_id)
    assert context.training_level == "student-pilot"
    assert context.weather_summary == "Mist, Visibility: 1.9 mi, Wind: 4.9 kt"
    assert context.violations == ["Visibility 1.9 mi < 5 mi required"]


def test_fallback_provider_is_always_last():
    generator = RescheduleGenerator(db=None, effects=None, providers=[])
    assert isinstance(generator.providers[-1], FallbackProvider)


def test_parse_json_object_handles_fences():
    assert parse_json_object('```json\n{"options": []}\n```', "openai") == {"options": []}
    with pytest.raises(ValidationError):
        parse_json_object("[1, 2]", "openai")
    with pytest.raises(ValidationError):
        parse_json_object("sorry, I can't", "anthropic")


def test_response_schema_clamps_scores():
    parsed = RescheduleResponse.model_validate({
        "options": [{"date": "2025-07-12T09:00:00", "reasoning": "ok", "score": 140},
                    {"date": "2025-07-12T10:00:00", "reasoning": "ok", "score": None}],
        "overallReasoning": None,
    })
    assert [o.score for o in parsed.options] == [100, 80]
    assert parsed.overall_reasoning == ""
    assert RescheduleOption.from_record(parsed.options[0].to_record()) == parsed.options[0]
