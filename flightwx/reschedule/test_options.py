"""
Option-set lifecycle: accept / reject and the finalization guards.

  pytest flightwx/reschedule/test_options.py
"""
from datetime import datetime

import pytest

from flightwx.conflicts.manager import ConflictManager
from flightwx.errors import InvariantViolation, NotFound, ValidationError
from flightwx.models import BookingStatus, OptionSetStatus, RescheduleOptionSet, WeatherConflict
from flightwx.reschedule.generator import RescheduleGenerator
from flightwx.reschedule.options import OptionLifecycle
from flightwx.weather.cache import WeatherCache
from flightwx.weather.fetcher import MockWeatherClient


@pytest.fixture
def generated(db, clock, effects, booking):
    WeatherCache(db, clock).refresh(MockWeatherClient("overcast"), booking.departure_lat,
                                    booking.departure_lon, booking.departure_name)
    conflict_id = ConflictManager(db, effects, clock=clock).check_booking(booking.id).conflict_id
    return RescheduleGenerator(db, effects, [], clock=clock).generate(booking.id, conflict_id)


@pytest.fixture
def lifecycle(db, effects, clock):
    return OptionLifecycle(db, effects, clock=clock)


def test_accept_moves_booking_to_chosen_slot(db, clock, lifecycle, booking, generated, sink):
    clock.advance(minutes=3)
    new_date = lifecycle.accept(generated.option_set_id, 1)

    assert new_date == datetime(2025, 7, 13, 10, 0)
    assert booking.scheduled_date == new_date
    assert booking.status == BookingStatus.RESCHEDULED

    option_set = db.get(RescheduleOptionSet, generated.option_set_id)
    assert option_set.status == OptionSetStatus.ACCEPTED
    assert option_set.selected_option_index == 1
    assert option_set.finalized_at == clock()

    conflict = db.get(WeatherConflict, option_set.conflict_id)
    # conflicts close only through a clear re-check or a manual resolve
    assert not conflict.resolved
    assert conflict.resolved_at is None

    assert sink.actions()[-1] == "accepted"
    assert sink.audit[-1][3]["new_date"] == "2025-07-13T10:00:00"


@pytest.mark.parametrize("index", [3, -1, 99])
def test_out_of_range_index_changes_nothing(db, lifecycle, booking, generated, index):
    original = booking.scheduled_date
    with pytest.raises(ValidationError) as exc:
        lifecycle.accept(generated.option_set_id, index)
    assert exc.value.message == "invalid option index"

    assert booking.scheduled_date == original
    assert booking.status == BookingStatus.WEATHER_CONFLICT
    option_set = db.get(RescheduleOptionSet, generated.option_set_id)
    assert option_set.status == OptionSetStatus.PENDING
    assert option_set.selected_option_index is None


def test_second_finalization_is_rejected(lifecycle, booking, generated):
    lifecycle.accept(generated.option_set_id, 0)
    moved_to = booking.scheduled_date

    with pytest.raises(InvariantViolation):
        lifecycle.accept(generated.option_set_id, 2)
    with pytest.raises(InvariantViolation):
        lifecycle.reject(generated.option_set_id, "changed my mind")
    assert booking.scheduled_date == moved_to


def test_reject_leaves_booking_untouched(db, lifecycle, booking, generated, sink):
    original = booking.scheduled_date
    option_set = lifecycle.reject(generated.option_set_id, "none of these work")

    assert option_set.status == OptionSetStatus.REJECTED
    assert option_set.rejection_reason == "none of these work"
    assert booking.scheduled_date == original
    assert booking.status == BookingStatus.WEATHER_CONFLICT
    assert sink.actions()[-1] == "rejected"

    with pytest.raises(InvariantViolation):
        lifecycle.accept(generated.option_set_id, 0)


def test_missing_option_set(lifecycle):
    with pytest.raises(NotFound):
        lifecycle.accept("missing", 0)
    with pytest.raises(NotFound):
        lifecycle.reject("missing")


def test_queries(lifecycle, booking, generated):
    assert lifecycle.pending_for_booking(booking.id).id == generated.option_set_id
    assert [s.id for s in lifecycle.list_pending()] == [generated.option_set_id]

    lifecycle.reject(generated.option_set_id)
    assert lifecycle.pending_for_booking(booking.id) is None
    assert lifecycle.list_pending() == []
    assert [s.id for s in lifecycle.history(booking.id)] == [generated.option_set_id]
