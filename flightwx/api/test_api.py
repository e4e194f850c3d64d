"""
HTTP surface via FastAPI's TestClient (no server, no network).

  pytest flightwx/api/test_api.py
"""
import pytest
from fastapi.testclient import TestClient

from flightwx.api.main import create_app
from flightwx.engine import RescheduleEngine
from flightwx.scheduler import CHECK_JOB_ID, SWEEP_JOB_ID
from flightwx.weather.fetcher import MockWeatherClient


@pytest.fixture
def weather():
    return MockWeatherClient("low_vis")


@pytest.fixture
def client(session_factory, settings, effects, clock, weather):
    engine = RescheduleEngine(session_factory, settings, weather_client=weather,
                              providers=[], effects=effects, clock=clock)
    return TestClient(create_app(engine))


def open_conflict(client, booking):
    client.post("/weather/refresh", json={"lat": booking.departure_lat,
                                          "lon": booking.departure_lon, "name": "KDFW"})
    return client.post(f"/bookings/{booking.id}/check").json()


def test_health(client):
    body = client.get("/").json()
    assert body["status"] == "ok"


def test_check_without_weather(client, booking):
    resp = client.post(f"/bookings/{booking.id}/check")
    assert resp.status_code == 200
    assert resp.json() == {"hasConflict": False, "status": "no-data"}


def test_conflict_flow(client, booking):
    checked = open_conflict(client, booking)
    assert checked["hasConflict"] is True
    assert checked["violations"] == ["Visibility 1.9 mi < 5 mi required"]

    active = client.get("/conflicts/active").json()
    assert active["total"] == 1
    assert active["conflicts"][0]["bookingId"] == booking.id

    resp = client.post(f"/conflicts/{checked['conflictId']}/resolve", json={"reason": "waived"})
    assert resp.json() == {"success": True}
    history = client.get(f"/bookings/{booking.id}/conflicts").json()["conflicts"]
    assert history[0]["resolved"] is True
    assert history[0]["resolutionNote"] == "waived"


def test_reschedule_flow(client, booking):
    checked = open_conflict(client, booking)
    generated = client.post("/reschedule/generate", json={
        "bookingId": booking.id, "conflictId": checked["conflictId"],
    }).json()
    assert [o["score"] for o in generated["options"]] == [75, 80, 85]
    assert client.get("/reschedule/pending").json()["total"] == 1

    accepted = client.post(f"/reschedule/{generated['optionSetId']}/accept", json={"index": 2})
    assert accepted.status_code == 200
    assert accepted.json() == {"success": True, "newDate": "2025-07-14T08:00:00"}

    again = client.post(f"/reschedule/{generated['optionSetId']}/accept", json={"index": 0})
    assert again.status_code == 409
    assert again.json()["error"] == "INVARIANT_VIOLATION"

    options = client.get(f"/bookings/{booking.id}/reschedule").json()
    assert options["pending"] is None
    assert options["history"][0]["status"] == "accepted"
    assert options["history"][0]["selectedOptionIndex"] == 2


def test_bad_index_is_400_and_reject_works(client, booking):
    checked = open_conflict(client, booking)
    generated = client.post("/reschedule/generate", json={
        "bookingId": booking.id, "conflictId": checked["conflictId"],
    }).json()

    resp = client.post(f"/reschedule/{generated['optionSetId']}/accept", json={"index": 5})
    assert resp.status_code == 400
    assert resp.json()["message"] == "invalid option index"

    resp = client.post(f"/reschedule/{generated['optionSetId']}/reject", json={"reason": "busy"})
    assert resp.json() == {"success": True}


def test_not_found_is_404(client, booking):
    assert client.post("/reschedule/missing/accept", json={"index": 0}).status_code == 404
    assert client.post("/conflicts/missing/resolve").status_code == 404
    resp = client.post("/reschedule/generate", json={"bookingId": booking.id, "conflictId": "nope"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "NOT_FOUND"


def test_weather_failure_is_502(client, weather):
    weather.fail = True
    resp = client.post("/weather/refresh", json={"lat": 32.9, "lon": -97.0, "name": "KDFW"})
    assert resp.status_code == 502
    assert resp.json()["details"]["service"] == "openweathermap"


def test_check_all_and_history(client, booking):
    summary = client.post("/conflicts/check-all").json()
    assert summary == {"total": 1, "conflicts": 1, "resolved": 0, "errors": 0, "skipped": 0}

    history = client.get("/weather/history", params={"lat": booking.departure_lat,
                                                     "lon": booking.departure_lon}).json()
    assert history["total"] == 1
    assert history["observations"][0]["conditions"] == "Mist"

    resp = client.post("/conflicts/check-all", json={"start": "2025-07-12T00:00:00",
                                                     "end": "2025-07-11T00:00:00"})
    assert resp.status_code == 400


def test_background_scheduler_runs_with_the_app(session_factory, settings, effects, clock):
    engine = RescheduleEngine(session_factory, settings.model_copy(update={"run_scheduler": True}),
                              weather_client=MockWeatherClient(), providers=[],
                              effects=effects, clock=clock)
    app = create_app(engine)

    with TestClient(app):
        scheduler = app.state.scheduler
        assert scheduler.running
        assert {job.id for job in scheduler.get_jobs()} == {CHECK_JOB_ID, SWEEP_JOB_ID}

    assert not scheduler.running


def test_scheduler_off_by_default(client):
    with client:
        assert client.app.state.scheduler is None
