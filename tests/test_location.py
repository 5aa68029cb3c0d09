"""Tests for senselink.senses.location -- movement filtering and geofencing."""

import asyncio
import json

import httpx
import pytest
from unittest.mock import patch

from senselink.errors import LookupStatus, ValidationError
from senselink.senses.location import (
    Geofence,
    GeofenceEvent,
    LocationSense,
    haversine_m,
    parse_point,
)

# Geofence centred on Plaça de Catalunya, 100 m radius
CENTER = (41.3870, 2.1700)
OUTSIDE = {"latitude": 41.3970, "longitude": 2.1700}   # ~1.1 km north
INSIDE = {"latitude": 41.3871, "longitude": 2.1700}    # ~11 m from centre
INSIDE_FAR = {"latitude": 41.3877, "longitude": 2.1700}  # ~78 m from centre, ~67 m from INSIDE


def run(coro):
    return asyncio.run(coro)


def make_sense(tmp_path, fences=True, **config):
    sense = LocationSense(str(tmp_path), config)
    if fences:
        sense.save_geofences([Geofence("plaza", "Plaza", CENTER[0], CENTER[1], 100.0)])
    return sense


class FakeClient:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def __call__(self, **kwargs):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.exc:
            raise self.exc
        return self.response


# =====================================================================
# haversine_m
# =====================================================================
class TestHaversine:
    def test_zero_distance(self):
        assert haversine_m(10.0, 20.0, 10.0, 20.0) == 0.0

    def test_one_degree_of_longitude_at_equator(self):
        assert haversine_m(0.0, 0.0, 0.0, 1.0) == pytest.approx(111195, abs=5)

    def test_symmetric(self):
        a = haversine_m(41.38, 2.17, 48.85, 2.35)
        b = haversine_m(48.85, 2.35, 41.38, 2.17)
        assert a == pytest.approx(b)


# =====================================================================
# parse_point
# =====================================================================
class TestParsePoint:
    def test_missing_coordinates_rejected(self):
        with pytest.raises(ValidationError):
            parse_point({"latitude": 41.0})

    def test_zero_coordinates_accepted(self):
        point = parse_point({"latitude": 0.0, "longitude": 0.0})
        assert point["latitude"] == 0.0 and point["longitude"] == 0.0

    def test_non_numeric_rejected(self):
        with pytest.raises(ValidationError):
            parse_point({"latitude": "north", "longitude": 2.0})

    def test_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            parse_point({"latitude": 91.0, "longitude": 2.0})

    def test_epoch_timestamp_converted(self):
        point = parse_point({"latitude": 1.0, "longitude": 2.0, "timestamp": 1767225600, "accuracy": 5})
        assert point["timestamp"] == "2026-01-01T00:00:00+00:00"
        assert point["accuracy"] == 5
        assert "speed" not in point


# =====================================================================
# LocationSense.handle -- movement threshold
# =====================================================================
class TestMovementThreshold:
    def test_first_fix_is_significant(self, tmp_path):
        sense = make_sense(tmp_path, fences=False)
        result = run(sense.handle(OUTSIDE))
        assert result.significant
        assert result.distance_m is None
        current = json.loads((tmp_path / "current.json").read_text())
        assert current["current"]["latitude"] == OUTSIDE["latitude"]
        assert len(json.loads(open(sense.history_path()).read())) == 1

    def test_small_moves_refresh_current_only(self, tmp_path):
        sense = make_sense(tmp_path, fences=False)
        run(sense.handle({**OUTSIDE, "timestamp": 1767225600}))
        for i in range(1, 4):
            nudged = {"latitude": OUTSIDE["latitude"] + 0.00005 * i, "longitude": OUTSIDE["longitude"],
                      "timestamp": 1767225600 + 60 * i}
            result = run(sense.handle(nudged))
            assert not result.significant

        history = json.loads(open(sense.history_path()).read())
        assert len(history) == 1
        current = json.loads((tmp_path / "current.json").read_text())
        assert current["current"]["latitude"] == OUTSIDE["latitude"]
        assert current["current"]["timestamp"] == "2026-01-01T00:03:00+00:00"

    def test_large_move_appends_history(self, tmp_path):
        sense = make_sense(tmp_path, fences=False)
        run(sense.handle(OUTSIDE))
        result = run(sense.handle(INSIDE))
        assert result.significant
        assert result.distance_m > 1000
        assert len(json.loads(open(sense.history_path()).read())) == 2

    def test_custom_threshold(self, tmp_path):
        sense = make_sense(tmp_path, fences=False, movement_threshold_m=5)
        run(sense.handle(INSIDE))
        assert run(sense.handle(INSIDE_FAR)).significant


# =====================================================================
# LocationSense.handle -- geofence transitions
# =====================================================================
class TestGeofenceTransitions:
    def test_out_in_out_fires_enter_then_exit(self, tmp_path):
        sense = make_sense(tmp_path)
        assert run(sense.handle(OUTSIDE)).events == []

        entered = run(sense.handle({**INSIDE, "timestamp": 1767225600})).events
        assert [e.event for e in entered] == ["enter"]
        state = json.loads((tmp_path / "geofence-state.json").read_text())
        assert state["plaza"] == {"inside": True, "since": "2026-01-01T00:00:00+00:00"}

        left = run(sense.handle(OUTSIDE)).events
        assert [e.event for e in left] == ["exit"]
        assert left[0].since == "2026-01-01T00:00:00+00:00"
        state = json.loads((tmp_path / "geofence-state.json").read_text())
        assert state["plaza"] == {"inside": False}

    def test_staying_inside_fires_nothing(self, tmp_path):
        sense = make_sense(tmp_path)
        run(sense.handle(OUTSIDE))
        run(sense.handle(INSIDE))
        result = run(sense.handle(INSIDE_FAR))
        assert result.significant
        assert result.events == []

    def test_first_fix_inside_enters(self, tmp_path):
        sense = make_sense(tmp_path)
        events = run(sense.handle(INSIDE)).events
        assert events[0].name == "Plaza"
        current = json.loads((tmp_path / "current.json").read_text())
        assert current["geofence"] == "Plaza"

    def test_concurrent_fixes_enter_once(self, tmp_path):
        sense = make_sense(tmp_path)

        async def both():
            return await asyncio.gather(sense.handle(INSIDE), sense.handle(INSIDE))

        results = run(both())
        assert sum(len(r.events) for r in results) == 1

    def test_legacy_radius_key_and_bad_fences(self, tmp_path):
        (tmp_path / "geofences.json").write_text(json.dumps({
            "plaza": {"name": "Plaza", "latitude": CENTER[0], "longitude": CENTER[1], "radiusMeters": 100},
            "broken": {"name": "Broken"},
        }))
        sense = LocationSense(str(tmp_path))
        assert [f.id for f in sense.load_geofences()] == ["plaza"]

    def test_event_descriptions(self):
        enter = GeofenceEvent("enter", "home", "Home", 1.0, 2.0, "T1")
        leave = GeofenceEvent("exit", "home", "Home", 1.0, 2.0, "T2", since="T1")
        assert "Arrived at Home" in enter.describe()
        assert "Left Home" in leave.describe() and "T1" in leave.describe()
        assert "since" not in enter.to_dict()


# =====================================================================
# LocationSense.reverse_geocode
# =====================================================================
class TestReverseGeocode:
    def test_disabled_without_url(self, tmp_path):
        lookup = run(make_sense(tmp_path).reverse_geocode(1.0, 2.0))
        assert lookup.status is LookupStatus.NOT_FOUND

    def test_found(self, tmp_path):
        sense = make_sense(tmp_path, geocode_url="https://geo.example/reverse")
        response = httpx.Response(
            200, json={"display_name": "Plaça de Catalunya, Barcelona"},
            request=httpx.Request("GET", "https://geo.example/reverse"),
        )
        client = FakeClient(response=response)
        with patch("senselink.senses.location.httpx.AsyncClient", client):
            lookup = run(sense.reverse_geocode(41.387, 2.17))
        assert lookup.ok
        assert lookup.value == "Plaça de Catalunya, Barcelona"
        assert client.calls[0][1]["params"]["lat"] == 41.387

    def test_timeout_is_transient(self, tmp_path):
        sense = make_sense(tmp_path, geocode_url="https://geo.example/reverse")
        with patch("senselink.senses.location.httpx.AsyncClient", FakeClient(exc=httpx.ConnectTimeout("slow"))):
            lookup = run(sense.reverse_geocode(41.387, 2.17))
        assert lookup.status is LookupStatus.TRANSIENT_ERROR

    def test_place_recorded_on_significant_fix(self, tmp_path):
        sense = make_sense(tmp_path, fences=False, geocode_url="https://geo.example/reverse")
        response = httpx.Response(200, json={"display_name": "Somewhere"},
                                  request=httpx.Request("GET", "https://geo.example/reverse"))
        with patch("senselink.senses.location.httpx.AsyncClient", FakeClient(response=response)):
            result = run(sense.handle(OUTSIDE))
        assert result.place == "Somewhere"
        assert json.loads((tmp_path / "current.json").read_text())["place"] == "Somewhere"

    def test_geocode_failure_does_not_block_fix(self, tmp_path):
        sense = make_sense(tmp_path, fences=False, geocode_url="https://geo.example/reverse")
        with patch("senselink.senses.location.httpx.AsyncClient", FakeClient(exc=httpx.ConnectError("down"))):
            result = run(sense.handle(OUTSIDE))
        assert result.significant and result.place is None
        assert "place" not in json.loads((tmp_path / "current.json").read_text())
