"""
Tests for heading classification and the route/vehicle join.
"""
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from bustime_client import Route, Vehicle  # noqa: E402
from route_stats import Bearing, classify_heading, compute_route_stats, route_sort_key  # noqa: E402


def _route(number: str, name: str = "") -> Route:
    return Route(route_number=number, route_name=name or f"Route {number}", route_color="#000000", rtdd=number)


def _vehicle(route: str, heading: str, vid: str = "1") -> Vehicle:
    return Vehicle(
        vehicle_id=vid,
        timestamp="20240501 08:15",
        latitude="41.88",
        longitude="-87.64",
        heading=heading,
        pattern_id="",
        pattern_distance="",
        route=route,
        destination="",
        delayed=False,
        tablock_id="",
        trip_id="",
        origin_trip_no="",
        zone="",
    )


class TestClassifyHeading:
    @pytest.mark.parametrize("heading", ["0", "45", "90", "135", "316", "359", "360"])
    def test_north_east(self, heading):
        assert classify_heading(heading) is Bearing.NORTH_EAST

    @pytest.mark.parametrize("heading", ["136", "180", "225", "270", "315"])
    def test_south_west(self, heading):
        assert classify_heading(heading) is Bearing.SOUTH_WEST

    def test_depends_only_on_heading_mod_360(self):
        assert classify_heading("45") == classify_heading("405") == classify_heading("-315")
        assert classify_heading("200") == classify_heading("560") == classify_heading("-160")
        for degrees in range(-720, 720, 7):
            assert classify_heading(str(degrees)) == classify_heading(str(degrees % 360))

    @pytest.mark.parametrize("heading", ["", "abc", "90.5", " 90", "N", "1_0", "²"])
    def test_malformed_defaults_to_south_west(self, heading):
        assert classify_heading(heading) is Bearing.SOUTH_WEST

    def test_signed_values_parse(self):
        assert classify_heading("+90") is Bearing.NORTH_EAST
        assert classify_heading("-90") is Bearing.SOUTH_WEST


def test_route_sort_key_orders_numbers_numerically():
    numbers = ["X9", "22", "9", "J14", "100", "8"]
    assert sorted(numbers, key=route_sort_key) == ["8", "9", "22", "100", "J14", "X9"]


def test_halsted_one_each_way():
    stats = compute_route_stats(
        [_route("8", "Halsted")],
        [_vehicle("8", "90", "1"), _vehicle("8", "270", "2")],
    )
    assert [s.to_dict() for s in stats] == [{
        "routeNumber": "8",
        "routeName": "Halsted",
        "northEastbound": 1,
        "southWestbound": 1,
        "totalActive": 2,
    }]


def test_every_route_reported_even_when_idle():
    stats = compute_route_stats([_route("22"), _route("9"), _route("X9")], [_vehicle("9", "10")])
    assert [s.route_number for s in stats] == ["9", "22", "X9"]
    idle = stats[1]
    assert (idle.north_eastbound, idle.south_westbound, idle.total_active) == (0, 0, 0)


def test_unknown_route_vehicles_are_dropped():
    stats = compute_route_stats([_route("8")], [_vehicle("8", "0"), _vehicle("999", "0")])
    assert sum(s.total_active for s in stats) == 1


def test_malformed_heading_counts_as_south_west():
    stats = compute_route_stats([_route("8")], [_vehicle("8", "")])
    assert stats[0].south_westbound == 1
    assert stats[0].total_active == 1


def test_totals_balance_across_fleet():
    routes = [_route(str(n)) for n in range(1, 6)]
    vehicles = [
        _vehicle(str(i % 7), str(i * 37), str(i))
        for i in range(60)
    ]
    stats = compute_route_stats(routes, vehicles)
    known = {r.route_number for r in routes}

    assert len(stats) == len(routes)
    for s in stats:
        assert s.total_active == s.north_eastbound + s.south_westbound
    assert sum(s.total_active for s in stats) == sum(1 for v in vehicles if v.route in known)
