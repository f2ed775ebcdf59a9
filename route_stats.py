"""
Per-route activity statistics.

Joins the BusTime route list with the active vehicle list and counts each
route's vehicles by bearing bucket. Headings are compass degrees:

- North: 316-359 and 0-45
- East: 46-135
- South: 136-225
- West: 226-315

Only two buckets are reported. North and East are counted together as
``NorthEast``; South and West as ``SouthWest``. The front end charts exactly
these two series.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Tuple

from bustime_client import Route, Vehicle


class Bearing(str, Enum):
    NORTH_EAST = "NorthEast"
    SOUTH_WEST = "SouthWest"


@dataclass
class RouteStats:
    route_number: str
    route_name: str
    north_eastbound: int = 0
    south_westbound: int = 0
    total_active: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "routeNumber": self.route_number,
            "routeName": self.route_name,
            "northEastbound": self.north_eastbound,
            "southWestbound": self.south_westbound,
            "totalActive": self.total_active,
        }


def _parse_int(text: str) -> int:
    # Strict decimal integer: no whitespace, underscores, or fractions.
    if text[:1] in {"+", "-"}:
        sign, digits = text[0], text[1:]
    else:
        sign, digits = "", text
    if not digits or not digits.isascii() or not digits.isdigit():
        raise ValueError(f"invalid integer {text!r}")
    return int(sign + digits)


def classify_heading(heading: str) -> Bearing:
    """Bucket a BusTime heading string; unparseable headings count as SouthWest."""
    try:
        degrees = _parse_int(heading)
    except (TypeError, ValueError, AttributeError):
        return Bearing.SOUTH_WEST
    degrees %= 360
    if degrees >= 316 or degrees <= 135:
        return Bearing.NORTH_EAST
    return Bearing.SOUTH_WEST


def route_sort_key(route_number: str) -> Tuple[int, int, str]:
    try:
        return (0, _parse_int(route_number), route_number)
    except ValueError:
        return (1, 0, route_number)


def compute_route_stats(routes: Iterable[Route], vehicles: Iterable[Vehicle]) -> List[RouteStats]:
    """One record per known route, zero-activity routes included.

    Vehicles reporting a route missing from ``routes`` are skipped.
    """
    stats_by_route: Dict[str, RouteStats] = {}
    for route in routes:
        stats_by_route[route.route_number] = RouteStats(
            route_number=route.route_number,
            route_name=route.route_name,
        )

    for vehicle in vehicles:
        stat = stats_by_route.get(vehicle.route)
        if stat is None:
            continue
        if classify_heading(vehicle.heading) is Bearing.NORTH_EAST:
            stat.north_eastbound += 1
        else:
            stat.south_westbound += 1
        stat.total_active += 1

    result = list(stats_by_route.values())
    result.sort(key=lambda s: route_sort_key(s.route_number))
    return result
