"""Async client for the CTA BusTime route and vehicle endpoints."""
from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import httpx

from api_call_tracker import CallRecorder


CTA_GET_ROUTES_URL = "https://www.ctabustracker.com/bustime/api/v3/getroutes"
CTA_GET_VEHICLES_URL = "https://www.ctabustracker.com/bustime/api/v3/getvehicles"
DEFAULT_HTTP_TIMEOUT_S = 10.0
MAX_ROUTES_PER_REQUEST = 10
ERROR_BODY_LIMIT = 4096

NO_DATA_PHRASES = ("no data found", "no service scheduled")


# ---------------------------
# Errors
# ---------------------------
class BusTimeError(Exception):
    """Base error; ``status_code`` is what the HTTP layer answers with."""

    status_code = 502

    def __init__(self, message: str, payload: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.payload = payload


class ConfigurationError(BusTimeError):
    status_code = 503


class InvalidArgument(BusTimeError, ValueError):
    status_code = 400


class UpstreamUnavailable(BusTimeError):
    """Transport failure, timeout, or non-200 status from BusTime."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class UpstreamProtocolError(BusTimeError):
    pass


class UpstreamReportedError(BusTimeError):
    """BusTime answered with an error envelope that is not a benign no-data signal."""


# ---------------------------
# Data models
# ---------------------------
@dataclass
class UpstreamErrorMessage:
    msg: str


@dataclass
class Route:
    route_number: str
    route_name: str
    route_color: str
    rtdd: str  # passed through verbatim

    def to_dict(self) -> Dict[str, Any]:
        return {
            "routeNumber": self.route_number,
            "routeName": self.route_name,
            "routeColor": self.route_color,
            "rtdd": self.rtdd,
        }


@dataclass
class Vehicle:
    vehicle_id: str
    timestamp: str  # upstream "YYYYMMDD HH:MM", never reparsed
    latitude: str
    longitude: str
    heading: str
    pattern_id: str
    pattern_distance: str
    route: str
    destination: str
    delayed: bool
    tablock_id: str
    trip_id: str
    origin_trip_no: str
    zone: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicleId": self.vehicle_id,
            "timestamp": self.timestamp,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "heading": self.heading,
            "patternId": self.pattern_id,
            "patternDistance": self.pattern_distance,
            "route": self.route,
            "destination": self.destination,
            "delayed": self.delayed,
            "tablockId": self.tablock_id,
            "tripId": self.trip_id,
            "originTripNo": self.origin_trip_no,
            "zone": self.zone,
        }


# ---------------------------
# Error classification
# ---------------------------
def is_benign_no_data(errors: Sequence[UpstreamErrorMessage]) -> bool:
    """Return True when every upstream error only says a route has no active service.

    BusTime reports "No data found for parameter" / "No service scheduled" per
    route in the same ``error`` array it uses for real failures, so the check is
    on message content. An empty list is not a no-data signal.
    """
    if not errors:
        return False
    for err in errors:
        msg = (err.msg or "").lower()
        if not any(phrase in msg for phrase in NO_DATA_PHRASES):
            return False
    return True


# ---------------------------
# Decoding
# ---------------------------
def _flex_str(value: Any, field_name: str) -> str:
    # BusTime encodes ids, headings and coordinates as strings on some
    # deployments and as bare numbers on others.
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        raise UpstreamProtocolError(f"field {field_name!r}: unsupported value {value!r}")
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    raise UpstreamProtocolError(f"field {field_name!r}: unsupported value {value!r}")


def _flex_bool(value: Any, field_name: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise UpstreamProtocolError(f"field {field_name!r}: expected boolean, got {value!r}")


def _as_list(value: Any, field_name: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise UpstreamProtocolError(f"field {field_name!r}: expected array")
    return value


def _require_object(value: Any, field_name: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise UpstreamProtocolError(f"field {field_name!r}: expected object")
    return value


def decode_envelope(raw: bytes) -> Dict[str, Any]:
    """Decode a BusTime body down to its ``bustime-response`` object.

    Floats are kept as ``Decimal`` so their string form is the literal the
    upstream sent (``41.900`` stays ``"41.900"``).
    """
    try:
        data = json.loads(raw, parse_float=Decimal)
    except (ValueError, UnicodeDecodeError, RecursionError) as exc:
        raise UpstreamProtocolError(f"failed to decode CTA API response: {exc}") from exc
    data = _require_object(data, "<root>")
    if "bustime-response" not in data:
        raise UpstreamProtocolError("failed to decode CTA API response: missing 'bustime-response'")
    return _require_object(data["bustime-response"], "bustime-response")


def parse_errors(envelope: Dict[str, Any]) -> List[UpstreamErrorMessage]:
    errors: List[UpstreamErrorMessage] = []
    for item in _as_list(envelope.get("error"), "error"):
        item = _require_object(item, "error[]")
        errors.append(UpstreamErrorMessage(msg=_flex_str(item.get("msg"), "msg")))
    return errors


def parse_route(item: Any) -> Route:
    item = _require_object(item, "routes[]")
    return Route(
        route_number=_flex_str(item.get("rt"), "rt"),
        route_name=_flex_str(item.get("rtnm"), "rtnm"),
        route_color=_flex_str(item.get("rtclr"), "rtclr"),
        rtdd=_flex_str(item.get("rtdd"), "rtdd"),
    )


def parse_vehicle(item: Any) -> Vehicle:
    item = _require_object(item, "vehicle[]")
    return Vehicle(
        vehicle_id=_flex_str(item.get("vid"), "vid"),
        timestamp=_flex_str(item.get("tmstmp"), "tmstmp"),
        latitude=_flex_str(item.get("lat"), "lat"),
        longitude=_flex_str(item.get("lon"), "lon"),
        heading=_flex_str(item.get("hdg"), "hdg"),
        pattern_id=_flex_str(item.get("pid"), "pid"),
        pattern_distance=_flex_str(item.get("pdist"), "pdist"),
        route=_flex_str(item.get("rt"), "rt"),
        destination=_flex_str(item.get("des"), "des"),
        delayed=_flex_bool(item.get("dly"), "dly"),
        tablock_id=_flex_str(item.get("tablockid"), "tablockid"),
        trip_id=_flex_str(item.get("tatripid"), "tatripid"),
        origin_trip_no=_flex_str(item.get("origtatripno"), "origtatripno"),
        zone=_flex_str(item.get("zone"), "zone"),
    )


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    return value


# ---------------------------
# Client
# ---------------------------
class BusTimeClient:
    """Authenticated client for the two BusTime endpoints this service needs."""

    def __init__(
        self,
        api_key: str,
        client: Optional[httpx.AsyncClient] = None,
        tracker: Optional[CallRecorder] = None,
        routes_url: str = CTA_GET_ROUTES_URL,
        vehicles_url: str = CTA_GET_VEHICLES_URL,
        timeout: float = DEFAULT_HTTP_TIMEOUT_S,
    ) -> None:
        api_key = (api_key or "").strip()
        if not api_key:
            raise ConfigurationError("CTA_API_KEY is not set")
        self._api_key = api_key
        self._client = client
        self._owns_client = client is None
        self._tracker = tracker
        self._routes_url = routes_url
        self._vehicles_url = vehicles_url
        self._timeout = timeout

    @classmethod
    def from_env(
        cls,
        client: Optional[httpx.AsyncClient] = None,
        tracker: Optional[CallRecorder] = None,
    ) -> "BusTimeClient":
        """Build a ``BusTimeClient`` from environment configuration.

        * ``CTA_API_KEY`` - required BusTime developer key.
        * ``CTA_ROUTES_URL`` / ``CTA_VEHICLES_URL`` - optional endpoint overrides.
        * ``CTA_HTTP_TIMEOUT_S`` - optional request timeout, default 10 seconds.
        """
        api_key = (os.getenv("CTA_API_KEY") or "").strip()
        routes_url = (os.getenv("CTA_ROUTES_URL") or "").strip() or CTA_GET_ROUTES_URL
        vehicles_url = (os.getenv("CTA_VEHICLES_URL") or "").strip() or CTA_GET_VEHICLES_URL
        timeout_raw = (os.getenv("CTA_HTTP_TIMEOUT_S") or "").strip()
        try:
            timeout = float(timeout_raw) if timeout_raw else DEFAULT_HTTP_TIMEOUT_S
        except ValueError as exc:
            raise ConfigurationError(f"CTA_HTTP_TIMEOUT_S must be a number, got {timeout_raw!r}") from exc
        return cls(
            api_key=api_key,
            client=client,
            tracker=tracker,
            routes_url=routes_url,
            vehicles_url=vehicles_url,
            timeout=timeout,
        )

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get_envelope(self, url: str, params: Dict[str, str]) -> Dict[str, Any]:
        client = await self._ensure_client()
        query = {"format": "json", "key": self._api_key, **params}
        try:
            response = await client.get(url, params=query, timeout=self._timeout)
        except httpx.HTTPError as exc:
            print(f"[bustime] CTA API request failed: {exc!r}")
            raise UpstreamUnavailable(f"CTA API request failed: {exc}") from exc

        if response.status_code != 200:
            body = response.content[:ERROR_BODY_LIMIT].decode("utf-8", errors="replace")
            print(f"[bustime] CTA API returned status {response.status_code}: {body}")
            raise UpstreamUnavailable(
                f"CTA API returned status {response.status_code}: {body}",
                status=response.status_code,
                body=body,
            )

        try:
            return decode_envelope(response.content)
        except UpstreamProtocolError as exc:
            print(f"[bustime] {exc}")
            raise

    async def _track(self, endpoint: str) -> None:
        if self._tracker is None:
            return
        try:
            # SQLite writes block; keep them off the event loop.
            await asyncio.to_thread(self._tracker.record, endpoint)
        except Exception as exc:
            print(f"[bustime] failed to track API call: {exc}")

    async def fetch_routes(self) -> List[Route]:
        print("[bustime] fetching routes")
        envelope = await self._get_envelope(self._routes_url, {})
        try:
            errors = parse_errors(envelope)
            routes = [parse_route(item) for item in _as_list(envelope.get("routes"), "routes")]
        except UpstreamProtocolError as exc:
            print(f"[bustime] {exc}")
            raise

        if not routes and errors:
            if is_benign_no_data(errors):
                print("[bustime] no routes reported")
                return []
            print(f"[bustime] CTA API returned error: {[e.msg for e in errors]}")
            raise UpstreamReportedError("CTA API returned error", payload=_json_safe(envelope))

        print(f"[bustime] fetched {len(routes)} routes")
        await self._track(self._routes_url)
        return routes

    async def fetch_vehicles(self, route_ids: Sequence[str]) -> List[Vehicle]:
        """Fetch vehicle positions for at most ``MAX_ROUTES_PER_REQUEST`` routes."""
        route_ids = list(route_ids)
        if not route_ids:
            print("[bustime] no routes specified")
            raise InvalidArgument("at least one route designator is required")
        if len(route_ids) > MAX_ROUTES_PER_REQUEST:
            raise InvalidArgument(
                f"a maximum of {MAX_ROUTES_PER_REQUEST} routes can be requested at once"
            )

        print(f"[bustime] fetching vehicles for routes {route_ids}")
        envelope = await self._get_envelope(self._vehicles_url, {"rt": ",".join(route_ids)})
        try:
            errors = parse_errors(envelope)
            vehicles = [parse_vehicle(item) for item in _as_list(envelope.get("vehicle"), "vehicle")]
        except UpstreamProtocolError as exc:
            print(f"[bustime] {exc}")
            raise

        # Vehicles plus errors is a normal mix: some routes idle, others running.
        if not vehicles and errors:
            if is_benign_no_data(errors):
                print(f"[bustime] no vehicles found for routes {route_ids}")
                return []
            print(f"[bustime] CTA API returned error: {[e.msg for e in errors]}")
            raise UpstreamReportedError("CTA API returned error", payload=_json_safe(envelope))

        print(f"[bustime] fetched {len(vehicles)} vehicles for routes {route_ids}")
        await self._track(self._vehicles_url)
        return vehicles
