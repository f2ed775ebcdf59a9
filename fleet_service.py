"""Fleet-wide operations built on ``BusTimeClient``: batched vehicle fetch and route stats."""
from __future__ import annotations

from typing import List, Optional, Sequence

from bustime_client import MAX_ROUTES_PER_REQUEST, BusTimeClient, Route, Vehicle
from route_stats import RouteStats, compute_route_stats


VEHICLE_BATCH_SIZE = MAX_ROUTES_PER_REQUEST


def batch_route_ids(route_ids: Sequence[str], size: int = VEHICLE_BATCH_SIZE) -> List[List[str]]:
    """Split ``route_ids`` into consecutive chunks of at most ``size`` ids."""
    if size < 1:
        raise ValueError("batch size must be positive")
    ids = list(route_ids)
    return [ids[i:i + size] for i in range(0, len(ids), size)]


class FleetService:
    """Stateless aggregation over the BusTime API; safe to share across requests."""

    def __init__(self, client: BusTimeClient) -> None:
        self._client = client

    async def get_routes(self) -> List[Route]:
        return await self._client.fetch_routes()

    async def get_vehicles(self, route_ids: Sequence[str]) -> List[Vehicle]:
        return await self._client.fetch_vehicles(route_ids)

    async def get_all_vehicles(self, route_ids: Optional[Sequence[str]] = None) -> List[Vehicle]:
        """Fetch every active vehicle, ten routes per upstream call.

        Batches run one after another to keep the upstream request rate flat.
        The first failing batch aborts the whole fetch and nothing collected so
        far is returned; cancelling the calling task stops the remaining batches.
        """
        if route_ids is None:
            routes = await self._client.fetch_routes()
            route_ids = [r.route_number for r in routes]

        batches = batch_route_ids(route_ids)
        print(f"[fleet] fetching all vehicles: {len(route_ids)} routes in {len(batches)} batches")
        all_vehicles: List[Vehicle] = []
        for batch in batches:
            vehicles = await self._client.fetch_vehicles(batch)
            all_vehicles.extend(vehicles)

        print(f"[fleet] fetched {len(all_vehicles)} vehicles")
        return all_vehicles

    async def get_route_stats(self) -> List[RouteStats]:
        routes = await self._client.fetch_routes()
        vehicles = await self.get_all_vehicles([r.route_number for r in routes])
        stats = compute_route_stats(routes, vehicles)
        print(f"[fleet] calculated stats for {len(stats)} routes from {len(vehicles)} vehicles")
        return stats
