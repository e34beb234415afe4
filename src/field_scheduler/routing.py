"""
Travel time estimation and route ordering.

Estimators are pluggable collaborators:
- FlatTravelTimeEstimator: the organization's configured flat travel time
- HaversineTravelTimeEstimator: straight-line distance at an average speed
- DistanceMatrixTravelTimeEstimator: a mapping service (Distance Matrix API)

Whenever an estimator cannot answer, the core falls back to the flat
travel time instead of failing the whole operation (see
estimate_travel_minutes).
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import httpx
from ortools.constraint_solver import routing_enums_pb2
from ortools.constraint_solver import pywrapcp

from .exceptions import EstimatorUnavailableError
from .models import Location

logger = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3959.87433
DEFAULT_DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"


class TravelTimeEstimator(ABC):
    """Estimates driving minutes between two appointment locations."""

    @abstractmethod
    async def estimate(self, origin: Optional[Location], destination: Optional[Location]) -> float:
        """Returns travel minutes, or raises EstimatorUnavailableError."""


class FlatTravelTimeEstimator(TravelTimeEstimator):
    def __init__(self, minutes: float):
        self.minutes = minutes

    async def estimate(self, origin: Optional[Location], destination: Optional[Location]) -> float:
        return float(self.minutes)


class HaversineTravelTimeEstimator(TravelTimeEstimator):
    """
    Straight-line (Haversine) distance at a constant average speed.

    Enforces a minimum travel time, including between two appointments at
    the same address (parking, packing up). Raises EstimatorUnavailableError
    when either location lacks coordinates.
    """

    def __init__(self, average_speed_mph: float = 30.0, minimum_minutes: float = 5.0):
        self.average_speed_mph = average_speed_mph
        self.minimum_minutes = minimum_minutes

    async def estimate(self, origin: Optional[Location], destination: Optional[Location]) -> float:
        if origin is None or destination is None:
            raise EstimatorUnavailableError("Missing location")
        if not (origin.has_coordinates and destination.has_coordinates):
            raise EstimatorUnavailableError(
                f"Location not geocoded: {origin.address!r} -> {destination.address!r}"
            )
        miles = haversine_miles(origin.lat, origin.lng, destination.lat, destination.lng)
        minutes = miles / self.average_speed_mph * 60
        return max(self.minimum_minutes, minutes)


class DistanceMatrixTravelTimeEstimator(TravelTimeEstimator):
    """
    Mapping-service backed estimator using the Distance Matrix JSON API.

    Any transport error, non-2xx response or element without a duration
    becomes EstimatorUnavailableError.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_DISTANCE_MATRIX_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=5.0))

    @staticmethod
    def _format(location: Location) -> str:
        if location.has_coordinates:
            return f"{location.lat},{location.lng}"
        return location.address

    async def estimate(self, origin: Optional[Location], destination: Optional[Location]) -> float:
        if origin is None or destination is None:
            raise EstimatorUnavailableError("Missing location")

        params = {
            "origins": self._format(origin),
            "destinations": self._format(destination),
            "mode": "driving",
            "key": self.api_key,
        }
        try:
            response = await self._client.get(self.base_url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise EstimatorUnavailableError(f"Distance matrix request failed: {exc}") from exc
        except ValueError as exc: # Malformed JSON
            raise EstimatorUnavailableError(f"Distance matrix returned invalid JSON: {exc}") from exc

        try:
            element = payload["rows"][0]["elements"][0]
            if element.get("status", "OK") != "OK":
                raise EstimatorUnavailableError(f"Distance matrix element status {element['status']}")
            seconds = element["duration"]["value"]
        except (KeyError, IndexError, TypeError) as exc:
            raise EstimatorUnavailableError(f"Unexpected distance matrix payload: {exc}") from exc
        return seconds / 60.0

    async def aclose(self):
        await self._client.aclose()


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in miles."""
    rlat1, rlng1 = math.radians(lat1), math.radians(lng1)
    rlat2, rlng2 = math.radians(lat2), math.radians(lng2)

    dlat = rlat2 - rlat1
    dlng = rlng2 - rlng1

    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlng / 2) ** 2
    c = 2 * math.asin(math.sqrt(a))
    return EARTH_RADIUS_MILES * c


async def estimate_travel_minutes(
    estimator: Optional[TravelTimeEstimator],
    origin: Optional[Location],
    destination: Optional[Location],
    fallback_minutes: float,
) -> float:
    """
    Asks the estimator for travel minutes, falling back to the flat default.

    Args:
        estimator: The configured estimator, or None when unconfigured.
        origin: Where the technician departs from.
        destination: Where the technician needs to be.
        fallback_minutes: The organization's flat travel time.

    Returns:
        float: Estimated travel minutes.
    """
    if estimator is None:
        return float(fallback_minutes)
    try:
        return float(await estimator.estimate(origin, destination))
    except EstimatorUnavailableError as exc:
        logger.warning("Travel-time estimator unavailable (%s); using flat %s minutes", exc, fallback_minutes)
        return float(fallback_minutes)


async def build_travel_matrix(
    estimator: Optional[TravelTimeEstimator],
    locations: Sequence[Optional[Location]],
    fallback_minutes: float,
) -> List[List[float]]:
    """Pairwise travel minutes between locations (zero on the diagonal)."""
    size = len(locations)
    matrix = [[0.0] * size for _ in range(size)]
    for i in range(size):
        for j in range(size):
            if i != j:
                matrix[i][j] = await estimate_travel_minutes(
                    estimator, locations[i], locations[j], fallback_minutes
                )
    return matrix


def route_travel_minutes(order: Sequence[int], travel_matrix: List[List[float]], start_index: Optional[int] = None) -> float:
    """Total travel along an ordering of matrix indices, optionally from a start index."""
    total = 0.0
    previous = start_index
    for index in order:
        if previous is not None:
            total += travel_matrix[previous][index]
        previous = index
    return total


def optimize_route_order(
    travel_matrix: List[List[float]],
    start_index: Optional[int] = None,
    time_limit_seconds: int = 2,
) -> Optional[List[int]]:
    """
    Orders stops to minimize total travel time using OR-Tools.

    Solves a single-vehicle open path: the route starts at start_index (the
    technician's current location) when given, otherwise at whichever stop
    is cheapest, and does not return home at the end.

    Args:
        travel_matrix: Square matrix of travel minutes between all locations.
        start_index: Index of the technician's starting location in the
            matrix; that index is excluded from the returned order.
        time_limit_seconds: Solver time limit.

    Returns:
        Optional[List[int]]: Matrix indices of the stops in visiting order,
            or None if the solver found no solution.
    """
    stop_indices = [i for i in range(len(travel_matrix)) if i != start_index]
    if len(stop_indices) <= 1:
        return stop_indices

    # Node 0 is a virtual depot: leaving it costs the travel from start_index
    # (or nothing), returning to it is free, which makes the route open.
    num_nodes = len(stop_indices) + 1
    depot_index = 0
    node_to_matrix = {node: stop_indices[node - 1] for node in range(1, num_nodes)}

    manager = pywrapcp.RoutingIndexManager(num_nodes, 1, depot_index)
    routing = pywrapcp.RoutingModel(manager)

    def travel_callback(from_index_int, to_index_int):
        """Returns the travel time between two nodes in seconds."""
        from_node = manager.IndexToNode(from_index_int)
        to_node = manager.IndexToNode(to_index_int)
        if to_node == depot_index:
            return 0
        if from_node == depot_index:
            if start_index is None:
                return 0
            return int(travel_matrix[start_index][node_to_matrix[to_node]] * 60)
        return int(travel_matrix[node_to_matrix[from_node]][node_to_matrix[to_node]] * 60)

    transit_callback_index = routing.RegisterTransitCallback(travel_callback)
    routing.SetArcCostEvaluatorOfAllVehicles(transit_callback_index)

    search_parameters = pywrapcp.DefaultRoutingSearchParameters()
    search_parameters.first_solution_strategy = (
        routing_enums_pb2.FirstSolutionStrategy.PATH_CHEAPEST_ARC)
    search_parameters.time_limit.seconds = time_limit_seconds

    solution = routing.SolveWithParameters(search_parameters)
    if not solution:
        logger.warning("No solution found for route optimization over %d stops", len(stop_indices))
        return None

    order: List[int] = []
    index = routing.Start(0)
    while not routing.IsEnd(index):
        node = manager.IndexToNode(index)
        if node != depot_index:
            order.append(node_to_matrix[node])
        index = solution.Value(routing.NextVar(index))
    return order
