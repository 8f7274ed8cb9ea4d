"""Pickup-and-delivery route planning.

Orders are split across vehicles by a polar sweep around the depot, then each
group gets a nearest-neighbor tour that always visits an order's pickup before
its delivery. Tours are improved with bounded 2-opt and or-opt passes. This is
a heuristic; it does not promise optimal tours.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from marketroute.utils import settings

EARTH_RADIUS_KM = 6371.0

PICKUP = "pickup"
DELIVERY = "delivery"


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Stop:
    order_id: str
    kind: str
    location: GeoPoint
    address: str = ""
    window_start: datetime | None = None
    window_end: datetime | None = None

    @property
    def stop_id(self) -> str:
        return f"{self.kind}:{self.order_id}"


@dataclass
class PlannedStop:
    stop: Stop
    sequence: int
    arrival: datetime
    eta_start: datetime
    eta_end: datetime
    distance_from_prev_km: float
    late: bool = False


@dataclass
class PlannedRoute:
    vehicle_index: int
    stops: list[PlannedStop] = field(default_factory=list)
    total_distance_km: float = 0.0
    total_duration_min: float = 0.0
    infeasible: bool = False
    infeasible_reason: str = ""

    @property
    def order_ids(self) -> list[str]:
        seen: list[str] = []
        for planned in self.stops:
            if planned.stop.order_id not in seen:
                seen.append(planned.stop.order_id)
        return seen


@dataclass
class OptimizerConfig:
    depot: GeoPoint
    start_time: datetime
    vehicle_count: int = 3
    max_stops: int = 20
    max_iterations: int = 50
    speed_kmh: float = 30.0
    service_minutes: float = 5.0
    eta_slack_minutes: int = 30

    @classmethod
    def from_settings(cls, start_time: datetime) -> "OptimizerConfig":
        lat, lng = settings.depot_location()
        return cls(
            depot=GeoPoint(lat, lng),
            start_time=start_time,
            vehicle_count=settings.route_vehicle_count(),
            max_stops=settings.route_max_stops(),
            max_iterations=settings.optimizer_max_iterations(),
            speed_kmh=settings.route_speed_kmh(),
            service_minutes=settings.route_service_minutes(),
            eta_slack_minutes=settings.route_eta_slack_minutes(),
        )


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lng = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(max(0.0, 1 - h)))


def _pair_stops(stops: list[Stop]) -> dict[str, tuple[Stop, Stop]]:
    pickups: dict[str, Stop] = {}
    deliveries: dict[str, Stop] = {}
    for stop in stops:
        if stop.kind == PICKUP:
            bucket = pickups
        elif stop.kind == DELIVERY:
            bucket = deliveries
        else:
            raise ValueError(f"unknown stop kind {stop.kind!r} for order {stop.order_id}")
        if stop.order_id in bucket:
            raise ValueError(f"duplicate {stop.kind} stop for order {stop.order_id}")
        bucket[stop.order_id] = stop
    if set(pickups) != set(deliveries):
        unpaired = sorted(set(pickups) ^ set(deliveries))
        raise ValueError(f"unpaired stops for orders: {', '.join(unpaired)}")
    return {order_id: (pickups[order_id], deliveries[order_id]) for order_id in pickups}


def _sweep_angle(depot: GeoPoint, point: GeoPoint) -> float:
    angle = math.atan2(point.latitude - depot.latitude, point.longitude - depot.longitude)
    return angle if angle >= 0 else angle + 2 * math.pi


def partition_orders(
    pairs: dict[str, tuple[Stop, Stop]],
    depot: GeoPoint,
    orders_per_route: int,
) -> list[list[str]]:
    """Group orders into capacity-sized chunks by polar angle around the depot."""
    size = max(1, int(orders_per_route))

    def _key(order_id: str):
        pickup, delivery = pairs[order_id]
        mid = GeoPoint(
            (pickup.location.latitude + delivery.location.latitude) / 2,
            (pickup.location.longitude + delivery.location.longitude) / 2,
        )
        return (_sweep_angle(depot, mid), order_id)

    ordered = sorted(pairs, key=_key)
    return [ordered[i : i + size] for i in range(0, len(ordered), size)]


def precedence_ok(sequence: list[Stop]) -> bool:
    picked: set[str] = set()
    for stop in sequence:
        if stop.kind == PICKUP:
            picked.add(stop.order_id)
        elif stop.order_id not in picked:
            return False
    return True


def _window_deadline(stop: Stop) -> datetime:
    return stop.window_end or datetime.max


def nearest_neighbor(stops: list[Stop], depot: GeoPoint) -> list[Stop]:
    """Greedy tour from the depot. A delivery is only eligible once its pickup
    is on the tour; ties go to the earliest window deadline, then stop id."""
    remaining = list(stops)
    picked: set[str] = set()
    tour: list[Stop] = []
    here = depot
    while remaining:
        eligible = [s for s in remaining if s.kind == PICKUP or s.order_id in picked]
        nxt = min(
            eligible,
            key=lambda s: (round(haversine_km(here, s.location), 9), _window_deadline(s), s.stop_id),
        )
        tour.append(nxt)
        remaining.remove(nxt)
        if nxt.kind == PICKUP:
            picked.add(nxt.order_id)
        here = nxt.location
    return tour


def _schedule(sequence: list[Stop], config: OptimizerConfig) -> tuple[list[PlannedStop], float, float, int]:
    clock = config.start_time
    here = config.depot
    total_km = 0.0
    late = 0
    planned: list[PlannedStop] = []
    slack = timedelta(minutes=config.eta_slack_minutes)
    service = timedelta(minutes=config.service_minutes)
    for index, stop in enumerate(sequence, start=1):
        leg = haversine_km(here, stop.location)
        total_km += leg
        arrival = clock + timedelta(minutes=(leg / config.speed_kmh) * 60.0)
        if stop.window_start is not None and arrival < stop.window_start:
            arrival = stop.window_start
        is_late = stop.window_end is not None and arrival > stop.window_end
        if is_late:
            late += 1
        planned.append(
            PlannedStop(
                stop=stop,
                sequence=index,
                arrival=arrival,
                eta_start=arrival,
                eta_end=arrival + slack,
                distance_from_prev_km=leg,
                late=is_late,
            )
        )
        clock = arrival + service
        here = stop.location
    duration_min = (clock - config.start_time).total_seconds() / 60.0
    return planned, total_km, duration_min, late


def route_cost(sequence: list[Stop], config: OptimizerConfig) -> tuple[int, float]:
    """Lexicographic cost: window violations first, then distance."""
    _, km, _, late = _schedule(sequence, config)
    return late, round(km, 9)


def _two_opt_pass(sequence: list[Stop], config: OptimizerConfig, best: tuple[int, float]):
    n = len(sequence)
    for i in range(n - 1):
        for j in range(i + 1, n):
            candidate = sequence[:i] + sequence[i : j + 1][::-1] + sequence[j + 1 :]
            if not precedence_ok(candidate):
                continue
            cost = route_cost(candidate, config)
            if cost < best:
                return candidate, cost
    return None


def _or_opt_pass(sequence: list[Stop], config: OptimizerConfig, best: tuple[int, float]):
    n = len(sequence)
    for length in (1, 2, 3):
        for i in range(n - length + 1):
            segment = sequence[i : i + length]
            rest = sequence[:i] + sequence[i + length :]
            for k in range(len(rest) + 1):
                if k == i:
                    continue
                candidate = rest[:k] + segment + rest[k:]
                if not precedence_ok(candidate):
                    continue
                cost = route_cost(candidate, config)
                if cost < best:
                    return candidate, cost
    return None


def improve(sequence: list[Stop], config: OptimizerConfig) -> list[Stop]:
    """First-improvement local search; each accepted move spends one iteration."""
    best_seq = list(sequence)
    best_cost = route_cost(best_seq, config)
    for _ in range(max(0, int(config.max_iterations))):
        found = _two_opt_pass(best_seq, config, best_cost) or _or_opt_pass(best_seq, config, best_cost)
        if found is None:
            break
        best_seq, best_cost = found
    return best_seq


def plan_route(stops: list[Stop], config: OptimizerConfig, vehicle_index: int = 0) -> PlannedRoute:
    tour = improve(nearest_neighbor(stops, config.depot), config)
    planned, km, duration, late = _schedule(tour, config)
    route = PlannedRoute(
        vehicle_index=vehicle_index,
        stops=planned,
        total_distance_km=km,
        total_duration_min=duration,
    )
    if late:
        late_ids = [p.stop.stop_id for p in planned if p.late]
        route.infeasible = True
        route.infeasible_reason = f"time_window: {', '.join(late_ids)}"
    return route


def optimize(stops: list[Stop], config: OptimizerConfig) -> list[PlannedRoute]:
    """Plan routes for paired pickup/delivery stops.

    Raises ValueError for malformed input (unknown kind, duplicate or unpaired
    stops). Vehicle shortage and missed windows are reported on the routes.
    """
    if not stops:
        return []
    pairs = _pair_stops(stops)
    groups = partition_orders(pairs, config.depot, max(1, config.max_stops // 2))
    routes: list[PlannedRoute] = []
    for index, group in enumerate(groups):
        group_stops = [stop for order_id in group for stop in pairs[order_id]]
        route = plan_route(group_stops, config, vehicle_index=index)
        if index >= config.vehicle_count:
            reason = f"vehicle_shortage: {len(groups)} routes for {config.vehicle_count} vehicles"
            route.infeasible = True
            route.infeasible_reason = "; ".join(r for r in (reason, route.infeasible_reason) if r)
        routes.append(route)
    return routes
