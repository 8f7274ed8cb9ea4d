from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError

from marketroute.errors import InvalidTransition, NotFound, NotRouted, Unauthorized, ValidationError
from marketroute.extensions import db
from marketroute.models import Order, Route, RouteBatch, RouteStop
from marketroute.services.order_service import OrderStatus
from marketroute.services.routing.optimizer import DELIVERY, PICKUP, GeoPoint, OptimizerConfig, Stop, optimize
from marketroute.utils.concurrency import batch_locks
from marketroute.utils.events import log_event
from marketroute.utils.notify import notify
from marketroute.utils.settings import (
    afternoon_checkpoint,
    dispatch_recipient_id,
    morning_checkpoint,
    route_carry_over_enabled,
    route_start_delay_minutes,
    scheduler_timezone,
)

logger = logging.getLogger(__name__)


class BatchStatus:
    PENDING = "pending"
    OPTIMIZING = "optimizing"
    READY = "ready"
    DISPATCHED = "dispatched"

    ALLOWED = {
        PENDING: {OPTIMIZING},
        OPTIMIZING: {READY},
        READY: {DISPATCHED},
        DISPATCHED: set(),
    }


class TimeSlot:
    MORNING = "morning"
    AFTERNOON = "afternoon"

    ALL = (MORNING, AFTERNOON)


class StopStatus:
    PENDING = "pending"
    COMPLETED = "completed"


def _tz():
    name = scheduler_timezone()
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("scheduler_timezone_invalid tz=%s; using UTC", name)
        return timezone.utc


def _to_utc_naive(local_day: date, hhmm: tuple[int, int]) -> datetime:
    hour, minute = hhmm
    local = datetime.combine(local_day, time(hour, minute), tzinfo=_tz())
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def _local_date(now_utc: datetime) -> date:
    return now_utc.replace(tzinfo=timezone.utc).astimezone(_tz()).date()


def _check_slot(slot: str) -> str:
    value = (slot or "").strip().lower()
    if value not in TimeSlot.ALL:
        raise ValidationError(f"time_slot must be one of {', '.join(TimeSlot.ALL)}")
    return value


def window_for(batch_date: date, slot: str) -> tuple[datetime, datetime]:
    """Collection window for a checkpoint, as naive UTC [start, end).

    morning covers the previous day's afternoon checkpoint up to the morning
    checkpoint; afternoon covers morning checkpoint to afternoon checkpoint.
    """
    slot = _check_slot(slot)
    if slot == TimeSlot.MORNING:
        start = _to_utc_naive(batch_date - timedelta(days=1), afternoon_checkpoint())
        end = _to_utc_naive(batch_date, morning_checkpoint())
    else:
        start = _to_utc_naive(batch_date, morning_checkpoint())
        end = _to_utc_naive(batch_date, afternoon_checkpoint())
    return start, end


def latest_checkpoint(now: datetime | None = None) -> tuple[date, str, datetime]:
    """Most recent checkpoint at or before ``now``: (local date, slot, fire time)."""
    now = now or datetime.utcnow()
    today = _local_date(now)
    candidates = []
    for day in (today - timedelta(days=1), today):
        for slot in TimeSlot.ALL:
            _, fired_at = window_for(day, slot)
            if fired_at <= now:
                candidates.append((fired_at, day, slot))
    fired_at, day, slot = max(candidates)
    return day, slot, fired_at


def last_fired_date(slot: str, now: datetime | None = None) -> date:
    """Local date of the most recent run of ``slot`` at or before ``now``."""
    now = now or datetime.utcnow()
    today = _local_date(now)
    _, fired_at = window_for(today, slot)
    return today if fired_at <= now else today - timedelta(days=1)


def get_batch(batch_id: str) -> RouteBatch:
    batch = db.session.get(RouteBatch, str(batch_id))
    if batch is None:
        raise NotFound(f"route batch {batch_id} not found")
    return batch


def find_batch(batch_date: date, slot: str) -> RouteBatch | None:
    return RouteBatch.query.filter_by(batch_date=batch_date, time_slot=_check_slot(slot)).first()


def list_batches(
    *,
    batch_date: date | None = None,
    slot: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[RouteBatch]:
    q = RouteBatch.query
    if batch_date is not None:
        q = q.filter(RouteBatch.batch_date == batch_date)
    if slot:
        q = q.filter(RouteBatch.time_slot == _check_slot(slot))
    if status:
        q = q.filter(RouteBatch.status == status)
    return (
        q.order_by(RouteBatch.batch_date.desc(), RouteBatch.window_end.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )


def get_route(route_id: str) -> Route:
    route = db.session.get(Route, str(route_id))
    if route is None:
        raise NotFound(f"route {route_id} not found")
    return route


def _collect_orders(start: datetime, end: datetime) -> list[Order]:
    q = Order.query.filter(
        Order.status == OrderStatus.CONFIRMED,
        Order.batch_id.is_(None),
        Order.confirmed_at.isnot(None),
        Order.confirmed_at < end,
    )
    if not route_carry_over_enabled():
        q = q.filter(Order.confirmed_at >= start)
    return q.order_by(Order.confirmed_at.asc(), Order.id.asc()).all()


def _stops_for(orders: list[Order]) -> list[Stop]:
    stops: list[Stop] = []
    for order in orders:
        stops.append(
            Stop(
                order_id=order.id,
                kind=PICKUP,
                location=GeoPoint(float(order.pickup_latitude), float(order.pickup_longitude)),
                address=order.pickup_address or "",
            )
        )
        stops.append(
            Stop(
                order_id=order.id,
                kind=DELIVERY,
                location=GeoPoint(float(order.dropoff_latitude), float(order.dropoff_longitude)),
                address=order.dropoff_address or "",
                window_start=order.window_start,
                window_end=order.window_end,
            )
        )
    return stops


def run_checkpoint(batch_date: date, slot: str, now: datetime | None = None) -> RouteBatch | None:
    """Batch and route the confirmed orders of one checkpoint window.

    Idempotent per (date, slot): an existing batch is returned as-is. Returns
    None when there is nothing to route. A window that has not closed yet
    cannot be batched.
    """
    slot = _check_slot(slot)
    now = now or datetime.utcnow()
    start, end = window_for(batch_date, slot)
    if now < end:
        raise ValidationError(
            f"checkpoint {batch_date.isoformat()} {slot} is still open",
            window_end=end.isoformat(),
        )
    with batch_locks.hold(f"{batch_date.isoformat()}:{slot}"):
        existing = find_batch(batch_date, slot)
        if existing is not None:
            logger.info("route_checkpoint_exists date=%s slot=%s batch=%s", batch_date, slot, existing.id)
            return existing

        orders = _collect_orders(start, end)
        if not orders:
            logger.info("route_checkpoint_empty date=%s slot=%s window=%s..%s", batch_date, slot, start, end)
            return None

        try:
            batch = RouteBatch(
                batch_date=batch_date,
                time_slot=slot,
                status=BatchStatus.PENDING,
                window_start=start,
                window_end=end,
                order_count=len(orders),
                created_at=now,
            )
            db.session.add(batch)
            db.session.flush()

            batch.status = BatchStatus.OPTIMIZING
            config = OptimizerConfig.from_settings(
                start_time=max(end, now) + timedelta(minutes=route_start_delay_minutes())
            )
            planned_routes = optimize(_stops_for(orders), config)

            for planned in planned_routes:
                route = Route(
                    batch_id=batch.id,
                    vehicle_index=planned.vehicle_index,
                    total_distance_km=planned.total_distance_km,
                    total_duration_min=planned.total_duration_min,
                    infeasible=planned.infeasible,
                    infeasible_reason=planned.infeasible_reason or None,
                    created_at=now,
                )
                db.session.add(route)
                db.session.flush()
                for ps in planned.stops:
                    db.session.add(
                        RouteStop(
                            route_id=route.id,
                            sequence=ps.sequence,
                            order_id=ps.stop.order_id,
                            kind=ps.stop.kind,
                            address=ps.stop.address,
                            latitude=ps.stop.location.latitude,
                            longitude=ps.stop.location.longitude,
                            eta_start=ps.eta_start,
                            eta_end=ps.eta_end,
                            window_start=ps.stop.window_start,
                            window_end=ps.stop.window_end,
                            status=StopStatus.PENDING,
                        )
                    )
            for order in orders:
                order.batch_id = batch.id

            batch.status = BatchStatus.READY
            batch.ready_at = now
            infeasible = sum(1 for r in planned_routes if r.infeasible)
            log_event(
                "route_batch_ready",
                occurred_at=now,
                subject_type="route_batch",
                subject_id=batch.id,
                severity="WARNING" if infeasible else "INFO",
                idempotency_key=f"route_batch:{batch.id}:ready",
                metadata={
                    "batch_date": batch_date,
                    "time_slot": slot,
                    "orders": len(orders),
                    "routes": len(planned_routes),
                    "infeasible_routes": infeasible,
                },
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info("route_checkpoint_race date=%s slot=%s", batch_date, slot)
            return find_batch(batch_date, slot)
        except Exception:
            db.session.rollback()
            raise

    logger.info(
        "route_batch_ready batch=%s date=%s slot=%s orders=%s routes=%s infeasible=%s",
        batch.id,
        batch_date,
        slot,
        len(orders),
        len(planned_routes),
        infeasible,
    )
    notify(
        recipient_id=dispatch_recipient_id(),
        event="route_batch_ready",
        payload={
            "batch_id": batch.id,
            "batch_date": batch_date.isoformat(),
            "time_slot": slot,
            "route_count": len(planned_routes),
            "infeasible_routes": infeasible,
        },
        reference=f"route_batch:{batch.id}:ready",
    )
    return batch


def dispatch_batch(batch_id: str, driver_ids: list[str], now: datetime | None = None) -> RouteBatch:
    """Assign drivers to routes in vehicle order and mark the batch dispatched."""
    now = now or datetime.utcnow()
    drivers = [str(d).strip() for d in (driver_ids or []) if str(d or "").strip()]
    with batch_locks.hold(str(batch_id)):
        batch = get_batch(batch_id)
        if batch.status != BatchStatus.READY:
            raise InvalidTransition("route batch", batch.status, "dispatch")
        routes = list(batch.routes)
        if len(drivers) < len(routes):
            raise ValidationError(
                f"{len(routes)} drivers required, got {len(drivers)}",
                routes=len(routes),
                drivers=len(drivers),
            )
        if len(set(drivers[: len(routes)])) != len(routes):
            raise ValidationError("a driver can only take one route per batch")
        try:
            for route, driver_id in zip(routes, drivers):
                route.driver_id = driver_id
            batch.status = BatchStatus.DISPATCHED
            batch.dispatched_at = now
            log_event(
                "route_batch_dispatched",
                occurred_at=now,
                subject_type="route_batch",
                subject_id=batch.id,
                idempotency_key=f"route_batch:{batch.id}:dispatched",
                metadata={"drivers": {r.id: r.driver_id for r in routes}},
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    for route in routes:
        notify(
            recipient_id=route.driver_id,
            event="route_assigned",
            payload={"batch_id": batch.id, "route_id": route.id, "stops": len(route.stops)},
            reference=f"route:{route.id}:assigned",
        )
    return batch


def complete_stop(route_id: str, stop_id: int, driver_id: str, now: datetime | None = None) -> RouteStop:
    """Driver marks one stop done. Completing a pickup puts the order out for delivery."""
    from marketroute.services import order_service

    now = now or datetime.utcnow()
    route = get_route(route_id)
    stop = RouteStop.query.filter_by(id=int(stop_id), route_id=route.id).first()
    if stop is None:
        raise NotFound(f"stop {stop_id} not found on route {route_id}")
    if route.batch is None or route.batch.status != BatchStatus.DISPATCHED:
        raise NotRouted(f"route {route.id} has not been dispatched")
    if not driver_id or str(driver_id) != (route.driver_id or ""):
        raise Unauthorized("only the assigned driver can complete stops")
    if stop.status == StopStatus.COMPLETED:
        return stop
    if stop.kind == DELIVERY:
        pickup = RouteStop.query.filter_by(route_id=route.id, order_id=stop.order_id, kind=PICKUP).first()
        if pickup is not None and pickup.status != StopStatus.COMPLETED:
            raise InvalidTransition("stop", stop.status, "complete delivery before pickup")
    try:
        stop.status = StopStatus.COMPLETED
        stop.completed_at = now
        log_event(
            "route_stop_completed",
            occurred_at=now,
            actor_id=driver_id,
            subject_type="route_stop",
            subject_id=stop.id,
            idempotency_key=f"route_stop:{stop.id}:completed",
            metadata={"route_id": route.id, "order_id": stop.order_id, "kind": stop.kind},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if stop.kind == PICKUP:
        order = order_service.get_order(stop.order_id)
        if order.status == OrderStatus.CONFIRMED:
            order_service.mark_out_for_delivery(order.id, route.id, driver_id, now=now)
    return stop


def reconcile_missed_checkpoints(now: datetime | None = None) -> dict:
    """Create the batch for the most recent checkpoint if it never ran."""
    now = now or datetime.utcnow()
    day, slot, fired_at = latest_checkpoint(now)
    existing = find_batch(day, slot)
    if existing is not None:
        return {"batch_date": day.isoformat(), "time_slot": slot, "created": False, "batch_id": existing.id}
    logger.warning("route_checkpoint_missed date=%s slot=%s fired_at=%s", day, slot, fired_at)
    batch = run_checkpoint(day, slot, now=now)
    return {
        "batch_date": day.isoformat(),
        "time_slot": slot,
        "created": batch is not None,
        "batch_id": batch.id if batch is not None else None,
    }
