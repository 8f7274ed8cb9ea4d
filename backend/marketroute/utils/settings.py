from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    raw = (os.getenv(name) or "").strip()
    return raw or default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_float(name: str, default: float, *, minimum: float | None = None, maximum: float | None = None) -> float:
    raw = (os.getenv(name) or "").strip()
    try:
        value = float(raw) if raw else float(default)
    except Exception:
        value = float(default)
    if minimum is not None and value < minimum:
        value = minimum
    if maximum is not None and value > maximum:
        value = maximum
    return value


def _parse_hhmm(raw: str, default: tuple[int, int]) -> tuple[int, int]:
    try:
        hh, mm = raw.split(":", 1)
        hour, minute = int(hh), int(mm)
    except Exception:
        return default
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return default
    return hour, minute


def currency() -> str:
    return _env_str("MARKETROUTE_CURRENCY", "AED").upper()[:8]


def dispute_window_hours() -> int:
    return _env_int("DISPUTE_WINDOW_HOURS", 12, minimum=1, maximum=24 * 30)


def reservation_ttl_hours() -> int:
    # Listings were held for 7 days by default in the seller reservation flow.
    return _env_int("RESERVATION_TTL_HOURS", 24 * 7, minimum=1, maximum=24 * 90)


def dispute_sweep_interval_seconds() -> int:
    return _env_int("DISPUTE_SWEEP_INTERVAL_SECONDS", 300, minimum=30, maximum=86400)


def dispute_sweep_limit() -> int:
    return _env_int("DISPUTE_SWEEP_LIMIT", 200, minimum=1, maximum=5000)


def scheduler_timezone() -> str:
    return _env_str("MARKETROUTE_TZ", "UTC")


def morning_checkpoint() -> tuple[int, int]:
    return _parse_hhmm(_env_str("ROUTE_MORNING_CHECKPOINT", "13:00"), (13, 0))


def afternoon_checkpoint() -> tuple[int, int]:
    return _parse_hhmm(_env_str("ROUTE_AFTERNOON_CHECKPOINT", "19:00"), (19, 0))


def route_carry_over_enabled() -> bool:
    return _env_bool("ROUTE_CARRY_OVER_UNBATCHED", True)


def route_start_delay_minutes() -> int:
    return _env_int("ROUTE_START_DELAY_MINUTES", 30, minimum=0, maximum=24 * 60)


def route_vehicle_count() -> int:
    return _env_int("ROUTE_VEHICLE_COUNT", 3, minimum=1, maximum=500)


def route_max_stops() -> int:
    return _env_int("ROUTE_MAX_STOPS", 20, minimum=2, maximum=500)


def optimizer_max_iterations() -> int:
    return _env_int("ROUTE_OPTIMIZER_ITERATIONS", 50, minimum=0, maximum=10000)


def route_speed_kmh() -> float:
    return _env_float("ROUTE_AVERAGE_SPEED_KMH", 30.0, minimum=1.0, maximum=200.0)


def route_service_minutes() -> float:
    return _env_float("ROUTE_SERVICE_MINUTES", 5.0, minimum=0.0, maximum=240.0)


def route_eta_slack_minutes() -> int:
    return _env_int("ROUTE_ETA_SLACK_MINUTES", 30, minimum=0, maximum=24 * 60)


def depot_location() -> tuple[float, float]:
    lat = _env_float("DEPOT_LATITUDE", 25.2048, minimum=-90.0, maximum=90.0)
    lng = _env_float("DEPOT_LONGITUDE", 55.2708, minimum=-180.0, maximum=180.0)
    return lat, lng


def conflict_retry_attempts() -> int:
    return _env_int("CONFLICT_RETRY_ATTEMPTS", 3, minimum=1, maximum=20)


def conflict_retry_base_ms() -> int:
    return _env_int("CONFLICT_RETRY_BASE_MS", 20, minimum=0, maximum=5000)


def payments_provider() -> str:
    return _env_str("PAYMENTS_PROVIDER", "mock").lower()


def dispatch_provider() -> str:
    return _env_str("DISPATCH_PROVIDER", "mock").lower()


def dispatch_queue_enabled() -> bool:
    return _env_bool("DISPATCH_NOTIFY_QUEUE", False)


def dispatch_recipient_id() -> str:
    return _env_str("DISPATCH_RECIPIENT_ID", "dispatch-desk")


def app_env() -> str:
    return _env_str("MARKETROUTE_ENV", "dev").lower()


def is_production() -> bool:
    return app_env() in ("prod", "production")


def database_url() -> str:
    return _env_str("SQLALCHEMY_DATABASE_URI") or _env_str("DATABASE_URL")


def db_pool_recycle_seconds() -> int:
    return _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400)


def db_pool_size() -> int:
    return _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200)


def db_max_overflow() -> int:
    return _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500)


def db_pool_timeout_seconds() -> int:
    return _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300)


def cors_origins() -> list[str]:
    """Explicit origins from CORS_ORIGINS; outside production an empty list means any origin."""
    origins = [o.strip() for o in _env_str("CORS_ORIGINS").split(",") if o.strip()]
    if not origins and not is_production():
        return ["*"]
    return origins
