from marketroute.services.routing.optimizer import (
    GeoPoint,
    OptimizerConfig,
    PlannedRoute,
    PlannedStop,
    Stop,
    haversine_km,
    optimize,
)

__all__ = [
    "GeoPoint",
    "OptimizerConfig",
    "PlannedRoute",
    "PlannedStop",
    "Stop",
    "haversine_km",
    "optimize",
]
