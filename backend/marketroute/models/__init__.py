from marketroute.models.job_run import JobRun
from marketroute.models.ledger import EscrowHold, LedgerEntry
from marketroute.models.order import Order
from marketroute.models.order_transition import OrderTransition
from marketroute.models.platform_event import PlatformEvent
from marketroute.models.reconciliation_report import ReconciliationReport
from marketroute.models.reservation import ProductReservation
from marketroute.models.route import Route, RouteBatch, RouteStop

__all__ = [
    "EscrowHold",
    "JobRun",
    "LedgerEntry",
    "Order",
    "OrderTransition",
    "PlatformEvent",
    "ProductReservation",
    "ReconciliationReport",
    "Route",
    "RouteBatch",
    "RouteStop",
]
