"""fulfillment core: orders, escrow ledger, reservations, route batches

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "a1c2e3f4b5d6"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    return sa.inspect(bind).has_table(table_name)


def _index_exists(bind, table_name: str, index_name: str) -> bool:
    indexes = sa.inspect(bind).get_indexes(table_name)
    return any((idx.get("name") or "") == index_name for idx in indexes)


def _ensure_index(bind, table_name: str, column: str, *, unique: bool = False) -> None:
    name = f"ix_{table_name}_{column}"
    if not _index_exists(bind, table_name, name):
        op.create_index(name, table_name, [column], unique=unique)


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "orders"):
        op.create_table(
            "orders",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("buyer_id", sa.String(length=64), nullable=False),
            sa.Column("seller_id", sa.String(length=64), nullable=False),
            sa.Column("product_id", sa.String(length=64), nullable=False),
            sa.Column("amount", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("currency", sa.String(length=8), nullable=False, server_default="AED"),
            sa.Column("payment_method", sa.String(length=16), nullable=False, server_default="wallet"),
            sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
            sa.Column("hold_id", sa.String(length=32), nullable=True),
            sa.Column("batch_id", sa.String(length=32), nullable=True),
            sa.Column("route_id", sa.String(length=32), nullable=True),
            sa.Column("pickup_address", sa.String(length=240), nullable=True),
            sa.Column("pickup_latitude", sa.Float(), nullable=True),
            sa.Column("pickup_longitude", sa.Float(), nullable=True),
            sa.Column("dropoff_address", sa.String(length=240), nullable=True),
            sa.Column("dropoff_latitude", sa.Float(), nullable=True),
            sa.Column("dropoff_longitude", sa.Float(), nullable=True),
            sa.Column("window_start", sa.DateTime(), nullable=True),
            sa.Column("window_end", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("confirmed_at", sa.DateTime(), nullable=True),
            sa.Column("out_for_delivery_at", sa.DateTime(), nullable=True),
            sa.Column("delivered_at", sa.DateTime(), nullable=True),
            sa.Column("dispute_deadline", sa.DateTime(), nullable=True),
            sa.Column("dispute_reason", sa.String(length=400), nullable=True),
            sa.Column("disputed_at", sa.DateTime(), nullable=True),
            sa.Column("dispute_outcome", sa.String(length=16), nullable=True),
            sa.Column("resolved_by", sa.String(length=64), nullable=True),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("resolution_note", sa.String(length=400), nullable=True),
            sa.Column("released_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
    for column in (
        "buyer_id",
        "seller_id",
        "product_id",
        "status",
        "hold_id",
        "batch_id",
        "route_id",
        "confirmed_at",
        "dispute_deadline",
    ):
        _ensure_index(bind, "orders", column)

    if not _table_exists(bind, "order_transitions"):
        op.create_table(
            "order_transitions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.String(length=32), nullable=False),
            sa.Column("from_status", sa.String(length=32), nullable=False, server_default=""),
            sa.Column("to_status", sa.String(length=32), nullable=False),
            sa.Column("actor_type", sa.String(length=32), nullable=False, server_default="system"),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=False),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("order_id", "idempotency_key", name="uq_order_transition_order_key"),
        )
    _ensure_index(bind, "order_transitions", "order_id")

    if not _table_exists(bind, "escrow_holds"):
        op.create_table(
            "escrow_holds",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("order_id", sa.String(length=32), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("payee_id", sa.String(length=64), nullable=False),
            sa.Column("amount", sa.BigInteger(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="held"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("settled_at", sa.DateTime(), nullable=True),
        )
    _ensure_index(bind, "escrow_holds", "order_id", unique=True)
    _ensure_index(bind, "escrow_holds", "user_id")
    _ensure_index(bind, "escrow_holds", "status")

    if not _table_exists(bind, "ledger_entries"):
        op.create_table(
            "ledger_entries",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("delta", sa.BigInteger(), nullable=False),
            sa.Column("reason", sa.String(length=48), nullable=False),
            sa.Column("related_order_id", sa.String(length=32), nullable=True),
            sa.Column("related_hold_id", sa.String(length=32), nullable=True),
            sa.Column("reference", sa.String(length=120), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    for column in ("user_id", "related_order_id", "related_hold_id", "reference", "created_at"):
        _ensure_index(bind, "ledger_entries", column)

    if not _table_exists(bind, "product_reservations"):
        op.create_table(
            "product_reservations",
            sa.Column("product_id", sa.String(length=64), primary_key=True),
            sa.Column("seller_id", sa.String(length=64), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="available"),
            sa.Column("reserved_for_order_id", sa.String(length=32), nullable=True),
            sa.Column("reserved_until", sa.DateTime(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
    for column in ("seller_id", "status", "reserved_for_order_id"):
        _ensure_index(bind, "product_reservations", column)

    if not _table_exists(bind, "route_batches"):
        op.create_table(
            "route_batches",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("batch_date", sa.Date(), nullable=False),
            sa.Column("time_slot", sa.String(length=16), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("window_start", sa.DateTime(), nullable=False),
            sa.Column("window_end", sa.DateTime(), nullable=False),
            sa.Column("order_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("ready_at", sa.DateTime(), nullable=True),
            sa.Column("dispatched_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("batch_date", "time_slot", name="uq_route_batch_date_slot"),
        )
    _ensure_index(bind, "route_batches", "batch_date")
    _ensure_index(bind, "route_batches", "status")

    if not _table_exists(bind, "routes"):
        op.create_table(
            "routes",
            sa.Column("id", sa.String(length=32), primary_key=True),
            sa.Column("batch_id", sa.String(length=32), sa.ForeignKey("route_batches.id"), nullable=False),
            sa.Column("driver_id", sa.String(length=64), nullable=True),
            sa.Column("vehicle_index", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_distance_km", sa.Float(), nullable=False, server_default="0"),
            sa.Column("total_duration_min", sa.Float(), nullable=False, server_default="0"),
            sa.Column("infeasible", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("infeasible_reason", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    _ensure_index(bind, "routes", "batch_id")
    _ensure_index(bind, "routes", "driver_id")

    if not _table_exists(bind, "route_stops"):
        op.create_table(
            "route_stops",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("route_id", sa.String(length=32), sa.ForeignKey("routes.id"), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("order_id", sa.String(length=32), nullable=False),
            sa.Column("kind", sa.String(length=16), nullable=False),
            sa.Column("address", sa.String(length=240), nullable=True),
            sa.Column("latitude", sa.Float(), nullable=False),
            sa.Column("longitude", sa.Float(), nullable=False),
            sa.Column("eta_start", sa.DateTime(), nullable=True),
            sa.Column("eta_end", sa.DateTime(), nullable=True),
            sa.Column("window_start", sa.DateTime(), nullable=True),
            sa.Column("window_end", sa.DateTime(), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("route_id", "sequence", name="uq_route_stop_sequence"),
        )
    _ensure_index(bind, "route_stops", "route_id")
    _ensure_index(bind, "route_stops", "order_id")

    if not _table_exists(bind, "platform_events"):
        op.create_table(
            "platform_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("subject_type", sa.String(length=80), nullable=True),
            sa.Column("subject_id", sa.String(length=120), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
        )
    for column in ("created_at", "event_type", "actor_id", "subject_type", "subject_id", "request_id", "severity"):
        _ensure_index(bind, "platform_events", column)
    _ensure_index(bind, "platform_events", "idempotency_key", unique=True)

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
        )
    for column in ("job_name", "ran_at", "ok"):
        _ensure_index(bind, "job_runs", column)

    if not _table_exists(bind, "reconciliation_reports"):
        op.create_table(
            "reconciliation_reports",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("scope", sa.String(length=64), nullable=False, server_default="escrow_ledger"),
            sa.Column("system_total", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("drift_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_by", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    _ensure_index(bind, "reconciliation_reports", "created_at")


def downgrade():
    for table in (
        "reconciliation_reports",
        "job_runs",
        "platform_events",
        "route_stops",
        "routes",
        "route_batches",
        "product_reservations",
        "ledger_entries",
        "escrow_holds",
        "order_transitions",
        "orders",
    ):
        op.drop_table(table)
