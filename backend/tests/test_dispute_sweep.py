from __future__ import annotations

import json
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch

from fulfillment_fixtures import FulfillmentAppMixin, deliver_many, fund, place_order

from marketroute.jobs.dispute_sweep import due_for_release, run_dispute_sweep, run_reservation_expiry
from marketroute.models import JobRun, LedgerEntry
from marketroute.services import ledger_service, order_service
from marketroute.services.ledger_service import HoldStatus
from marketroute.services.order_service import OrderStatus

DAY = datetime(2026, 3, 10)


class DisputeSweepTestCase(FulfillmentAppMixin, unittest.TestCase):
    def _delivered(self, count: int = 1):
        orders = []
        for i in range(count):
            buyer = f"buyer-{i}"
            fund(buyer, 500)
            orders.append(place_order(buyer, f"seller-{i}", f"prod-{i}", 500, now=DAY.replace(hour=8)))
        return deliver_many(
            orders,
            confirmed_at=DAY.replace(hour=9),
            routed_at=DAY.replace(hour=13, minute=5),
            delivered_at=DAY.replace(hour=15),
        )

    def test_release_happens_after_deadline_exactly_once(self):
        (order,) = self._delivered()
        deadline = order.dispute_deadline

        early = run_dispute_sweep(now=deadline - timedelta(seconds=1))
        self.assertEqual(early["processed"], 0)
        self.assertFalse(order_service.auto_release(order.id, now=deadline - timedelta(seconds=1)))
        self.assertEqual(order_service.get_order(order.id).status, OrderStatus.DELIVERED)
        self.assertEqual(ledger_service.balance("seller-0"), 0)

        first = run_dispute_sweep(now=deadline + timedelta(seconds=1))
        second = run_dispute_sweep(now=deadline + timedelta(seconds=2))

        self.assertEqual(first["released"], 1)
        self.assertEqual(second["released"], 0)
        self.assertEqual(order_service.get_order(order.id).status, OrderStatus.RELEASED)
        self.assertEqual(ledger_service.get_hold(order.hold_id).status, HoldStatus.RELEASED)
        self.assertEqual(ledger_service.balance("seller-0"), 500)
        self.assertEqual(LedgerEntry.query.filter_by(related_hold_id=order.hold_id).count(), 2)
        self.assertEqual(ledger_service.system_total(), 0)
        # Direct retries stay no-ops too.
        self.assertFalse(order_service.auto_release(order.id, now=deadline + timedelta(hours=1)))

    def test_one_failing_order_does_not_stop_the_sweep(self):
        first, second = self._delivered(2)
        now = first.dispute_deadline + timedelta(minutes=1)
        real_auto_release = order_service.auto_release
        broken_id = due_for_release(now, limit=10)[0]

        def flaky(order_id, now=None):
            if order_id == broken_id:
                raise RuntimeError("db hiccup")
            return real_auto_release(order_id, now=now)

        with patch("marketroute.services.order_service.auto_release", side_effect=flaky):
            summary = run_dispute_sweep(now=now)

        self.assertFalse(summary["ok"])
        self.assertEqual(summary["processed"], 2)
        self.assertEqual(summary["released"], 1)
        self.assertEqual(summary["errors"], 1)
        statuses = {o.id: order_service.get_order(o.id).status for o in (first, second)}
        self.assertEqual(statuses[broken_id], OrderStatus.DELIVERED)
        self.assertEqual(sorted(statuses.values()), [OrderStatus.DELIVERED, OrderStatus.RELEASED])

        run = JobRun.query.filter_by(job_name="dispute_sweep").order_by(JobRun.id.desc()).first()
        self.assertFalse(run.ok)
        self.assertEqual(json.loads(run.summary_json)["errors"], 1)

        # The next pass picks up the straggler.
        retry = run_dispute_sweep(now=now + timedelta(minutes=5))
        self.assertEqual(retry["released"], 1)

    def test_limit_bounds_a_single_pass(self):
        self._delivered(3)
        now = DAY + timedelta(days=2)
        self.assertEqual(run_dispute_sweep(limit=2, now=now)["released"], 2)
        self.assertEqual(run_dispute_sweep(limit=2, now=now)["released"], 1)

    def test_reservation_expiry_job_records_run(self):
        fund("buyer-1", 500)
        place_order("buyer-1", "seller-1", "prod-1", 500, now=DAY)
        result = run_reservation_expiry(now=DAY + timedelta(days=8))
        self.assertTrue(result["ok"])
        self.assertEqual(result["cancelled"], 1)
        self.assertEqual(JobRun.query.filter_by(job_name="reservation_expiry").count(), 1)


if __name__ == "__main__":
    unittest.main()
