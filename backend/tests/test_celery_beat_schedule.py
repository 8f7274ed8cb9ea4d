from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from fulfillment_fixtures import FulfillmentAppMixin

from marketroute.celery_app import _extract_trace_id, beat_schedule, create_celery_app

TASK_PREFIX = "marketroute.tasks.fulfillment_tasks."


class CeleryBeatScheduleTestCase(FulfillmentAppMixin, unittest.TestCase):
    def test_beat_schedule_keys_and_tasks(self):
        schedule = beat_schedule()
        self.assertEqual(
            set(schedule),
            {
                "dispute-window-sweep",
                "reservation-expiry",
                "route-checkpoint-reconcile",
                "route-checkpoint-morning",
                "route-checkpoint-afternoon",
            },
        )
        for entry in schedule.values():
            self.assertTrue(entry["task"].startswith(TASK_PREFIX))
        self.assertEqual(schedule["route-checkpoint-morning"]["kwargs"], {"slot": "morning"})
        self.assertEqual(schedule["route-checkpoint-afternoon"]["kwargs"], {"slot": "afternoon"})

    def test_checkpoint_crontabs_follow_configuration(self):
        schedule = beat_schedule()
        self.assertEqual(schedule["route-checkpoint-morning"]["schedule"].hour, {13})
        self.assertEqual(schedule["route-checkpoint-afternoon"]["schedule"].hour, {19})

        with patch.dict(os.environ, {"ROUTE_MORNING_CHECKPOINT": "08:15"}, clear=False):
            moved = beat_schedule()["route-checkpoint-morning"]["schedule"]
        self.assertEqual(moved.hour, {8})
        self.assertEqual(moved.minute, {15})

    def test_celery_app_registers_fulfillment_tasks(self):
        import marketroute.tasks.fulfillment_tasks  # noqa: F401

        celery = create_celery_app(self.app)
        self.assertEqual(celery.conf.task_serializer, "json")
        self.assertIn("dispute-window-sweep", celery.conf.beat_schedule)
        for name in (
            "run_dispute_sweep",
            "run_reservation_expiry",
            "run_route_checkpoint",
            "reconcile_route_checkpoints",
            "send_dispatch_notification",
        ):
            self.assertIn(TASK_PREFIX + name, celery.tasks)

    def test_trace_id_extraction(self):
        self.assertEqual(_extract_trace_id((), {"trace_id": "abc"}), "abc")
        self.assertEqual(_extract_trace_id(("x", "trace_123"), {}), "trace_123")
        self.assertEqual(_extract_trace_id(None, None), "")

    def test_sweep_task_runs_inline(self):
        from marketroute.tasks.fulfillment_tasks import run_dispute_sweep_task

        result = run_dispute_sweep_task(trace_id="trace_test")
        self.assertTrue(result["ok"])
        self.assertEqual(result["processed"], 0)


if __name__ == "__main__":
    unittest.main()
