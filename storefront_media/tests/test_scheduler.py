import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from storefront_media.janitor import TempCleanupResult
from storefront_media.reconcile import MediaCleanupResult, RunStatus
from storefront_media.scheduler import DailyTrigger, HourlyTrigger, MaintenanceScheduler


def at(hour, minute=0, day=1):
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


class TriggerTests(unittest.TestCase):
    def test_daily_trigger(self):
        trigger = DailyTrigger(hour=3)
        self.assertEqual(trigger.next_after(at(1, 30)), at(3))
        self.assertEqual(trigger.next_after(at(3)), at(3, day=2))
        self.assertEqual(trigger.next_after(at(22)), at(3, day=2))

    def test_hourly_trigger(self):
        trigger = HourlyTrigger(minute=0)
        self.assertEqual(trigger.next_after(at(5, 10)), at(6))
        self.assertEqual(trigger.next_after(at(23, 59)), at(0, day=2))


class MaintenanceSchedulerTests(unittest.TestCase):
    def setUp(self):
        self.engine = MagicMock()
        self.engine.run.return_value = MediaCleanupResult(status=RunStatus.SUCCESS)
        self.janitor = MagicMock()
        self.janitor.run.return_value = TempCleanupResult(status=RunStatus.SUCCESS)
        self.scheduler = MaintenanceScheduler(self.engine, self.janitor, clock=lambda: at(0, 30))

    def test_run_pending_fires_due_jobs(self):
        self.scheduler.schedule(at(0, 30))

        self.assertEqual(self.scheduler.run_pending(at(0, 45)), [])
        self.assertEqual(self.scheduler.run_pending(at(1)), ["temp-cleanup"])
        self.assertEqual(self.scheduler.run_pending(at(3)), ["media-cleanup", "temp-cleanup"])
        self.assertEqual(self.engine.run.call_count, 1)
        self.assertEqual(self.janitor.run.call_count, 2)
        self.assertEqual(self.scheduler.jobs[0].next_run, at(3, day=2))

    def test_manual_triggers_use_same_engine(self):
        result = self.scheduler.run_media_cleanup()
        self.assertIs(result, self.engine.run.return_value)
        self.assertIs(self.scheduler.run_temp_cleanup(), self.janitor.run.return_value)

    def test_job_error_is_logged_not_raised(self):
        self.engine.run.side_effect = RuntimeError("boom")
        self.scheduler.schedule(at(2))
        with self.assertLogs("storefront_media.scheduler", level="ERROR"):
            self.assertEqual(self.scheduler.run_pending(at(3)), ["media-cleanup", "temp-cleanup"])
        self.janitor.run.assert_called_once()

    def test_seconds_until_next(self):
        self.scheduler.schedule(at(0, 30))
        self.assertEqual(self.scheduler.seconds_until_next(at(0, 30)), 1800.0)

    def test_start_and_stop(self):
        self.scheduler.start()
        self.assertTrue(self.scheduler.is_running)
        self.scheduler.start()
        self.scheduler.stop()
        self.assertFalse(self.scheduler.is_running)
        self.engine.run.assert_not_called()


if __name__ == "__main__":
    unittest.main()
