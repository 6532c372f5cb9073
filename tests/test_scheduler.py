import threading
import unittest
from unittest import mock

from plannersync.models import AppConfig
from plannersync.scheduler import IDLE_POLL_SECONDS, SyncScheduler


class SyncSchedulerTests(unittest.TestCase):
    def _scheduler(self, sync: dict) -> tuple[SyncScheduler, mock.Mock]:
        engine = mock.Mock()
        config_manager = mock.Mock()
        config_manager.load.return_value = AppConfig.from_dict({"sync": sync})
        return SyncScheduler(engine, config_manager), engine

    def test_wait_follows_auto_sync(self) -> None:
        scheduler, _ = self._scheduler({"auto_sync": True, "interval_seconds": 120})
        self.assertEqual(scheduler._next_wait(), (120, True))

        scheduler, _ = self._scheduler({"auto_sync": False, "interval_seconds": 120})
        self.assertEqual(scheduler._next_wait(), (IDLE_POLL_SECONDS, False))

    def test_manual_trigger_runs_with_stop_event(self) -> None:
        scheduler, engine = self._scheduler({"auto_sync": False})
        ran = threading.Event()
        engine.run_once.side_effect = lambda **kwargs: ran.set()

        scheduler.start()
        try:
            scheduler.trigger_manual()
            self.assertTrue(ran.wait(timeout=5))
        finally:
            scheduler.stop()

        engine.run_once.assert_called_once_with(trigger="manual", stop_event=scheduler._stop_event)
        self.assertFalse(scheduler.running)

    def test_stop_without_trigger_runs_nothing(self) -> None:
        scheduler, engine = self._scheduler({"auto_sync": True})
        scheduler.start()
        scheduler.stop()
        engine.run_once.assert_not_called()


if __name__ == "__main__":
    unittest.main()
