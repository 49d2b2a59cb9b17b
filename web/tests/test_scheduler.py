import threading
import time
import unittest

from filtersync.scheduler import UpdateScheduler


class TestUpdateScheduler(unittest.TestCase):

    def _scheduler(self, run_pass, interval_hours=24, **kw):
        s = UpdateScheduler(run_pass, lambda: interval_hours, **kw)
        self.addCleanup(s.join, 2.0)
        self.addCleanup(s.stop)
        return s

    def test_passes_never_overlap(self):
        lock = threading.Lock()
        state = {"running": 0, "max": 0, "runs": 0}
        done = threading.Event()

        def run_pass():
            with lock:
                state["running"] += 1
                state["max"] = max(state["max"], state["running"])
            time.sleep(0.05)
            with lock:
                state["running"] -= 1
                state["runs"] += 1
                if state["runs"] >= 4:
                    done.set()

        s = self._scheduler(run_pass, min_period=0.01, max_period=0.02)
        s.start()
        for _ in range(3):
            s.trigger()

        self.assertTrue(done.wait(5.0))
        self.assertEqual(state["max"], 1)

    def test_stop_ends_both_loops(self):
        s = self._scheduler(lambda: None, min_period=0.01, max_period=0.05)
        s.start()
        self.assertTrue(s.running)
        s.stop()
        s.join(2.0)
        self.assertFalse(any(t.is_alive() for t in s._threads))
        self.assertFalse(s.running)
        self.assertFalse(s.trigger())

    def test_zero_interval_disables_timer(self):
        calls = []
        s = self._scheduler(lambda: calls.append(1), interval_hours=0, min_period=0.01, max_period=30)
        s.start()
        time.sleep(0.3)
        self.assertEqual(calls, [])

        # Manual triggers still run a pass.
        ran = threading.Event()
        s._run_pass = ran.set
        s.trigger()
        self.assertTrue(ran.wait(2.0))

    def test_timer_backoff_grows(self):
        ticks = []
        s = self._scheduler(lambda: ticks.append(time.monotonic()), min_period=0.05, max_period=0.4)
        s.start()
        time.sleep(1.0)
        s.stop()
        # 0 s, then 0.05, 0.1, 0.2, 0.4 s apart: a fixed 0.05 s timer would tick ~20 times.
        self.assertGreaterEqual(len(ticks), 3)
        self.assertLessEqual(len(ticks), 7)

    def test_failing_pass_does_not_kill_consumer(self):
        calls = []
        ok = threading.Event()

        def run_pass():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            ok.set()

        s = self._scheduler(run_pass, interval_hours=0, max_period=30)
        s.start()
        s.trigger()
        s.trigger()
        self.assertTrue(ok.wait(2.0))


if __name__ == '__main__':
    unittest.main()
