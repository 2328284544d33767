"""
Tests for shared run state.
"""

import json
import threading
import unittest

from flightctl.state import ReadWriteLock, SharedRunState, Worker, WorkerStatus, progress_ratio


def workers(count):
    return [Worker(i, f"sim://{i}", f"plan_{i}.plan") for i in range(count)]


class TestProgressRatio(unittest.TestCase):
    """Test progress_ratio."""

    def test_zero_total(self):
        self.assertEqual(progress_ratio(0, 0), 0.0)
        self.assertEqual(progress_ratio(3, 0), 0.0)
        self.assertEqual(progress_ratio(1, -2), 0.0)

    def test_ratio(self):
        self.assertEqual(progress_ratio(1, 4), 0.25)
        self.assertEqual(progress_ratio(4, 4), 1.0)

    def test_clamped(self):
        self.assertEqual(progress_ratio(5, 4), 1.0)
        self.assertEqual(progress_ratio(-1, 4), 0.0)


class TestSharedRunState(unittest.TestCase):
    """Test SharedRunState."""

    def setUp(self):
        self.state = SharedRunState(workers(3))

    def test_sized_to_workers(self):
        snapshot = self.state.snapshot()
        self.assertEqual(len(self.state), 3)
        self.assertEqual(snapshot.progress, [0.0, 0.0, 0.0])
        self.assertEqual(snapshot.positions, [None, None, None])
        self.assertEqual(snapshot.statuses, [WorkerStatus.PENDING] * 3)
        self.assertEqual(snapshot.logs, [(0, "Loading vehicle links")])

    def test_updates(self):
        self.state.set_progress(1, 0.5)
        self.state.set_position(2, 47.0, 8.0, 20.0)
        self.state.set_status(0, WorkerStatus.RUNNING)
        self.state.append_log(2, "Starting Mission")

        snapshot = self.state.snapshot()
        self.assertEqual(snapshot.progress, [0.0, 0.5, 0.0])
        self.assertEqual(snapshot.positions[2], (47.0, 8.0, 20.0))
        self.assertEqual(snapshot.statuses[0], WorkerStatus.RUNNING)
        self.assertEqual(snapshot.logs[-1], (2, "Starting Mission"))

    def test_unknown_worker(self):
        with self.assertRaises(IndexError):
            self.state.set_progress(3, 0.5)
        with self.assertRaises(IndexError):
            self.state.set_status(-1, WorkerStatus.FAILED)

    def test_snapshot_is_a_copy(self):
        snapshot = self.state.snapshot()
        self.state.set_progress(0, 1.0)
        self.state.append_log(0, "later")
        self.assertEqual(snapshot.progress[0], 0.0)
        self.assertEqual(len(snapshot.logs), 1)

    def test_finished(self):
        self.assertFalse(self.state.snapshot().finished)
        self.state.set_status(0, WorkerStatus.COMPLETE)
        self.state.set_status(1, WorkerStatus.FAILED)
        self.state.set_status(2, WorkerStatus.COMPLETE)
        self.assertTrue(self.state.snapshot().finished)

    def test_no_initial_log(self):
        self.assertEqual(SharedRunState(workers(1), initial_log=None).snapshot().logs, [])

    def test_to_dict_is_json(self):
        self.state.set_position(0, 1.0, 2.0, 3.0)
        data = self.state.snapshot().to_dict()
        self.assertEqual(data["workers"][1]["endpoint"], "sim://1")
        self.assertEqual(data["positions"][0], [1.0, 2.0, 3.0])
        json.dumps(data)

    def test_concurrent_writers(self):
        state = SharedRunState(workers(4), initial_log=None)

        def worker(worker_id):
            for i in range(200):
                state.append_log(worker_id, str(i))
                state.set_progress(worker_id, i / 199)
                state.snapshot()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = state.snapshot()
        self.assertEqual(len(snapshot.logs), 800)
        self.assertEqual(snapshot.progress, [1.0] * 4)
        for worker_id in range(4):
            own = [int(m) for w, m in snapshot.logs if w == worker_id]
            self.assertEqual(own, list(range(200)))


class TestReadWriteLock(unittest.TestCase):
    """Test ReadWriteLock."""

    def test_readers_share(self):
        lock = ReadWriteLock()
        with lock.read_locked():
            entered = threading.Event()

            def reader():
                with lock.read_locked():
                    entered.set()

            t = threading.Thread(target=reader)
            t.start()
            self.assertTrue(entered.wait(1.0))
            t.join()

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        entered = threading.Event()

        def reader():
            with lock.read_locked():
                entered.set()

        with lock.write_locked():
            t = threading.Thread(target=reader)
            t.start()
            self.assertFalse(entered.wait(0.1))
        t.join(1.0)
        self.assertTrue(entered.is_set())


if __name__ == "__main__":
    unittest.main()
