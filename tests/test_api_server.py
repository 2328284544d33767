"""
Tests for the run status API.
"""

import unittest

from fastapi.testclient import TestClient

from flightctl.api_server import create_app
from flightctl.state import SharedRunState, Worker, WorkerStatus


class TestStatusAPI(unittest.TestCase):
    """Test the status API routes."""

    def setUp(self):
        self.state = SharedRunState([
            Worker(0, "udp://:14540", "plans/plan_0.plan"),
            Worker(1, "udp://:14541", "plans/plan_1.plan"),
        ])
        self.state.set_progress(1, 0.5)
        self.state.set_status(1, WorkerStatus.RUNNING)
        self.state.set_position(1, 47.0, 8.0, 20.0)
        self.state.append_log(1, "Starting Mission")
        self.client = TestClient(create_app(self.state))

    def test_root(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["workers"], 2)

    def test_health(self):
        data = self.client.get("/health").json()
        self.assertEqual(data["status"], "healthy")
        self.assertFalse(data["finished"])

    def test_run_state(self):
        data = self.client.get("/api/run/state").json()
        self.assertEqual(len(data["workers"]), 2)
        self.assertEqual(data["workers"][1]["progress"], 0.5)
        self.assertEqual(data["workers"][1]["status"], "running")
        self.assertEqual(data["logs"][-1], {"worker_id": 1, "message": "Starting Mission"})

    def test_worker(self):
        data = self.client.get("/api/run/workers/1").json()
        self.assertEqual(data["endpoint"], "udp://:14541")
        self.assertEqual(data["location"], {"lat": 47.0, "lon": 8.0, "alt": 20.0})

        data = self.client.get("/api/run/workers/0").json()
        self.assertIsNone(data["location"])
        self.assertEqual(data["status"], "pending")

    def test_unknown_worker(self):
        self.assertEqual(self.client.get("/api/run/workers/2").status_code, 404)
        self.assertEqual(self.client.get("/api/run/workers/-1").status_code, 404)

    def test_logs_limit(self):
        data = self.client.get("/api/run/logs", params={"limit": 1}).json()
        self.assertEqual(data, [{"worker_id": 1, "message": "Starting Mission"}])

        data = self.client.get("/api/run/logs").json()
        self.assertEqual(len(data), 2)

        self.assertEqual(self.client.get("/api/run/logs", params={"limit": 0}).status_code, 422)

    def test_websocket_pushes_state(self):
        with self.client.websocket_connect("/ws") as websocket:
            data = websocket.receive_json()
        self.assertEqual(data["type"], "run_update")
        self.assertEqual(data["workers"][1]["progress"], 0.5)


if __name__ == "__main__":
    unittest.main()
