"""
Tests for the run orchestrator.
"""

import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from flightctl.config import FlightctlConfig
from flightctl.errors import FleetMismatchError, PlanFileError, VehicleConnectionError, VehicleFaultError
from flightctl.generate import SquareMission
from flightctl.manager import ConnectionManager, TargetStatus
from flightctl.run_mode import QuitSignal, RunOrchestrator, run_app, validate_pairs
from flightctl.sinks import RecordingSink
from flightctl.state import SharedRunState, Worker, WorkerStatus
from flightctl.vehicle import SimulatedVehicleLink

FAST = FlightctlConfig(tick_rate_ms=5)


class TestValidatePairs(unittest.TestCase):
    """Test pairing vehicles with plans."""

    def test_pairs_by_position(self):
        self.assertEqual(
            validate_pairs(["sim://0", "sim://1"], ["a.plan", "b.plan"]),
            [("sim://0", "a.plan"), ("sim://1", "b.plan")]
        )

    def test_mismatch(self):
        with self.assertRaises(FleetMismatchError) as ctx:
            validate_pairs(["sim://0", "sim://1"], ["a.plan"])
        self.assertEqual((ctx.exception.vehicles, ctx.exception.plans), (2, 1))


class TestRunApp(unittest.IsolatedAsyncioTestCase):
    """Test run_app with simulated vehicles."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        mission = SquareMission(width=10, start_lat=47.0, start_lon=8.0, target_lat=47.001,
                                target_lon=8.001, target_alt=20, hold_sec=1)
        self.plans = [str(p) for p in mission.write_mission_to_disk(self.tmpdir.name)]
        self.vehicles = [f"sim://{i}" for i in range(4)]
        self.pairs = validate_pairs(self.vehicles, self.plans)

    def tearDown(self):
        self.tmpdir.cleanup()

    async def test_all_complete(self):
        recorder = RecordingSink()
        orchestrator = RunOrchestrator(SimulatedVehicleLink(), sinks=[recorder])

        result = await run_app(orchestrator, self.pairs, FAST, exit_on_complete=True)

        self.assertTrue(result.ok)
        self.assertEqual([o.worker.id for o in result.outcomes], [0, 1, 2, 3])
        self.assertEqual(result.snapshot.progress, [1.0] * 4)
        self.assertEqual(result.snapshot.statuses, [WorkerStatus.COMPLETE] * 4)
        self.assertEqual(sorted({w for w, _, _ in recorder.events}), [0, 1, 2, 3])
        for worker_id in range(4):
            self.assertEqual(recorder.of_kind("progress", worker_id)[-1], (4, 4))
            self.assertEqual(len(recorder.of_kind("complete", worker_id)), 1)

    async def test_missing_plan_fails_only_its_pair(self):
        pairs = list(self.pairs)
        pairs[1] = ("sim://1", str(Path(self.tmpdir.name) / "missing.plan"))
        orchestrator = RunOrchestrator(SimulatedVehicleLink())

        result = await run_app(orchestrator, pairs, FAST, exit_on_complete=True)

        self.assertEqual([o.worker.id for o in result.failed], [1])
        self.assertIsInstance(result.failed[0].error, PlanFileError)
        self.assertEqual(result.snapshot.statuses[1], WorkerStatus.FAILED)
        self.assertEqual(result.snapshot.progress[0], 1.0)

    async def test_plan_path_is_directory(self):
        pairs = [("sim://0", self.tmpdir.name)]
        result = await run_app(RunOrchestrator(SimulatedVehicleLink()), pairs, FAST, exit_on_complete=True)
        self.assertIsInstance(result.outcomes[0].error, PlanFileError)

    async def test_fault_fails_only_its_worker(self):
        link = SimulatedVehicleLink(faults={"sim://2": 1})
        result = await run_app(RunOrchestrator(link), self.pairs, FAST, exit_on_complete=True)

        self.assertEqual([o.worker.id for o in result.failed], [2])
        self.assertIsInstance(result.failed[0].error, VehicleFaultError)
        self.assertEqual(result.snapshot.progress[2], 0.25)
        self.assertIn((2, "Worker 2 failed: Simulated fault at item 1"), result.snapshot.logs)
        self.assertEqual(result.snapshot.statuses.count(WorkerStatus.COMPLETE), 3)

    async def test_unreachable_vehicle(self):
        link = SimulatedVehicleLink(unreachable=["sim://3"])
        result = await run_app(RunOrchestrator(link), self.pairs, FAST, exit_on_complete=True)
        self.assertEqual([o.worker.id for o in result.failed], [3])
        self.assertIsInstance(result.failed[0].error, VehicleConnectionError)

    async def test_unexpected_link_error_reported_through_sinks(self):
        link = SimulatedVehicleLink()
        recorder = RecordingSink()
        dial = link.connect

        async def connect(endpoint):
            if endpoint == "sim://1":
                raise ValueError("invalid literal for int() with base 10: 'notaport'")
            return await dial(endpoint)

        with mock.patch.object(link, "connect", side_effect=connect):
            with self.assertLogs("flightctl.run_mode", level="ERROR"):
                result = await run_app(RunOrchestrator(link, sinks=[recorder]), self.pairs, FAST,
                                       exit_on_complete=True)

        self.assertEqual([o.worker.id for o in result.failed], [1])
        self.assertIsInstance(result.failed[0].error, ValueError)
        self.assertEqual(len(recorder.of_kind("failed", 1)), 1)
        self.assertIn((1, "Worker 1 failed: invalid literal for int() with base 10: 'notaport'"),
                      result.snapshot.logs)
        self.assertEqual(result.snapshot.statuses[1], WorkerStatus.FAILED)
        self.assertEqual(result.snapshot.statuses.count(WorkerStatus.COMPLETE), 3)

    async def test_quit_drains_workers(self):
        quit_signal = QuitSignal()
        quit_signal.set()
        link = SimulatedVehicleLink(step_delay=0.01)

        result = await run_app(RunOrchestrator(link), self.pairs, FAST, quit_signal=quit_signal)

        self.assertTrue(result.quit_requested)
        self.assertTrue(result.ok)
        self.assertEqual(result.snapshot.progress, [1.0] * 4)

    async def test_reuses_manager_connections(self):
        link = SimulatedVehicleLink()
        async with ConnectionManager(link) as manager:
            await manager.add_targets(self.vehicles)
            orchestrator = RunOrchestrator(link, manager=manager)

            result = await run_app(orchestrator, self.pairs, FAST, exit_on_complete=True)

            self.assertTrue(result.ok)
            self.assertEqual(len(link.dial_attempts), 4)
            for target in manager.targets:
                self.assertEqual(target.connection.ref_count, 1)

    async def test_fault_marks_target_failed(self):
        link = SimulatedVehicleLink(faults={"sim://0": 0})
        manager = ConnectionManager(link)
        await manager.add_targets(self.vehicles)

        await run_app(RunOrchestrator(link, manager=manager), self.pairs, FAST, exit_on_complete=True)

        statuses = {t.endpoint: t.status for t in manager.targets}
        self.assertEqual(statuses["sim://0"], TargetStatus.FAILED)
        self.assertEqual(statuses["sim://1"], TargetStatus.CONNECTED)
        manager.close()

    async def test_redials_closed_target(self):
        link = SimulatedVehicleLink()
        manager = ConnectionManager(link)
        target = await manager.add_target("sim://0")
        target.connection.release()

        result = await run_app(RunOrchestrator(link, manager=manager), self.pairs[:1], FAST,
                               exit_on_complete=True)

        self.assertTrue(result.ok)
        self.assertEqual(link.dial_attempts, ["sim://0", "sim://0"])

    async def test_dashboard_drawn_each_tick(self):
        dashboard = mock.Mock()
        link = SimulatedVehicleLink(step_delay=0.01)

        await run_app(RunOrchestrator(link), self.pairs, FAST, dashboard=dashboard, exit_on_complete=True)

        self.assertGreaterEqual(dashboard.draw.call_count, 2)
        final = dashboard.draw.call_args.args[0]
        self.assertTrue(final.finished)

    async def test_start_workers_size_mismatch(self):
        state = SharedRunState([Worker(0, "sim://0", self.plans[0])])
        with self.assertRaises(ValueError):
            RunOrchestrator(SimulatedVehicleLink()).start_workers(state, self.pairs)


class TestQuitSignal(unittest.IsolatedAsyncioTestCase):
    """Test QuitSignal."""

    async def test_set(self):
        quit_signal = QuitSignal()
        self.assertFalse(quit_signal.is_set())
        quit_signal.set()
        quit_signal.set()
        self.assertTrue(quit_signal.is_set())

    async def test_install_and_uninstall(self):
        quit_signal = QuitSignal()
        loop = asyncio.get_running_loop()
        with mock.patch.object(loop, "add_signal_handler") as add, \
                mock.patch.object(loop, "remove_signal_handler") as remove:
            quit_signal.install(loop)
            quit_signal.uninstall()
        self.assertEqual(add.call_count, 2)
        self.assertEqual(remove.call_count, 2)


if __name__ == "__main__":
    unittest.main()
