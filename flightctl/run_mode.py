"""
run_mode.py

Run orchestrator: pairs vehicles with plans, spawns one worker task per
pair and drives the render/quit loop until the operator quits.

    orchestrator = RunOrchestrator(link, sinks=[kafka_sink], manager=manager)
    result = await run_app(orchestrator, pairs, config, dashboard=dashboard)
"""

import sys
import signal
import asyncio
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import uvicorn

from flightctl.api_server import create_app
from flightctl.config import FlightctlConfig
from flightctl.errors import (
    FleetMismatchError,
    PlanFileError,
    PlanFormatError,
    VehicleConnectionError,
    VehicleFaultError,
)
from flightctl.manager import ConnectionManager
from flightctl.sinks import CompositeSink, EventSink, SharedStateSink, dispatch_event
from flightctl.state import RunSnapshot, SharedRunState, Worker, WorkerStatus
from flightctl.vehicle import CompleteEvent, ConnectionHandle, VehicleLink

logger = logging.getLogger(__name__)

# Failures that end one worker without touching the others
WORKER_ERRORS = (VehicleConnectionError, VehicleFaultError, PlanFileError, PlanFormatError)

Pair = Tuple[str, str]


def validate_pairs(vehicles: Sequence[str], plans: Sequence[str]) -> List[Pair]:
    """Zip vehicles with plans by position; counts must match"""
    if len(vehicles) != len(plans):
        raise FleetMismatchError(len(vehicles), len(plans))
    return list(zip(vehicles, plans))


def make_workers(pairs: Sequence[Pair]) -> List[Worker]:
    return [Worker(id=i, endpoint=endpoint, plan_path=str(plan))
            for i, (endpoint, plan) in enumerate(pairs)]


@dataclass
class WorkerOutcome:
    worker: Worker
    status: WorkerStatus
    error: Optional[BaseException] = None


@dataclass
class RunResult:
    """Per-worker outcomes of one run"""
    outcomes: List[WorkerOutcome]
    snapshot: Optional[RunSnapshot] = None
    quit_requested: bool = False

    @property
    def failed(self) -> List[WorkerOutcome]:
        return [o for o in self.outcomes if o.status != WorkerStatus.COMPLETE]

    @property
    def ok(self) -> bool:
        return not self.failed


# ============================================================================
# QUIT SIGNAL
# ============================================================================

class QuitSignal:
    """
    Cooperative quit flag polled by the render loop once per tick.

    Set by SIGINT/SIGTERM, by a 'q' line on an interactive stdin, or
    directly through set().
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self):
        self._event = threading.Event()
        self._loop = None

    def set(self):
        if not self._event.is_set():
            logger.info("Quit requested, waiting for workers to finish")
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def install(self, loop: asyncio.AbstractEventLoop, watch_stdin: bool = False):
        self._loop = loop
        for sig in self.SIGNALS:
            try:
                loop.add_signal_handler(sig, self.set)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig!r} not supported on this platform")
        if watch_stdin and sys.stdin.isatty():
            threading.Thread(target=self._watch_stdin, name="quit-watcher", daemon=True).start()

    def uninstall(self):
        if self._loop is None:
            return
        for sig in self.SIGNALS:
            try:
                self._loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass
        self._loop = None

    def _watch_stdin(self):
        for line in sys.stdin:
            if line.strip().lower() == "q":
                self.set()
                return


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class RunOrchestrator:
    """Spawns and supervises one worker per (vehicle, plan) pair"""

    def __init__(self, link: VehicleLink, sinks: Sequence[EventSink] = (),
                 manager: Optional[ConnectionManager] = None):
        self.link = link
        self.sinks = list(sinks)
        self.manager = manager

    def start_workers(self, state: SharedRunState, pairs: Sequence[Pair]) -> List[asyncio.Task]:
        """
        Spawn one task per pair. Worker ids are the pair index and index
        the state's per-worker slots.
        """
        if len(pairs) != len(state):
            raise ValueError(f"Run state sized for {len(state)} workers, got {len(pairs)} pairs")

        sink = CompositeSink([SharedStateSink(state)] + self.sinks)
        tasks = []
        for worker in make_workers(pairs):
            task = asyncio.create_task(self._run_worker(worker, sink), name=f"worker-{worker.id}")
            tasks.append(task)
        logger.info(f"Started {len(tasks)} workers")
        return tasks

    async def _open(self, endpoint: str) -> ConnectionHandle:
        if self.manager is not None:
            target = self.manager.find(endpoint)
            if target is not None:
                try:
                    handle = target.connection.acquire()
                    logger.debug(f"Reusing target {target.id} connection for {endpoint}")
                    return handle
                except VehicleConnectionError:
                    logger.debug(f"Target {target.id} connection closed, redialing {endpoint}")
        return await self.link.connect(endpoint)

    async def _run_worker(self, worker: Worker, sink: EventSink) -> WorkerOutcome:
        sink.on_started(worker)
        handle = None
        try:
            path = Path(worker.plan_path)
            if not path.is_file():
                raise PlanFileError(worker.plan_path)

            handle = await self._open(worker.endpoint)
            completed = False
            async for event in self.link.upload_and_run(handle, path):
                dispatch_event(sink, worker, event)
                completed = completed or isinstance(event, CompleteEvent)
            if not completed:
                raise VehicleFaultError("Mission stream ended before completion")

        except WORKER_ERRORS as e:
            logger.error(f"✗ Worker {worker.id} ({worker.endpoint}) failed: {e}")
            if self.manager is not None and isinstance(e, VehicleFaultError):
                self.manager.mark_failed(worker.endpoint)
            sink.on_failed(worker, e)
            return WorkerOutcome(worker, WorkerStatus.FAILED, e)
        except Exception as e:
            logger.exception(f"✗ Worker {worker.id} ({worker.endpoint}) crashed")
            sink.on_failed(worker, e)
            return WorkerOutcome(worker, WorkerStatus.FAILED, e)
        finally:
            if handle is not None:
                handle.release()

        logger.info(f"✓ Worker {worker.id} ({worker.endpoint}) complete")
        return WorkerOutcome(worker, WorkerStatus.COMPLETE)


# ============================================================================
# RUN LOOP
# ============================================================================

def _api_server(state: SharedRunState, config: FlightctlConfig):
    return uvicorn.Server(uvicorn.Config(
        create_app(state),
        host=config.api_host,
        port=config.api_port,
        log_level="warning",
    ))


async def run_app(orchestrator: RunOrchestrator, pairs: Sequence[Pair],
                  config: Optional[FlightctlConfig] = None,
                  quit_signal: Optional[QuitSignal] = None,
                  dashboard=None,
                  exit_on_complete: bool = False) -> RunResult:
    """
    Run every pair to completion.

    Draws the dashboard once per tick and polls the quit flag; on quit, or
    once every worker has finished when exit_on_complete is set, joins all
    outstanding workers and returns their outcomes.
    """
    config = config or FlightctlConfig()
    quit_signal = quit_signal or QuitSignal()

    state = SharedRunState(make_workers(pairs))
    tasks = orchestrator.start_workers(state, pairs)

    server, server_task = None, None
    if config.api_port is not None:
        server = _api_server(state, config)
        # off the main thread so uvicorn leaves signal handling to the run loop
        server_task = asyncio.create_task(asyncio.to_thread(server.run))
        logger.info(f"Status API on http://{config.api_host}:{config.api_port}")

    while True:
        if dashboard is not None:
            dashboard.draw(state.snapshot())
        if quit_signal.is_set():
            break
        if exit_on_complete and all(t.done() for t in tasks):
            break
        await asyncio.sleep(config.tick_rate)

    results = await asyncio.gather(*tasks, return_exceptions=True)
    outcomes = []
    for worker, result in zip(make_workers(pairs), results):
        if isinstance(result, BaseException):
            logger.error(f"✗ Worker {worker.id} crashed: {result!r}")
            state.set_status(worker.id, WorkerStatus.FAILED)
            outcomes.append(WorkerOutcome(worker, WorkerStatus.FAILED, result))
        else:
            outcomes.append(result)

    snapshot = state.snapshot()
    if dashboard is not None:
        dashboard.draw(snapshot)

    if server is not None:
        server.should_exit = True
        await server_task

    return RunResult(outcomes=outcomes, snapshot=snapshot, quit_requested=quit_signal.is_set())
