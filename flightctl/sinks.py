"""
sinks.py

Event sinks receive the per-worker vehicle event stream. The run
orchestrator dispatches every event it reads to one sink, which may fan out
to several (dashboard state, Kafka, test recorder).
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, List, Tuple

from flightctl.state import SharedRunState, Worker, WorkerStatus, progress_ratio
from flightctl.vehicle import CompleteEvent, LogEvent, PositionEvent, ProgressEvent, VehicleEvent

logger = logging.getLogger(__name__)


class EventSink(ABC):
    """Receiver for one run's worker events"""

    def on_started(self, worker: Worker):
        pass

    @abstractmethod
    def on_position(self, worker: Worker, lat: float, lon: float, alt: float):
        ...

    @abstractmethod
    def on_progress(self, worker: Worker, current: int, total: int):
        ...

    @abstractmethod
    def on_log(self, worker: Worker, message: str):
        ...

    @abstractmethod
    def on_complete(self, worker: Worker):
        ...

    def on_failed(self, worker: Worker, error: BaseException):
        pass


def dispatch_event(sink: EventSink, worker: Worker, event: VehicleEvent):
    """Route a vehicle event to the matching sink callback"""
    if isinstance(event, PositionEvent):
        sink.on_position(worker, event.lat, event.lon, event.alt)
    elif isinstance(event, ProgressEvent):
        sink.on_progress(worker, event.current, event.total)
    elif isinstance(event, LogEvent):
        sink.on_log(worker, event.message)
    elif isinstance(event, CompleteEvent):
        sink.on_complete(worker)
    else:
        raise TypeError(f"Unknown vehicle event {event!r}")


class SharedStateSink(EventSink):
    """Writes events into the shared run state read by the dashboard"""

    def __init__(self, state: SharedRunState):
        self.state = state

    def on_started(self, worker: Worker):
        self.state.set_status(worker.id, WorkerStatus.RUNNING)

    def on_position(self, worker: Worker, lat: float, lon: float, alt: float):
        self.state.set_position(worker.id, lat, lon, alt)

    def on_progress(self, worker: Worker, current: int, total: int):
        self.state.set_progress(worker.id, progress_ratio(current, total))

    def on_log(self, worker: Worker, message: str):
        self.state.append_log(worker.id, message)

    def on_complete(self, worker: Worker):
        self.state.set_status(worker.id, WorkerStatus.COMPLETE)
        self.state.append_log(worker.id, f"Worker {worker.id} done, exiting")

    def on_failed(self, worker: Worker, error: BaseException):
        self.state.set_status(worker.id, WorkerStatus.FAILED)
        self.state.append_log(worker.id, f"Worker {worker.id} failed: {error}")


class RecordingSink(EventSink):
    """Keeps every callback as (worker_id, kind, payload), for tests and replays"""

    def __init__(self):
        self.events: List[Tuple[int, str, Any]] = []
        self._lock = threading.Lock()

    def _record(self, worker: Worker, kind: str, payload: Any = None):
        with self._lock:
            self.events.append((worker.id, kind, payload))

    def on_started(self, worker: Worker):
        self._record(worker, "started")

    def on_position(self, worker: Worker, lat: float, lon: float, alt: float):
        self._record(worker, "position", (lat, lon, alt))

    def on_progress(self, worker: Worker, current: int, total: int):
        self._record(worker, "progress", (current, total))

    def on_log(self, worker: Worker, message: str):
        self._record(worker, "log", message)

    def on_complete(self, worker: Worker):
        self._record(worker, "complete")

    def on_failed(self, worker: Worker, error: BaseException):
        self._record(worker, "failed", error)

    def of_kind(self, kind: str, worker_id: int = None) -> List[Any]:
        with self._lock:
            return [p for w, k, p in self.events
                    if k == kind and (worker_id is None or w == worker_id)]


class CompositeSink(EventSink):
    """Forwards every callback to each child sink in order"""

    def __init__(self, sinks: List[EventSink]):
        self.sinks = list(sinks)

    def on_started(self, worker: Worker):
        for sink in self.sinks:
            sink.on_started(worker)

    def on_position(self, worker: Worker, lat: float, lon: float, alt: float):
        for sink in self.sinks:
            sink.on_position(worker, lat, lon, alt)

    def on_progress(self, worker: Worker, current: int, total: int):
        for sink in self.sinks:
            sink.on_progress(worker, current, total)

    def on_log(self, worker: Worker, message: str):
        for sink in self.sinks:
            sink.on_log(worker, message)

    def on_complete(self, worker: Worker):
        for sink in self.sinks:
            sink.on_complete(worker)

    def on_failed(self, worker: Worker, error: BaseException):
        for sink in self.sinks:
            sink.on_failed(worker, error)
