"""
state.py

Shared run state. Workers write their own progress slot and append to the
log; the render loop reads a snapshot once per tick. All access goes
through one reader-writer lock covering the whole structure.
"""

import json
import threading
import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)


def progress_ratio(current: int, total: int) -> float:
    """current / total clamped to [0, 1]; a zero or negative total is 0.0"""
    if total <= 0:
        return 0.0
    return min(max(current / total, 0.0), 1.0)


class ReadWriteLock:
    """Many concurrent readers or one writer. Writers are preferred."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read_locked(self):
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self):
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class WorkerStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class Worker:
    id: int
    endpoint: str
    plan_path: str


@dataclass
class RunSnapshot:
    """Copy of the shared state taken under the read lock"""
    workers: List[Worker]
    progress: List[float]
    logs: List[Tuple[int, str]]
    positions: List[Optional[Tuple[float, float, float]]]
    statuses: List[WorkerStatus]

    @property
    def finished(self) -> bool:
        return all(s in (WorkerStatus.COMPLETE, WorkerStatus.FAILED) for s in self.statuses)

    def to_dict(self) -> dict:
        return json.loads(json.dumps(asdict(self), default=str))


class SharedRunState:
    """
    Progress and log state of one run.

    The progress vector is sized once, at construction, to the number of
    workers; worker ids index every per-worker list.
    """

    def __init__(self, workers: List[Worker], initial_log: Optional[str] = "Loading vehicle links"):
        self._lock = ReadWriteLock()
        self.workers = list(workers)
        count = len(self.workers)
        self.progress: List[float] = [0.0] * count
        self.logs: List[Tuple[int, str]] = []
        self.positions: List[Optional[Tuple[float, float, float]]] = [None] * count
        self.statuses: List[WorkerStatus] = [WorkerStatus.PENDING] * count
        if initial_log:
            self.logs.append((0, initial_log))
        logger.debug(f"Run state created for {count} workers")

    def __len__(self):
        return len(self.progress)

    def _check_id(self, worker_id: int):
        if not 0 <= worker_id < len(self.progress):
            raise IndexError(f"Unknown worker id {worker_id}")

    def set_progress(self, worker_id: int, ratio: float):
        self._check_id(worker_id)
        with self._lock.write_locked():
            self.progress[worker_id] = ratio

    def append_log(self, worker_id: int, message: str):
        with self._lock.write_locked():
            self.logs.append((worker_id, message))

    def set_position(self, worker_id: int, lat: float, lon: float, alt: float):
        self._check_id(worker_id)
        with self._lock.write_locked():
            self.positions[worker_id] = (lat, lon, alt)

    def set_status(self, worker_id: int, status: WorkerStatus):
        self._check_id(worker_id)
        with self._lock.write_locked():
            self.statuses[worker_id] = status

    def snapshot(self) -> RunSnapshot:
        with self._lock.read_locked():
            return RunSnapshot(
                workers=list(self.workers),
                progress=list(self.progress),
                logs=list(self.logs),
                positions=list(self.positions),
                statuses=list(self.statuses),
            )
