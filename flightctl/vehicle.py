"""
vehicle.py

Vehicle capability boundary. A VehicleLink dials an endpoint and runs a
.plan file on it, reporting back through a typed async event stream:

    handle = await link.connect("udp://:14540")
    async for event in link.upload_and_run(handle, "plans/plan_0.plan"):
        ...

MavlinkVehicleLink talks MAVLink to PX4/ArduPilot through pymavlink.
SimulatedVehicleLink flies plans in memory for tests and dry runs.
"""

import re
import time
import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple, Union

from pymavlink import mavutil

from flightctl.config import FlightctlConfig
from flightctl.errors import VehicleConnectionError, VehicleFaultError
from flightctl.plan import MAV_FRAME_MISSION, PlanItem, load_plan

logger = logging.getLogger(__name__)

# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True)
class PositionEvent:
    lat: float
    lon: float
    alt: float


@dataclass(frozen=True)
class ProgressEvent:
    current: int
    total: int


@dataclass(frozen=True)
class LogEvent:
    message: str


@dataclass(frozen=True)
class CompleteEvent:
    pass


VehicleEvent = Union[PositionEvent, ProgressEvent, LogEvent, CompleteEvent]

# ============================================================================
# CONNECTION HANDLE
# ============================================================================

class ConnectionHandle:
    """
    Reference counted handle on a live vehicle connection.

    The creator holds the first reference. Every additional holder calls
    acquire() and later release(); the connection is closed when the last
    reference is released.
    """

    def __init__(self, endpoint: str, connection: Any,
                 closer: Optional[Callable[[Any], None]] = None):
        self.endpoint = endpoint
        self.connection = connection
        self._closer = closer
        self._refs = 1
        self._lock = threading.Lock()

    @property
    def ref_count(self) -> int:
        with self._lock:
            return self._refs

    @property
    def closed(self) -> bool:
        return self.ref_count == 0

    def acquire(self) -> "ConnectionHandle":
        with self._lock:
            if self._refs == 0:
                raise VehicleConnectionError(self.endpoint, "connection already closed")
            self._refs += 1
        return self

    def release(self):
        with self._lock:
            if self._refs == 0:
                return
            self._refs -= 1
            last = self._refs == 0
        if last:
            logger.debug(f"Closing connection to {self.endpoint}")
            if self._closer:
                self._closer(self.connection)

    def __repr__(self):
        return f"ConnectionHandle({self.endpoint!r}, refs={self.ref_count})"


# ============================================================================
# CAPABILITY INTERFACE
# ============================================================================

class VehicleLink(ABC):
    """Capability boundary to the vehicle flight-control subsystem"""

    @abstractmethod
    async def connect(self, endpoint: str) -> ConnectionHandle:
        """Dial an endpoint, raising VehicleConnectionError on failure"""

    @abstractmethod
    def upload_and_run(self, handle: ConnectionHandle, plan_path) -> AsyncIterator[VehicleEvent]:
        """
        Upload a plan and fly it.

        Yields position, progress and log events and finally one
        CompleteEvent. Raises VehicleFaultError if the vehicle reports an
        unrecoverable fault.
        """


# ============================================================================
# MAVLINK IMPLEMENTATION
# ============================================================================

_ENDPOINT_RE = re.compile(r"^(?P<scheme>[a-z]+)://(?P<rest>.*)$")


def to_mavlink_url(endpoint: str) -> Tuple[str, Optional[int]]:
    """
    Translate a MAVSDK style endpoint URI to a pymavlink device string.

    udp://:14540          -> udpin:0.0.0.0:14540
    udp://10.0.0.2:14540  -> udpin:10.0.0.2:14540
    udpout://host:14550   -> udpout:host:14550
    tcp://host:5760       -> tcp:host:5760
    serial:///dev/ttyUSB0:57600 -> /dev/ttyUSB0 at 57600 baud

    Strings already in pymavlink form pass through unchanged.
    Returns (device, baud) where baud is None for network links.
    """
    match = _ENDPOINT_RE.match(endpoint)
    if not match:
        return endpoint, None

    scheme, rest = match.group("scheme"), match.group("rest")
    if scheme in ("udp", "udpin"):
        host, _, port = rest.rpartition(":")
        return f"udpin:{host or '0.0.0.0'}:{port}", None
    if scheme == "udpout":
        return f"udpout:{rest}", None
    if scheme == "tcp":
        return f"tcp:{rest}", None
    if scheme == "serial":
        device, sep, baud = rest.rpartition(":")
        if sep and baud.isdigit():
            return device, int(baud)
        return rest, None
    raise VehicleConnectionError(endpoint, f"unsupported scheme '{scheme}'")


_DONE = object()


class MavlinkVehicleLink(VehicleLink):
    """
    VehicleLink over MAVLink using pymavlink.

    pymavlink is blocking, so dialing and mission execution run in worker
    threads; events are handed back to the event loop thread-safely.
    """

    def __init__(self, config: Optional[FlightctlConfig] = None):
        self.config = config or FlightctlConfig()

    async def connect(self, endpoint: str) -> ConnectionHandle:
        return await asyncio.to_thread(self._dial, endpoint)

    def _dial(self, endpoint: str) -> ConnectionHandle:
        device, baud = to_mavlink_url(endpoint)
        logger.info(f"Connecting to {endpoint} ({device})")

        kwargs = {
            "source_system": self.config.source_system,
            "source_component": self.config.source_component,
        }
        if baud:
            kwargs["baud"] = baud

        try:
            conn = mavutil.mavlink_connection(device, **kwargs)
        except (OSError, ValueError) as e:
            raise VehicleConnectionError(endpoint, str(e)) from e

        heartbeat = conn.wait_heartbeat(timeout=self.config.connect_timeout_seconds)
        if not heartbeat:
            conn.close()
            raise VehicleConnectionError(endpoint, "no autopilot found")

        logger.info(
            f"✓ Heartbeat from system {conn.target_system} on {endpoint} "
            f"(autopilot={heartbeat.autopilot}, type={heartbeat.type})"
        )
        return ConnectionHandle(endpoint, conn, closer=lambda c: c.close())

    async def upload_and_run(self, handle: ConnectionHandle, plan_path) -> AsyncIterator[VehicleEvent]:
        plan = load_plan(plan_path)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def emit(event: VehicleEvent):
            loop.call_soon_threadsafe(queue.put_nowait, event)

        task = asyncio.ensure_future(
            asyncio.to_thread(self._execute, handle.connection, plan.mission.items, emit)
        )
        task.add_done_callback(lambda _: queue.put_nowait(_DONE))

        while True:
            event = await queue.get()
            if event is _DONE:
                break
            yield event
        # re-raise a fault from the mission thread
        await task

    # --- blocking mission protocol, runs in a worker thread ---

    def _execute(self, conn, items: List[PlanItem], emit: Callable[[VehicleEvent], None]):
        total = len(items)
        if total == 0:
            raise VehicleFaultError("Mission is empty")

        emit(LogEvent("Uploading mission to system"))
        self._upload(conn, items)
        emit(LogEvent("Successfully uploaded mission"))

        emit(LogEvent("Arming system"))
        result = self._command(conn, mavutil.mavlink.MAV_CMD_COMPONENT_ARM_DISARM, 1)
        if result != mavutil.mavlink.MAV_RESULT_ACCEPTED:
            emit(LogEvent(f"Arm Failed: result {result}"))
        else:
            emit(LogEvent("Arming complete"))

        emit(LogEvent("Starting Mission"))
        result = self._command(conn, mavutil.mavlink.MAV_CMD_MISSION_START, 0, total - 1)
        if result != mavutil.mavlink.MAV_RESULT_ACCEPTED:
            raise VehicleFaultError(f"Mission start failed: result {result}")

        self._monitor(conn, total, emit)
        emit(ProgressEvent(total, total))
        emit(CompleteEvent())

    def _upload(self, conn, items: List[PlanItem]):
        """MAVLink mission upload: COUNT, answer each REQUEST, wait for ACK"""
        count = len(items)
        conn.mav.mission_count_send(
            conn.target_system,
            conn.target_component,
            count,
            mavutil.mavlink.MAV_MISSION_TYPE_MISSION
        )

        sent = set()
        while len(sent) < count:
            msg = conn.recv_match(
                type=['MISSION_REQUEST', 'MISSION_REQUEST_INT', 'MISSION_ACK'],
                blocking=True,
                timeout=self.config.ack_timeout_seconds
            )
            if not msg:
                raise VehicleFaultError(f"Timeout waiting for mission request {len(sent)}")
            if msg.get_type() == 'MISSION_ACK':
                raise VehicleFaultError(f"Mission upload rejected: result {msg.type}")
            if msg.seq >= count:
                raise VehicleFaultError(f"Vehicle requested item {msg.seq} of {count}")

            self._send_item(conn, msg.seq, items[msg.seq])
            sent.add(msg.seq)

        ack = conn.recv_match(type='MISSION_ACK', blocking=True,
                              timeout=self.config.ack_timeout_seconds)
        if not ack or ack.type != mavutil.mavlink.MAV_MISSION_ACCEPTED:
            raise VehicleFaultError(
                f"Failed to upload mission to system: {ack.type if ack else 'timeout'}"
            )

    @staticmethod
    def _send_item(conn, seq: int, item: PlanItem):
        p = [float('nan') if v is None else float(v) for v in item.params]
        if item.frame == MAV_FRAME_MISSION:
            x, y = int(p[4]), int(p[5])
        else:
            x, y = int(p[4] * 1e7), int(p[5] * 1e7)

        conn.mav.mission_item_int_send(
            conn.target_system,
            conn.target_component,
            seq,
            item.frame,
            item.command,
            1 if seq == 0 else 0,
            int(item.auto_continue),
            p[0], p[1], p[2], p[3],
            x, y, p[6],
            mavutil.mavlink.MAV_MISSION_TYPE_MISSION
        )

    def _command(self, conn, command: int, *params) -> Optional[int]:
        """Send COMMAND_LONG and return the ACK result, None on timeout"""
        args = list(params) + [0] * (7 - len(params))
        conn.mav.command_long_send(conn.target_system, conn.target_component, command, 0, *args)

        deadline = time.monotonic() + self.config.ack_timeout_seconds
        while time.monotonic() < deadline:
            ack = conn.recv_match(type='COMMAND_ACK', blocking=True, timeout=1)
            if ack and ack.command == command:
                return ack.result
        return None

    def _monitor(self, conn, total: int, emit: Callable[[VehicleEvent], None]):
        """Relay telemetry until the last mission item is reached"""
        last_seq = -1
        last_heard = time.monotonic()

        while True:
            msg = conn.recv_match(
                type=['MISSION_CURRENT', 'MISSION_ITEM_REACHED', 'GLOBAL_POSITION_INT', 'STATUSTEXT'],
                blocking=True,
                timeout=1
            )
            now = time.monotonic()
            if not msg:
                if now - last_heard > self.config.link_loss_timeout_seconds:
                    raise VehicleFaultError("Vehicle link lost during mission")
                continue
            last_heard = now

            msg_type = msg.get_type()
            if msg_type == 'GLOBAL_POSITION_INT':
                emit(PositionEvent(msg.lat / 1e7, msg.lon / 1e7, msg.relative_alt / 1000.0))
            elif msg_type == 'MISSION_CURRENT':
                if msg.seq != last_seq:
                    last_seq = msg.seq
                    emit(ProgressEvent(msg.seq, total))
            elif msg_type == 'MISSION_ITEM_REACHED':
                if msg.seq >= total - 1:
                    return
            elif msg_type == 'STATUSTEXT':
                emit(LogEvent(msg.text))
                if msg.severity <= mavutil.mavlink.MAV_SEVERITY_CRITICAL:
                    raise VehicleFaultError(f"Vehicle fault: {msg.text}")


# ============================================================================
# SIMULATED IMPLEMENTATION
# ============================================================================

@dataclass
class SimulatedVehicle:
    endpoint: str
    closed: bool = False

    def close(self):
        self.closed = True


@dataclass
class SimulatedVehicleLink(VehicleLink):
    """
    In-memory VehicleLink.

    unreachable: endpoints whose dial fails
    dial_delays: per-endpoint dial latency in seconds
    faults: endpoint -> item index at which the vehicle faults mid-run
    step_delay: seconds spent flying each mission item
    """
    unreachable: Iterable[str] = ()
    dial_delays: Dict[str, float] = field(default_factory=dict)
    faults: Dict[str, int] = field(default_factory=dict)
    step_delay: float = 0.0
    dial_attempts: List[str] = field(default_factory=list)

    async def connect(self, endpoint: str) -> ConnectionHandle:
        self.dial_attempts.append(endpoint)
        await asyncio.sleep(self.dial_delays.get(endpoint, 0.0))
        if endpoint in set(self.unreachable):
            raise VehicleConnectionError(endpoint, "no autopilot found")
        logger.debug(f"Simulated vehicle connected on {endpoint}")
        return ConnectionHandle(endpoint, SimulatedVehicle(endpoint), closer=lambda v: v.close())

    async def upload_and_run(self, handle: ConnectionHandle, plan_path) -> AsyncIterator[VehicleEvent]:
        items = load_plan(plan_path).mission.items
        total = len(items)
        if total == 0:
            raise VehicleFaultError("Mission is empty")
        fault_at = self.faults.get(handle.endpoint)

        yield LogEvent("Uploading mission to system")
        yield LogEvent(f"Successfully uploaded mission ({total} items)")
        yield LogEvent("Starting Mission")

        for seq, item in enumerate(items):
            if fault_at is not None and seq >= fault_at:
                raise VehicleFaultError(f"Simulated fault at item {seq}")
            await asyncio.sleep(self.step_delay)
            coords = item.coordinates()
            if coords:
                yield PositionEvent(*coords)
            yield ProgressEvent(seq + 1, total)

        yield CompleteEvent()
