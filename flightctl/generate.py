"""
generate.py

Formation mission generator. Each shape turns a target location plus shape
parameters into one waypoint list per vehicle, and every waypoint list is
serialized into a QGroundControl plan:

    mission = CircleMission(count=4, radius=100, start_lat=47.3977, start_lon=8.5456,
                            target_lat=47.3980, target_lon=8.5460, target_alt=30, hold_sec=10)
    paths = mission.write_mission_to_disk(Path("plans"))
"""

import math
import errno
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from flightctl.plan import MissionSection, PlanDocument, new_return, new_takeoff, new_waypoint

logger = logging.getLogger(__name__)

# 1 degree of latitude ~= 111111 m; longitude degrees shrink with cos(lat)
METERS_PER_DEGREE = 111111.0
EARTH_RADIUS_M = 6371000.0
DEFAULT_TAKEOFF_ALTITUDE = 50

# ============================================================================
# GEOMETRY
# ============================================================================

@dataclass(frozen=True)
class Point:
    lat: float
    lon: float
    alt: int = 0
    hold_seconds: int = 0

    def __post_init__(self):
        if self.alt < 0:
            raise ValueError(f"Altitude must be non-negative, got {self.alt}")
        if self.hold_seconds < 0:
            raise ValueError(f"Hold duration must be non-negative, got {self.hold_seconds}")


def offset_degrees(dx_m: float, dy_m: float, at_lat: float) -> Tuple[float, float]:
    """Convert a metre offset (east, north) to (dlat, dlon) degrees at a latitude"""
    dlat = dy_m / METERS_PER_DEGREE
    dlon = dx_m / (METERS_PER_DEGREE * math.cos(math.radians(at_lat)))
    return dlat, dlon


def haversine_distance(a: Point, b: Point) -> float:
    """Great circle distance in metres"""
    lat1, lon1 = math.radians(a.lat), math.radians(a.lon)
    lat2, lon2 = math.radians(b.lat), math.radians(b.lon)

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(h))


def path_length(waypoints: List[Point]) -> float:
    """Total horizontal path distance of a mission in metres"""
    return sum(haversine_distance(waypoints[i], waypoints[i + 1]) for i in range(len(waypoints) - 1))


def _check_location(lat: float, lon: float, name: str):
    if not (-90 < lat < 90 and -180 <= lon <= 180):
        raise ValueError(f"Invalid {name} location: ({lat}, {lon})")


# ============================================================================
# PLAN SERIALIZATION
# ============================================================================

def generate_plan(waypoints: List[Point]) -> str:
    """
    Serialize one vehicle's waypoints to a .plan document.

    Item 0 takes off at the first waypoint, items 1..n-1 fly the remaining
    waypoints and the last item returns to launch, so n waypoints produce
    n + 1 items. doJumpId follows the item index.
    """
    if not waypoints:
        raise ValueError("A plan needs at least one waypoint")

    start = waypoints[0]
    takeoff_alt = max(p.alt for p in waypoints) or DEFAULT_TAKEOFF_ALTITUDE

    items = [new_takeoff(start.lat, start.lon, takeoff_alt, jump_id=0)]
    for i in range(1, len(waypoints)):
        wp = waypoints[i]
        items.append(new_waypoint(wp.lat, wp.lon, wp.alt, wp.hold_seconds, jump_id=i))
    items.append(new_return(jump_id=len(waypoints)))

    plan = PlanDocument(
        mission=MissionSection(
            items=items,
            planned_home_position=[start.lat, start.lon, start.alt],
        )
    )
    return plan.to_json()


# ============================================================================
# SHAPES
# ============================================================================

class ShapeMission(ABC):
    """
    Base formation. Every vehicle flies start -> target centre -> its own
    offset point, and holds at the offset point for hold_sec seconds.
    """

    def __init__(self, start_lat: float, start_lon: float, target_lat: float,
                 target_lon: float, target_alt: int, hold_sec: int):
        _check_location(start_lat, start_lon, "start")
        _check_location(target_lat, target_lon, "target")
        # start altitude is ignored, the vehicle takes off from the ground
        self.start = Point(start_lat, start_lon, 0, 0)
        self.target_location = Point(target_lat, target_lon, target_alt, 0)
        self.hold_sec = hold_sec
        if hold_sec < 0:
            raise ValueError(f"Hold duration must be non-negative, got {hold_sec}")

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def offsets(self) -> List[Tuple[float, float]]:
        """(dx, dy) offsets in metres from the target centre, one per vehicle"""

    def offset_point(self, dx_m: float, dy_m: float) -> Point:
        target = self.target_location
        dlat, dlon = offset_degrees(dx_m, dy_m, target.lat)
        return Point(target.lat + dlat, target.lon + dlon, target.alt, self.hold_sec)

    def generate_missions(self) -> List[List[Point]]:
        """One [start, target, offset] waypoint list per vehicle"""
        return [
            [self.start, self.target_location, self.offset_point(dx, dy)]
            for dx, dy in self.offsets()
        ]

    def generate_plan(self, waypoints: List[Point]) -> str:
        return generate_plan(waypoints)

    def write_mission_to_disk(self, save_dir) -> List[Path]:
        """Write plan_0.plan .. plan_{n-1}.plan into save_dir"""
        save_dir = Path(save_dir)
        if not save_dir.is_dir():
            raise NotADirectoryError(errno.ENOTDIR, "Not a directory", str(save_dir))

        written = []
        for i, mission in enumerate(self.generate_missions()):
            plan_path = save_dir / f"plan_{i}.plan"
            logger.info(
                f"Writing plan {i} to file {plan_path} "
                f"({len(mission)} waypoints, {path_length(mission):.1f} m)"
            )
            plan_path.write_text(self.generate_plan(mission))
            written.append(plan_path)

        logger.info(f"✓ {self.name} formation written: {len(written)} plans in {save_dir}")
        return written


class LineMission(ShapeMission):
    """3 vehicles in a line of `width` metres rotated by `angle` radians"""

    name = "line"

    def __init__(self, width: float, angle: float, start_lat: float, start_lon: float,
                 target_lat: float, target_lon: float, target_alt: int, hold_sec: int):
        super().__init__(start_lat, start_lon, target_lat, target_lon, target_alt, hold_sec)
        if width < 0:
            raise ValueError(f"Line width must be non-negative, got {width}")
        self.width = width
        self.angle = angle

    def offsets(self) -> List[Tuple[float, float]]:
        dy = (self.width / 2) * math.sin(self.angle)
        dx = (self.width / 2) * math.cos(self.angle)
        # two ends, then the middle vehicle on the centre
        return [(dx * i, dy * i) for i in (1, -1)] + [(0.0, 0.0)]


class SquareMission(ShapeMission):
    """4 vehicles on the corners of a square with sides of `width` metres"""

    name = "square"
    CORNERS = [(0.5, 0.5), (-0.5, 0.5), (-0.5, -0.5), (0.5, -0.5)]

    def __init__(self, width: float, start_lat: float, start_lon: float,
                 target_lat: float, target_lon: float, target_alt: int, hold_sec: int):
        super().__init__(start_lat, start_lon, target_lat, target_lon, target_alt, hold_sec)
        if width < 0:
            raise ValueError(f"Square width must be non-negative, got {width}")
        self.width = width

    def offsets(self) -> List[Tuple[float, float]]:
        return [(sx * self.width, sy * self.width) for sx, sy in self.CORNERS]


class CircleMission(ShapeMission):
    """`count` vehicles evenly spaced on a circle of `radius` metres"""

    name = "circle"

    def __init__(self, count: int, radius: float, start_lat: float, start_lon: float,
                 target_lat: float, target_lon: float, target_alt: int, hold_sec: int):
        super().__init__(start_lat, start_lon, target_lat, target_lon, target_alt, hold_sec)
        if count < 1:
            raise ValueError(f"Circle needs at least one vehicle, got {count}")
        if radius < 0:
            raise ValueError(f"Circle radius must be non-negative, got {radius}")
        self.count = count
        self.radius = radius

    def offsets(self) -> List[Tuple[float, float]]:
        segment = 2 * math.pi / self.count
        return [
            (self.radius * math.cos(segment * i), self.radius * math.sin(segment * i))
            for i in range(self.count)
        ]
