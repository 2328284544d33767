"""
plan.py

QGroundControl .plan document model. The document layout follows what the
ground station writes itself so generated files open in QGroundControl and
import through MAVSDK's import_qgroundcontrol_mission unchanged.
"""

import logging
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_serializer

from flightctl.errors import PlanFormatError

logger = logging.getLogger(__name__)

# MAV_CMD ids used in generated plans
MAV_CMD_NAV_WAYPOINT = 16
MAV_CMD_NAV_RETURN_TO_LAUNCH = 20
MAV_CMD_NAV_TAKEOFF = 22

# MAV_FRAME ids
MAV_FRAME_MISSION = 2
MAV_FRAME_GLOBAL_RELATIVE_ALT = 3

ALTITUDE_MODE_RELATIVE = 1
PARAM_COUNT = 7

_ALTITUDE_KEYS = ("AMSLAltAboveTerrain", "Altitude", "AltitudeMode",
                  "amsl_alt_above_terrain", "altitude", "altitude_mode")


class PlanItem(BaseModel):
    """One SimpleItem in the mission item list"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    amsl_alt_above_terrain: Optional[float] = Field(None, alias="AMSLAltAboveTerrain")
    altitude: Optional[float] = Field(None, alias="Altitude")
    altitude_mode: Optional[int] = Field(None, alias="AltitudeMode")
    auto_continue: bool = Field(True, alias="autoContinue")
    command: int
    do_jump_id: int = Field(alias="doJumpId")
    frame: int
    params: List[Optional[float]]
    type: str = "SimpleItem"

    @field_validator("params")
    @classmethod
    def _seven_params(cls, v):
        if len(v) != PARAM_COUNT:
            raise ValueError(f"expected {PARAM_COUNT} params, got {len(v)}")
        return v

    @model_serializer(mode="wrap")
    def _serialize(self, handler):
        # RTL items carry no altitude keys, the same way QGroundControl saves them
        data = handler(self)
        if self.altitude is None:
            for key in _ALTITUDE_KEYS:
                data.pop(key, None)
        return data

    @property
    def hold_seconds(self) -> float:
        return self.params[0] or 0.0

    def coordinates(self) -> Optional[Tuple[float, float, float]]:
        """(lat, lon, alt) of a navigation item, None for RTL"""
        if self.command == MAV_CMD_NAV_RETURN_TO_LAUNCH:
            return None
        lat, lon, alt = self.params[4:7]
        if lat is None or lon is None:
            return None
        return lat, lon, alt or 0.0


class GeoFence(BaseModel):
    circles: List[Any] = []
    polygons: List[Any] = []
    version: int = 2


class RallyPoints(BaseModel):
    points: List[Any] = []
    version: int = 2


class MissionSection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cruise_speed: float = Field(15, alias="cruiseSpeed")
    firmware_type: int = Field(12, alias="firmwareType")
    global_plan_altitude_mode: int = Field(ALTITUDE_MODE_RELATIVE, alias="globalPlanAltitudeMode")
    hover_speed: float = Field(5, alias="hoverSpeed")
    items: List[PlanItem] = []
    planned_home_position: List[float] = Field(default_factory=lambda: [0.0, 0.0, 50.0],
                                               alias="plannedHomePosition")
    vehicle_type: int = Field(2, alias="vehicleType")
    version: int = 2


class PlanDocument(BaseModel):
    """Top level .plan document"""
    model_config = ConfigDict(populate_by_name=True)

    file_type: str = Field("Plan", alias="fileType")
    geo_fence: GeoFence = Field(default_factory=GeoFence, alias="geoFence")
    ground_station: str = Field("QGroundControl", alias="groundStation")
    mission: MissionSection = Field(default_factory=MissionSection)
    rally_points: RallyPoints = Field(default_factory=RallyPoints, alias="rallyPoints")
    version: int = 1

    def to_json(self, indent: Optional[int] = 4) -> str:
        return self.model_dump_json(by_alias=True, indent=indent)


def new_takeoff(lat: float, lon: float, alt: float, jump_id: int = 0) -> PlanItem:
    """Takeoff item at the vehicle's start position"""
    return PlanItem(
        amsl_alt_above_terrain=None,
        altitude=alt,
        altitude_mode=ALTITUDE_MODE_RELATIVE,
        command=MAV_CMD_NAV_TAKEOFF,
        do_jump_id=jump_id,
        frame=MAV_FRAME_GLOBAL_RELATIVE_ALT,
        params=[0, 0, 0, None, lat, lon, alt],
    )


def new_waypoint(lat: float, lon: float, alt: float, hold_seconds: float, jump_id: int) -> PlanItem:
    """Waypoint item, params[0] is the hold time at the waypoint"""
    return PlanItem(
        amsl_alt_above_terrain=None,
        altitude=alt,
        altitude_mode=ALTITUDE_MODE_RELATIVE,
        command=MAV_CMD_NAV_WAYPOINT,
        do_jump_id=jump_id,
        frame=MAV_FRAME_GLOBAL_RELATIVE_ALT,
        params=[hold_seconds, 0, 0, None, lat, lon, alt],
    )


def new_return(jump_id: int) -> PlanItem:
    """Return-to-launch, always the last item"""
    return PlanItem(
        command=MAV_CMD_NAV_RETURN_TO_LAUNCH,
        do_jump_id=jump_id,
        frame=MAV_FRAME_MISSION,
        params=[0] * PARAM_COUNT,
    )


def parse_plan(text: Union[str, bytes]) -> PlanDocument:
    try:
        return PlanDocument.model_validate_json(text)
    except ValidationError as e:
        raise PlanFormatError(f"Invalid plan document: {e}") from e


def load_plan(path) -> PlanDocument:
    """Read and validate a .plan file"""
    path = Path(path)
    logger.debug(f"Loading plan {path}")
    try:
        return parse_plan(path.read_bytes())
    except PlanFormatError as e:
        raise PlanFormatError(f"{path}: {e}") from e
