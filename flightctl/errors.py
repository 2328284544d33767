"""
errors.py

Exception hierarchy for flightctl. Errors that have a natural builtin base
(connection, filesystem, value) extend it so callers can catch either.
"""


class FlightctlError(Exception):
    """Base class for all flightctl errors"""


class VehicleConnectionError(FlightctlError, ConnectionError):
    """A vehicle endpoint could not be dialed"""

    def __init__(self, endpoint: str, reason: str = "no heartbeat"):
        self.endpoint = endpoint
        self.reason = reason
        super().__init__(f"Connection to {endpoint} failed: {reason}")


class VehicleFaultError(FlightctlError):
    """The vehicle reported an unrecoverable fault after the upload started"""


class FleetMismatchError(FlightctlError, ValueError):
    """Vehicle and plan counts differ"""

    def __init__(self, vehicles: int, plans: int):
        self.vehicles = vehicles
        self.plans = plans
        super().__init__(f"Vehicle and plan count mismatch: {vehicles} vehicles, {plans} plans")


class PlanFileError(FlightctlError, FileNotFoundError):
    """A plan path does not exist or is not a regular file"""

    def __init__(self, path):
        self.path = path
        super().__init__(f"Plan file {path} does not exist or is not a file")


class PlanFormatError(FlightctlError, ValueError):
    """A plan file could not be parsed as a QGroundControl plan"""
