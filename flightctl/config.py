"""
config.py

Runtime configuration for flightctl. Defaults are tuned for PX4 SITL on the
local machine; every field can be overridden through FLIGHTCTL_* environment
variables or command line flags.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "FLIGHTCTL_"


@dataclass
class FlightctlConfig:
    """Configuration shared by the connection manager, run mode and bridges"""
    tick_rate_ms: int = 200  # dashboard redraw / quit poll period
    connect_timeout_seconds: float = 3.0  # wait for autopilot heartbeat
    ack_timeout_seconds: float = 5.0  # mission upload / command ACKs
    link_loss_timeout_seconds: float = 10.0  # silence before a run is declared faulted
    source_system: int = 255  # GCS system ID
    source_component: int = 0  # GCS component ID
    api_host: str = "127.0.0.1"
    api_port: Optional[int] = None  # status API disabled when None
    kafka_bootstrap_servers: List[str] = field(default_factory=list)
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def tick_rate(self) -> float:
        """Tick period in seconds"""
        return self.tick_rate_ms / 1000.0

    @classmethod
    def from_env(cls, environ=None) -> "FlightctlConfig":
        """Build a config from FLIGHTCTL_* environment variables"""
        environ = os.environ if environ is None else environ
        config = cls()

        def get(name):
            return environ.get(ENV_PREFIX + name)

        try:
            if get("TICK_RATE_MS"):
                config.tick_rate_ms = int(get("TICK_RATE_MS"))
            if get("CONNECT_TIMEOUT"):
                config.connect_timeout_seconds = float(get("CONNECT_TIMEOUT"))
            if get("ACK_TIMEOUT"):
                config.ack_timeout_seconds = float(get("ACK_TIMEOUT"))
            if get("SOURCE_SYSTEM"):
                config.source_system = int(get("SOURCE_SYSTEM"))
            if get("API_PORT"):
                config.api_port = int(get("API_PORT"))
        except ValueError as e:
            raise ValueError(f"Invalid {ENV_PREFIX}* environment value: {e}") from e

        if get("API_HOST"):
            config.api_host = get("API_HOST")
        if get("KAFKA_BOOTSTRAP"):
            config.kafka_bootstrap_servers = [
                s.strip() for s in get("KAFKA_BOOTSTRAP").split(",") if s.strip()
            ]
        if get("LOG_LEVEL"):
            config.log_level = get("LOG_LEVEL").upper()
        if get("LOG_FILE"):
            config.log_file = get("LOG_FILE")

        return config


def setup_logging(config: FlightctlConfig):
    """Configure root logging once for the process"""
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        filename=config.log_file,
    )
    logger.debug(f"Logging configured (level={config.log_level}, file={config.log_file})")
