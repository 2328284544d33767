# Kafka telemetry bus
# File: flightctl/telemetry_bus.py

"""
Kafka integration for publishing run telemetry to a distributed event bus.
Every worker event is published keyed by the worker's vehicle endpoint so a
vehicle's stream stays ordered within one partition.
"""

import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError

from flightctl.sinks import EventSink
from flightctl.state import Worker, progress_ratio

logger = logging.getLogger(__name__)

# ============================================================================
# KAFKA TOPICS
# ============================================================================

class KafkaTopics:
    """Kafka topic definitions for run telemetry"""

    VEHICLE_LOCATION = "vehicle.location.updates"
    VEHICLE_LOG = "vehicle.log.events"

    MISSION_PROGRESS = "mission.progress.updates"
    MISSION_LIFECYCLE = "mission.lifecycle.events"

# ============================================================================
# KAFKA PRODUCER
# ============================================================================

class KafkaEventProducer:
    """Kafka event producer for publishing worker events"""

    def __init__(self, bootstrap_servers: List[str], client_id: str = "flightctl-producer"):
        """
        Initialize Kafka producer

        Args:
            bootstrap_servers: List of Kafka broker addresses
            client_id: Client identifier for this producer
        """
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.producer = None
        self._connect()

    def _connect(self):
        """Establish connection to Kafka brokers"""
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                client_id=self.client_id,
                value_serializer=lambda v: json.dumps(v, default=str).encode('utf-8'),
                key_serializer=lambda k: k.encode('utf-8') if k else None,
                acks='all',
                retries=3,
                max_in_flight_requests_per_connection=1,  # keep per-key ordering
            )
            logger.info(f"Kafka producer connected: {self.bootstrap_servers}")
        except KafkaError as e:
            logger.error(f"Failed to connect Kafka producer: {e}")
            raise

    def publish_vehicle_location(self, vehicle_id: str, location: Dict):
        """
        Publish vehicle location update

        Args:
            vehicle_id: Vehicle endpoint
            location: Location dict with lat, lon, alt
        """
        message = {
            'vehicle_id': vehicle_id,
            'location': location,
            'timestamp': datetime.now().isoformat()
        }
        self._send(KafkaTopics.VEHICLE_LOCATION, message, key=vehicle_id)

    def publish_mission_progress(self, vehicle_id: str, worker_id: int,
                                 progress: float, current_item: int, total_items: int):
        """Publish mission progress; progress is a ratio in [0, 1]"""
        message = {
            'vehicle_id': vehicle_id,
            'worker_id': worker_id,
            'progress': progress,
            'current_item': current_item,
            'total_items': total_items,
            'timestamp': datetime.now().isoformat()
        }
        self._send(KafkaTopics.MISSION_PROGRESS, message, key=vehicle_id)

    def publish_log(self, vehicle_id: str, worker_id: int, text: str):
        message = {
            'vehicle_id': vehicle_id,
            'worker_id': worker_id,
            'message': text,
            'timestamp': datetime.now().isoformat()
        }
        self._send(KafkaTopics.VEHICLE_LOG, message, key=vehicle_id)

    def publish_mission_event(self, vehicle_id: str, event_type: str, data: Dict):
        """
        Publish mission lifecycle event

        Args:
            vehicle_id: Vehicle endpoint
            event_type: Type of event (started, completed, failed)
            data: Event data
        """
        message = {
            'vehicle_id': vehicle_id,
            'event_type': event_type,
            'data': data,
            'timestamp': datetime.now().isoformat()
        }
        self._send(KafkaTopics.MISSION_LIFECYCLE, message, key=vehicle_id)
        logger.info(f"Published mission event: {vehicle_id} - {event_type}")

    def _send(self, topic: str, message: Dict, key: Optional[str] = None):
        """Send message to a topic; failures are logged, not raised"""
        try:
            self.producer.send(topic, value=message, key=key)
        except KafkaError as e:
            logger.error(f"Failed to send message to {topic}: {e}")

    def flush(self, timeout: int = None):
        """
        Flush pending messages

        Args:
            timeout: Max time to wait in seconds
        """
        if self.producer:
            self.producer.flush(timeout=timeout)
            logger.debug("Producer flushed")

    def close(self):
        """Close producer connection"""
        if self.producer:
            self.producer.close()
            logger.info("Kafka producer closed")

# ============================================================================
# EVENT SINK
# ============================================================================

class KafkaTelemetrySink(EventSink):
    """Publishes every worker event to the Kafka bus"""

    def __init__(self, producer: KafkaEventProducer):
        self.producer = producer

    def on_started(self, worker: Worker):
        self.producer.publish_mission_event(
            worker.endpoint, 'started', {'worker_id': worker.id, 'plan': worker.plan_path}
        )

    def on_position(self, worker: Worker, lat: float, lon: float, alt: float):
        self.producer.publish_vehicle_location(
            worker.endpoint, {'lat': lat, 'lon': lon, 'alt': alt}
        )

    def on_progress(self, worker: Worker, current: int, total: int):
        self.producer.publish_mission_progress(
            worker.endpoint, worker.id, progress_ratio(current, total), current, total
        )

    def on_log(self, worker: Worker, message: str):
        self.producer.publish_log(worker.endpoint, worker.id, message)

    def on_complete(self, worker: Worker):
        self.producer.publish_mission_event(
            worker.endpoint, 'completed', {'worker_id': worker.id, 'plan': worker.plan_path}
        )

    def on_failed(self, worker: Worker, error: BaseException):
        self.producer.publish_mission_event(
            worker.endpoint, 'failed',
            {'worker_id': worker.id, 'plan': worker.plan_path, 'error': str(error)}
        )
