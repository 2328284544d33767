"""
Tests for configuration.
"""

import unittest

from flightctl.config import FlightctlConfig


class TestFlightctlConfig(unittest.TestCase):
    """Test FlightctlConfig."""

    def test_defaults(self):
        config = FlightctlConfig()
        self.assertEqual(config.tick_rate_ms, 200)
        self.assertEqual(config.tick_rate, 0.2)
        self.assertIsNone(config.api_port)
        self.assertEqual(config.kafka_bootstrap_servers, [])

    def test_from_env(self):
        config = FlightctlConfig.from_env({
            "FLIGHTCTL_TICK_RATE_MS": "50",
            "FLIGHTCTL_CONNECT_TIMEOUT": "1.5",
            "FLIGHTCTL_API_PORT": "8000",
            "FLIGHTCTL_KAFKA_BOOTSTRAP": "kafka1:9092, kafka2:9092,",
            "FLIGHTCTL_LOG_LEVEL": "debug",
        })
        self.assertEqual(config.tick_rate_ms, 50)
        self.assertEqual(config.connect_timeout_seconds, 1.5)
        self.assertEqual(config.api_port, 8000)
        self.assertEqual(config.kafka_bootstrap_servers, ["kafka1:9092", "kafka2:9092"])
        self.assertEqual(config.log_level, "DEBUG")

    def test_unrelated_env_ignored(self):
        self.assertEqual(FlightctlConfig.from_env({"TICK_RATE_MS": "1"}), FlightctlConfig())

    def test_invalid_value(self):
        with self.assertRaises(ValueError):
            FlightctlConfig.from_env({"FLIGHTCTL_API_PORT": "eighty"})


if __name__ == "__main__":
    unittest.main()
