"""flightctl - multi vehicle flight controller"""

__version__ = "0.2.0"
