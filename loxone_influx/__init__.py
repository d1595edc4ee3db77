"""Loxone Miniserver → InfluxDB bridge."""

__version__ = "1.0.0"
