"""
air_monitor

This package provides a background MQTT session worker for air-quality
sensors, classifying published readings into typed metrics and streaming
them to a consumer thread without ever blocking it.
"""
__version__ = "0.1.0"
