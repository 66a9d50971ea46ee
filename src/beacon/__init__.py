"""Beacon: service registry, lease tracking and configuration server."""

__version__ = '0.1.0'
