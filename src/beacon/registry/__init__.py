"""
In-process Service Registry

This package provides:
1. InstanceRegistry — per-service locked registry of instance records
2. ServiceInstance — immutable instance record
3. InstanceStatus — UP / DOWN / STARTING
"""

from .service_registry import (
    InstanceRegistry,
    InstanceStatus,
    ServiceInstance,
    validate_instance,
)

__all__ = [
    'InstanceRegistry',
    'InstanceStatus',
    'ServiceInstance',
    'validate_instance',
]
