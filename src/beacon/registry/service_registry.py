"""
In-memory Service Registry

This module provides:
- InstanceStatus: lifecycle states an instance reports
- ServiceInstance: immutable record for one registered instance
- InstanceRegistry: thread-safe registry keyed by service name, with one
  lock per service so unrelated services never contend
"""

import threading
import time
from dataclasses import dataclass, asdict, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..errors import ValidationError


class InstanceStatus(Enum):
    """Instance status as reported by the instance itself"""
    UP = "UP"
    DOWN = "DOWN"
    STARTING = "STARTING"


@dataclass(frozen=True)
class ServiceInstance:
    """Registered instance. Records are replaced, never mutated."""
    service_name: str
    instance_id: str
    host: str
    port: int
    status: str = InstanceStatus.UP.value
    last_heartbeat: float = 0.0
    metadata: Dict[str, str] = field(default_factory=dict)
    registered_at: float = 0.0
    expired_at: Optional[float] = None

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_up(self) -> bool:
        return self.status == InstanceStatus.UP.value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serialisable dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceInstance':
        """Create from dictionary."""
        data = dict(data)
        data['port'] = int(data['port'])
        data['last_heartbeat'] = float(data.get('last_heartbeat') or 0.0)
        data['registered_at'] = float(data.get('registered_at') or 0.0)
        data['metadata'] = dict(data.get('metadata') or {})
        return cls(**data)


def _check_name(kind: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{kind} must be a non-empty string")
    if "/" in value:
        raise ValidationError(f"{kind} must not contain '/': {value!r}")


def validate_instance(instance: ServiceInstance) -> None:
    """Raise ValidationError if *instance* cannot be registered."""
    _check_name("service_name", instance.service_name)
    _check_name("instance_id", instance.instance_id)
    if not isinstance(instance.host, str) or not instance.host.strip():
        raise ValidationError("host must be a non-empty string")
    port = instance.port
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise ValidationError(f"port must be an integer in 1..65535, got {port!r}")
    try:
        InstanceStatus(instance.status)
    except ValueError:
        raise ValidationError(f"unknown status: {instance.status!r}") from None
    if not isinstance(instance.metadata, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in instance.metadata.items()
    ):
        raise ValidationError("metadata must map strings to strings")


class _ServiceBucket:
    """Instances of one service and the lock that serialises writes to them."""

    __slots__ = ("lock", "instances")

    def __init__(self):
        self.lock = threading.Lock()
        self.instances: Dict[str, ServiceInstance] = {}


# ---------------------------------------------------------------------------
# In-memory registry
# ---------------------------------------------------------------------------

class InstanceRegistry:
    """Thread-safe, dict-backed service registry.

    The table lock only guards the lookup/creation of a service's bucket;
    every read or write of a service's instances happens under that
    service's own lock. Buckets are never removed, so a reference obtained
    from the table stays valid.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: Dict[str, _ServiceBucket] = {}

    def _bucket(self, service_name: str, create: bool = False) -> Optional[_ServiceBucket]:
        with self._lock:
            bucket = self._buckets.get(service_name)
            if bucket is None and create:
                bucket = self._buckets[service_name] = _ServiceBucket()
            return bucket

    def _bucket_items(self) -> List[tuple]:
        with self._lock:
            return list(self._buckets.items())

    def register(self, instance: ServiceInstance) -> bool:
        """Insert or replace *instance*. Returns True when accepted."""
        validate_instance(instance)
        now = self._clock()
        bucket = self._bucket(instance.service_name, create=True)
        with bucket.lock:
            previous = bucket.instances.get(instance.instance_id)
            registered_at = previous.registered_at if previous else now
            bucket.instances[instance.instance_id] = replace(
                instance,
                last_heartbeat=now,
                registered_at=registered_at,
                expired_at=None,
                metadata=dict(instance.metadata),
            )
        return True

    def deregister(self, service_name: str, instance_id: str) -> bool:
        bucket = self._bucket(service_name)
        if bucket is None:
            return False
        with bucket.lock:
            return bucket.instances.pop(instance_id, None) is not None

    def renew(self, service_name: str, instance_id: str) -> bool:
        """Refresh the lease. False when unknown or already expired."""
        bucket = self._bucket(service_name)
        if bucket is None:
            return False
        with bucket.lock:
            info = bucket.instances.get(instance_id)
            if info is None or info.expired_at is not None:
                return False
            bucket.instances[instance_id] = replace(info, last_heartbeat=self._clock())
        return True

    def set_status(self, service_name: str, instance_id: str,
                   status: InstanceStatus) -> bool:
        bucket = self._bucket(service_name)
        if bucket is None:
            return False
        with bucket.lock:
            info = bucket.instances.get(instance_id)
            if info is None or info.expired_at is not None:
                return False
            bucket.instances[instance_id] = replace(
                info, status=status.value, last_heartbeat=self._clock(),
            )
        return True

    def get_instance(self, service_name: str, instance_id: str) -> Optional[ServiceInstance]:
        bucket = self._bucket(service_name)
        if bucket is None:
            return None
        with bucket.lock:
            return bucket.instances.get(instance_id)

    def all_instances(self, service_name: str) -> List[ServiceInstance]:
        """Every instance of *service_name*, whatever its status."""
        bucket = self._bucket(service_name)
        if bucket is None:
            return []
        with bucket.lock:
            return list(bucket.instances.values())

    def list_instances(self, service_name: str) -> List[ServiceInstance]:
        """Snapshot of the UP instances of *service_name*."""
        return [s for s in self.all_instances(service_name) if s.is_up]

    def service_names(self) -> List[str]:
        """Names of services with at least one instance record."""
        names = []
        for name, bucket in self._bucket_items():
            with bucket.lock:
                if bucket.instances:
                    names.append(name)
        return sorted(names)

    def snapshot(self) -> Dict[str, List[ServiceInstance]]:
        """Copy of the whole table, taken one service at a time."""
        result = {}
        for name, bucket in self._bucket_items():
            with bucket.lock:
                if bucket.instances:
                    result[name] = list(bucket.instances.values())
        return result

    def instance_count(self, service_name: Optional[str] = None) -> int:
        if service_name:
            return len(self.all_instances(service_name))
        return sum(len(v) for v in self.snapshot().values())

    # -- lease bookkeeping (driven by heartbeat.LeaseManager) ---------------

    def expire_lapsed(self, service_name: str, now: float,
                      lease_duration: float) -> List[ServiceInstance]:
        """Mark instances whose lease lapsed as DOWN. Returns the expired records.

        The check is repeated under the service lock so a heartbeat that
        arrived after the caller's snapshot keeps its lease.
        """
        bucket = self._bucket(service_name)
        if bucket is None:
            return []
        expired = []
        with bucket.lock:
            for iid, info in list(bucket.instances.items()):
                if info.expired_at is not None:
                    continue
                if now - info.last_heartbeat > lease_duration:
                    info = replace(info, status=InstanceStatus.DOWN.value, expired_at=now)
                    bucket.instances[iid] = info
                    expired.append(info)
        return expired

    def purge_expired(self, service_name: str, now: float,
                      grace: float) -> List[ServiceInstance]:
        """Drop records that have been expired for at least *grace* seconds."""
        bucket = self._bucket(service_name)
        if bucket is None:
            return []
        purged = []
        with bucket.lock:
            for iid, info in list(bucket.instances.items()):
                if info.expired_at is not None and now - info.expired_at >= grace:
                    purged.append(bucket.instances.pop(iid))
        return purged
