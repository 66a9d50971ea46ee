"""Discovery API and client-side load balancing."""

import itertools
import random
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence

from .registry import InstanceRegistry, ServiceInstance


class DiscoveryService:
    """Read-only view of the registry used to resolve service names.

    Results carry no ordering guarantee; pick an instance with one of the
    balancers below. Expiry is eventually consistent: an instance whose lease
    lapsed stays in the result until the next lease sweep.
    """

    def __init__(self, registry: InstanceRegistry):
        self.registry = registry

    def resolve(self, service_name: str) -> List[ServiceInstance]:
        return self.registry.list_instances(service_name)

    def applications(self) -> Dict[str, List[ServiceInstance]]:
        """Every service that currently has UP instances."""
        result = {}
        for name in self.registry.service_names():
            instances = self.resolve(name)
            if instances:
                result[name] = instances
        return result


class RoundRobinBalancer:
    """Cycles through instances in address order."""

    def __init__(self):
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def choose(self, instances: Sequence[ServiceInstance]) -> Optional[ServiceInstance]:
        if not instances:
            return None
        # Sort so the rotation is stable even though resolve() is unordered
        ordered = sorted(instances, key=lambda s: (s.host, s.port, s.instance_id))
        with self._lock:
            n = next(self._counter)
        return ordered[n % len(ordered)]


class RandomBalancer:
    """Picks a uniformly random instance."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    def choose(self, instances: Sequence[ServiceInstance]) -> Optional[ServiceInstance]:
        if not instances:
            return None
        return self._rng.choice(list(instances))


def resolve_with_backoff(
    resolve: Callable[[str], List[ServiceInstance]],
    service_name: str,
    attempts: int = 5,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    sleep: Callable[[float], None] = time.sleep,
) -> List[ServiceInstance]:
    """Call *resolve* until it returns instances, backing off exponentially.

    Returns an empty list when every attempt came back empty.
    """
    for attempt in range(attempts):
        instances = resolve(service_name)
        if instances:
            return instances
        if attempt < attempts - 1:
            sleep(min(base_delay * (2 ** attempt), max_delay))
    return []
