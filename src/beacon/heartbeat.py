"""Lease expiry sweep (registry side) and lease renewal (instance side)."""

import sys
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional

from .config import RegistrySettings
from .errors import ServiceUnavailableError
from .registry import InstanceRegistry, InstanceStatus, ServiceInstance


@dataclass
class SweepResult:
    """Outcome of one sweep."""
    expired: List[ServiceInstance] = field(default_factory=list)
    purged: List[ServiceInstance] = field(default_factory=list)
    # True when self-preservation suppressed expiry for this sweep
    skipped: bool = False


class LeaseManager:
    """Expires instances whose heartbeat lapsed and purges them after a grace period.

    An instance is expired by the first sweep that runs more than
    ``lease_duration`` seconds after its last heartbeat, so it stays
    discoverable for at most ``lease_duration + sweep_interval``. Expired
    instances are reported DOWN until ``eviction_grace`` has passed, then
    dropped from the registry.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        settings: RegistrySettings,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.settings = settings
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _would_expire(self, now: float) -> tuple[int, dict[str, int]]:
        """Count live leases and lapsed ones per service from a snapshot."""
        live = 0
        lapsed: dict[str, int] = {}
        for name, instances in self.registry.snapshot().items():
            for info in instances:
                if info.expired_at is not None:
                    continue
                live += 1
                if now - info.last_heartbeat > self.settings.lease_duration:
                    lapsed[name] = lapsed.get(name, 0) + 1
        return live, lapsed

    def sweep(self, now: Optional[float] = None) -> SweepResult:
        """Run one expiry/purge pass and return what changed."""
        now = self._clock() if now is None else now
        result = SweepResult()

        live, lapsed = self._would_expire(now)
        total_lapsed = sum(lapsed.values())
        threshold = self.settings.self_preservation_threshold

        if threshold is not None and live and total_lapsed / live > threshold:
            result.skipped = True
            print(
                f"[heartbeat] self-preservation: {total_lapsed}/{live} leases lapsed,"
                " not expiring this sweep",
                file=sys.stderr,
            )
        else:
            for name in lapsed:
                result.expired.extend(
                    self.registry.expire_lapsed(name, now, self.settings.lease_duration)
                )

        for name in self.registry.service_names():
            result.purged.extend(
                self.registry.purge_expired(name, now, self.settings.eviction_grace)
            )

        for info in result.expired:
            print(
                f"[heartbeat] {info.service_name}/{info.instance_id}: lease expired"
                f" ({now - info.last_heartbeat:.1f}s since last heartbeat) -> DOWN",
                file=sys.stderr,
            )
        for info in result.purged:
            print(
                f"[heartbeat] {info.service_name}/{info.instance_id}: evicted",
                file=sys.stderr,
            )
        return result

    def _run(self) -> None:
        while not self._stop.wait(self.settings.sweep_interval):
            self.sweep()

    def start(self) -> None:
        """Run the sweep every ``sweep_interval`` seconds in a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="lease-sweep", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


class LeaseRenewer:
    """Registers one instance with a remote registry and keeps its lease alive.

    *client* is anything with ``register(instance)``, ``renew(service_name,
    instance_id)``, ``set_status(service_name, instance_id, status)`` and
    ``deregister(service_name, instance_id)``, normally a
    :class:`beacon.client.RegistryClient`.
    """

    def __init__(self, client, instance: ServiceInstance, interval: float = 10.0):
        self.client = client
        self.instance = instance
        self.interval = interval
        self.registered = False
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _tag(self) -> str:
        return f"{self.instance.service_name}/{self.instance.instance_id}"

    def beat(self) -> bool:
        """Renew once, re-registering if the registry forgot us. Returns success."""
        with self._lock:
            return self._beat()

    def _beat(self) -> bool:
        try:
            if self.registered and self.client.renew(
                self.instance.service_name, self.instance.instance_id,
            ):
                return True
            if self.registered:
                print(f"[heartbeat] {self._tag()}: lease unknown to registry, re-registering",
                      file=sys.stderr)
            self.registered = self.client.register(self.instance)
            if self.registered:
                print(f"[heartbeat] {self._tag()}: registered at {self.instance.address}",
                      file=sys.stderr)
            return self.registered
        except ServiceUnavailableError as exc:
            print(f"[heartbeat] {self._tag()}: registry unreachable: {exc}", file=sys.stderr)
            return False

    def set_status(self, status: InstanceStatus) -> bool:
        """Change the advertised status; re-register if the registry lost the instance."""
        with self._lock:
            self.instance = replace(self.instance, status=status.value)
            if self.registered:
                try:
                    if self.client.set_status(
                        self.instance.service_name, self.instance.instance_id, status,
                    ):
                        print(f"[heartbeat] {self._tag()}: status {status.value}",
                              file=sys.stderr)
                        return True
                except ServiceUnavailableError as exc:
                    print(f"[heartbeat] {self._tag()}: status update failed: {exc}",
                          file=sys.stderr)
                    return False
            self.registered = False
            return self._beat()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.beat()

    def start(self) -> None:
        self.beat()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="lease-renewer", daemon=True)
        self._thread.start()

    def stop(self, deregister: bool = True) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(self.interval)
            self._thread = None
        if deregister and self.registered:
            try:
                self.client.deregister(self.instance.service_name, self.instance.instance_id)
                print(f"[heartbeat] {self._tag()}: deregistered", file=sys.stderr)
            except ServiceUnavailableError as exc:
                print(f"[heartbeat] {self._tag()}: deregistration failed: {exc}",
                      file=sys.stderr)
            self.registered = False
