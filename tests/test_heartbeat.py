"""
Unit tests for lease expiry and lease renewal
"""

import time

import pytest

from beacon.config import RegistrySettings
from beacon.errors import ServiceUnavailableError
from beacon.heartbeat import LeaseManager, LeaseRenewer
from beacon.registry import InstanceRegistry, InstanceStatus


class TestLeaseManager:

    @pytest.fixture
    def manager(self, registry, settings, clock):
        return LeaseManager(registry, settings, clock=clock)

    def test_not_expired_before_lease_duration(self, manager, registry, clock, new_instance):
        registry.register(new_instance())
        clock.advance(30)  # exactly the lease duration
        result = manager.sweep()
        assert result.expired == []
        assert len(registry.list_instances("user-service")) == 1

    def test_expired_after_lease_duration(self, manager, registry, clock, new_instance):
        registry.register(new_instance())
        clock.advance(30.5)
        result = manager.sweep()
        assert [s.instance_id for s in result.expired] == ["i-1"]
        assert registry.list_instances("user-service") == []
        record = registry.get_instance("user-service", "i-1")
        assert record.status == InstanceStatus.DOWN.value
        assert record.expired_at == clock.now

    def test_eviction_bound_with_periodic_sweeps(self, registry, settings, clock, new_instance):
        """Sweeping every sweep_interval removes a silent instance from
        discovery after lease_duration and no later than
        lease_duration + sweep_interval."""
        manager = LeaseManager(registry, settings, clock=clock)
        registry.register(new_instance())
        last_heartbeat = clock.now
        clock.advance(2.0)  # sweeps out of phase with the heartbeat

        evicted_at = None
        for _ in range(20):
            manager.sweep()
            if not registry.list_instances("user-service"):
                evicted_at = clock.now
                break
            clock.advance(settings.sweep_interval)

        assert evicted_at is not None
        elapsed = evicted_at - last_heartbeat
        assert settings.lease_duration < elapsed <= settings.lease_duration + settings.sweep_interval

    def test_heartbeat_keeps_lease(self, manager, registry, clock, new_instance):
        registry.register(new_instance())
        for _ in range(10):
            clock.advance(20)
            assert registry.renew("user-service", "i-1")
            assert manager.sweep().expired == []
        assert len(registry.list_instances("user-service")) == 1

    def test_purged_after_grace(self, manager, registry, clock, new_instance):
        registry.register(new_instance())
        clock.advance(31)
        manager.sweep()
        clock.advance(19)
        assert manager.sweep().purged == []
        assert registry.get_instance("user-service", "i-1") is not None
        clock.advance(1)
        result = manager.sweep()
        assert [s.instance_id for s in result.purged] == ["i-1"]
        assert registry.get_instance("user-service", "i-1") is None

    def test_renew_after_expiry_requires_reregistration(self, manager, registry, clock,
                                                        new_instance):
        registry.register(new_instance())
        clock.advance(31)
        manager.sweep()
        assert registry.renew("user-service", "i-1") is False
        assert registry.register(new_instance())
        assert len(registry.list_instances("user-service")) == 1

    def test_only_lapsed_instances_expire(self, manager, registry, clock, new_instance):
        registry.register(new_instance(iid="quiet"))
        clock.advance(20)
        registry.register(new_instance(iid="fresh"))
        clock.advance(15)
        result = manager.sweep()
        assert [s.instance_id for s in result.expired] == ["quiet"]
        assert [s.instance_id for s in registry.list_instances("user-service")] == ["fresh"]

    def test_self_preservation_skips_mass_expiry(self, registry, clock, new_instance):
        settings = RegistrySettings(lease_duration=30, sweep_interval=5,
                                    eviction_grace=20, self_preservation_threshold=0.5)
        manager = LeaseManager(registry, settings, clock=clock)
        for i in range(4):
            registry.register(new_instance(iid=f"i-{i}"))
        clock.advance(31)
        registry.renew("user-service", "i-0")
        result = manager.sweep()
        assert result.skipped is True
        assert result.expired == []
        assert len(registry.list_instances("user-service")) == 4

    def test_self_preservation_allows_small_losses(self, registry, clock, new_instance):
        settings = RegistrySettings(lease_duration=30, sweep_interval=5,
                                    eviction_grace=20, self_preservation_threshold=0.5)
        manager = LeaseManager(registry, settings, clock=clock)
        for i in range(4):
            registry.register(new_instance(iid=f"i-{i}"))
        clock.advance(31)
        for i in range(3):
            registry.renew("user-service", f"i-{i}")
        result = manager.sweep()
        assert result.skipped is False
        assert [s.instance_id for s in result.expired] == ["i-3"]

    def test_background_sweep_thread(self, new_instance):
        registry = InstanceRegistry()
        settings = RegistrySettings(lease_duration=0.05, sweep_interval=0.02, eviction_grace=10)
        manager = LeaseManager(registry, settings)
        registry.register(new_instance())
        manager.start()
        try:
            deadline = time.time() + 2.0
            while registry.list_instances("user-service") and time.time() < deadline:
                time.sleep(0.01)
        finally:
            manager.stop(timeout=1.0)
        assert registry.list_instances("user-service") == []


class StubRegistryClient:
    """Records calls; renew answers from a scripted list."""

    def __init__(self, renew_results=None, fail=False, status_known=True):
        self.calls = []
        self.renew_results = list(renew_results or [])
        self.fail = fail
        self.status_known = status_known

    def register(self, instance):
        if self.fail:
            raise ServiceUnavailableError("down")
        self.calls.append(("register", instance.instance_id, instance.status))
        return True

    def renew(self, service_name, instance_id):
        if self.fail:
            raise ServiceUnavailableError("down")
        self.calls.append(("renew", instance_id))
        return self.renew_results.pop(0) if self.renew_results else True

    def set_status(self, service_name, instance_id, status):
        self.calls.append(("status", instance_id, status.value))
        return self.status_known

    def deregister(self, service_name, instance_id):
        self.calls.append(("deregister", instance_id))
        return True


class TestLeaseRenewer:

    def test_first_beat_registers_then_renews(self, new_instance):
        client = StubRegistryClient()
        renewer = LeaseRenewer(client, new_instance(), interval=60)
        assert renewer.beat()
        assert renewer.beat()
        assert client.calls == [("register", "i-1", "UP"), ("renew", "i-1")]

    def test_reregisters_when_lease_unknown(self, new_instance):
        client = StubRegistryClient(renew_results=[False])
        renewer = LeaseRenewer(client, new_instance(), interval=60)
        renewer.beat()
        assert renewer.beat()
        assert client.calls == [
            ("register", "i-1", "UP"), ("renew", "i-1"), ("register", "i-1", "UP"),
        ]

    def test_unreachable_registry_is_not_fatal(self, new_instance):
        client = StubRegistryClient(fail=True)
        renewer = LeaseRenewer(client, new_instance(), interval=60)
        assert renewer.beat() is False
        assert renewer.registered is False

    def test_set_status_uses_status_route(self, new_instance):
        client = StubRegistryClient()
        renewer = LeaseRenewer(client, new_instance(status="STARTING"), interval=60)
        renewer.beat()
        assert renewer.set_status(InstanceStatus.UP)
        assert client.calls == [("register", "i-1", "STARTING"), ("status", "i-1", "UP")]
        assert renewer.instance.status == "UP"

    def test_set_status_reregisters_unknown_instance(self, new_instance):
        client = StubRegistryClient(status_known=False)
        renewer = LeaseRenewer(client, new_instance(status="STARTING"), interval=60)
        renewer.beat()
        assert renewer.set_status(InstanceStatus.UP)
        assert client.calls == [
            ("register", "i-1", "STARTING"), ("status", "i-1", "UP"), ("register", "i-1", "UP"),
        ]

    def test_set_status_before_registration_registers(self, new_instance):
        client = StubRegistryClient()
        renewer = LeaseRenewer(client, new_instance(status="STARTING"), interval=60)
        assert renewer.set_status(InstanceStatus.UP)
        assert client.calls == [("register", "i-1", "UP")]

    def test_stop_deregisters(self, new_instance):
        client = StubRegistryClient()
        renewer = LeaseRenewer(client, new_instance(), interval=60)
        renewer.start()
        renewer.stop()
        assert client.calls[-1] == ("deregister", "i-1")
        assert renewer.registered is False
