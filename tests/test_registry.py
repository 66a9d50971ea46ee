"""
Unit tests for the in-memory instance registry

Covers registration, replacement, deregistration, validation and
concurrent writers.
"""

import random
import threading

import pytest

from beacon.errors import ValidationError
from beacon.registry import InstanceRegistry, InstanceStatus


class TestRegistration:

    def test_register_and_list(self, registry, new_instance):
        assert registry.register(new_instance()) is True
        instances = registry.list_instances("user-service")
        assert [s.instance_id for s in instances] == ["i-1"]
        assert instances[0].last_heartbeat == 1000.0
        assert instances[0].registered_at == 1000.0

    def test_unknown_service_is_empty(self, registry):
        assert registry.list_instances("nope") == []
        assert registry.all_instances("nope") == []

    def test_register_replaces_same_id(self, registry, clock, new_instance):
        registry.register(new_instance(port=8080))
        clock.advance(5)
        registry.register(new_instance(port=9090))
        instances = registry.all_instances("user-service")
        assert len(instances) == 1
        assert instances[0].port == 9090
        # first registration time survives a replacement
        assert instances[0].registered_at == 1000.0
        assert instances[0].last_heartbeat == 1005.0

    def test_same_id_in_different_services(self, registry, new_instance):
        registry.register(new_instance(service="a"))
        registry.register(new_instance(service="b"))
        assert registry.service_names() == ["a", "b"]
        assert registry.instance_count() == 2

    def test_only_up_instances_are_listed(self, registry, new_instance):
        registry.register(new_instance(iid="up"))
        registry.register(new_instance(iid="starting", status=InstanceStatus.STARTING.value))
        registry.register(new_instance(iid="down", status=InstanceStatus.DOWN.value))
        assert [s.instance_id for s in registry.list_instances("user-service")] == ["up"]
        assert registry.instance_count("user-service") == 3

    def test_set_status(self, registry, new_instance):
        registry.register(new_instance(status=InstanceStatus.STARTING.value))
        assert registry.list_instances("user-service") == []
        assert registry.set_status("user-service", "i-1", InstanceStatus.UP)
        assert len(registry.list_instances("user-service")) == 1
        assert not registry.set_status("user-service", "missing", InstanceStatus.UP)

    def test_metadata_is_copied(self, registry, new_instance):
        meta = {"zone": "a"}
        registry.register(new_instance(metadata=meta))
        meta["zone"] = "b"
        assert registry.get_instance("user-service", "i-1").metadata == {"zone": "a"}


class TestDeregistration:

    def test_deregister(self, registry, new_instance):
        registry.register(new_instance())
        assert registry.deregister("user-service", "i-1") is True
        assert registry.list_instances("user-service") == []
        assert registry.service_names() == []

    def test_deregister_absent_is_noop(self, registry, new_instance):
        registry.register(new_instance())
        assert registry.deregister("user-service", "other") is False
        assert registry.deregister("unknown", "i-1") is False
        assert len(registry.list_instances("user-service")) == 1


class TestRenew:

    def test_renew_updates_heartbeat(self, registry, clock, new_instance):
        registry.register(new_instance())
        clock.advance(12)
        assert registry.renew("user-service", "i-1")
        assert registry.get_instance("user-service", "i-1").last_heartbeat == 1012.0

    def test_renew_unknown(self, registry):
        assert registry.renew("user-service", "ghost") is False

    def test_snapshot_is_not_affected_by_later_writes(self, registry, clock, new_instance):
        registry.register(new_instance())
        before = registry.list_instances("user-service")
        clock.advance(3)
        registry.renew("user-service", "i-1")
        assert before[0].last_heartbeat == 1000.0


class TestValidation:

    @pytest.mark.parametrize("kwargs", [
        {"service": ""},
        {"service": "a/b"},
        {"iid": ""},
        {"iid": "x/y"},
        {"host": ""},
        {"host": None},
        {"port": 0},
        {"port": 70000},
        {"port": "8080"},
        {"port": True},
        {"status": "SLEEPING"},
        {"metadata": {"k": 1}},
    ])
    def test_malformed_instance_rejected(self, registry, new_instance, kwargs):
        registry.register(new_instance(iid="existing"))
        with pytest.raises(ValidationError):
            registry.register(new_instance(**kwargs))
        # no partial state change
        assert registry.instance_count() == 1
        assert registry.get_instance("user-service", "existing").port == 8080

    def test_rejected_replacement_keeps_old_record(self, registry, new_instance):
        registry.register(new_instance(port=8080))
        with pytest.raises(ValidationError):
            registry.register(new_instance(port=-1))
        assert registry.get_instance("user-service", "i-1").port == 8080


class TestConcurrency:

    def test_concurrent_registrations_same_service(self, new_instance):
        registry = InstanceRegistry()
        barrier = threading.Barrier(100)
        errors = []

        def worker(i):
            try:
                barrier.wait()
                assert registry.register(new_instance(iid=f"i-{i}", port=8000 + i))
            except Exception as exc:  # pragma: no cover - surfaced below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(100)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        ids = {s.instance_id for s in registry.list_instances("user-service")}
        assert ids == {f"i-{i}" for i in range(100)}

    def test_concurrent_registrations_many_services(self, new_instance):
        registry = InstanceRegistry()

        def worker(service):
            for i in range(20):
                registry.register(new_instance(service=service, iid=f"i-{i}"))

        threads = [threading.Thread(target=worker, args=(f"svc-{n}",)) for n in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry.service_names()) == 10
        assert registry.instance_count() == 200

    def test_register_deregister_sequence(self, new_instance):
        registry = InstanceRegistry()
        rng = random.Random(7)
        expected = set()
        for step in range(500):
            iid = f"i-{rng.randrange(40)}"
            if rng.random() < 0.6:
                registry.register(new_instance(iid=iid))
                expected.add(iid)
            else:
                registry.deregister("user-service", iid)
                expected.discard(iid)
        assert {s.instance_id for s in registry.list_instances("user-service")} == expected
