"""Shared fixtures for the Beacon test suite."""

import textwrap

import pytest

from beacon.config import BeaconConfig, RegistrySettings
from beacon.configserver import ConfigService, FileConfigStore
from beacon.launcher import launch, shutdown
from beacon.registry import InstanceRegistry, ServiceInstance


class FakeClock:
    """Manually advanced clock for lease timing."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return InstanceRegistry(clock=clock)


@pytest.fixture
def settings():
    return RegistrySettings(lease_duration=30.0, sweep_interval=5.0, eviction_grace=20.0)


def make_instance(service="user-service", iid="i-1", host="10.0.0.1", port=8080, **kw):
    return ServiceInstance(service_name=service, instance_id=iid, host=host, port=port, **kw)


def write_doc(root, label, name, body):
    directory = root / label
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.yml"
    path.write_text(textwrap.dedent(body))
    return path


@pytest.fixture
def config_root(tmp_path):
    root = tmp_path / "config-repo"
    write_doc(root, "main", "application", """
        logging:
          level: INFO
        shared: true
    """)
    write_doc(root, "main", "user-service", """
        a: 1
        b: 2
        server:
          port: 8080
    """)
    write_doc(root, "main", "user-service-dev", """
        b: 3
        c: 4
    """)
    write_doc(root, "main", "application-dev", """
        logging:
          level: DEBUG
    """)
    write_doc(root, "release-1", "user-service", """
        a: 10
    """)
    return root


@pytest.fixture
def store(config_root):
    return FileConfigStore(config_root, default_label="main")


@pytest.fixture
def config_service(store):
    return ConfigService(store)


@pytest.fixture
def new_instance():
    return make_instance


@pytest.fixture
def beacon_config(config_root):
    config = BeaconConfig(host="127.0.0.1", port=0)
    config.config_server.store_root = str(config_root)
    return config


@pytest.fixture
def running(beacon_config):
    """A combined registry/config server on an ephemeral port."""
    server, components = launch(beacon_config)
    base = f"http://127.0.0.1:{server.server_address[1]}"
    yield base, components
    shutdown(server, components)
