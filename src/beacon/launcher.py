"""Composition root: build the registry and config components and serve them."""

import signal
import sys
import threading
import time
from dataclasses import dataclass
from http.server import ThreadingHTTPServer
from pathlib import Path
from typing import Callable, Optional

from .config import BeaconConfig
from .configserver import ConfigService, FileConfigStore
from .discovery import DiscoveryService
from .heartbeat import LeaseManager
from .registry import InstanceRegistry
from .server import make_server_handler, start_server


ROLES = ("all", "registry", "config")


@dataclass
class Components:
    """Everything one Beacon server process runs. Unused roles stay None."""
    registry: Optional[InstanceRegistry] = None
    lease_manager: Optional[LeaseManager] = None
    discovery: Optional[DiscoveryService] = None
    config_service: Optional[ConfigService] = None


def build_components(
    config: BeaconConfig,
    role: str = "all",
    clock: Callable[[], float] = time.time,
) -> Components:
    """Construct and wire the components for *role* from *config*."""
    if role not in ROLES:
        raise ValueError(f"unknown role {role!r}; expected one of {', '.join(ROLES)}")

    components = Components()
    if role in ("all", "registry"):
        registry = InstanceRegistry(clock=clock)
        components.registry = registry
        components.lease_manager = LeaseManager(registry, config.registry, clock=clock)
        components.discovery = DiscoveryService(registry)
    if role in ("all", "config"):
        settings = config.config_server
        store = FileConfigStore(settings.store_root, default_label=settings.default_label)
        components.config_service = ConfigService(store, serve_stale=settings.serve_stale)
    return components


def launch(config: BeaconConfig, role: str = "all") -> tuple[ThreadingHTTPServer, Components]:
    """Build the components, start the lease sweep and the HTTP server."""
    components = build_components(config, role)

    if components.config_service is not None:
        root = Path(config.config_server.store_root)
        if not root.is_dir():
            print(
                f"[config] warning: store root {root} does not exist;"
                " fetches will answer 503 until it does",
                file=sys.stderr,
            )

    handler = make_server_handler(
        registry=components.registry,
        discovery=components.discovery,
        config_service=components.config_service,
        request_timeout=config.request_timeout,
    )
    server = start_server(handler, host=config.host, port=config.port)

    if components.lease_manager is not None:
        components.lease_manager.start()
        reg = config.registry
        print(
            f"[registry] lease {reg.lease_duration}s, sweep every {reg.sweep_interval}s,"
            f" eviction grace {reg.eviction_grace}s",
            file=sys.stderr,
        )
    if components.config_service is not None:
        print(
            f"[config] serving {config.config_server.store_root}"
            f" (default label {config.config_server.default_label})",
            file=sys.stderr,
        )

    host, port = server.server_address[:2]
    print(f"Beacon ({role}) listening on {host}:{port}", file=sys.stderr)
    return server, components


def shutdown(server: ThreadingHTTPServer, components: Components) -> None:
    if components.lease_manager is not None:
        components.lease_manager.stop()
    server.shutdown()
    server.server_close()


def serve(config: BeaconConfig, role: str = "all") -> None:
    """Run until interrupted (Ctrl-C or SIGTERM)."""
    server, components = launch(config, role)
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    print("Shutting down.", file=sys.stderr)
    shutdown(server, components)
