"""Demo user service: fetches its configuration, registers, serves GET /users."""

import signal
import sys
import threading
from http.server import ThreadingHTTPServer
from typing import List, Optional

from .client import ConfigClient, RegistryClient
from .config import UserServiceSettings
from .configserver import ConfigDocument
from .errors import BeaconError, ConfigNotFoundError
from .heartbeat import LeaseRenewer
from .registry import InstanceStatus, ServiceInstance
from .server import JSONRequestHandler, start_server


USERS_PAYLOAD = "List of users"


def default_instance_id(settings: UserServiceSettings, port: Optional[int] = None) -> str:
    """``host:service:port``, the id format Eureka clients use by default."""
    port = settings.service_port if port is None else port
    return f"{settings.service_host}:{settings.service_name}:{port}"


def _make_handler(service: 'UserService'):

    class UserServiceHandler(JSONRequestHandler):

        timeout = service.settings.client_timeout * 2

        def do_GET(self):
            parts, _ = self._split_path()
            if parts == ["users"]:
                self._text_response(USERS_PAYLOAD)
            elif parts == ["health"]:
                self._json_response({"status": "UP"})
            elif parts == ["config"]:
                doc = service.config
                self._json_response(doc.to_dict() if doc else None)
            else:
                self._not_found()

        def do_POST(self):
            parts, _ = self._split_path()
            if parts == ["refresh"]:
                self._json_response({"changed": service.refresh()})
            else:
                self._not_found()

    return UserServiceHandler


class UserService:
    """One instance of the demo service and its registry/config wiring."""

    def __init__(
        self,
        settings: UserServiceSettings,
        registry_client: Optional[RegistryClient] = None,
        config_client: Optional[ConfigClient] = None,
    ):
        self.settings = settings
        self.registry_client = registry_client or RegistryClient(
            settings.registry_url, timeout=settings.client_timeout,
        )
        self.config_client = config_client or ConfigClient(
            settings.config_url, timeout=settings.client_timeout,
        )
        self.config: Optional[ConfigDocument] = None
        self.server: Optional[ThreadingHTTPServer] = None
        self.renewer: Optional[LeaseRenewer] = None
        self._config_lock = threading.Lock()

    def refresh(self) -> List[str]:
        """Fetch configuration again and return the keys whose values changed.

        A missing document leaves the service on its built-in defaults; an
        unreachable or unavailable config server keeps the previous document.
        """
        s = self.settings
        try:
            doc = self.config_client.fetch(s.service_name, s.profile)
        except ConfigNotFoundError as exc:
            print(f"[user-service] no configuration ({exc}); using defaults", file=sys.stderr)
            return []
        except BeaconError as exc:
            print(f"[user-service] config fetch failed ({exc}); keeping current configuration",
                  file=sys.stderr)
            return []

        with self._config_lock:
            old = dict(self.config.properties) if self.config else {}
            self.config = doc
        new = dict(doc.properties)
        changed = sorted(k for k in old.keys() | new.keys() if old.get(k) != new.get(k))
        stale = " (stale)" if doc.stale else ""
        print(
            f"[user-service] configuration {doc.application}/{doc.profile}@{doc.label}"
            f" version {doc.version[:12]}{stale}: {len(changed)} key(s) changed",
            file=sys.stderr,
        )
        return changed

    def start(self) -> None:
        s = self.settings
        self.refresh()

        self.server = start_server(_make_handler(self), host=s.service_host, port=s.service_port)
        port = self.server.server_address[1]
        print(f"[user-service] listening on {s.service_host}:{port}", file=sys.stderr)

        instance = ServiceInstance(
            service_name=s.service_name,
            instance_id=s.instance_id or default_instance_id(s, port),
            host=s.service_host,
            port=port,
            status=InstanceStatus.STARTING.value,
        )
        print(f"[user-service] registering {instance.instance_id}"
              f" with {self.registry_client.base_url}", file=sys.stderr)
        self.renewer = LeaseRenewer(self.registry_client, instance, interval=s.renewal_interval)
        self.renewer.start()
        self.renewer.set_status(InstanceStatus.UP)

    def stop(self) -> None:
        if self.renewer is not None:
            self.renewer.stop()
            self.renewer = None
        if self.server is not None:
            self.server.shutdown()
            self.server.server_close()
            self.server = None


def run_user_service(settings: UserServiceSettings) -> None:
    """Run the demo service until interrupted. SIGHUP re-fetches configuration."""
    service = UserService(settings)
    service.start()

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, lambda signum, frame: threading.Thread(
            target=service.refresh, daemon=True).start())
    try:
        while not stop.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    print("[user-service] shutting down", file=sys.stderr)
    service.stop()
