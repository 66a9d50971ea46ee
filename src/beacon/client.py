"""HTTP clients for the registry and the configuration server.

Every call carries a bounded timeout. Network failures and timeouts raise
ServiceUnavailableError instead of returning an empty result, so callers can
tell "no instances" from "registry unreachable".
"""

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, List, Optional, Tuple

from .configserver import ConfigDocument
from .discovery import RoundRobinBalancer, resolve_with_backoff
from .errors import (
    ConfigNotFoundError,
    ConfigStoreError,
    ConfigStoreUnavailable,
    ServiceUnavailableError,
    ValidationError,
)
from .registry import InstanceStatus, ServiceInstance


def _quote(segment: str) -> str:
    return urllib.parse.quote(segment, safe="")


class _HTTPClient:
    """Minimal JSON-over-HTTP client on top of urllib."""

    def __init__(self, base_url: str, timeout: float = 5.0):
        self._base = base_url.rstrip("/")
        self.timeout = timeout
        # Bypass http_proxy env vars; registry and config traffic stays internal.
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    @property
    def base_url(self) -> str:
        return self._base

    def _request(self, method: str, path: str,
                 body: Optional[Dict[str, Any]] = None) -> Tuple[int, bytes]:
        url = f"{self._base}{path}"
        data = json.dumps(body).encode() if body is not None else b""
        req = urllib.request.Request(url, data=data if method != "GET" else None,
                                     method=method)
        if body is not None:
            req.add_header("Content-Type", "application/json")
        try:
            with self._opener.open(req, timeout=self.timeout) as resp:
                return resp.status, resp.read()
        except urllib.error.HTTPError as exc:
            with exc:
                return exc.code, exc.read()
        except (urllib.error.URLError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            raise ServiceUnavailableError(f"{method} {url} failed: {reason}") from exc

    @staticmethod
    def _decode(payload: bytes) -> Any:
        try:
            return json.loads(payload.decode()) if payload else None
        except (UnicodeDecodeError, json.JSONDecodeError):
            return None

    def _error_text(self, payload: bytes) -> str:
        data = self._decode(payload)
        if isinstance(data, dict) and "error" in data:
            return str(data["error"])
        return payload.decode(errors="replace")


class RegistryClient(_HTTPClient):
    """Thin HTTP client for the registry API."""

    def __init__(self, base_url: str, timeout: float = 5.0, balancer=None):
        super().__init__(base_url, timeout)
        self.balancer = balancer or RoundRobinBalancer()

    def register(self, instance: ServiceInstance) -> bool:
        path = f"/registry/{_quote(instance.service_name)}/{_quote(instance.instance_id)}"
        status, payload = self._request("PUT", path, {
            "host": instance.host,
            "port": instance.port,
            "status": instance.status,
            "metadata": dict(instance.metadata),
        })
        if status == 400:
            raise ValidationError(self._error_text(payload))
        return status == 200

    def renew(self, service_name: str, instance_id: str) -> bool:
        """Send a heartbeat. False means the registry no longer knows the instance."""
        status, _ = self._request("PUT", f"/registry/{_quote(service_name)}/{_quote(instance_id)}")
        return status == 200

    def set_status(self, service_name: str, instance_id: str, status: InstanceStatus) -> bool:
        path = (f"/registry/{_quote(service_name)}/{_quote(instance_id)}/status?"
                + urllib.parse.urlencode({"value": status.value}))
        code, _ = self._request("PUT", path)
        return code == 200

    def deregister(self, service_name: str, instance_id: str) -> bool:
        status, payload = self._request(
            "DELETE", f"/registry/{_quote(service_name)}/{_quote(instance_id)}",
        )
        data = self._decode(payload)
        return status == 200 and bool(data and data.get("deregistered"))

    def get_instance(self, service_name: str, instance_id: str) -> Optional[ServiceInstance]:
        status, payload = self._request(
            "GET", f"/registry/{_quote(service_name)}/{_quote(instance_id)}",
        )
        if status != 200:
            return None
        return ServiceInstance.from_dict(self._decode(payload))

    def resolve(self, service_name: str) -> List[ServiceInstance]:
        """UP instances of *service_name*; empty when the service is unknown."""
        status, payload = self._request("GET", f"/registry/{_quote(service_name)}")
        if status != 200:
            raise ServiceUnavailableError(
                f"registry answered {status} for {service_name}: {self._error_text(payload)}"
            )
        return [ServiceInstance.from_dict(d) for d in self._decode(payload) or []]

    def applications(self, up_only: bool = False) -> Dict[str, List[ServiceInstance]]:
        """Registered instances grouped by service; every status unless *up_only*."""
        path = "/registry?status=UP" if up_only else "/registry"
        status, payload = self._request("GET", path)
        if status != 200:
            raise ServiceUnavailableError(f"registry answered {status}")
        data = self._decode(payload) or {}
        return {name: [ServiceInstance.from_dict(d) for d in items]
                for name, items in data.items()}

    def choose(self, service_name: str, balancer=None, attempts: int = 1,
               base_delay: float = 0.5) -> Optional[ServiceInstance]:
        """Resolve and pick one instance, retrying with backoff while none are UP."""
        balancer = balancer or self.balancer
        instances = resolve_with_backoff(
            self.resolve, service_name, attempts=attempts, base_delay=base_delay,
        )
        return balancer.choose(instances)


class ConfigClient(_HTTPClient):
    """HTTP client for the configuration server."""

    def labels(self) -> List[str]:
        """Labels the server can serve, default first."""
        status, payload = self._request("GET", "/config")
        if status != 200:
            raise ConfigStoreUnavailable(
                f"config server answered {status}: {self._error_text(payload)}"
            )
        data = self._decode(payload) or {}
        labels = list(data.get("labels", []))
        default = data.get("default_label")
        if default in labels:
            labels.remove(default)
            labels.insert(0, default)
        return labels

    def fetch(self, application: str, profile: str = "default",
              label: Optional[str] = None) -> ConfigDocument:
        path = f"/config/{_quote(application)}/{_quote(profile)}"
        if label:
            path += f"/{_quote(label)}"
        status, payload = self._request("GET", path)
        if status == 200:
            return ConfigDocument.from_dict(self._decode(payload))
        message = self._error_text(payload)
        if status == 404:
            raise ConfigNotFoundError(message)
        if status == 400:
            raise ValidationError(message)
        if status == 503:
            raise ConfigStoreUnavailable(message)
        raise ConfigStoreError(f"config server answered {status}: {message}")
