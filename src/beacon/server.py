#!/usr/bin/env python3
"""
HTTP surface for the registry and configuration server

This module provides:
- JSONRequestHandler: BaseHTTPRequestHandler with JSON/text helpers
- make_server_handler: handler class bound to the registry/config components
- start_server: launches a ThreadingHTTPServer in a daemon thread
"""

import json
import sys
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional

from .configserver import ConfigService
from .configserver.render import FORMATS, to_properties, to_yaml
from .discovery import DiscoveryService
from .errors import (
    BeaconError,
    ConfigNotFoundError,
    ConfigStoreUnavailable,
    ValidationError,
)
from .registry import InstanceRegistry, InstanceStatus, ServiceInstance


MAX_BODY_BYTES = 1 << 20
RETRY_AFTER_SECONDS = 5


class JSONRequestHandler(BaseHTTPRequestHandler):
    """Shared plumbing for Beacon's HTTP handlers."""

    def log_message(self, format, *args):
        # Silence default stderr logging
        pass

    def _send(self, body: bytes, content_type: str, status: int = 200,
              headers: Optional[Dict[str, str]] = None):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)

    def _json_response(self, data: Any, status: int = 200,
                       headers: Optional[Dict[str, str]] = None):
        self._send(json.dumps(data).encode(), "application/json", status, headers)

    def _text_response(self, text: str, status: int = 200,
                       content_type: str = "text/plain; charset=utf-8",
                       headers: Optional[Dict[str, str]] = None):
        self._send(text.encode(), content_type, status, headers)

    def _not_found(self):
        self._json_response({"error": "not found"}, status=404)

    def _split_path(self) -> tuple[List[str], Dict[str, List[str]]]:
        parsed = urllib.parse.urlparse(self.path)
        parts = [urllib.parse.unquote(p) for p in parsed.path.strip("/").split("/") if p]
        return parts, urllib.parse.parse_qs(parsed.query)

    def _read_body(self) -> bytes:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            raise ValidationError("invalid Content-Length header") from None
        if length < 0 or length > MAX_BODY_BYTES:
            raise ValidationError(f"request body must be at most {MAX_BODY_BYTES} bytes")
        return self.rfile.read(length) if length else b""

    def _error_response(self, exc: BeaconError):
        headers = None
        if isinstance(exc, ValidationError):
            status = 400
        elif isinstance(exc, ConfigNotFoundError):
            status = 404
        elif isinstance(exc, ConfigStoreUnavailable):
            status = 503
            headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
        else:
            status = 500
        self._json_response(
            {"error": str(exc), "retryable": exc.retryable}, status=status, headers=headers,
        )


def _parse_instance(service_name: str, instance_id: str, body: bytes) -> ServiceInstance:
    try:
        data = json.loads(body.decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError(f"body is not valid JSON: {exc}") from None
    if not isinstance(data, dict):
        raise ValidationError("body must be a JSON object")
    return ServiceInstance(
        service_name=service_name,
        instance_id=instance_id,
        host=data.get("host"),
        port=data.get("port"),
        status=data.get("status", InstanceStatus.UP.value),
        metadata=data.get("metadata") or {},
    )


def make_server_handler(
    registry: Optional[InstanceRegistry] = None,
    discovery: Optional[DiscoveryService] = None,
    config_service: Optional[ConfigService] = None,
    request_timeout: float = 10.0,
):
    """Create a handler class bound to the given components.

    Routes for a component that is ``None`` answer 404, so the same handler
    serves a registry-only, config-only or combined server.
    """

    class BeaconHTTPHandler(JSONRequestHandler):

        timeout = request_timeout

        # -- registry ------------------------------------------------------

        def _registry_put(self, parts: List[str], qs: Dict[str, List[str]]):
            service_name, instance_id = parts[1], parts[2]
            if len(parts) == 4 and parts[3] == "status":
                value = qs.get("value", [None])[0]
                try:
                    status = InstanceStatus(value)
                except ValueError:
                    raise ValidationError(f"unknown status: {value!r}") from None
                if registry.set_status(service_name, instance_id, status):
                    self._json_response({"updated": True, "status": status.value})
                else:
                    self._json_response({"error": "unknown instance", "updated": False},
                                        status=404)
                return
            if len(parts) != 3:
                self._not_found()
                return

            body = self._read_body()
            if body.strip():
                instance = _parse_instance(service_name, instance_id, body)
                registry.register(instance)
                stored = registry.get_instance(service_name, instance_id)
                self._json_response({
                    "registered": True,
                    "instance": stored.to_dict() if stored else instance.to_dict(),
                })
            elif registry.renew(service_name, instance_id):
                self._json_response({"renewed": True})
            else:
                self._json_response({"error": "unknown instance", "renewed": False},
                                    status=404)

        def _registry_get(self, parts: List[str], qs: Dict[str, List[str]]):
            if len(parts) == 1:
                only = qs.get("status", [None])[0]
                if only not in (None, InstanceStatus.UP.value):
                    raise ValidationError("status filter only accepts UP")
                snapshot = discovery.applications() if only else registry.snapshot()
                self._json_response({
                    name: [s.to_dict() for s in instances]
                    for name, instances in sorted(snapshot.items())
                })
            elif len(parts) == 2:
                instances = discovery.resolve(parts[1])
                self._json_response([s.to_dict() for s in instances])
            elif len(parts) == 3:
                info = registry.get_instance(parts[1], parts[2])
                if info:
                    self._json_response(info.to_dict())
                else:
                    self._not_found()
            else:
                self._not_found()

        # -- config --------------------------------------------------------

        def _config_get(self, parts: List[str], qs: Dict[str, List[str]]):
            if len(parts) == 1:
                self._json_response({
                    "labels": config_service.labels(),
                    "default_label": config_service.default_label,
                })
                return
            if len(parts) not in (3, 4):
                self._not_found()
                return
            fmt = qs.get("format", ["json"])[0]
            if fmt not in FORMATS:
                raise ValidationError(f"format must be one of {', '.join(FORMATS)}")
            label = parts[3] if len(parts) == 4 else qs.get("label", [None])[0]
            doc = config_service.fetch(parts[1], parts[2], label)
            headers = {
                "X-Config-Version": doc.version,
                "X-Config-Stale": "true" if doc.stale else "false",
            }
            if fmt == "yaml":
                self._text_response(to_yaml(doc), content_type="application/yaml",
                                    headers=headers)
            elif fmt == "properties":
                self._text_response(to_properties(doc), headers=headers)
            else:
                self._json_response(doc.to_dict(), headers=headers)

        # -- dispatch ------------------------------------------------------

        def _dispatch(self, method: str):
            parts, qs = self._split_path()
            try:
                if method == "GET" and parts == ["health"]:
                    self._json_response({"status": "UP"})
                elif parts and parts[0] == "registry" and registry is not None:
                    if method == "GET":
                        self._registry_get(parts, qs)
                    elif method == "PUT" and len(parts) >= 3:
                        self._registry_put(parts, qs)
                    elif method == "DELETE" and len(parts) == 3:
                        removed = registry.deregister(parts[1], parts[2])
                        self._json_response({"deregistered": removed})
                    else:
                        self._not_found()
                elif parts and parts[0] == "config" and config_service is not None \
                        and method == "GET":
                    self._config_get(parts, qs)
                else:
                    self._not_found()
            except BeaconError as exc:
                self._error_response(exc)
            except Exception as exc:
                print(f"[server] {method} {self.path} failed: {exc!r}", file=sys.stderr)
                self._json_response(
                    {"error": f"internal error: {exc}", "retryable": False}, status=500,
                )

        def do_GET(self):
            self._dispatch("GET")

        def do_PUT(self):
            self._dispatch("PUT")

        def do_DELETE(self):
            self._dispatch("DELETE")

    return BeaconHTTPHandler


def start_server(
    handler,
    host: str = "0.0.0.0",
    port: int = 8761,
) -> ThreadingHTTPServer:
    """Start a ThreadingHTTPServer in a daemon thread and return the server."""
    server = ThreadingHTTPServer((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server
