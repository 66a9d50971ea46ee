"""File-tree backing store for configuration documents.

Layout::

    <root>/<label>/application.yml          shared by every application
    <root>/<label>/application-<profile>.yml
    <root>/<label>/<app>.yml
    <root>/<label>/<app>-<profile>.yml

Documents are merged lowest precedence first: shared base, application base,
then for each requested profile the shared and the application profile
document. Later profiles win over earlier ones.
"""

import base64
import datetime
import hashlib
import os
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from ..errors import (
    ConfigNotFoundError,
    ConfigStoreError,
    ConfigStoreUnavailable,
    ValidationError,
)


DEFAULT_PROFILE = "default"
SHARED_NAME = "application"
EXTENSIONS = (".yml", ".yaml")


@dataclass(frozen=True)
class PropertySource:
    """One document that contributed to a merged result."""
    name: str
    source: Mapping[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "source": dict(self.source)}


@dataclass(frozen=True)
class ConfigDocument:
    """Merged configuration for one (application, profile, label) triple."""
    application: str
    profiles: Tuple[str, ...]
    label: str
    version: str
    properties: Mapping[str, Any]
    property_sources: Tuple[PropertySource, ...] = field(default=())
    stale: bool = False

    @property
    def profile(self) -> str:
        return ",".join(self.profiles)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.application,
            "profiles": list(self.profiles),
            "label": self.label,
            "version": self.version,
            "stale": self.stale,
            "properties": dict(self.properties),
            "property_sources": [s.to_dict() for s in self.property_sources],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConfigDocument':
        return cls(
            application=data["name"],
            profiles=tuple(data.get("profiles") or (DEFAULT_PROFILE,)),
            label=data["label"],
            version=data["version"],
            properties=MappingProxyType(dict(data.get("properties") or {})),
            property_sources=tuple(
                PropertySource(s["name"], MappingProxyType(dict(s["source"])))
                for s in data.get("property_sources") or ()
            ),
            stale=bool(data.get("stale", False)),
        )


def _scalar(value: Any) -> Any:
    """Map YAML-only scalar types onto JSON-representable values."""
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    return value


def flatten(data: Any, prefix: str = "") -> Dict[str, Any]:
    """Flatten nested maps to dotted keys and lists to indexed keys.

    Dates become ISO-8601 strings, ``!!binary`` base64 text and ``!!set``
    a sorted list, so every leaf survives a JSON round trip.
    """
    if isinstance(data, (set, frozenset)):
        data = sorted(data, key=str)
    flat: Dict[str, Any] = {}
    if isinstance(data, dict):
        if not data and prefix:
            flat[prefix] = {}
        for key, value in data.items():
            name = f"{prefix}.{key}" if prefix else str(key)
            flat.update(flatten(value, name))
    elif isinstance(data, list):
        if not data and prefix:
            flat[prefix] = []
        for i, value in enumerate(data):
            flat.update(flatten(value, f"{prefix}[{i}]"))
    else:
        flat[prefix] = _scalar(data)
    return flat


def merge_properties(*layers: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge flat property maps; keys in later layers override earlier ones."""
    merged: Dict[str, Any] = {}
    for layer in layers:
        merged.update(layer)
    return merged


def parse_profiles(profile: Optional[str]) -> Tuple[str, ...]:
    """Split a comma-separated profile list, falling back to ``default``."""
    names = tuple(p.strip() for p in (profile or "").split(",") if p.strip())
    return names or (DEFAULT_PROFILE,)


def check_name(kind: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{kind} must be a non-empty string")
    if "/" in value or "\\" in value or value.startswith(".") or "\x00" in value:
        raise ValidationError(f"invalid {kind}: {value!r}")
    return value


class FileConfigStore:
    """Reads and atomically publishes YAML documents under *root*."""

    def __init__(self, root: str | Path, default_label: str = "main"):
        self.root = Path(root)
        self.default_label = default_label
        self._publish_lock = threading.Lock()

    def _check_root(self) -> None:
        if not self.root.is_dir():
            raise ConfigStoreUnavailable(f"config store {self.root} is not available")

    def _label_dir(self, label: str) -> Path:
        self._check_root()
        directory = self.root / check_name("label", label)
        if not directory.is_dir():
            raise ConfigNotFoundError(f"unknown label {label!r}")
        return directory

    def _read(self, directory: Path, label: str,
              name: str) -> Optional[Tuple[str, bytes, Dict[str, Any]]]:
        """Return (source name, raw bytes, flat properties) or None if absent."""
        for ext in EXTENSIONS:
            path = directory / f"{name}{ext}"
            try:
                raw = path.read_bytes()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise ConfigStoreUnavailable(f"cannot read {path}: {exc}") from exc
            try:
                data = yaml.safe_load(raw)
            except yaml.YAMLError as exc:
                raise ConfigStoreError(f"{label}/{path.name}: invalid YAML: {exc}") from exc
            if data is None:
                data = {}
            if not isinstance(data, dict):
                raise ConfigStoreError(f"{label}/{path.name}: expected a mapping")
            return f"{label}/{path.name}", raw, flatten(data)
        return None

    def labels(self) -> List[str]:
        self._check_root()
        return sorted(p.name for p in self.root.iterdir()
                      if p.is_dir() and not p.name.startswith("."))

    def load(self, application: str, profile: Optional[str] = None,
             label: Optional[str] = None) -> ConfigDocument:
        """Merge the documents for the triple, or raise ConfigNotFoundError."""
        check_name("application", application)
        profiles = parse_profiles(profile)
        for p in profiles:
            check_name("profile", p)
        label = label or self.default_label
        directory = self._label_dir(label)

        # Lowest precedence first
        candidates = [SHARED_NAME, application]
        for p in profiles:
            candidates += [f"{SHARED_NAME}-{p}", f"{application}-{p}"]

        layers = []
        seen = set()
        found: Dict[str, bool] = {}
        for name in candidates:
            if name in seen:
                continue
            seen.add(name)
            doc = self._read(directory, label, name)
            found[name] = doc is not None
            if doc is not None:
                layers.append(doc)

        own = [application] + [f"{application}-{p}" for p in profiles]
        if application != SHARED_NAME and not any(found.get(n) for n in own):
            raise ConfigNotFoundError(
                f"no configuration for application {application!r} at label {label!r}"
            )
        if application == SHARED_NAME and not layers:
            raise ConfigNotFoundError(f"no shared configuration at label {label!r}")
        for p in profiles:
            if p == DEFAULT_PROFILE:
                continue
            if not (found.get(f"{SHARED_NAME}-{p}") or found.get(f"{application}-{p}")):
                raise ConfigNotFoundError(
                    f"no profile {p!r} for application {application!r} at label {label!r}"
                )

        digest = hashlib.sha1()
        for name, raw, _ in layers:
            digest.update(name.encode())
            digest.update(b"\0")
            digest.update(raw)
            digest.update(b"\0")

        return ConfigDocument(
            application=application,
            profiles=profiles,
            label=label,
            version=digest.hexdigest(),
            properties=MappingProxyType(merge_properties(*(props for _, _, props in layers))),
            property_sources=tuple(
                PropertySource(name, MappingProxyType(props))
                for name, _, props in reversed(layers)
            ),
        )

    def publish(self, application: str, profile: str, properties: Mapping[str, Any],
                label: Optional[str] = None) -> str:
        """Write a new revision of one document and return the merged version.

        The file is written next to its target and renamed into place, so a
        concurrent reader sees either the previous revision or the new one.
        """
        check_name("application", application)
        check_name("profile", profile)
        if "," in profile:
            raise ValidationError("publish takes a single profile")
        if not isinstance(properties, Mapping):
            raise ValidationError("properties must be a mapping")
        label = check_name("label", label or self.default_label)
        self._check_root()

        name = application if profile == DEFAULT_PROFILE else f"{application}-{profile}"
        directory = self.root / label
        body = yaml.safe_dump(dict(properties), default_flow_style=False, sort_keys=True)

        with self._publish_lock:
            tmp_path = None
            try:
                directory.mkdir(exist_ok=True)
                with tempfile.NamedTemporaryFile(
                    mode="w", suffix=".tmp", prefix=f".{name}.",
                    dir=directory, delete=False,
                ) as f:
                    tmp_path = f.name
                    f.write(body)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, directory / f"{name}{EXTENSIONS[0]}")
            except OSError as exc:
                if tmp_path:
                    Path(tmp_path).unlink(missing_ok=True)
                raise ConfigStoreUnavailable(f"cannot publish {label}/{name}: {exc}") from exc
            version = self.load(application, profile, label).version

        print(f"[config] published {label}/{name}{EXTENSIONS[0]} (version {version[:12]})",
              file=sys.stderr)
        return version
