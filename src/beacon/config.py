"""Configuration loading and merging for Beacon."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Mapping, Optional

import yaml

from .errors import ConfigError


ENV_PREFIX = "BEACON_"


@dataclass
class RegistrySettings:
    """Lease and sweep settings for the service registry."""
    lease_duration: float = 30.0
    sweep_interval: float = 10.0
    eviction_grace: float = 30.0
    # Fraction of live leases allowed to lapse in one sweep (None disables)
    self_preservation_threshold: Optional[float] = None


@dataclass
class ConfigServerSettings:
    """Backing store settings for the configuration server."""
    store_root: str = "config-repo"
    default_label: str = "main"
    serve_stale: bool = False


@dataclass
class UserServiceSettings:
    """Settings for the demo user service."""
    service_name: str = "user-service"
    instance_id: Optional[str] = None
    service_host: str = "localhost"
    service_port: int = 8080
    profile: str = "default"
    registry_url: str = "http://localhost:8761"
    config_url: str = "http://localhost:8761"
    renewal_interval: float = 10.0
    client_timeout: float = 5.0


@dataclass
class BeaconConfig:
    # HTTP listener for the registry/config server
    host: str = "0.0.0.0"
    port: int = 8761

    # Socket timeout applied to every accepted connection
    request_timeout: float = 10.0

    registry: RegistrySettings = field(default_factory=RegistrySettings)
    config_server: ConfigServerSettings = field(default_factory=ConfigServerSettings)
    user_service: UserServiceSettings = field(default_factory=UserServiceSettings)


# Section name in YAML -> settings class
_SECTIONS = {
    "registry": RegistrySettings,
    "config_server": ConfigServerSettings,
    "user_service": UserServiceSettings,
}


def _top_level_fields() -> set[str]:
    return {f.name for f in fields(BeaconConfig)} - set(_SECTIONS)


def _is_text(target, name: str) -> bool:
    ftype = next(f.type for f in fields(target) if f.name == name)
    return ftype in (str, Optional[str])


def _sections(config: BeaconConfig):
    """Yield (target, field) pairs for every scalar setting in *config*."""
    for name in _top_level_fields():
        yield config, name
    for section in _SECTIONS:
        target = getattr(config, section)
        for f in fields(target):
            yield target, f.name


def load_config(path: str | Path) -> BeaconConfig:
    """Load a BeaconConfig from a YAML file."""
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    sections = {}
    for name, cls in _SECTIONS.items():
        raw = data.pop(name, None) or {}
        valid = {f.name for f in fields(cls)}
        sections[name] = cls(**{k: v for k, v in raw.items() if k in valid})

    valid_fields = _top_level_fields()
    filtered = {k: v for k, v in data.items() if k in valid_fields}

    return BeaconConfig(**filtered, **sections)


def apply_env_overrides(config: BeaconConfig,
                        environ: Optional[Mapping[str, str]] = None) -> BeaconConfig:
    """Overlay ``BEACON_<FIELD>`` environment variables onto *config*.

    Non-string settings are parsed as YAML scalars so ``30``, ``0.5`` and
    ``true`` arrive with their natural types.
    """
    environ = os.environ if environ is None else environ
    for target, name in _sections(config):
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is None:
            continue
        if _is_text(target, name):
            setattr(target, name, raw)
        else:
            setattr(target, name, yaml.safe_load(raw))
    return config


def merge_cli_args(config: BeaconConfig, args) -> BeaconConfig:
    """Overlay CLI arguments onto an existing config. CLI values take precedence."""
    for target, name in _sections(config):
        cli_val = getattr(args, name, None)
        if cli_val is not None:
            setattr(target, name, cli_val)
    return config


def validate_config(config: BeaconConfig) -> BeaconConfig:
    """Reject settings no component can run with."""
    reg = config.registry
    for name in ("lease_duration", "sweep_interval"):
        if getattr(reg, name) <= 0:
            raise ConfigError(f"registry.{name} must be positive")
    if reg.eviction_grace < 0:
        raise ConfigError("registry.eviction_grace must not be negative")
    threshold = reg.self_preservation_threshold
    if threshold is not None and not 0 < threshold <= 1:
        raise ConfigError("registry.self_preservation_threshold must be in (0, 1]")

    if config.request_timeout <= 0:
        raise ConfigError("request_timeout must be positive")
    if not 0 <= config.port <= 65535:
        raise ConfigError(f"port out of range: {config.port}")

    svc = config.user_service
    if not 0 <= svc.service_port <= 65535:
        raise ConfigError(f"user_service.service_port out of range: {svc.service_port}")
    if svc.renewal_interval <= 0 or svc.client_timeout <= 0:
        raise ConfigError("user_service intervals must be positive")
    if not config.config_server.default_label:
        raise ConfigError("config_server.default_label must not be empty")
    return config


def config_to_yaml(config: BeaconConfig) -> str:
    """Serialize a BeaconConfig to YAML (used by ``beacon show-config``)."""
    data: dict = {name: getattr(config, name) for name in ("host", "port", "request_timeout")}
    for section in _SECTIONS:
        target = getattr(config, section)
        data[section] = {f.name: getattr(target, f.name) for f in fields(target)}
    return yaml.dump(data, default_flow_style=False, sort_keys=False)
