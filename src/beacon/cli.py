"""CLI entry point for Beacon."""

import argparse
import json
import sys
import yaml

from .client import ConfigClient, RegistryClient
from .config import (
    BeaconConfig,
    apply_env_overrides,
    config_to_yaml,
    load_config,
    merge_cli_args,
    validate_config,
)
from .configserver import FileConfigStore
from .configserver.render import FORMATS, to_properties, to_yaml
from .errors import BeaconError, ConfigError
from .launcher import ROLES, serve
from .registry import InstanceStatus, ServiceInstance
from .user_service import run_user_service


def _fail(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(1)


def _add_server_args(parser: argparse.ArgumentParser) -> None:
    """Add flags for the registry/config server."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--host", type=str, help="Address to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to bind (default: 8761)")
    parser.add_argument(
        "--request-timeout", type=float, dest="request_timeout",
        help="Socket timeout for each client connection in seconds (default: 10)",
    )
    parser.add_argument(
        "--lease-duration", type=float, dest="lease_duration",
        help="Seconds an instance stays registered without a heartbeat (default: 30)",
    )
    parser.add_argument(
        "--sweep-interval", type=float, dest="sweep_interval",
        help="Seconds between lease expiry sweeps (default: 10)",
    )
    parser.add_argument(
        "--eviction-grace", type=float, dest="eviction_grace",
        help="Seconds an expired instance is kept as DOWN before removal (default: 30)",
    )
    parser.add_argument(
        "--self-preservation-threshold", type=float, dest="self_preservation_threshold",
        help="Skip expiry when more than this fraction of leases lapse in one sweep",
    )
    parser.add_argument(
        "--store-root", type=str, dest="store_root",
        help="Directory holding <label>/<application>[-<profile>].yml documents",
    )
    parser.add_argument(
        "--default-label", type=str, dest="default_label",
        help="Label served when a request names none (default: main)",
    )
    parser.add_argument(
        "--serve-stale", action="store_true", dest="serve_stale", default=None,
        help="Serve the last good document, marked stale, while the store is unavailable",
    )


def _add_user_service_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--service-name", type=str, dest="service_name",
                        help="Name to register under (default: user-service)")
    parser.add_argument("--instance-id", type=str, dest="instance_id",
                        help="Instance id (default: host:service:port)")
    parser.add_argument("--service-host", type=str, dest="service_host",
                        help="Address to bind and advertise (default: localhost)")
    parser.add_argument("--service-port", type=int, dest="service_port",
                        help="Port to bind and advertise (default: 8080)")
    parser.add_argument("--profile", type=str, help="Configuration profile(s), comma separated")
    parser.add_argument("--registry-url", type=str, dest="registry_url",
                        help="Base URL of the registry (default: http://localhost:8761)")
    parser.add_argument("--config-url", type=str, dest="config_url",
                        help="Base URL of the config server (default: http://localhost:8761)")
    parser.add_argument("--renewal-interval", type=float, dest="renewal_interval",
                        help="Seconds between heartbeats (default: 10)")
    parser.add_argument("--client-timeout", type=float, dest="client_timeout",
                        help="Timeout for registry/config calls in seconds (default: 5)")


def _build_config(args) -> BeaconConfig:
    """Build a BeaconConfig from a config file + environment + CLI overrides."""
    try:
        if getattr(args, "config", None):
            config = load_config(args.config)
        else:
            config = BeaconConfig()
        apply_env_overrides(config)
        merge_cli_args(config, args)
        return validate_config(config)
    except (ConfigError, TypeError) as exc:
        _fail(f"invalid configuration: {exc}")
    except OSError as exc:
        _fail(f"cannot read config file: {exc}")


def cmd_serve(args) -> None:
    """Run the registry and/or config server."""
    config = _build_config(args)
    try:
        serve(config, role=args.role)
    except OSError as exc:
        _fail(f"cannot listen on {config.host}:{config.port}: {exc}")


def cmd_user_service(args) -> None:
    """Run the demo user service."""
    config = _build_config(args)
    run_user_service(config.user_service)


def cmd_show_config(args) -> None:
    print(config_to_yaml(_build_config(args)), end="")


# ---------------------------------------------------------------------------
# beacon registry subcommand
# ---------------------------------------------------------------------------

def _format_instance(s: ServiceInstance) -> str:
    return (f"{s.service_name}/{s.instance_id}  {s.address}  {s.status}"
            f"  last_heartbeat={s.last_heartbeat:.1f}")


def _format_instances(instances, fmt: str) -> str:
    """Format a list of ServiceInstance objects for output."""
    if fmt == "json":
        return json.dumps([s.to_dict() for s in instances], indent=2)
    lines = [_format_instance(s) for s in instances]
    return "\n".join(lines) if lines else "(no instances)"


def _registry_client(args) -> RegistryClient:
    return RegistryClient(args.registry_url, timeout=args.timeout)


def cmd_registry_list(args) -> None:
    apps = _registry_client(args).applications(up_only=args.up_only)
    instances = [s for name in sorted(apps) for s in apps[name]]
    print(_format_instances(instances, args.format))


def cmd_registry_resolve(args) -> None:
    instances = _registry_client(args).resolve(args.service_name)
    print(_format_instances(instances, args.format))


def cmd_registry_get(args) -> None:
    instance = _registry_client(args).get_instance(args.service_name, args.instance_id)
    if instance is None:
        _fail(f"instance '{args.service_name}/{args.instance_id}' not found.")
    if args.format == "json":
        print(json.dumps(instance.to_dict(), indent=2))
    else:
        print(_format_instance(instance))


def cmd_registry_register(args) -> None:
    metadata = {}
    for item in args.metadata or []:
        key, sep, value = item.partition("=")
        if not sep:
            _fail(f"metadata must be KEY=VALUE, got {item!r}")
        metadata[key] = value
    instance = ServiceInstance(
        service_name=args.service_name,
        instance_id=args.instance_id,
        host=args.host,
        port=args.port,
        status=args.status,
        metadata=metadata,
    )
    if not _registry_client(args).register(instance):
        _fail("registry rejected the registration")
    print(f"Registered {args.service_name}/{args.instance_id}")


def cmd_registry_heartbeat(args) -> None:
    if not _registry_client(args).renew(args.service_name, args.instance_id):
        _fail(f"instance '{args.service_name}/{args.instance_id}' is not registered")
    print(f"Renewed {args.service_name}/{args.instance_id}")


def cmd_registry_deregister(args) -> None:
    removed = _registry_client(args).deregister(args.service_name, args.instance_id)
    print(f"Deregistered {args.service_name}/{args.instance_id}" if removed
          else f"{args.service_name}/{args.instance_id} was not registered")


def _add_registry_args(parser: argparse.ArgumentParser) -> None:
    """Add --registry-url, --timeout and --format to a registry sub-parser."""
    parser.add_argument(
        "--registry-url", type=str, default="http://localhost:8761", dest="registry_url",
        help="Base URL of the registry (default: http://localhost:8761)",
    )
    parser.add_argument(
        "--timeout", type=float, default=5.0,
        help="Request timeout in seconds (default: 5)",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


def _add_instance_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("service_name", type=str, help="Service name")
    parser.add_argument("instance_id", type=str, help="Instance identifier")


# ---------------------------------------------------------------------------
# beacon config subcommand
# ---------------------------------------------------------------------------

def cmd_config_fetch(args) -> None:
    client = ConfigClient(args.config_url, timeout=args.timeout)
    doc = client.fetch(args.application, args.profile, args.label)
    if args.format == "yaml":
        print(to_yaml(doc), end="")
    elif args.format == "properties":
        print(to_properties(doc), end="")
    else:
        print(json.dumps(doc.to_dict(), indent=2))
    if doc.stale:
        print("Warning: the config store is unavailable; this document is stale.",
              file=sys.stderr)


def cmd_config_labels(args) -> None:
    client = ConfigClient(args.config_url, timeout=args.timeout)
    labels = client.labels()
    if args.format == "json":
        print(json.dumps(labels))
    else:
        print("\n".join(labels) if labels else "(no labels)")


def cmd_config_publish(args) -> None:
    """Publish a YAML document straight into the file-tree store."""
    config = _build_config(args)
    try:
        with open(args.file) as f:
            properties = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _fail(f"cannot read {args.file}: {exc}")
    settings = config.config_server
    store = FileConfigStore(settings.store_root, default_label=settings.default_label)
    version = store.publish(args.application, args.publish_profile, properties, args.label)
    print(version)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="beacon",
        description="Beacon: service registry and configuration server",
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser(
        "serve", help="Run the service registry and/or config server",
    )
    _add_server_args(serve_parser)
    serve_parser.add_argument(
        "--role", choices=ROLES, default="all",
        help="Which components to run (default: all)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # user-service
    user_parser = subparsers.add_parser(
        "user-service", help="Run the demo user service",
    )
    _add_user_service_args(user_parser)
    user_parser.set_defaults(func=cmd_user_service)

    # show-config
    show_parser = subparsers.add_parser(
        "show-config", help="Print the effective configuration as YAML",
    )
    _add_server_args(show_parser)
    show_parser.set_defaults(func=cmd_show_config)

    # registry
    registry_parser = subparsers.add_parser(
        "registry", help="Query or update the service registry",
    )
    registry_sub = registry_parser.add_subparsers(dest="registry_command")

    reg_list = registry_sub.add_parser("list", help="List every registered instance")
    _add_registry_args(reg_list)
    reg_list.add_argument("--up-only", action="store_true", dest="up_only",
                          help="Only list instances that are UP")
    reg_list.set_defaults(func=cmd_registry_list)

    reg_resolve = registry_sub.add_parser("resolve", help="List UP instances of a service")
    _add_registry_args(reg_resolve)
    reg_resolve.add_argument("service_name", type=str, help="Service name")
    reg_resolve.set_defaults(func=cmd_registry_resolve)

    reg_get = registry_sub.add_parser("get", help="Get a single instance")
    _add_registry_args(reg_get)
    _add_instance_args(reg_get)
    reg_get.set_defaults(func=cmd_registry_get)

    reg_register = registry_sub.add_parser("register", help="Register an instance")
    _add_registry_args(reg_register)
    _add_instance_args(reg_register)
    reg_register.add_argument("--host", type=str, required=True, help="Instance host")
    reg_register.add_argument("--port", type=int, required=True, help="Instance port")
    reg_register.add_argument(
        "--status", choices=[s.value for s in InstanceStatus], default=InstanceStatus.UP.value,
        help="Initial status (default: UP)",
    )
    reg_register.add_argument(
        "--metadata", nargs="*", metavar="KEY=VALUE",
        help="Metadata entries attached to the instance",
    )
    reg_register.set_defaults(func=cmd_registry_register)

    reg_heartbeat = registry_sub.add_parser("heartbeat", help="Renew an instance's lease")
    _add_registry_args(reg_heartbeat)
    _add_instance_args(reg_heartbeat)
    reg_heartbeat.set_defaults(func=cmd_registry_heartbeat)

    reg_deregister = registry_sub.add_parser("deregister", help="Remove an instance")
    _add_registry_args(reg_deregister)
    _add_instance_args(reg_deregister)
    reg_deregister.set_defaults(func=cmd_registry_deregister)

    # config
    config_parser = subparsers.add_parser(
        "config", help="Fetch or publish configuration documents",
    )
    config_sub = config_parser.add_subparsers(dest="config_command")

    cfg_fetch = config_sub.add_parser("fetch", help="Fetch a merged document from the server")
    cfg_fetch.add_argument("application", type=str, help="Application name")
    cfg_fetch.add_argument("profile", type=str, nargs="?", default="default",
                           help="Profile(s), comma separated (default: default)")
    cfg_fetch.add_argument("--label", type=str, default=None, help="Label (default: server's)")
    cfg_fetch.add_argument(
        "--config-url", type=str, default="http://localhost:8761", dest="config_url",
        help="Base URL of the config server (default: http://localhost:8761)",
    )
    cfg_fetch.add_argument("--timeout", type=float, default=5.0,
                           help="Request timeout in seconds (default: 5)")
    cfg_fetch.add_argument("--format", choices=FORMATS, default="json",
                           help="Output format (default: json)")
    cfg_fetch.set_defaults(func=cmd_config_fetch)

    cfg_labels = config_sub.add_parser("labels", help="List the labels the server can serve")
    cfg_labels.add_argument(
        "--config-url", type=str, default="http://localhost:8761", dest="config_url",
        help="Base URL of the config server (default: http://localhost:8761)",
    )
    cfg_labels.add_argument("--timeout", type=float, default=5.0,
                            help="Request timeout in seconds (default: 5)")
    cfg_labels.add_argument("--format", choices=["text", "json"], default="text",
                            help="Output format (default: text)")
    cfg_labels.set_defaults(func=cmd_config_labels)

    cfg_publish = config_sub.add_parser("publish", help="Publish a document into the store")
    cfg_publish.add_argument("application", type=str, help="Application name")
    cfg_publish.add_argument("publish_profile", metavar="profile", type=str,
                             help="Profile ('default' for the base document)")
    cfg_publish.add_argument("file", type=str, help="YAML file with the properties")
    cfg_publish.add_argument("--label", type=str, default=None, help="Label (default: main)")
    cfg_publish.add_argument("--config", type=str, help="Path to YAML config file")
    cfg_publish.add_argument("--store-root", type=str, dest="store_root",
                             help="Directory of the file-tree store")
    cfg_publish.set_defaults(func=cmd_config_publish)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "registry" and not args.registry_command:
        registry_parser.print_help()
        sys.exit(1)

    if args.command == "config" and not args.config_command:
        config_parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BeaconError as exc:
        _fail(str(exc))


if __name__ == "__main__":
    main()
