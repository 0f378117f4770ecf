"""CLI entry point for the Home Server Gallery."""

import argparse
import json
import logging
import os
import shutil
import sys
import time
from pathlib import Path

from jinja2 import Environment, PackageLoader

from . import __version__
from .api import GalleryClient, start_api_server
from .config import GalleryConfig, config_to_yaml, load_config, merge_cli_args
from .errors import GalleryClientError
from .gallery import ServiceGallery
from .heartbeat import HealthScheduler
from .registry import JsonServiceStore

logger = logging.getLogger("homegallery")


def _get_template_env() -> Environment:
    return Environment(
        loader=PackageLoader("homegallery", "templates"),
        keep_trailing_newline=True,
    )


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    """Add the config flags shared by serve and unit."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--host", type=str, help="Address the API binds to (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port the API listens on (default: 4568)")
    parser.add_argument(
        "--data-file", type=str, dest="data_file",
        help="JSON file holding the service registry (default: db/services.json)",
    )


def _build_config(args) -> GalleryConfig:
    """Build a GalleryConfig from a config file + CLI overrides."""
    if args.config:
        config = load_config(args.config)
    else:
        config = GalleryConfig()
    merge_cli_args(config, args)
    return config


# ---------------------------------------------------------------------------
# homegallery serve
# ---------------------------------------------------------------------------

def cmd_serve(args) -> None:
    """Run the API server and the background health checker."""
    config = _build_config(args)
    if args.verbose:
        config.log_level = "DEBUG"

    if args.dump_config:
        print(config_to_yaml(config), end="")
        return

    _setup_logging(config.log_level)

    store = JsonServiceStore(config.data_file)
    gallery = ServiceGallery(store, probe_timeout=config.probe_timeout)
    if config.seed_samples:
        gallery.seed_samples()

    scheduler = HealthScheduler(
        store, interval=config.check_interval, timeout=config.probe_timeout,
    )
    server = start_api_server(gallery, host=config.host, port=config.port)
    scheduler.start()
    logger.info("Home Server Gallery v%s listening on %s:%d (data: %s)",
                __version__, config.host, config.port, store.path)

    try:
        while True:
            time.sleep(3600)
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        scheduler.stop(timeout=config.probe_timeout + 1)
        server.shutdown()
        server.server_close()


# ---------------------------------------------------------------------------
# homegallery services subcommand
# ---------------------------------------------------------------------------

def _format_service(s) -> str:
    target = s.url or (f"{s.address}:{s.port}" if s.port else s.address) or "-"
    return f"{s.id:>3}  {s.name}  {target}  {s.status}  last_checked={s.last_checked or '-'}"


def _format_services(services, fmt: str) -> str:
    """Format a list of ServiceRecord objects for output."""
    if fmt == "json":
        return json.dumps([s.to_dict() for s in services], indent=2)
    lines = [_format_service(s) for s in services]
    return "\n".join(lines) if lines else "(no services)"


def _client(args) -> GalleryClient:
    return GalleryClient(host=args.api_host, port=args.api_port)


def _run_mutation(func, *func_args) -> dict:
    try:
        return func(*func_args)
    except GalleryClientError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_services_list(args) -> None:
    services = _client(args).list_services()
    print(_format_services(services, args.format))


def cmd_services_get(args) -> None:
    service = _client(args).get_service(args.service_id)
    if service is None:
        print(f"Service {args.service_id} not found.", file=sys.stderr)
        sys.exit(1)
    if args.format == "json":
        print(json.dumps(service.to_dict(), indent=2))
    else:
        print(_format_service(service))


def _fields_from_args(args) -> dict:
    data = {}
    for key in ("name", "url", "health_check_url"):
        value = getattr(args, key, None)
        if value is not None:
            data[key] = value
    if getattr(args, "clear_health_check_url", False):
        data["health_check_url"] = None
    return data


def cmd_services_add(args) -> None:
    result = _run_mutation(_client(args).create_service, _fields_from_args(args))
    print(f"Created service {result['id']} ({result['status']})")


def cmd_services_update(args) -> None:
    data = _fields_from_args(args)
    if not data:
        print("Error: nothing to update.", file=sys.stderr)
        sys.exit(1)
    result = _run_mutation(_client(args).update_service, args.service_id, data)
    print(f"Updated service {args.service_id} ({result['status']})")


def cmd_services_remove(args) -> None:
    _run_mutation(_client(args).delete_service, args.service_id)
    print(f"Deleted service {args.service_id}")


def cmd_services_check(args) -> None:
    result = _run_mutation(_client(args).check_service, args.service_id)
    print(result["status"])


def _parse_order(value: str) -> dict:
    try:
        service_id, order = value.split("=", 1)
        return {"id": int(service_id), "display_order": int(order)}
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected ID=ORDER, got {value!r}") from None


def cmd_services_reorder(args) -> None:
    result = _run_mutation(_client(args).reorder_services, args.orders)
    print(f"Reordered {result.get('updated', 0)} service(s)")


def _add_client_args(parser: argparse.ArgumentParser) -> None:
    """Add --api-host, --api-port and --format to a services sub-parser."""
    parser.add_argument(
        "--api-host", type=str, default="localhost",
        help="Hostname of the gallery server (default: localhost)",
    )
    parser.add_argument(
        "--api-port", type=int, default=4568,
        help="Port of the gallery HTTP API (default: 4568)",
    )
    parser.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )


# ---------------------------------------------------------------------------
# homegallery unit
# ---------------------------------------------------------------------------

def generate_unit_file(config: GalleryConfig, config_path: str | None = None,
                       user: str | None = None, workdir: str | None = None) -> str:
    """Render a systemd unit that runs ``homegallery serve``."""
    env = _get_template_env()
    template = env.get_template("homegallery.service.j2")
    executable = shutil.which("homegallery") or f"{sys.executable} -m homegallery.cli"
    return template.render(
        config=config,
        config_path=str(Path(config_path).resolve()) if config_path else None,
        user=user,
        workdir=workdir or os.getcwd(),
        executable=executable,
    )


def cmd_unit(args) -> None:
    config = _build_config(args)
    unit = generate_unit_file(config, config_path=args.config, user=args.user,
                              workdir=args.workdir)
    if args.output:
        Path(args.output).write_text(unit)
        print(f"Unit written to {args.output}", file=sys.stderr)
    else:
        print(unit, end="")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="homegallery",
        description="Home Server Gallery: track home services and their health",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser(
        "serve", help="Run the API server and background health checks",
    )
    _add_config_args(serve_parser)
    serve_parser.add_argument(
        "--check-interval", type=int, dest="check_interval",
        help="Seconds between health check cycles (default: 60)",
    )
    serve_parser.add_argument(
        "--probe-timeout", type=int, dest="probe_timeout",
        help="Timeout in seconds for a single health probe (default: 5)",
    )
    serve_parser.add_argument(
        "--seed-samples", action="store_true", dest="seed_samples", default=None,
        help="Add example services when the registry is empty",
    )
    serve_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    serve_parser.add_argument(
        "--dump-config", action="store_true", dest="dump_config",
        help="Print the effective configuration as YAML and exit",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # services
    services_parser = subparsers.add_parser(
        "services", help="Query and edit services on a running server",
    )
    services_sub = services_parser.add_subparsers(dest="services_command")

    svc_list = services_sub.add_parser("list", help="List all services")
    _add_client_args(svc_list)
    svc_list.set_defaults(func=cmd_services_list)

    svc_get = services_sub.add_parser("get", help="Show a single service")
    _add_client_args(svc_get)
    svc_get.add_argument("service_id", type=int, help="Service id")
    svc_get.set_defaults(func=cmd_services_get)

    svc_add = services_sub.add_parser("add", help="Register a new service")
    _add_client_args(svc_add)
    svc_add.add_argument("name", type=str, help="Display name")
    svc_add.add_argument("url", type=str, help="Address to open, e.g. http://192.168.0.30:8123")
    svc_add.add_argument(
        "--health-check-url", type=str, dest="health_check_url",
        help="URL probed instead of the main URL",
    )
    svc_add.set_defaults(func=cmd_services_add)

    svc_update = services_sub.add_parser("update", help="Change fields of a service")
    _add_client_args(svc_update)
    svc_update.add_argument("service_id", type=int, help="Service id")
    svc_update.add_argument("--name", type=str)
    svc_update.add_argument("--url", type=str)
    svc_update.add_argument("--health-check-url", type=str, dest="health_check_url")
    svc_update.add_argument(
        "--clear-health-check-url", action="store_true", dest="clear_health_check_url",
        help="Remove the health check URL and probe the main URL again",
    )
    svc_update.set_defaults(func=cmd_services_update)

    svc_remove = services_sub.add_parser("remove", help="Delete a service")
    _add_client_args(svc_remove)
    svc_remove.add_argument("service_id", type=int, help="Service id")
    svc_remove.set_defaults(func=cmd_services_remove)

    svc_check = services_sub.add_parser("check", help="Run a health check now")
    _add_client_args(svc_check)
    svc_check.add_argument("service_id", type=int, help="Service id")
    svc_check.set_defaults(func=cmd_services_check)

    svc_reorder = services_sub.add_parser("reorder", help="Set display order of services")
    _add_client_args(svc_reorder)
    svc_reorder.add_argument(
        "orders", nargs="+", type=_parse_order, metavar="ID=ORDER",
        help="Pairs of service id and display order",
    )
    svc_reorder.set_defaults(func=cmd_services_reorder)

    # unit
    unit_parser = subparsers.add_parser("unit", help="Render a systemd unit for the server")
    _add_config_args(unit_parser)
    unit_parser.add_argument("--user", type=str, help="User the service runs as")
    unit_parser.add_argument("--workdir", type=str, help="Working directory (default: cwd)")
    unit_parser.add_argument("--output", type=str, help="Write the unit here instead of stdout")
    unit_parser.set_defaults(func=cmd_unit)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "services" and not args.services_command:
        services_parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
