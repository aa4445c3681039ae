"""CLI: dump-viewer serve, deps, helper, status, clear, export, config validate."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import threading
import webbrowser
from pathlib import Path

import httpx
import yaml

from ..config import configure_logging, load_config, validate_config
from ..core.dependencies import check_dependencies
from ..core.launcher import LauncherFiles
from ..core.ports import is_port_available
from ..types import DumpViewerConfig


def _load(args) -> DumpViewerConfig:
    try:
        return load_config(args.config)
    except (OSError, ValueError, TypeError, yaml.YAMLError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def _base_url(args, config: DumpViewerConfig) -> str:
    return (args.url or f"http://{config.web.host}:{config.web.port}").rstrip("/")


class _SuppressCancelled(logging.Filter):
    """Hide CancelledError tracebacks from uvicorn's forced shutdown of open sockets."""
    def filter(self, record: logging.LogRecord) -> bool:
        if record.exc_info and record.exc_info[0] is asyncio.CancelledError:
            return False
        return True


class _SuppressHealthAccess(logging.Filter):
    """Hide repetitive GET /health access logs."""
    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        return not ("GET /health" in msg and "200" in msg)


def cmd_serve(args):
    """Start the dump server, web UI and WebSocket channel."""
    import uvicorn

    from ..web.server import create_app

    config = _load(args)
    if args.port is not None:
        config.web.port = args.port
    if args.dump_port is not None:
        config.dump_server.port = args.dump_port
    if args.host:
        config.web.host = args.host
    if args.no_open:
        config.web.auto_open = False
    if args.categorize:
        config.classifier.categorize = True
    if args.attach:
        config.client.attach = args.attach
    if args.log_level:
        config.logging.level = args.log_level.upper()

    errors = validate_config(config)
    if errors:
        print("Config validation errors:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)

    configure_logging(config.logging)
    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())
    logging.getLogger("uvicorn.access").addFilter(_SuppressHealthAccess())

    if not is_port_available(config.web.port, config.web.host):
        print(f"Port {config.web.port} is already in use", file=sys.stderr)
        sys.exit(1)

    app = create_app(config)
    url = f"http://{config.web.host}:{config.web.port}"
    print(f"Symfony Dump Viewer on {url} (dump server port {config.dump_server.port})", flush=True)
    if config.web.auto_open:
        threading.Timer(1.5, webbrowser.open, args=(url,)).start()

    uvicorn.run(
        app,
        host=config.web.host,
        port=config.web.port,
        log_level=config.logging.level.lower(),
        timeout_graceful_shutdown=2,
    )


def cmd_deps(args):
    """Check composer and symfony/var-dumper."""
    config = _load(args)
    ds = config.dump_server
    report = asyncio.run(check_dependencies(ds.composer_binary, ds.php_binary, ds.vendor_path))

    print(f"Composer:            {'found' if report.composer else 'MISSING'}")
    print(f"symfony/var-dumper:  {report.var_dumper_path or ('found' if report.var_dumper else 'MISSING')}")
    if report.searched_paths:
        print("Searched:")
        for path in report.searched_paths:
            print(f"  - {path}")
    if not (report.composer and report.var_dumper):
        print("\nInstall with: composer global require symfony/var-dumper")
        sys.exit(1)


def cmd_helper(args):
    """Write the PHP include that routes dump() to the viewer."""
    config = _load(args)
    port = args.dump_port or config.dump_server.port
    path = LauncherFiles().create_helper(
        port=port,
        vendor_dir=config.dump_server.vendor_path,
        host=config.dump_server.host,
    )
    print(f"PHP helper written to {path}", flush=True)
    print(f"Add to your app:  require_once '{path}';", flush=True)


def cmd_status(args):
    """Show the status of a running viewer."""
    config = _load(args)
    base = _base_url(args, config)
    try:
        resp = httpx.get(f"{base}/api/status", timeout=5.0)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Could not reach dump viewer at {base}: {e}", file=sys.stderr)
        sys.exit(1)

    status = resp.json()
    running = "running" if status.get("dumpServerRunning") else "stopped"
    print(f"Dump server:       {running} (port {status.get('dumpServerPort')})")
    print(f"Web server port:   {status.get('webServerPort')}")
    print(f"Connected clients: {status.get('connectedClients')}")
    print(f"Stream client:     {'connected' if status.get('tcpClientConnected') else 'not connected'}")
    print(f"Stored dumps:      {status.get('totalDumps')}")


def cmd_clear(args):
    """Clear all dumps in a running viewer."""
    config = _load(args)
    base = _base_url(args, config)
    try:
        resp = httpx.delete(f"{base}/api/dumps", timeout=5.0)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Could not reach dump viewer at {base}: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Cleared {resp.json().get('cleared', 0)} dump(s).")


def cmd_export(args):
    """Export dumps from a running viewer as JSON."""
    config = _load(args)
    base = _base_url(args, config)
    params = {"category": args.category} if args.category else None
    try:
        resp = httpx.get(f"{base}/api/export", params=params, timeout=30.0)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Could not reach dump viewer at {base}: {e}", file=sys.stderr)
        sys.exit(1)

    if args.output:
        Path(args.output).write_text(resp.text)
        count = len(json.loads(resp.text))
        print(f"Exported {count} dump(s) to {args.output}")
    else:
        print(resp.text)


def cmd_config_validate(args):
    """Validate config file."""
    config = _load(args)
    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Web:         {config.web.host}:{config.web.port}")
        print(f"  Dump server: {config.dump_server.host}:{config.dump_server.port}")
        print(f"  Capacity:    {config.store.capacity}")
        print(f"  Categorize:  {'on' if config.classifier.categorize else 'off'}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dump-viewer",
        description="Live browser viewer for Symfony VarDumper output",
    )
    parser.add_argument("--config", "-c", help="Path to config file")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the viewer (default)")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="Web UI port")
    serve_parser.add_argument("--dump-port", "-d", type=int, default=None, help="Dump server port")
    serve_parser.add_argument("--host", default=None, help="Web UI host")
    serve_parser.add_argument("--no-open", action="store_true", help="Do not open a browser")
    serve_parser.add_argument(
        "--categorize", action="store_true",
        help="Sniff dump content for query/request/job/view/log categories",
    )
    serve_parser.add_argument(
        "--attach", default=None, metavar="HOST:PORT",
        help="Also read a sentinel-framed dump stream from HOST:PORT",
    )
    serve_parser.add_argument(
        "--log-level", default=None,
        choices=["debug", "info", "warning", "error", "DEBUG", "INFO", "WARNING", "ERROR"],
    )

    # deps
    subparsers.add_parser("deps", help="Check composer and symfony/var-dumper")

    # helper
    helper_parser = subparsers.add_parser("helper", help="Write the PHP helper include")
    helper_parser.add_argument("--dump-port", "-d", type=int, default=None)

    # remote commands
    status_parser = subparsers.add_parser("status", help="Status of a running viewer")
    status_parser.add_argument("--url", default=None, help="Viewer base URL")

    clear_parser = subparsers.add_parser("clear", help="Clear dumps in a running viewer")
    clear_parser.add_argument("--url", default=None, help="Viewer base URL")

    export_parser = subparsers.add_parser("export", help="Export dumps from a running viewer")
    export_parser.add_argument("--url", default=None, help="Viewer base URL")
    export_parser.add_argument("--category", default=None)
    export_parser.add_argument("--output", "-o", default=None, help="Write to file")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    return parser


def main(argv: list[str] | None = None):
    parser = _build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    args = parser.parse_args(argv)

    if not args.command:
        args = parser.parse_args(argv + ["serve"])

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "deps":
        cmd_deps(args)
    elif args.command == "helper":
        cmd_helper(args)
    elif args.command == "status":
        cmd_status(args)
    elif args.command == "clear":
        cmd_clear(args)
    elif args.command == "export":
        cmd_export(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: dump-viewer config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
