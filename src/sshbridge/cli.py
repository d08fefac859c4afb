from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import httpx
import uvicorn

from .config import CONFIG_PATH, AppConfig, env_port, load_config, to_app_config
from .server import ProtocolEngine, bind_socket, create_app
from .tools.capabilities import LogMessenger, SystemNotifier
from .tools.catalog import build_registry
from .tools.dispatcher import Dispatcher
from .tunnels import TunnelSupervisor

log = logging.getLogger("sshbridge")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshbridge",
        description="Local MCP notification server with self-healing reverse SSH tunnels.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the MCP SSE server and configured tunnels (default)")
    serve_parser.add_argument("--config", type=Path, default=CONFIG_PATH, help=f"Config file (default: {CONFIG_PATH})")
    serve_parser.add_argument("--port", type=int, help="Preferred port; the next free one is used if taken")
    serve_parser.add_argument(
        "--tunnel",
        action="append",
        default=[],
        metavar="USER@HOST[:PORT]",
        help="Extra reverse tunnel to open (repeatable)",
    )
    serve_parser.set_defaults(func=serve_command)

    status_parser = subparsers.add_parser("status", help="Query a running server's health and tunnels")
    status_parser.add_argument("--url", help="Server base URL (default: http://127.0.0.1:<configured port>)")
    status_parser.add_argument("--json", action="store_true", help="Print the raw responses as JSON")
    status_parser.set_defaults(func=status_command)

    return parser


def build_supervisor(cfg: AppConfig, local_port: int) -> TunnelSupervisor:
    return TunnelSupervisor(
        local_port,
        max_reconnect_attempts=cfg.max_reconnect_attempts,
        base_delay=cfg.reconnect_base_delay,
        growth_factor=cfg.reconnect_growth_factor,
        max_delay=cfg.reconnect_max_delay,
        confirm_delay=cfg.connect_confirm_delay,
    )


async def run_server(cfg: AppConfig, *, port: int | None = None, extra_tunnels: list[str] | None = None) -> None:
    preferred = port or cfg.port
    sock, bound = bind_socket(cfg.host, preferred)
    if bound != preferred:
        log.warning("Port %d was taken; using %d", preferred, bound)

    supervisor = build_supervisor(cfg, bound)
    registry = build_registry(SystemNotifier(), LogMessenger())
    engine = ProtocolEngine(
        Dispatcher(registry),
        supervisor=supervisor,
        keepalive_interval=cfg.keepalive_interval,
        session_queue_size=cfg.session_queue_size,
        port=bound,
    )
    server = uvicorn.Server(uvicorn.Config(
        create_app(engine),
        log_level="warning",
        timeout_graceful_shutdown=2,
    ))

    log.info("MCP SSE server running on http://%s:%d/sse", cfg.host, bound)
    await supervisor.start_tunnels([*cfg.tunnels, *(extra_tunnels or [])])
    try:
        await server.serve(sockets=[sock])
    finally:
        await supervisor.stop_all()
        engine.close()
        sock.close()
        log.info("MCP SSE server stopped")


def serve_command(args: argparse.Namespace) -> int:
    cfg = to_app_config(load_config(getattr(args, "config", CONFIG_PATH)))
    port = getattr(args, "port", None) or env_port()
    try:
        asyncio.run(run_server(cfg, port=port, extra_tunnels=getattr(args, "tunnel", [])))
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        log.error("Could not start server: %s", exc)
        return 1
    return 0


def _get_json(client: httpx.Client, url: str) -> Any:
    response = client.get(url)
    response.raise_for_status()
    return response.json()


def status_command(args: argparse.Namespace) -> int:
    base_url = getattr(args, "url", None)
    if not base_url:
        cfg = to_app_config(load_config())
        base_url = f"http://127.0.0.1:{env_port() or cfg.port}"
    base_url = base_url.rstrip("/")
    try:
        with httpx.Client(timeout=5) as client:
            health = _get_json(client, f"{base_url}/health")
            tunnels = _get_json(client, f"{base_url}/tunnels")
    except httpx.HTTPError as exc:
        print(f"sshbridge server not reachable at {base_url}: {exc}")
        return 1
    if getattr(args, "json", False):
        print(json.dumps({"health": health, "tunnels": tunnels}, indent=2))
        return 0
    print(f"server: {health.get('status')} on port {health.get('port')}")
    if not tunnels:
        print("tunnels: none")
    for tunnel in tunnels:
        line = f"  {tunnel.get('host')}: {tunnel.get('status')}"
        if tunnel.get("error"):
            line += f" ({tunnel['error']})"
        print(line)
    return 0


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(getattr(args, "verbose", False))
    if not args.command:
        sys.exit(serve_command(args))
    if hasattr(args, "func"):
        sys.exit(args.func(args))
    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
