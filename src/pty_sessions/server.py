"""MCP server and command-line entry point."""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server

from .config import RunnerConfig, ServerConfig, ServiceSpec, default_services_file
from .errors import PTYSessionError
from .runner import InteractiveRunner
from .services import load_services
from .session import SessionRegistry
from .tools import register_tools

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


async def run_server(config: ServerConfig) -> None:
    """Run the MCP server."""
    server = Server("pty-sessions")
    registry = SessionRegistry(config.session)

    register_tools(server, registry, config)

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        await registry.shutdown()


async def run_interactive(service: ServiceSpec, config: RunnerConfig) -> None:
    """Run one service in the foreground terminal."""
    registry = SessionRegistry()
    runner = InteractiveRunner(registry, config)
    try:
        await runner.run(service)
    finally:
        await registry.shutdown()


def _resolve_service(args: argparse.Namespace) -> ServiceSpec:
    if args.commands:
        service = ServiceSpec(project="adhoc", name=args.target, commands=args.commands)
        service.validate()
        return service
    return load_services(args.config or default_services_file()).resolve(args.target)


def _cmd_serve(args: argparse.Namespace) -> int:
    config = ServerConfig(read_timeout=args.read_timeout)
    if args.shell:
        config.session.shell = args.shell
    asyncio.run(run_server(config))
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    service = _resolve_service(args)
    config = RunnerConfig()
    if args.shell:
        config.shell = args.shell

    print(f"Starting service: {service.full_name}")
    for i, command in enumerate(service.commands, 1):
        print(f"  [{i}] {command}")
    print(flush=True)

    asyncio.run(run_interactive(service, config))
    print("\nSession ended")
    return 0


def _cmd_services(args: argparse.Namespace) -> int:
    services = load_services(args.config or default_services_file())

    if not services.services:
        print(f"No services defined in {services.path}")
        return 0

    for service in services.all_services():
        suffix = f" - {service.description}" if service.description else ""
        print(f"{service.full_name}{suffix}")
        for i, command in enumerate(service.commands, 1):
            print(f"  [{i}] {command}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pty-sessions",
        description="Run shells behind pseudo-terminals",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Write logs to this file instead of stderr",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser(
        "serve",
        help="Serve PTY sessions as MCP tools over stdio",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    serve.add_argument("--shell", type=str, default=None, help="Default shell for new sessions")
    serve.add_argument(
        "--read-timeout",
        type=float,
        default=ServerConfig.read_timeout,
        help="Idle seconds that end a read_output call",
    )
    serve.set_defaults(handler=_cmd_serve)

    run = subparsers.add_parser(
        "run",
        help="Run a service interactively in this terminal",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    run.add_argument("target", help="Service path (project.stage.service), or a name with -c")
    run.add_argument(
        "-c",
        "--command",
        dest="commands",
        action="append",
        default=[],
        help="Command to type into the shell; repeatable",
    )
    run.add_argument("--config", type=str, default=None, help="Services file")
    run.add_argument("--shell", type=str, default=None, help="Shell to start")
    run.set_defaults(handler=_cmd_run)

    services = subparsers.add_parser("services", help="List services from the services file")
    services.add_argument("--config", type=str, default=None, help="Services file")
    services.set_defaults(handler=_cmd_services)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    # stdout carries the MCP protocol and the attached terminal
    if args.log_file:
        logging.basicConfig(level=args.log_level, format=LOG_FORMAT, filename=args.log_file)
    else:
        logging.basicConfig(level=args.log_level, format=LOG_FORMAT, stream=sys.stderr)

    try:
        return args.handler(args)
    except PTYSessionError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
