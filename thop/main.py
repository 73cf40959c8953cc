import sys
import json
import argparse
from typing import List, Optional

from thop import __version__
from thop.config import Config
from thop.errors import ConfigError, StateError, ThopError
from thop.jobs import JobRegistry
from thop.manager import SessionManager
from thop.repl import Repl, report_error, run_proxy
from thop.restriction import Checker
from thop.server import MCPServer
from thop.state import StateManager
from thop.utils import Logger, log_error


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="thop",
        description="Terminal hopper for agents: run commands on local and SSH sessions through one interface",
    )
    parser.add_argument("--proxy", action="store_true", help="Proxy mode: execute each stdin line on the active session")
    parser.add_argument("--mcp", action="store_true", help="Run as an MCP server over stdio")
    parser.add_argument("--status", action="store_true", help="Print session status and exit")
    parser.add_argument("--config", help="Path to config file (default: ~/.config/thop/config.toml)")
    parser.add_argument("--json", action="store_true", help="Emit errors and status as JSON")
    parser.add_argument("--restricted", action="store_true",
                        help="Block privilege escalation, destructive and system-modifying commands")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging to stderr")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    parser.add_argument("--version", action="version", version=f"thop {__version__}")
    return parser


def print_status(manager: SessionManager, json_output: bool) -> None:
    sessions = manager.list_sessions()
    if json_output:
        print(json.dumps(sessions, indent=2))
        return
    for row in sessions:
        marker = "*" if row["active"] else " "
        state = "connected" if row["connected"] else "disconnected"
        target = f"{row['user']}@{row['host']}" if row.get("host") else row["type"]
        print(f"{marker} {row['name']:<12} {target:<24} {state:<13} {row['cwd']}")


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        config = Config.load(args.config)
    except ConfigError as exc:
        log_error(f"configuration error: {exc}")
        sys.exit(1)

    settings = config.settings
    if args.verbose:
        level = "debug"
    elif args.quiet:
        level = "error"
    else:
        level = settings.log_level
    # stdout belongs to the protocol or to command output; logs go to stderr.
    echo = args.verbose or args.mcp
    logger = Logger(level=level, log_file=settings.log_file, stream=sys.stderr if echo else None)

    state = StateManager(settings.state_file, settings.default_session)
    try:
        state.load()
    except StateError as exc:
        log_error(f"state error: {exc}")
        sys.exit(1)

    checker = Checker(enabled=args.restricted)
    manager = SessionManager(config, state=state, checker=checker, logger=logger)
    # Background jobs get their own sessions, rebuilt from the same config.
    jobs = JobRegistry(lambda: SessionManager(config, state=None, checker=checker, logger=logger), logger=logger)

    if args.status:
        print_status(manager, args.json)
        return

    if args.mcp:
        try:
            MCPServer(config, manager, state=state, logger=logger).run()
        finally:
            manager.close_all()
        return

    if args.proxy or not sys.stdin.isatty():
        active = manager.get_active_session()
        if not active.is_connected():
            try:
                manager.connect(active.name)
            except ThopError as exc:
                report_error(sys.stderr, exc, args.json)
        try:
            run_proxy(manager, json_output=args.json, verbose=args.verbose)
        finally:
            manager.close_all()
        return

    Repl(manager, jobs, logger=logger, json_output=args.json).run()


if __name__ == "__main__":
    main()
