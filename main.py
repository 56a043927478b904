"""Command-line interface for the member portal service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from memberportal.config import PortalSettings, load_settings
from memberportal.database import Database

logger = logging.getLogger("memberportal.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (defaults to PORTAL_CONFIG or config/portal.yaml)",
    )

    parser = argparse.ArgumentParser(description="Member portal utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve", config=None)

    subparsers.add_parser("init-db", parents=[common], help="Initialise the portal database")

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the portal HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the HTTP API (default: 8000)",
    )
    serve_parser.add_argument(
        "--log-level",
        default="info",
        choices=("critical", "error", "warning", "info", "debug"),
        help="Log level passed to uvicorn",
    )

    domain_parser = subparsers.add_parser(
        "allow-domain",
        parents=[common],
        help="Allow self-registration for an organisation email domain",
    )
    domain_parser.add_argument("domain", help="Email domain, for example example.org")
    domain_parser.add_argument("--org-name", default=None, help="Display name of the organisation")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "allow-domain"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _load_settings(config: str | None) -> PortalSettings:
    return load_settings(Path(config).expanduser() if config else None)


def _initialise_database(settings: PortalSettings) -> Database:
    database = Database(settings.database_path)
    database.initialize()
    logger.info("Database initialised at %s", settings.database_path)
    return database


def _serve(*, settings: PortalSettings, host: str, port: int, log_level: str) -> None:
    from memberportal.service import create_app
    import uvicorn

    logger.info("Starting portal API on http://%s:%s", host, port)

    app = create_app(settings=settings)
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(
        level=os.getenv("PORTAL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    args = _parse_args(argv)

    try:
        settings = _load_settings(args.config)

        if args.command == "init-db":
            _initialise_database(settings)
            return 0

        if args.command == "allow-domain":
            database = _initialise_database(settings)
            database.allow_domain(args.domain, args.org_name)
            print(f"Allowed self-registration for @{args.domain.strip().lower()}")
            return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    _serve(settings=settings, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
