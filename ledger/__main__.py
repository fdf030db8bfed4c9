"""
Run the loyalty ledger server.

Flags override environment variables, which override defaults.

Usage:
    python -m ledger -a localhost:8080 -d postgres://... -r http://localhost:8081
"""

import argparse
from typing import Optional, Sequence

import uvicorn

from .api import create_app
from .log import configure_logging
from .settings import Settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="loyalty-ledger", description=__doc__.splitlines()[1])
    parser.add_argument("-a", dest="run_address", help="server address (host:port)")
    parser.add_argument("-d", dest="database_uri", help="database URI")
    parser.add_argument("-r", dest="accrual_system_address", help="accrual system address")
    parser.add_argument("-t", dest="accrual_timeout", type=float, help="accrual timeout in seconds")
    parser.add_argument("-w", dest="accrual_workers", type=int, help="max concurrent accrual lookups")
    parser.add_argument("-l", dest="log_level", help="log level")
    return parser


def load_settings(argv: Optional[Sequence[str]] = None) -> Settings:
    args = build_parser().parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if v is not None}
    return Settings(**overrides)


def main(argv: Optional[Sequence[str]] = None) -> None:
    settings = load_settings(argv)
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
