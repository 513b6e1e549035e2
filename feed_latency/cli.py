from __future__ import annotations

import argparse
import asyncio
from dataclasses import fields
import os
import sys
from typing import Any

from .config import MODES, Config, coerce_field, field_kind
from .controller import run_destination, run_origin, run_until_signalled
from .errors import SetupError

# flags owned by a subcommand rather than generated from Config
_SUBCOMMAND_FIELDS = {"mode"}


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    for field in fields(Config):
        if field.name in _SUBCOMMAND_FIELDS:
            continue
        name = field.name.replace("_", "-")
        scalar, _optional = field_kind(field.type)
        if scalar is bool:
            group = parser.add_mutually_exclusive_group()
            group.add_argument(f"--{name}", dest=field.name, action="store_true")
            group.add_argument(f"--no-{name}", dest=field.name, action="store_false")
            parser.set_defaults(**{field.name: None})
        else:
            parser.add_argument(f"--{name}", dest=field.name, default=None)


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for field in fields(Config):
        value = getattr(ns, field.name, None)
        if value is not None:
            overrides[field.name] = coerce_field(field.type, value)
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="feed-latency",
        description="Cross-site market-data relay latency experiment",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    origin = sub.add_parser("origin", help="relay the upstream stream to the destination")
    _add_config_args(origin)

    destination = sub.add_parser("destination", help="measure arrivals and compute statistics")
    destination.add_argument("--mode", dest="mode", choices=MODES, default=None)
    _add_config_args(destination)
    return parser


def _load_config(ns: argparse.Namespace) -> Config:
    return Config.from_env_and_cli(_cli_overrides(ns), dict(os.environ))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    ns = parser.parse_args(argv)
    try:
        config = _load_config(ns).validate()
    except ValueError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2

    if ns.command == "destination":
        try:
            asyncio.run(run_destination(config))
        except SetupError as exc:
            print(f"fatal: {exc}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            return 130
        return 0

    if ns.command == "origin":
        try:
            asyncio.run(run_until_signalled(run_origin(config)))
        except SetupError as exc:
            print(f"fatal: {exc}", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            return 0
        return 0

    parser.error(f"unknown command: {ns.command}")
    return 2
