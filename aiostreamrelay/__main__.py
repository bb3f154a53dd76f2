"""Command line entry point: python -m aiostreamrelay."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import orjson

from aiostreamrelay.models import DEFAULT_HOST, DEFAULT_INPUT_FORMAT, DEFAULT_PORT, RelayConfig
from aiostreamrelay.server.server import RelayServer

logger = logging.getLogger(__name__)

# Command line destinations and the config fields they override
_FLAG_FIELDS = {
    "host": "host",
    "port": "port",
    "format": "input_format",
    "input": "input_url",
    "verbose": "verbose",
    "queue_size": "queue_size",
    "bit_rate": "bit_rate",
    "pacing": "pacing",
    "advertise": "advertise",
}

_BUILTIN_DEFAULTS = {
    "host": DEFAULT_HOST,
    "port": DEFAULT_PORT,
    "input_format": DEFAULT_INPUT_FORMAT,
}


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser, flags left unset default to None."""
    parser = argparse.ArgumentParser(
        prog="aiostreamrelay",
        description="Serve an audio input as a live MP3 stream over HTTP.",
    )
    parser.add_argument("--host", help=f"host to listen on (default: {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, help=f"port to listen on (default: {DEFAULT_PORT})")
    parser.add_argument(
        "--format",
        help=f"input format, a capture device or a demuxer such as mp3 "
        f"(default: {DEFAULT_INPUT_FORMAT})",
    )
    parser.add_argument("--input", help="input URL valid for the input format")
    parser.add_argument(
        "--verbose", action="store_true", default=None, help="enable verbose output"
    )
    parser.add_argument("--config", type=Path, help="JSON file with relay settings")
    parser.add_argument("--queue-size", type=int, help="frames buffered per listener")
    parser.add_argument("--bit-rate", type=int, help="encoder bit rate in bits per second")
    parser.add_argument(
        "--no-pacing",
        dest="pacing",
        action="store_false",
        default=None,
        help="encode as fast as possible instead of in real time",
    )
    parser.add_argument(
        "--advertise", action="store_true", default=None, help="advertise the stream via mDNS"
    )
    return parser


def _load_config_file(parser: argparse.ArgumentParser, path: Path) -> dict[str, Any]:
    try:
        data = orjson.loads(path.read_bytes())
    except (OSError, orjson.JSONDecodeError) as err:
        parser.error(f"unable to read config file {path}: {err}")
    if not isinstance(data, dict):
        parser.error(f"config file {path} must contain a JSON object")
    return data


def parse_config(argv: list[str] | None = None) -> RelayConfig:
    """
    Build the relay configuration from the command line.

    Values from --config are used first, flags given on the command line
    override them. Exits with usage text when the configuration is incomplete
    or invalid.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    values: dict[str, Any] = dict(_BUILTIN_DEFAULTS)
    if args.config is not None:
        values.update(_load_config_file(parser, args.config))
    for dest, field in _FLAG_FIELDS.items():
        value = getattr(args, dest)
        if value is not None:
            values[field] = value

    for field, flag in (("host", "--host"), ("input_format", "--format"), ("input_url", "--input")):
        if not values.get(field):
            parser.error(f"{flag} is required")

    try:
        return RelayConfig.from_dict(values)
    except ValueError as err:
        parser.error(str(err))


async def run_server(config: RelayConfig) -> None:
    """Run the relay until SIGINT or SIGTERM is received."""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    server = RelayServer(config)
    try:
        await server.start_server()
        await stop_event.wait()
        logger.info("Shutting down")
    finally:
        await server.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


def main(argv: list[str] | None = None) -> int:
    """Run the relay from the command line, return the exit code."""
    config = parse_config(argv)
    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run_server(config))
    except OSError as err:
        logger.error("Unable to serve on %s:%d: %s", config.host, config.port, err)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
