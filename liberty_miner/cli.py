from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .miner import run_miner
from .mining.errors import MinerError
from .mining.version import get_version
from .rpc_client import endpoint_scheme

log = logging.getLogger("liberty_miner.cli")


class FriendlyFormatter(logging.Formatter):
    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",  # cyan
        logging.INFO: "\033[32m",  # green
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",  # red
        logging.CRITICAL: "\033[41m",  # red background
    }
    RESET = "\033[0m"

    def __init__(self, *, use_color: bool) -> None:
        fmt = "[%(asctime)s] %(level_display)s %(shortname)s | %(message)s"
        super().__init__(fmt=fmt, datefmt="%H:%M:%S")
        self.use_color = use_color and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        record.shortname = record.name.rsplit(".", 1)[-1]
        level_name = record.levelname
        if self.use_color:
            color = self.LEVEL_COLORS.get(record.levelno)
            if color:
                level_name = f"{color}{level_name}{self.RESET}"
        record.level_display = level_name.ljust(8)
        return super().format(record)


def setup_logging(level: int) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(FriendlyFormatter(use_color=sys.stdout.isatty()))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(level)
    root.addHandler(handler)


def _endpoint(value: str) -> str:
    try:
        endpoint_scheme(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc))
    return value


def _thread_count(value: str) -> int:
    try:
        count = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid thread count: {value!r}")
    if count < 1:
        raise argparse.ArgumentTypeError("thread count must be at least 1")
    return count


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="liberty-miner",
        description="Liberty CPU miner for getwork JSON-RPC nodes",
    )
    parser.add_argument("endpoint", type=_endpoint, help="Node RPC URL (http://, https://, ws:// or wss://)")
    parser.add_argument("threads", type=_thread_count, help="Number of parallel search workers")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log verbosity",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(getattr(logging, args.log_level))
    log.info("Liberty miner %s", get_version())

    try:
        asyncio.run(run_miner(args))
    except MinerError as exc:
        log.critical("Miner stopped: %s", exc)
        raise SystemExit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
