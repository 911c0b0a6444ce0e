from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, TextIO

import structlog

from health_checks.aggregate import collect_health
from health_checks.history import DEFAULT_CAPACITY, DEFAULT_HISTORY_PATH, JsonFileBacking, load_history
from health_checks.registry import DEFAULT_REGISTRY_PATH, load_registry


logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO", *, stream: TextIO | None = None) -> None:
    level_no = getattr(logging, str(level).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level_no, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Request URLs can carry API keys.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_loop(
    *,
    registry_path: Path,
    history_path: Path | None,
    capacity: int,
    category: str | None,
    environment: str | None,
    interval_seconds: float,
    out: TextIO,
) -> int:
    registry = load_registry(registry_path)
    backing = JsonFileBacking(history_path) if history_path is not None else None
    history = load_history(backing, capacity=capacity) if backing is not None else None

    while True:
        started = time.monotonic()
        payload: dict[str, Any] = await collect_health(
            registry,
            history,
            backing,
            category=category,
            environment=environment,
        )
        out.write(json.dumps(payload, ensure_ascii=False) + "\n")
        out.flush()

        if interval_seconds <= 0:
            return 0
        sleep_for = max(0.0, interval_seconds - (time.monotonic() - started))
        logger.debug("Sleeping until next cycle", seconds=round(sleep_for, 3))
        await asyncio.sleep(sleep_for)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Endpoint health checks")
    parser.add_argument(
        "--config",
        default=os.getenv("HEALTH_REGISTRY_PATH") or str(DEFAULT_REGISTRY_PATH),
        help="Path to the endpoint registry YAML",
    )
    parser.add_argument("--category", default=None, help="Only check endpoints in this category")
    parser.add_argument("--environment", default=None, help="Only check endpoints in this environment")
    parser.add_argument(
        "--history",
        default=os.getenv("HEALTH_HISTORY_PATH") or str(DEFAULT_HISTORY_PATH),
        help="Path to the snapshot history file",
    )
    parser.add_argument("--no-history", action="store_true", help="Do not read or write snapshot history")
    parser.add_argument(
        "--capacity",
        type=int,
        default=int(os.getenv("HEALTH_HISTORY_CAPACITY") or DEFAULT_CAPACITY),
        help="Snapshots retained in history",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=0.0,
        help="Seconds between cycles; 0 runs a single cycle and exits",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    return asyncio.run(
        run_loop(
            registry_path=Path(args.config),
            history_path=None if args.no_history else Path(args.history),
            capacity=max(1, int(args.capacity)),
            category=args.category,
            environment=args.environment,
            interval_seconds=float(args.interval),
            out=sys.stdout,
        )
    )


if __name__ == "__main__":
    raise SystemExit(main())
