from __future__ import annotations

import argparse
import logging
import logging.config
import os
import time
from copy import deepcopy
from typing import Any, Dict, Optional, Sequence

import uvicorn
from uvicorn.config import LOGGING_CONFIG

from server.src.core.logging import get_logger

from .config import Settings
from .core.app import create_app


logger = get_logger(__name__)

ASCTIME_TOKEN = "%(asctime)s.%(msecs)03d"
DATEFMT = "%Y-%m-%d %H:%M:%S"


def _sanitize_logger_override_pair(name: str, level: str) -> tuple[str, str] | None:
    """Strip quotes/whitespace and validate the level. Returns (name, LEVEL)
    on success or None on invalid input.
    """
    name = name.strip().strip('"').strip("'")
    level = level.strip().strip('"').strip("'").upper()
    if not name or not isinstance(logging.getLevelName(level), int):
        logger.warning("Skipping invalid log level '%s' for logger '%s'", level, name)
        return None
    return name, level


def _apply_logger_override(log_config: dict, raw: str) -> None:
    """Parse a raw NAME:LEVEL string and set it on log_config if valid."""
    if ":" not in raw:
        return
    name, level = raw.split(":", 1)
    sanitized = _sanitize_logger_override_pair(name, level)
    if sanitized is None:
        return
    name, level = sanitized
    log_config.setdefault("loggers", {}).setdefault(name, {})["level"] = level


def _normalize_formatter(fmt: dict) -> None:
    """Rewrite a uvicorn formatter so lines start with a UTC timestamp and
    carry the logger name before the message.
    """
    fmt_str = fmt.get("fmt")
    if not fmt_str:
        return
    fmt.setdefault("datefmt", DATEFMT)
    if "%(asctime)s" in fmt_str and "%(name)s" in fmt_str:
        return

    if "%(message)s" in fmt_str:
        if "%(asctime)s" not in fmt_str:
            fmt_str = f"{ASCTIME_TOKEN} {fmt_str}"
        if "%(name)s" not in fmt_str:
            fmt_str = fmt_str.replace("%(message)s", "%(name)s: %(message)s")
    else:
        level_token = "%(levelprefix)s" if "%(levelprefix)s" in fmt_str else "%(levelname)s"
        before, _, after = fmt_str.partition(level_token)
        fmt_str = f"{ASCTIME_TOKEN} {level_token} %(name)s: {before.rstrip()}"
        if after.strip():
            fmt_str = f"{fmt_str} {after.lstrip()}"
    fmt["fmt"] = fmt_str


def build_log_config(settings: Settings, cli_overrides: Sequence[str] = ()) -> Dict[str, Any]:
    log_config = deepcopy(LOGGING_CONFIG)
    desired_level = settings.api_log_level.upper()

    log_config.setdefault("root", {"level": desired_level, "handlers": ["default"]})
    log_config["root"]["level"] = desired_level
    loggers = log_config.setdefault("loggers", {})
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        loggers.setdefault(
            logger_name,
            {"handlers": ["default"], "propagate": logger_name != "uvicorn.access"},
        )["level"] = desired_level

    for fmt in log_config.get("formatters", {}).values():
        _normalize_formatter(fmt)

    # PNODEWATCH_LOG_OVERRIDES is a comma-separated list like
    # "services.aggregator:DEBUG,httpx:WARNING"; CLI pairs win over env.
    env_overrides = os.getenv("PNODEWATCH_LOG_OVERRIDES", "")
    for raw in [p.strip() for p in env_overrides.split(",") if p.strip()]:
        _apply_logger_override(log_config, raw)
    for pair in cli_overrides:
        _apply_logger_override(log_config, pair)

    return log_config


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="pNode fleet aggregation service")
    parser.add_argument(
        "--endpoint",
        dest="endpoints",
        action="append",
        default=[],
        help="Poll a fleet member given as HOST:PORT. Repeat for multiple endpoints; replaces the default fleet.",
    )
    parser.add_argument(
        "--seed",
        dest="seeds",
        action="append",
        default=[],
        help="Seed RPC URL used for on-demand stats (repeatable).",
    )
    parser.add_argument("--host", dest="host", help="API host binding override")
    parser.add_argument("--port", dest="port", type=int, help="API port binding override")
    parser.add_argument(
        "--log-level", dest="log_level", help="Override the API log level (info, debug, ...)",
    )
    parser.add_argument(
        "--log",
        dest="log_overrides",
        action="append",
        default=[],
        help="Per-logger override in NAME:LEVEL form (repeatable). Takes precedence over PNODEWATCH_LOG_OVERRIDES.",
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    base = Settings()
    overrides: Dict[str, Any] = {}

    if args.endpoints:
        overrides["known_endpoints"] = [e.strip() for e in args.endpoints if e.strip()]
    if args.seeds:
        overrides["seed_endpoints"] = [s.strip() for s in args.seeds if s.strip()]
    if args.host:
        overrides["api_host"] = args.host
    if args.port:
        overrides["api_port"] = args.port
    if args.log_level:
        overrides["api_log_level"] = args.log_level

    if overrides:
        return base.model_copy(update=overrides)
    return base


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    settings = build_settings(args)

    # Reject a broken fleet declaration before binding the port.
    endpoints = settings.parsed_endpoints

    logging.Formatter.converter = time.gmtime
    log_config = build_log_config(settings, args.log_overrides)
    logging.config.dictConfig(log_config)

    logger.info(
        "Starting API on %s:%s polling %d endpoint(s)",
        settings.api_host,
        settings.api_port,
        len(endpoints),
    )

    app = create_app(settings)

    try:
        uvicorn.run(
            app,
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.api_log_level,
            log_config=log_config,
        )
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user.")


if __name__ == "__main__":
    main()
