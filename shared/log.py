"""
FlatSync logging helpers.

All components log through stdlib loggers under the ``flatsync`` namespace.
This module provides a factory that returns level-bound log functions with
a component prefix, so modules don't need to repeat logger boilerplate, and
a one-shot configuration helper for the command line entry point.

Usage:
    from shared.log import create_logger
    log_trace, log_debug, log_info, log_warn, log_error = create_logger("Orchestrator")
    log_info("Processing 42 titles")  # -> flatsync.Orchestrator INFO [FlatSync Orchestrator] Processing 42 titles
"""

import logging

from pythonjsonlogger import json as jsonlogger

# Below DEBUG; used for per-field decisions that would flood debug output
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

ROOT_LOGGER_NAME = "flatsync"


def create_logger(component: str = ""):
    """Create log functions for a component.

    Args:
        component: Component name suffix. If provided, messages are prefixed
                   with "[FlatSync {component}]" and routed to the
                   ``flatsync.{component}`` logger, otherwise "[FlatSync]"
                   on the ``flatsync`` logger.

    Returns:
        Tuple of (log_trace, log_debug, log_info, log_warn, log_error) functions.
    """
    prefix = f"[FlatSync {component}]" if component else "[FlatSync]"
    name = f"{ROOT_LOGGER_NAME}.{component}" if component else ROOT_LOGGER_NAME
    logger = logging.getLogger(name)

    def log_trace(msg): logger.log(TRACE, f"{prefix} {msg}")
    def log_debug(msg): logger.debug(f"{prefix} {msg}")
    def log_info(msg): logger.info(f"{prefix} {msg}")
    def log_warn(msg): logger.warning(f"{prefix} {msg}")
    def log_error(msg): logger.error(f"{prefix} {msg}")

    return log_trace, log_debug, log_info, log_warn, log_error


def configure_logging(log_level: str = "info", json_output: bool = False) -> None:
    """Configure the flatsync logger hierarchy.

    Plain output: "2024-01-01 12:00:00 INFO flatsync.Fetch [FlatSync Fetch] ..."
    JSON output:  {"ts": "...", "level": "...", "name": "...", "msg": "..."}

    Args:
        log_level: Logging level string (e.g., "info", "debug", "trace").
        json_output: Emit structured JSON lines instead of plain text.
    """
    if log_level.lower() == "trace":
        level = TRACE
    else:
        level = getattr(logging, log_level.upper(), logging.INFO)

    if json_output:
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "ts",
                "levelname": "level",
                "message": "msg",
            },
        )
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger(ROOT_LOGGER_NAME)
    # Clear any existing handlers to avoid duplicate output
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    root_logger.propagate = False
