"""
toolgate Server - Main Entry Point

Serves the JSON-lines tool protocol on stdin/stdout. Requests are routed
through the orchestrator, so every call passes parameter validation,
path security, rate limiting and confirmation before it runs.

Usage:
    toolgate
    python -m toolgate.server.main

The server runs until EOF on stdin or SIGTERM. Logging goes to stderr and
a rotating log file; stdout carries protocol responses only.
"""

import asyncio
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import TextIO

from ..audit import AuditLogger
from ..config import Config
from ..confirmation import ArgumentConfirmationHandler
from ..errors import ConfigurationError
from ..orchestrator import ToolOrchestrator
from ..policy import PolicyLoader
from .protocol import ProtocolHandler

_logger: logging.Logger | None = None


def setup_logging(
    log_level: str | None = None, log_dir: str | None = None
) -> logging.Logger:
    """
    Set up console and file logging.

    Args:
        log_level: Level name; defaults to LOG_LEVEL or INFO
        log_dir: Directory for the rotating log file; defaults to LOG_DIR

    Returns:
        Logger instance for the main module
    """
    log_level_str = (log_level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, log_level_str, logging.INFO)
    log_dir = log_dir or os.environ.get("LOG_DIR", os.path.expanduser("~/.toolgate/logs"))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    # stdout is reserved for protocol responses
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    try:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, "toolgate.log"),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
            )
        )
        root_logger.addHandler(file_handler)
    except OSError as e:
        root_logger.warning(f"Could not set up file logging: {e}")

    return logging.getLogger(__name__)


def setup_signal_handlers(logger: logging.Logger, stop_event: asyncio.Event) -> list[int]:
    """
    Route SIGTERM and SIGHUP to the running event loop.

    Returns:
        list[int]: The signals that were installed
    """
    loop = asyncio.get_running_loop()

    def signal_handler(signum: int) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, initiating graceful shutdown...")
        stop_event.set()

    installed = []
    for name in ("SIGTERM", "SIGHUP"):
        signum = getattr(signal, name, None)
        if signum is not None:
            loop.add_signal_handler(signum, signal_handler, signum)
            installed.append(signum)
    return installed


async def serve(
    orchestrator: ToolOrchestrator,
    logger: logging.Logger,
    input_stream: TextIO | None = None,
    output: TextIO | None = None,
) -> None:
    """Serve the protocol until EOF or a termination signal."""
    stop_event = asyncio.Event()
    installed = setup_signal_handlers(logger, stop_event)
    try:
        await ProtocolHandler(orchestrator).run_protocol_loop(
            sys.stdin if input_stream is None else input_stream,
            sys.stdout if output is None else output,
            stop_event,
        )
    finally:
        loop = asyncio.get_running_loop()
        for signum in installed:
            loop.remove_signal_handler(signum)


def build_orchestrator(config: Config, logger: logging.Logger) -> ToolOrchestrator:
    """
    Build the orchestrator for protocol serving.

    Raises:
        ConfigurationError: If configuration or policy is invalid
    """
    audit_logger = None
    if config.audit_enabled:
        try:
            audit_logger = AuditLogger(config.audit_log_path)
        except OSError as e:
            logger.error(f"Failed to initialize audit system: {e}")
            logger.warning("Continuing without audit logging (not recommended)")

    logger.info(f"Loading policy from: {config.policy_file}")
    return ToolOrchestrator.from_config(
        config,
        ArgumentConfirmationHandler(),
        policy_loader=PolicyLoader(str(config.policy_file)),
        audit_logger=audit_logger,
    )


def main() -> None:
    """
    Main entry point for the toolgate server.

    Exits with status 1 if configuration is invalid.
    """
    global _logger

    orchestrator = None
    try:
        _logger = setup_logging()
        config = Config.load_runtime_config()
        _logger.setLevel(getattr(logging, config.log_level, logging.INFO))

        _logger.info(f"Starting {config.server_name} v{config.server_version}")
        for key, value in config.get_startup_summary().items():
            _logger.info(f"  {key}: {value}")

        errors = config.validate()
        if errors:
            _logger.critical("Configuration validation failed:")
            for error in errors:
                _logger.critical(f"  - {error}")
            sys.exit(1)

        orchestrator = build_orchestrator(config, _logger)

        _logger.info("Server ready - waiting for requests on stdin")
        asyncio.run(serve(orchestrator, _logger))

    except ConfigurationError as e:
        if _logger:
            _logger.critical(f"Configuration error: {e.message}")
        else:
            print(f"Configuration error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        if _logger:
            _logger.info("Received keyboard interrupt - shutting down")
        sys.exit(0)
    finally:
        if orchestrator is not None:
            orchestrator.shutdown()
        if _logger:
            _logger.info("toolgate server shutdown complete")


if __name__ == "__main__":
    main()
