"""Main entry point for taskwatch.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the engine lifecycle.

Key Responsibilities:
    - CLI Argument Parsing: target names, --config, run policy overrides.
    - Signal Handling: SIGINT cancels the running task (a second SIGINT, or
      one received while idle, exits); SIGTERM exits.
    - Logging: Configures logging to stdout with optional file rotation (10MB).
    - Reload/Restart: Reloads the configuration when the engine asks for it,
      or re-executes the process when ``force_restart`` is set.
    - Exit Codes: 0 on a clean stop, 1 on startup failure or when the fatal
      policy trips, 2 on configuration errors.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import Any, Dict, List, Optional

from taskwatch import __version__
from taskwatch.config import Config, load_config
from taskwatch.engine import EngineExit, WatchEngine

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

EXIT_FATAL = 1
EXIT_CONFIG_ERROR = 2

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Normal operations (changed files, ``Waiting...``, ``Done``).
            - ``WARNING``: Recoverable issues (unwatchable directory, slow shutdown).
            - ``ERROR``: Task failures and ``Fatal error`` lines.
            - ``DEBUG``: Detailed diagnostics (raw events, run transitions).
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
        log_file (Optional[str]): Optional path to a log file. If provided, logs are written here.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as e:
            # Logging is not set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    """Create the command line parser.

    Options default to None so that unset flags do not override the
    environment or the config file.
    """
    parser = argparse.ArgumentParser(
        prog="taskwatch",
        description="Run tasks whenever watched files are added, changed or deleted.",
    )
    parser.add_argument(
        "targets", nargs="*", metavar="TARGET", help="Targets to watch (default: all configured targets)."
    )
    parser.add_argument("--config", type=str, default=None, help="Path to taskwatch.toml.")
    parser.add_argument(
        "--files",
        action="append",
        default=None,
        metavar="PATTERN",
        help="Watch this glob pattern as an ad-hoc 'default' target (repeatable).",
    )
    parser.add_argument(
        "--run",
        action="append",
        default=None,
        metavar="COMMAND",
        help="Command run by the ad-hoc target (repeatable, run in order).",
    )
    parser.add_argument(
        "--debounce-delay", type=float, default=None, help="Quiet period in seconds before tasks run."
    )
    parser.add_argument(
        "--interrupt",
        action="store_const",
        const=True,
        default=None,
        help="Interrupt a running task when its files change again.",
    )
    parser.add_argument(
        "--no-spawn",
        dest="spawn",
        action="store_const",
        const=False,
        default=None,
        help="Never interrupt running tasks.",
    )
    parser.add_argument(
        "--at-begin", action="store_const", const=True, default=None, help="Run every target once at startup."
    )
    parser.add_argument(
        "--force-restart",
        action="store_const",
        const=True,
        default=None,
        help="Re-execute taskwatch when its configuration changes.",
    )
    parser.add_argument(
        "--concurrent",
        action="store_const",
        const=True,
        default=None,
        help="Let different targets run at the same time.",
    )
    parser.add_argument(
        "--max-consecutive-fatals",
        type=int,
        default=None,
        help="Exit after this many fatal task errors in a row (0 = never).",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Poll the file system at this interval instead of using native notifications.",
    )
    parser.add_argument(
        "--kill-timeout", type=float, default=None, help="Seconds to wait before killing an interrupted task."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging (overrides --log-level).")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def restart_process() -> None:
    """Replace the current process with a fresh taskwatch using the same arguments."""
    logger.info("Restarting taskwatch...")
    sys.stdout.flush()
    sys.stderr.flush()
    os.execv(sys.executable, [sys.executable, "-m", "taskwatch"] + sys.argv[1:])


def run_engine(config: Config) -> EngineExit:
    """Run one engine until it exits, routing SIGINT/SIGTERM to it."""
    engine = WatchEngine.from_config(config)

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        """Route signals to the engine's control loop.

        Args:
            sig (int): The signal number.
            frame (Optional[FrameType]): The current stack frame (unused).
        """
        sig_name = signal.Signals(sig).name
        logger.debug(f"Received signal {sig_name}")
        if sig == signal.SIGINT:
            engine.request_interrupt()
        else:
            engine.request_stop()

    previous = {
        signal.SIGINT: signal.signal(signal.SIGINT, signal_handler),
        signal.SIGTERM: signal.signal(signal.SIGTERM, signal_handler),
    }
    try:
        return engine.run()
    finally:
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging and run
    the watch engine until it stops. A configuration reload requested by the
    engine re-reads the config file; if the new file is invalid the previous
    configuration is kept.

    Args:
        argv (Optional[List[str]]): Arguments to parse instead of ``sys.argv[1:]``.

    Raises:
        SystemExit: With code 2 if the configuration is invalid, code 1 on
            startup failure or when the consecutive-fatal policy trips.

    Example:
        $ taskwatch scripts --interrupt --debounce-delay 0.2
    """
    parser = build_parser()
    args: Dict[str, Any] = vars(parser.parse_args(argv))

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    bootstrap_level = logging.DEBUG if args.get("debug") else logging.INFO
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    try:
        config = load_config(args)
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.stderr.write(f"Configuration Error: {e}\n")
        sys.exit(EXIT_CONFIG_ERROR)

    logger.info(f"Starting taskwatch v{__version__} (PID: {os.getpid()})...")

    while True:
        logger.info(f"Targets: {', '.join(config.target_names)}")
        try:
            result = run_engine(config)
        except KeyboardInterrupt:
            logger.info("KeyboardInterrupt received, stopping...")
            result = EngineExit.STOPPED
        except Exception as e:
            logger.critical(f"Fatal error: {e}", exc_info=True)
            sys.exit(EXIT_FATAL)

        if result is EngineExit.RELOAD:
            try:
                config = load_config(args)
            except ValueError as e:
                logger.error(f"Configuration Error: {e}. Keeping the previous configuration.")
            continue
        if result is EngineExit.RESTART:
            restart_process()
            return
        if result is EngineExit.FATAL:
            sys.exit(EXIT_FATAL)
        logger.info("Stopped.")
        return


if __name__ == "__main__":
    main()
