"""Command line entry point for the dvr-manager daemon."""

import argparse
import os
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="dvr-manager",
        description="Move finished DVR recordings into a media server library",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Scan, wait one stability interval, process finished recordings and exit",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        help="Directory holding settings.json (default: $DVR_MANAGER_CONFIG_DIR or /config/dvr-manager)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Override the log level",
    )
    return parser.parse_args(argv)


def _install_signal_handlers(orchestrator) -> None:
    """Signals only enqueue commands; the coordinator thread acts on them."""
    def _stop(signum, frame):
        orchestrator.request_stop()

    def _reload(signum, frame):
        orchestrator.request_reload()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _reload)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    # Bootstrap values are read from the environment when the package is imported
    if args.config_dir:
        os.environ["DVR_MANAGER_CONFIG_DIR"] = str(args.config_dir)
    if args.log_level:
        os.environ["DVR_MANAGER_LOG_LEVEL"] = args.log_level

    from dvr_manager.core.config import config
    from dvr_manager.core.errors import ConfigurationError
    from dvr_manager.core.logger import setup_logger
    from dvr_manager.orchestrator import Orchestrator

    logger = setup_logger("dvr_manager.main")

    orchestrator = Orchestrator(config)
    try:
        orchestrator.prepare()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG_ERROR

    if args.once:
        orchestrator.run_once()
        time.sleep(config.STABILITY_INTERVAL)
        processed = orchestrator.run_once()
        orchestrator.request_stop()
        logger.info(f"Processed {processed} recording(s)")
        return EXIT_OK

    _install_signal_handlers(orchestrator)
    orchestrator.run_forever()
    logger.info("dvr-manager stopped")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
