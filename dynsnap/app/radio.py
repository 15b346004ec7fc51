"""
Main entry point for dynsnap.

Loads configuration, installs signal handlers and runs the Station until it
is stopped or hits a fatal error.
"""

import logging
import signal
import sys
from typing import Any, Dict, Optional

from dynsnap.app.station import EXIT_CONFIG, Station
from dynsnap.config import load_config
from dynsnap.errors import ConfigError
from dynsnap.outputs.log_relay import LOG_FORMAT

logger = logging.getLogger(__name__)


def install_signal_handlers(station: Station) -> Dict[int, Any]:
    """
    Route SIGINT and SIGTERM to a graceful station shutdown.

    The handler only flags the request; it must not log or take locks.

    Returns:
        The previously installed handlers, keyed by signal number
    """

    def signal_handler(sig, frame):
        signal_name = "SIGTERM" if sig == signal.SIGTERM else "SIGINT"
        station.request_stop(f"received {signal_name}")

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, signal_handler)
    return previous


def main(args: Optional[list] = None) -> None:
    """
    Main entry point for dynsnap.

    Exits with the Station's status: 0 after SIGINT/SIGTERM, non-zero after a
    fatal error.
    """
    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    try:
        config = load_config()
    except ConfigError as e:
        logger.critical(f"[STATION] FATAL configuration error: {e}")
        sys.exit(EXIT_CONFIG)

    logging.getLogger().setLevel(config.log_level.upper())

    logger.info("=" * 70)
    logger.info(f"dynsnap starting (sink={config.sink_mode}, catalog={config.catalog_path})")
    logger.info("=" * 70)

    station = Station(config)
    install_signal_handlers(station)

    sys.exit(station.run())


if __name__ == "__main__":
    main()
