"""
Relays dynsnap log records to the observability channel.
"""

import logging

from dynsnap.outputs.event_publisher import EventPublisher

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class PublisherLogHandler(logging.Handler):
    """logging.Handler that publishes formatted records on the "log" topic."""

    def __init__(self, publisher: EventPublisher, level: int = logging.INFO):
        super().__init__(level)
        self.publisher = publisher
        self.setFormatter(logging.Formatter(LOG_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        # Records from the publishers themselves would loop back here
        if record.name.startswith("dynsnap.outputs"):
            return
        try:
            self.publisher.publish_log(self.format(record), source=record.name)
        except Exception:
            self.handleError(record)


def attach_log_relay(publisher: EventPublisher, logger_name: str = "dynsnap",
                     level: int = logging.INFO) -> PublisherLogHandler:
    """Attach a PublisherLogHandler to the named logger and return it."""
    handler = PublisherLogHandler(publisher, level)
    logging.getLogger(logger_name).addHandler(handler)
    return handler


def detach_log_relay(handler: PublisherLogHandler, logger_name: str = "dynsnap") -> None:
    logging.getLogger(logger_name).removeHandler(handler)
