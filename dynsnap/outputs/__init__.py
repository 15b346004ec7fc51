"""
Observability outputs: event publishers and the log relay.
"""

from dynsnap.outputs.event_publisher import (
    CompositeEventPublisher,
    EventPublisher,
    FifoEventPublisher,
    HttpEventPublisher,
    NullEventPublisher,
    create_publisher,
)
from dynsnap.outputs.log_relay import PublisherLogHandler, attach_log_relay, detach_log_relay

__all__ = [
    "CompositeEventPublisher",
    "EventPublisher",
    "FifoEventPublisher",
    "HttpEventPublisher",
    "NullEventPublisher",
    "PublisherLogHandler",
    "attach_log_relay",
    "create_publisher",
    "detach_log_relay",
]
