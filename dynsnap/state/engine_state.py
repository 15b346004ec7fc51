"""
Mutable state owned by the playout engine.
"""

import threading
from dataclasses import dataclass, field
from typing import Optional

from dynsnap.broadcast_core.playout_queue import PlayoutQueue
from dynsnap.broadcast_core.track import Track


class FailureCounter:
    """Counts consecutive failed playout cycles against a fixed ceiling."""

    def __init__(self, ceiling: int):
        if ceiling < 1:
            raise ValueError(f"Failure ceiling must be >= 1, got {ceiling}")
        self.ceiling = ceiling
        self.count = 0

    def increment(self) -> int:
        self.count += 1
        return self.count

    def reset(self) -> None:
        self.count = 0

    @property
    def exhausted(self) -> bool:
        return self.count >= self.ceiling

    def __repr__(self) -> str:
        return f"FailureCounter({self.count}/{self.ceiling})"


@dataclass
class EngineState:
    failures: FailureCounter
    queue: PlayoutQueue = field(default_factory=PlayoutQueue)
    streaming: Optional[Track] = None
    cycles_completed: int = 0
    tracks_streamed: int = 0
    stop_event: threading.Event = field(default_factory=threading.Event)

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()
