"""
Engine state.
"""

from dynsnap.state.engine_state import EngineState, FailureCounter

__all__ = ["EngineState", "FailureCounter"]
