"""
Application wiring and the command-line entry point.
"""

from dynsnap.app.station import Station

__all__ = ["Station"]
