"""
dynsnap - continuous random-catalog internet radio playout daemon.

Selects random tracks from a catalog, fetches them from remote storage,
decodes them to canonical PCM and keeps a live stream fed without gaps.
"""

__version__ = "0.4.0"
