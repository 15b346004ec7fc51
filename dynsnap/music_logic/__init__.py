"""
Catalog access for dynsnap.
"""

from dynsnap.music_logic.track_catalog import CatalogEntry, TrackCatalog, download_catalog

__all__ = ["CatalogEntry", "TrackCatalog", "download_catalog"]
