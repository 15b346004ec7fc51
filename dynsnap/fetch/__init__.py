"""
Remote track fetching.
"""

from dynsnap.fetch.rclone_fetcher import FetchHandle, RcloneFetcher, classify_failure, remove_partial

__all__ = ["FetchHandle", "RcloneFetcher", "classify_failure", "remove_partial"]
