"""
SQLite-backed track catalog.

The catalog is a single table mapping dense integer ids to remote locators:

    files(id INTEGER PRIMARY KEY, path TEXT NOT NULL, size INTEGER)

It is downloaded once at startup and only read afterwards.
"""

import logging
import os
import random
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass
from typing import Optional

import httpx

from dynsnap.errors import CatalogUnavailable

logger = logging.getLogger(__name__)

COUNT_QUERY = "SELECT COUNT(*) FROM files"
LOOKUP_QUERY = "SELECT path, size FROM files WHERE id = ?"


@dataclass(frozen=True)
class CatalogEntry:
    id: int
    locator: str
    size: Optional[int] = None


class TrackCatalog:
    """
    Read-only view over the catalog database.

    No caching: every call opens the database again so a replaced snapshot
    is picked up and no connection is shared across threads.
    """

    def __init__(self, path: str):
        self.path = path

    def _connect(self) -> sqlite3.Connection:
        if not os.path.isfile(self.path):
            raise CatalogUnavailable(f"Catalog database not found: {self.path}")
        try:
            return sqlite3.connect(f"file:{self.path}?mode=ro", uri=True)
        except sqlite3.Error as e:
            raise CatalogUnavailable(f"Cannot open catalog {self.path}: {e}") from e

    def count(self) -> int:
        """
        Return the number of entries in the catalog.

        Raises:
            CatalogUnavailable: If the database is missing, corrupt or has no files table
        """
        try:
            with closing(self._connect()) as conn:
                (total,) = conn.execute(COUNT_QUERY).fetchone()
        except sqlite3.Error as e:
            raise CatalogUnavailable(f"Catalog query failed ({self.path}): {e}") from e
        return int(total)

    def lookup(self, entry_id: int) -> str:
        """
        Return the locator for a catalog id.

        Raises:
            ValueError: If the id is outside [1, count()]
            LookupError: If the id is in range but no row exists for it
            CatalogUnavailable: If the database cannot be queried
        """
        return self._entry(entry_id, self.count()).locator

    def _entry(self, entry_id: int, total: int) -> CatalogEntry:
        if entry_id < 1 or entry_id > total:
            raise ValueError(f"Catalog id {entry_id} out of range [1, {total}]")
        try:
            with closing(self._connect()) as conn:
                row = conn.execute(LOOKUP_QUERY, (entry_id,)).fetchone()
        except sqlite3.Error as e:
            raise CatalogUnavailable(f"Catalog query failed ({self.path}): {e}") from e
        if row is None:
            raise LookupError(f"No catalog entry with id {entry_id}")
        path, size = row
        return CatalogEntry(id=entry_id, locator=path, size=size)

    def random_entry(self, rng: Optional[random.Random] = None) -> CatalogEntry:
        """
        Pick an entry uniformly at random from [1, count()].

        The count is read on every call, so catalog growth between picks is
        honored.

        Raises:
            CatalogUnavailable: If the catalog is empty or cannot be queried
            LookupError: If the sampled id has no row
        """
        rng = rng or random
        total = self.count()
        if total == 0:
            raise CatalogUnavailable(f"Catalog is empty: {self.path}")
        entry = self._entry(rng.randint(1, total), total)
        logger.debug(f"[CATALOG] Selected id={entry.id} of {total}: {entry.locator}")
        return entry


def verify_catalog(path: str) -> int:
    """Check that path holds a usable catalog and return its entry count."""
    return TrackCatalog(path).count()


def download_catalog(url: str, dest: str, retries: int = 3, retry_delay_sec: float = 5.0,
                     timeout: float = 30.0, client: Optional[httpx.Client] = None) -> int:
    """
    Download a catalog snapshot and atomically install it at dest.

    The download goes to a temporary file next to dest and only replaces
    dest after it has been verified as a readable catalog.

    Args:
        url: HTTP(S) URL of the SQLite snapshot
        dest: Final path of the catalog database
        retries: Number of download attempts
        retry_delay_sec: Sleep between attempts
        timeout: Per-request timeout in seconds
        client: httpx client to use (a temporary one is created if omitted)

    Returns:
        Number of entries in the installed catalog

    Raises:
        CatalogUnavailable: If every attempt fails
    """
    tmp_path = f"{dest}.tmp"
    dest_dir = os.path.dirname(dest)
    if dest_dir:
        os.makedirs(dest_dir, exist_ok=True)

    own_client = client is None
    if own_client:
        client = httpx.Client(timeout=timeout, follow_redirects=True)

    last_error: Optional[Exception] = None
    try:
        for attempt in range(1, retries + 1):
            logger.info(f"[CATALOG] Downloading catalog (attempt {attempt}/{retries}): {url}")
            try:
                with client.stream("GET", url) as response:
                    response.raise_for_status()
                    with open(tmp_path, "wb") as f:
                        for chunk in response.iter_bytes():
                            f.write(chunk)
                total = verify_catalog(tmp_path)
                os.replace(tmp_path, dest)
                logger.info(f"[CATALOG] Catalog installed at {dest} ({total} entries)")
                return total
            except (httpx.HTTPError, OSError, CatalogUnavailable) as e:
                last_error = e
                logger.warning(f"[CATALOG] Catalog download attempt {attempt}/{retries} failed: {e}")
                try:
                    os.remove(tmp_path)
                except FileNotFoundError:
                    pass
                if attempt < retries:
                    time.sleep(retry_delay_sec)
    finally:
        if own_client:
            client.close()

    raise CatalogUnavailable(f"Failed to download catalog from {url} after {retries} attempts: {last_error}")
