"""
Error taxonomy for dynsnap.

Per-track errors (FetchError, DetectError, DecodeError) are recoverable: the
playout engine logs them and moves on to another track. Everything else that
escapes the engine is fatal and ends the process with a non-zero status.
"""

from typing import Optional


class DynsnapError(Exception):
    """Base class for all dynsnap errors."""


class ConfigError(DynsnapError, ValueError):
    """Configuration is missing or invalid (startup only)."""


class MissingDependency(ConfigError):
    """A required executable is not available on PATH."""


class CatalogUnavailable(DynsnapError):
    """The catalog cannot be downloaded, opened or queried."""


class FetchError(DynsnapError):
    """Copying a track from remote storage failed."""

    kind = "fetch"

    def __init__(self, locator: str, message: str, returncode: Optional[int] = None):
        super().__init__(f"{message} (locator={locator!r})")
        self.locator = locator
        self.returncode = returncode


class NetworkFailure(FetchError):
    kind = "network"


class NotFound(FetchError):
    kind = "not_found"


class QuotaOrAuthFailure(FetchError):
    kind = "quota_or_auth"


class DetectError(DynsnapError):
    """The file's audio format could not be determined."""


class DecodeError(DynsnapError):
    """The decoder process failed before the whole track was produced."""

    def __init__(self, message: str, returncode: Optional[int] = None, frames_written: int = 0):
        super().__init__(message)
        self.returncode = returncode
        self.frames_written = frames_written


class ServiceStartupFailure(DynsnapError):
    """A supervised service exited during its startup grace window."""


class ServiceCrash(DynsnapError):
    """An essential service died and could not be restarted."""


class StartupFetchFailed(DynsnapError):
    """No initial track could be fetched at startup."""


class FailureCeilingReached(DynsnapError):
    """Too many consecutive playout cycles failed."""
