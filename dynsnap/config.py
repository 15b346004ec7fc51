"""
Configuration management for dynsnap.

Reads configuration from a .env file and environment variables with sensible defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from dynsnap.errors import ConfigError


# Default .env file location
DEFAULT_ENV_FILE = Path("/etc/dynsnap/dynsnap.env")

SINK_MODES = ("icecast", "fifo")
VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

logger = logging.getLogger(__name__)


def _load_env_file():
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("DYNSNAP_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file)

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _get_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name, default)
    if value == "":
        return default
    return value


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name, str(default))
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"Invalid {name}: {value} (must be an integer)")


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name, str(default))
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"Invalid {name}: {value} (must be a number)")


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_backoff_schedule(backoff_str: str) -> List[int]:
    """
    Parse service restart backoff schedule from comma-separated string.

    Args:
        backoff_str: Comma-separated list of milliseconds (e.g., "1000,2000,4000")

    Returns:
        List of backoff delays in milliseconds

    Raises:
        ConfigError: If parsing fails or values are invalid
    """
    if not backoff_str:
        raise ConfigError("Backoff schedule cannot be empty")

    try:
        delays = [int(x.strip()) for x in backoff_str.split(",")]
    except ValueError:
        raise ConfigError(f"Invalid backoff schedule format: {backoff_str} (must be comma-separated integers)")
    if any(d <= 0 for d in delays):
        raise ConfigError("All backoff delays must be positive")
    return delays


def _parse_silence_windows(windows_str: str) -> List[float]:
    """Parse escalating silence windows (seconds) from a comma-separated string."""
    try:
        windows = [float(x.strip()) for x in windows_str.split(",") if x.strip()]
    except ValueError:
        raise ConfigError(f"Invalid silence windows: {windows_str} (must be comma-separated numbers)")
    if not windows:
        raise ConfigError("Silence windows cannot be empty")
    return windows


@dataclass
class DynsnapConfig:
    """dynsnap configuration loaded from .env file and environment variables."""

    # Catalog
    catalog_url: Optional[str] = None
    catalog_path: str = "/music/catalog.db"
    catalog_download_retries: int = 3
    catalog_retry_delay_sec: float = 5.0

    # Fetching
    scratch_dir: str = "/music/downloads"
    rclone_bin: str = "rclone"
    rclone_config: Optional[str] = None
    fetch_timeout_sec: float = 600.0

    # Decoding
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    normalize: bool = True

    # Sink
    sink_mode: str = "icecast"
    icecast_bin: str = "icecast"
    icecast_config: Optional[str] = None  # start a local icecast server when set
    icecast_host: str = "localhost"
    icecast_port: int = 8000
    icecast_mount: str = "/stream.ogg"
    icecast_user: str = "source"
    icecast_password: str = "hackme"
    content_type: str = "application/ogg"
    snapserver_bin: str = "snapserver"
    snapserver_config: Optional[str] = None
    pcm_fifo: str = "/tmp/snapfifo"
    fifo_open_retries: int = 50
    fifo_open_retry_delay_sec: float = 0.1

    # Observability / control channel
    control_channel_enabled: bool = False
    gwsocket_bin: str = "gwsocket"
    control_bind_address: str = "0.0.0.0"
    control_port: int = 9000
    log_fifo: Optional[str] = None
    events_url: Optional[str] = None
    watchdog_cmd: Optional[str] = None

    # Playout engine
    max_consecutive_failures: int = 5
    inter_cycle_delay_sec: float = 1.0
    silence_windows_sec: List[float] = field(default_factory=lambda: [1.0, 5.0, 30.0])
    startup_fetch_attempts: int = 2
    startup_retry_delay_sec: float = 2.0

    # Service supervision
    service_startup_grace_sec: float = 1.0
    service_backoff_ms: List[int] = field(default_factory=lambda: [1000, 2000, 4000])
    service_max_restarts: int = 3
    shutdown_grace_sec: float = 10.0

    # Logging
    log_level: str = "INFO"

    @property
    def required_binaries(self) -> List[str]:
        """Executables that must be on PATH before the daemon starts."""
        binaries = [self.ffmpeg_bin, self.ffprobe_bin, self.rclone_bin]
        if self.sink_mode == "icecast" and self.icecast_config:
            binaries.append(self.icecast_bin)
        if self.sink_mode == "fifo" and self.snapserver_config:
            binaries.append(self.snapserver_bin)
        if self.control_channel_enabled:
            binaries.append(self.gwsocket_bin)
        return binaries

    @classmethod
    def load_config(cls) -> "DynsnapConfig":
        """
        Load configuration from environment variables.

        Returns:
            DynsnapConfig instance with loaded values

        Raises:
            ConfigError: If configuration is invalid
        """
        # Load .env file first (if it exists)
        _load_env_file()

        defaults = cls()

        config = cls(
            catalog_url=_get_str("DYNSNAP_CATALOG_URL"),
            catalog_path=_get_str("DYNSNAP_CATALOG_PATH", defaults.catalog_path),
            catalog_download_retries=_get_int("DYNSNAP_CATALOG_DOWNLOAD_RETRIES", defaults.catalog_download_retries),
            catalog_retry_delay_sec=_get_float("DYNSNAP_CATALOG_RETRY_DELAY_SEC", defaults.catalog_retry_delay_sec),
            scratch_dir=_get_str("DYNSNAP_SCRATCH_DIR", defaults.scratch_dir),
            rclone_bin=_get_str("DYNSNAP_RCLONE_BIN", defaults.rclone_bin),
            rclone_config=_get_str("DYNSNAP_RCLONE_CONFIG"),
            fetch_timeout_sec=_get_float("DYNSNAP_FETCH_TIMEOUT_SEC", defaults.fetch_timeout_sec),
            ffmpeg_bin=_get_str("DYNSNAP_FFMPEG_BIN", defaults.ffmpeg_bin),
            ffprobe_bin=_get_str("DYNSNAP_FFPROBE_BIN", defaults.ffprobe_bin),
            normalize=_get_bool("DYNSNAP_NORMALIZE", defaults.normalize),
            sink_mode=_get_str("DYNSNAP_SINK_MODE", defaults.sink_mode).lower(),
            icecast_bin=_get_str("DYNSNAP_ICECAST_BIN", defaults.icecast_bin),
            icecast_config=_get_str("DYNSNAP_ICECAST_CONFIG"),
            icecast_host=_get_str("DYNSNAP_ICECAST_HOST", defaults.icecast_host),
            icecast_port=_get_int("DYNSNAP_ICECAST_PORT", defaults.icecast_port),
            icecast_mount=_get_str("DYNSNAP_ICECAST_MOUNT", defaults.icecast_mount),
            icecast_user=_get_str("DYNSNAP_ICECAST_USER", defaults.icecast_user),
            icecast_password=_get_str("DYNSNAP_ICECAST_PASSWORD", defaults.icecast_password),
            content_type=_get_str("DYNSNAP_CONTENT_TYPE", defaults.content_type),
            snapserver_bin=_get_str("DYNSNAP_SNAPSERVER_BIN", defaults.snapserver_bin),
            snapserver_config=_get_str("DYNSNAP_SNAPSERVER_CONFIG"),
            pcm_fifo=_get_str("DYNSNAP_PCM_FIFO", defaults.pcm_fifo),
            fifo_open_retries=_get_int("DYNSNAP_FIFO_OPEN_RETRIES", defaults.fifo_open_retries),
            fifo_open_retry_delay_sec=_get_float("DYNSNAP_FIFO_OPEN_RETRY_DELAY_SEC", defaults.fifo_open_retry_delay_sec),
            control_channel_enabled=_get_bool("DYNSNAP_CONTROL_CHANNEL", defaults.control_channel_enabled),
            gwsocket_bin=_get_str("DYNSNAP_GWSOCKET_BIN", defaults.gwsocket_bin),
            control_bind_address=_get_str("DYNSNAP_CONTROL_BIND", defaults.control_bind_address),
            control_port=_get_int("DYNSNAP_CONTROL_PORT", defaults.control_port),
            log_fifo=_get_str("DYNSNAP_LOG_FIFO"),
            events_url=_get_str("DYNSNAP_EVENTS_URL"),
            watchdog_cmd=_get_str("DYNSNAP_WATCHDOG_CMD"),
            max_consecutive_failures=_get_int("DYNSNAP_MAX_CONSECUTIVE_FAILURES", defaults.max_consecutive_failures),
            inter_cycle_delay_sec=_get_float("DYNSNAP_INTER_CYCLE_DELAY_SEC", defaults.inter_cycle_delay_sec),
            silence_windows_sec=_parse_silence_windows(os.getenv("DYNSNAP_SILENCE_WINDOWS_SEC", "1,5,30")),
            startup_fetch_attempts=_get_int("DYNSNAP_STARTUP_FETCH_ATTEMPTS", defaults.startup_fetch_attempts),
            startup_retry_delay_sec=_get_float("DYNSNAP_STARTUP_RETRY_DELAY_SEC", defaults.startup_retry_delay_sec),
            service_startup_grace_sec=_get_float("DYNSNAP_SERVICE_STARTUP_GRACE_SEC", defaults.service_startup_grace_sec),
            service_backoff_ms=_parse_backoff_schedule(os.getenv("DYNSNAP_SERVICE_BACKOFF_MS", "1000,2000,4000")),
            service_max_restarts=_get_int("DYNSNAP_SERVICE_MAX_RESTARTS", defaults.service_max_restarts),
            shutdown_grace_sec=_get_float("DYNSNAP_SHUTDOWN_GRACE_SEC", defaults.shutdown_grace_sec),
            log_level=_get_str("DYNSNAP_LOG_LEVEL", defaults.log_level),
        )

        # Validate configuration
        config.validate()

        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If configuration is invalid
        """
        if not self.catalog_path:
            raise ConfigError("DYNSNAP_CATALOG_PATH cannot be empty")

        if self.catalog_url is None and not Path(self.catalog_path).exists():
            raise ConfigError(
                f"Catalog not found at {self.catalog_path} and DYNSNAP_CATALOG_URL is not set"
            )

        if self.catalog_download_retries < 1:
            raise ConfigError(f"Invalid catalog download retries: {self.catalog_download_retries} (must be >= 1)")

        if not self.scratch_dir:
            raise ConfigError("DYNSNAP_SCRATCH_DIR cannot be empty")

        if self.fetch_timeout_sec <= 0:
            raise ConfigError(f"Invalid fetch timeout: {self.fetch_timeout_sec} (must be > 0)")

        if self.sink_mode not in SINK_MODES:
            raise ConfigError(
                f"Invalid DYNSNAP_SINK_MODE: {self.sink_mode} (must be one of: {', '.join(SINK_MODES)})"
            )

        for name, port in (("icecast port", self.icecast_port), ("control port", self.control_port)):
            if port < 1 or port > 65535:
                raise ConfigError(f"Invalid {name}: {port} (must be 1-65535)")

        if not self.icecast_mount.startswith("/"):
            raise ConfigError(f"Invalid icecast mount: {self.icecast_mount} (must start with '/')")

        if self.icecast_config is not None and not Path(self.icecast_config).exists():
            raise ConfigError(f"DYNSNAP_ICECAST_CONFIG does not exist: {self.icecast_config}")

        if self.snapserver_config is not None and not Path(self.snapserver_config).exists():
            raise ConfigError(f"DYNSNAP_SNAPSERVER_CONFIG does not exist: {self.snapserver_config}")

        if self.fifo_open_retries < 1:
            raise ConfigError(f"Invalid FIFO open retries: {self.fifo_open_retries} (must be >= 1)")

        if self.control_channel_enabled and not self.log_fifo:
            raise ConfigError("DYNSNAP_LOG_FIFO is required when DYNSNAP_CONTROL_CHANNEL is enabled")

        if self.max_consecutive_failures < 1:
            raise ConfigError(
                f"Invalid max consecutive failures: {self.max_consecutive_failures} (must be >= 1)"
            )

        if self.inter_cycle_delay_sec < 0:
            raise ConfigError(f"Invalid inter-cycle delay: {self.inter_cycle_delay_sec} (must be >= 0)")

        if not self.silence_windows_sec or any(w <= 0 for w in self.silence_windows_sec):
            raise ConfigError("All silence windows must be positive")

        if self.startup_fetch_attempts < 1:
            raise ConfigError(f"Invalid startup fetch attempts: {self.startup_fetch_attempts} (must be >= 1)")

        if self.service_startup_grace_sec < 0:
            raise ConfigError(f"Invalid service startup grace: {self.service_startup_grace_sec} (must be >= 0)")

        if not self.service_backoff_ms:
            raise ConfigError("Service backoff schedule cannot be empty")
        if any(d <= 0 for d in self.service_backoff_ms):
            raise ConfigError("All service backoff delays must be positive")

        if self.service_max_restarts < 1:
            raise ConfigError(f"Invalid service max restarts: {self.service_max_restarts} (must be >= 1)")

        if self.shutdown_grace_sec < 0:
            raise ConfigError(f"Invalid shutdown grace: {self.shutdown_grace_sec} (must be >= 0)")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(VALID_LOG_LEVELS)})"
            )


def load_config() -> DynsnapConfig:
    """
    Load and validate dynsnap configuration from environment variables.

    Returns:
        DynsnapConfig instance with loaded and validated values

    Raises:
        ConfigError: If configuration is invalid
    """
    try:
        return DynsnapConfig.load_config()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        raise
