"""
Remote track fetcher backed by rclone.

fetch_sync() copies one locator to an exact local path and blocks.
fetch_async() runs the same copy in a worker thread and returns a FetchHandle
the playout engine waits on once the current track has finished streaming.
"""

import logging
import os
import re
import subprocess
import threading
from typing import List, Optional

from dynsnap.errors import FetchError, NetworkFailure, NotFound, QuotaOrAuthFailure
from dynsnap.supervisor.process_group import ProcessGroup

logger = logging.getLogger(__name__)

# rclone exit codes (see `rclone help flags` / docs "Exit Code")
EXIT_DIRECTORY_NOT_FOUND = 3
EXIT_FILE_NOT_FOUND = 4
EXIT_FATAL_ERROR = 7

_NOT_FOUND_PATTERN = re.compile(r"not found|doesn't exist|does not exist|no such file", re.IGNORECASE)
_QUOTA_AUTH_PATTERN = re.compile(
    r"quota|rate ?limit|403|401|unauthori[sz]ed|forbidden|invalid_grant|token expired",
    re.IGNORECASE,
)

STDERR_TAIL_LINES = 20


def classify_failure(locator: str, returncode: Optional[int], stderr: str) -> FetchError:
    """Map an rclone exit status and its stderr to a FetchError subclass."""
    message = _tail(stderr) or f"rclone exited with status {returncode}"
    if returncode in (EXIT_DIRECTORY_NOT_FOUND, EXIT_FILE_NOT_FOUND) or _NOT_FOUND_PATTERN.search(stderr):
        return NotFound(locator, message, returncode)
    if returncode == EXIT_FATAL_ERROR or _QUOTA_AUTH_PATTERN.search(stderr):
        return QuotaOrAuthFailure(locator, message, returncode)
    return NetworkFailure(locator, message, returncode)


def _tail(text: str, lines: int = STDERR_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


def remove_partial(dest_path: str) -> None:
    """Remove dest_path and any *.partial siblings rclone left behind."""
    directory = os.path.dirname(dest_path) or "."
    name = os.path.basename(dest_path)
    candidates = [dest_path]
    try:
        candidates.extend(
            os.path.join(directory, entry)
            for entry in os.listdir(directory)
            if entry.startswith(name) and entry.endswith(".partial")
        )
    except FileNotFoundError:
        return
    for path in candidates:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"[FETCH] Could not remove partial download {path}: {e}")


class FetchHandle:
    """
    Handle for one background fetch.

    wait() blocks until the copy finishes and re-raises its FetchError.
    cancel() kills the transfer; the handle then resolves as NetworkFailure.
    """

    def __init__(self, fetcher: "RcloneFetcher", locator: str, dest_path: str):
        self.locator = locator
        self.dest_path = dest_path
        self._fetcher = fetcher
        self._done = threading.Event()
        self._cancelled = threading.Event()
        self._error: Optional[FetchError] = None
        self._proc: Optional[subprocess.Popen] = None
        self._proc_lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._run,
            name=f"FetchWorker[{os.path.basename(dest_path)}]",
            daemon=True,
        )

    def start(self) -> "FetchHandle":
        self._thread.start()
        return self

    def _attach(self, proc: subprocess.Popen) -> bool:
        with self._proc_lock:
            self._proc = proc
            return not self._cancelled.is_set()

    def _run(self) -> None:
        try:
            self._fetcher._copy(self.locator, self.dest_path, attach=self._attach)
        except FetchError as e:
            if self._cancelled.is_set():
                self._error = NetworkFailure(self.locator, "fetch cancelled")
            else:
                self._error = e
        except Exception as e:
            logger.error(f"[FETCH] Unexpected error fetching {self.locator}: {e}", exc_info=True)
            remove_partial(self.dest_path)
            self._error = NetworkFailure(self.locator, f"unexpected fetch error: {e}")
        finally:
            self._done.set()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> None:
        """
        Block until the fetch completes.

        Raises:
            FetchError: If the fetch failed or was cancelled
            TimeoutError: If timeout elapsed first
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"Fetch of {self.locator} still running after {timeout}s")
        self._thread.join()
        if self._error is not None:
            raise self._error

    def cancel(self) -> None:
        self._cancelled.set()
        with self._proc_lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            logger.info(f"[FETCH] Cancelling fetch of {self.locator}")
            self._fetcher.process_group.terminate(proc, grace_sec=2.0)


class RcloneFetcher:
    """Copies remote locators to local scratch paths with rclone."""

    def __init__(self, process_group: ProcessGroup, rclone_bin: str = "rclone",
                 config_path: Optional[str] = None, timeout_sec: float = 600.0):
        self.process_group = process_group
        self.rclone_bin = rclone_bin
        self.config_path = config_path
        self.timeout_sec = timeout_sec

    def build_command(self, locator: str, dest_path: str) -> List[str]:
        cmd = [self.rclone_bin]
        if self.config_path:
            cmd += ["--config", self.config_path]
        cmd += ["copyto", locator, dest_path, "--retries", "1", "--low-level-retries", "3"]
        return cmd

    def fetch_sync(self, locator: str, dest_path: str) -> None:
        """
        Copy locator to dest_path, blocking until done.

        Raises:
            NetworkFailure, NotFound, QuotaOrAuthFailure: On failure; dest_path is removed
        """
        self._copy(locator, dest_path)

    def fetch_async(self, locator: str, dest_path: str) -> FetchHandle:
        """Start copying locator to dest_path in the background."""
        return FetchHandle(self, locator, dest_path).start()

    def _copy(self, locator: str, dest_path: str, attach=None) -> None:
        cmd = self.build_command(locator, dest_path)
        logger.info(f"[FETCH] Fetching {locator} -> {dest_path}")
        try:
            proc = self.process_group.spawn(
                cmd,
                label="rclone",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise NetworkFailure(locator, f"cannot start {self.rclone_bin}: {e}") from e

        if attach is not None and not attach(proc):
            self.process_group.terminate(proc, grace_sec=1.0)
            remove_partial(dest_path)
            raise NetworkFailure(locator, "fetch cancelled")

        try:
            try:
                _, stderr_bytes = proc.communicate(timeout=self.timeout_sec)
            except subprocess.TimeoutExpired:
                self.process_group.terminate(proc, grace_sec=2.0)
                proc.communicate()
                remove_partial(dest_path)
                error = NetworkFailure(locator, f"fetch timed out after {self.timeout_sec}s")
                logger.warning(f"[FETCH] {error.kind}: {error}")
                raise error
        finally:
            self.process_group.release(proc)

        stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
        if proc.returncode != 0:
            remove_partial(dest_path)
            error = classify_failure(locator, proc.returncode, stderr)
            logger.warning(f"[FETCH] {error.kind} (exit={proc.returncode}): {error}")
            raise error

        if not os.path.isfile(dest_path):
            error = NotFound(locator, "rclone reported success but no file was written", proc.returncode)
            logger.warning(f"[FETCH] {error.kind}: {error}")
            raise error

        logger.info(f"[FETCH] Fetched {locator} ({os.path.getsize(dest_path)} bytes)")
