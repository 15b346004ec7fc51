"""
Process table for every subprocess dynsnap spawns.

Each child is started in its own session (process group) so that Ctrl-C on
the daemon's terminal never reaches it directly, and so that killing the
group also reaps anything the child forked. Shutdown walks the table with
SIGTERM, waits a grace period, then SIGKILLs whatever is left.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)


class ProcessGroup:
    """Registry of live child processes with grace-then-force termination."""

    def __init__(self):
        self._lock = threading.RLock()
        self._procs: Dict[int, subprocess.Popen] = {}
        self._labels: Dict[int, str] = {}
        self._closed = False

    def spawn(self, argv: Sequence[str], label: str, **popen_kwargs) -> subprocess.Popen:
        """
        Start a child process in a new session and register it.

        Raises:
            RuntimeError: If the table has already been shut down
            OSError: If the executable cannot be started
        """
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Process table is shut down, refusing to start {label}")
            proc = subprocess.Popen(list(argv), start_new_session=True, **popen_kwargs)
            self._procs[proc.pid] = proc
            self._labels[proc.pid] = label
        logger.debug(f"[PROCESS] Started {label} (pid={proc.pid})")
        return proc

    def release(self, proc: subprocess.Popen) -> None:
        """Forget a process that has been waited on."""
        with self._lock:
            self._procs.pop(proc.pid, None)
            self._labels.pop(proc.pid, None)

    def live(self) -> List[subprocess.Popen]:
        with self._lock:
            return [p for p in self._procs.values() if p.poll() is None]

    def label(self, proc: subprocess.Popen) -> Optional[str]:
        with self._lock:
            return self._labels.get(proc.pid)

    def __len__(self) -> int:
        with self._lock:
            return len(self._procs)

    def terminate(self, proc: subprocess.Popen, grace_sec: float = 2.0) -> Optional[int]:
        """
        Terminate one child's process group: SIGTERM, wait grace_sec, then SIGKILL.

        Idempotent. Returns the exit code, or None if it could not be reaped.
        """
        label = self.label(proc) or "process"
        try:
            if proc.poll() is None:
                _signal_group(proc, signal.SIGTERM)
                try:
                    proc.wait(timeout=grace_sec)
                except subprocess.TimeoutExpired:
                    logger.warning(f"[PROCESS] {label} SIGKILL sent (grace {grace_sec}s exceeded, pid={proc.pid})")
                    _signal_group(proc, signal.SIGKILL)
                    try:
                        proc.wait(timeout=1.0)
                    except subprocess.TimeoutExpired:
                        logger.error(f"[PROCESS] {label} did not exit after SIGKILL (pid={proc.pid})")
                        return None
            return proc.returncode
        finally:
            if proc.returncode is not None:
                self.release(proc)

    def terminate_all(self, grace_sec: float = 10.0) -> None:
        """
        Terminate every registered child and close the table.

        All children get SIGTERM first, then share one grace window before
        the survivors are SIGKILLed.
        """
        with self._lock:
            self._closed = True
            procs = list(self._procs.values())

        running = [p for p in procs if p.poll() is None]
        if running:
            logger.info(f"[PROCESS] Terminating {len(running)} child process(es)")
        for proc in running:
            _signal_group(proc, signal.SIGTERM)

        deadline = time.monotonic() + grace_sec
        for proc in running:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                proc.wait(timeout=remaining)
            except subprocess.TimeoutExpired:
                logger.warning(f"[PROCESS] SIGKILL sent to {self.label(proc)} (pid={proc.pid})")
                _signal_group(proc, signal.SIGKILL)
                try:
                    proc.wait(timeout=1.0)
                except subprocess.TimeoutExpired:
                    logger.error(f"[PROCESS] pid={proc.pid} did not exit after SIGKILL")

        for proc in procs:
            if proc.poll() is not None:
                self.release(proc)


def _signal_group(proc: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(os.getpgid(proc.pid), sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        # The group leader already exited and its pgid is gone or reused
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass
