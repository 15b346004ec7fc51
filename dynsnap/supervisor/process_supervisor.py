"""
Supervisor for the long-running helper services dynsnap depends on
(streaming sink, encoder transport, control channel, watchdog).

Each service is described by a declarative ServiceSpec. start() spawns it in
its own process group and attaches a watcher thread whose only job is to wait
on the process and set ServiceHandle.exited, so crashes are noticed without
polling. check_services() is called once per playout-loop iteration and
restarts whatever has died, following a bounded backoff schedule.
"""

import collections
import enum
import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Sequence

from dynsnap.errors import ServiceCrash, ServiceStartupFailure
from dynsnap.supervisor.process_group import ProcessGroup

logger = logging.getLogger(__name__)

OUTPUT_TAIL_LINES = 50


class ServiceKind(enum.Enum):
    SINK = "sink"
    TRANSPORT = "transport"
    SUPERVISOR = "supervisor"
    CONTROL_CHANNEL = "control_channel"


class ServiceHealth(enum.Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEAD = "dead"


@dataclass
class ServiceSpec:
    """
    Declarative description of one supervised subprocess.

    Attributes:
        kind: Role of the service in the pipeline
        name: Short name used in log prefixes
        argv: Command line
        bind_address: Address the service listens on, if any
        port: Port the service listens on, if any
        config_path: Configuration file handed to the service, if any
        credentials: Credentials the service is configured with
        essential: Whether the daemon cannot run without this service
        startup_grace_sec: Window in which an exit counts as a startup failure
        stdin_pipe: Keep a pipe to the service's stdin (encoder transport)
    """
    kind: ServiceKind
    name: str
    argv: Sequence[str]
    bind_address: Optional[str] = None
    port: Optional[int] = None
    config_path: Optional[str] = None
    credentials: Dict[str, str] = field(default_factory=dict)
    essential: bool = True
    startup_grace_sec: float = 1.0
    stdin_pipe: bool = False


@dataclass
class ServiceHandle:
    spec: ServiceSpec
    process: subprocess.Popen
    health: ServiceHealth = ServiceHealth.UNKNOWN
    exited: threading.Event = field(default_factory=threading.Event)
    started_at: float = field(default_factory=time.monotonic)
    output_tail: Deque[str] = field(default_factory=lambda: collections.deque(maxlen=OUTPUT_TAIL_LINES))

    @property
    def kind(self) -> ServiceKind:
        return self.spec.kind

    @property
    def process_id(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def stdin(self):
        return self.process.stdin

    def wait_exit(self, timeout: Optional[float] = None) -> bool:
        """Block until the process exits. Returns False on timeout."""
        return self.exited.wait(timeout)


RestartListener = Callable[[ServiceHandle, ServiceHandle], None]


class ProcessSupervisor:
    """
    Starts, health-checks, restarts and shuts down supervised services.

    Usable as a context manager: leaving the block stops every service and
    terminates every process registered in the shared process table.
    """

    def __init__(
        self,
        process_group: Optional[ProcessGroup] = None,
        publisher=None,
        backoff_schedule_ms: Optional[List[int]] = None,
        max_restarts: int = 3,
        shutdown_grace_sec: float = 10.0,
    ):
        self.process_group = process_group or ProcessGroup()
        self.publisher = publisher
        self._backoff_schedule_ms = backoff_schedule_ms or [1000, 2000, 4000]
        self._max_restarts = max_restarts
        self._shutdown_grace_sec = shutdown_grace_sec
        self._lock = threading.Lock()
        self._services: Dict[ServiceKind, ServiceHandle] = {}
        self._listeners: List[RestartListener] = []
        self._stopping = threading.Event()

    def __enter__(self) -> "ProcessSupervisor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def add_restart_listener(self, listener: RestartListener) -> None:
        """Register a callback invoked with (old_handle, new_handle) after every restart."""
        self._listeners.append(listener)

    def service(self, kind: ServiceKind) -> Optional[ServiceHandle]:
        with self._lock:
            return self._services.get(kind)

    def services(self) -> List[ServiceHandle]:
        with self._lock:
            return list(self._services.values())

    def start(self, spec: ServiceSpec) -> ServiceHandle:
        """
        Spawn a service and confirm it survives its startup grace window.

        Raises:
            ServiceStartupFailure: If the process cannot be started or exits within the grace window
        """
        logger.info(f"[SUPERVISOR] Starting {spec.name}: {_redacted_command(spec)}")
        try:
            proc = self.process_group.spawn(
                spec.argv,
                label=spec.name,
                stdin=subprocess.PIPE if spec.stdin_pipe else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except (OSError, RuntimeError) as e:
            raise ServiceStartupFailure(f"Cannot start {spec.name}: {e}") from e

        handle = ServiceHandle(spec=spec, process=proc)
        threading.Thread(
            target=self._drain_output,
            args=(handle,),
            name=f"ServiceOutput[{spec.name}]",
            daemon=True,
        ).start()
        threading.Thread(
            target=self._watch,
            args=(handle,),
            name=f"ServiceWatcher[{spec.name}]",
            daemon=True,
        ).start()

        if handle.exited.wait(spec.startup_grace_sec):
            output = " | ".join(handle.output_tail) or "no output"
            self.process_group.release(proc)
            raise ServiceStartupFailure(
                f"{spec.name} exited during startup (exit code: {proc.returncode}): {output}"
            )

        handle.health = ServiceHealth.HEALTHY
        with self._lock:
            self._services[spec.kind] = handle
        logger.info(f"[SUPERVISOR] {spec.name} running (pid={proc.pid})")
        return handle

    def _watch(self, handle: ServiceHandle) -> None:
        returncode = handle.process.wait()
        handle.health = ServiceHealth.DEAD
        handle.exited.set()
        if not self._stopping.is_set():
            logger.warning(f"[SUPERVISOR] {handle.spec.name} exited (pid={handle.process_id}, exit code: {returncode})")

    def _drain_output(self, handle: ServiceHandle) -> None:
        stream = handle.process.stdout
        prefix = handle.spec.name.upper()
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                handle.output_tail.append(line)
                logger.info(f"[{prefix}] {line}")
        except (OSError, ValueError) as e:
            logger.debug(f"[SUPERVISOR] {handle.spec.name} output closed: {e}")

    def is_healthy(self, handle: ServiceHandle) -> bool:
        """Liveness probe. Never restarts anything."""
        if handle.exited.is_set() or handle.process.poll() is not None:
            handle.health = ServiceHealth.DEAD
            return False
        handle.health = ServiceHealth.HEALTHY
        return True

    def stop_service(self, handle: ServiceHandle, grace_sec: Optional[float] = None) -> None:
        grace = self._shutdown_grace_sec if grace_sec is None else grace_sec
        if handle.process.stdin:
            try:
                handle.process.stdin.close()
            except OSError:
                pass
        self.process_group.terminate(handle.process, grace_sec=grace)
        handle.exited.wait(1.0)
        handle.health = ServiceHealth.DEAD

    def restart(self, handle: ServiceHandle) -> ServiceHandle:
        """
        Replace a service with a fresh process.

        Attempts follow the backoff schedule up to max_restarts. Listeners
        are notified with (old, new) once the new process is up.

        Raises:
            ServiceCrash: If every attempt fails
        """
        spec = handle.spec
        if not handle.exited.is_set():
            self.stop_service(handle, grace_sec=2.0)
        self.process_group.release(handle.process)

        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_restarts + 1):
            if self._stopping.is_set():
                raise ServiceCrash(f"Not restarting {spec.name}: supervisor is shutting down")
            backoff_idx = min(attempt - 1, len(self._backoff_schedule_ms) - 1)
            delay_sec = self._backoff_schedule_ms[backoff_idx] / 1000.0
            logger.info(
                f"[SUPERVISOR] Restarting {spec.name} (attempt {attempt}/{self._max_restarts}) "
                f"after {delay_sec:.1f}s delay"
            )
            time.sleep(delay_sec)
            try:
                new_handle = self.start(spec)
            except ServiceStartupFailure as e:
                last_error = e
                logger.warning(f"[SUPERVISOR] Restart attempt {attempt} for {spec.name} failed: {e}")
                continue

            if self.publisher is not None:
                self.publisher.publish_status(
                    "service_restarted",
                    service=spec.name,
                    old_pid=handle.process_id,
                    new_pid=new_handle.process_id,
                )
            for listener in list(self._listeners):
                try:
                    listener(handle, new_handle)
                except ServiceCrash:
                    raise
                except Exception as e:
                    logger.error(f"[SUPERVISOR] Restart listener failed for {spec.name}: {e}", exc_info=True)
            return new_handle

        with self._lock:
            if self._services.get(spec.kind) is handle:
                del self._services[spec.kind]
        raise ServiceCrash(f"{spec.name} could not be restarted after {self._max_restarts} attempts: {last_error}")

    def check_services(self) -> List[ServiceHandle]:
        """
        Health-check every service and restart the dead ones.

        Returns:
            Handles of services that were restarted

        Raises:
            ServiceCrash: If an essential service cannot be restarted
        """
        restarted = []
        with self._lock:
            kinds = list(self._services)
        for kind in kinds:
            handle = self.service(kind)
            if handle is None or self.is_healthy(handle):
                continue
            logger.warning(
                f"[SUPERVISOR] {handle.spec.name} is dead (exit code: {handle.returncode}), restarting"
            )
            try:
                restarted.append(self.restart(handle))
            except ServiceCrash as e:
                if handle.spec.essential:
                    raise
                logger.warning(f"[SUPERVISOR] Running degraded without {handle.spec.name}: {e}")
        return restarted

    def shutdown(self) -> None:
        """Stop every service, then terminate everything left in the process table."""
        if self._stopping.is_set():
            return
        self._stopping.set()
        logger.info("[SUPERVISOR] Shutting down services")
        with self._lock:
            handles = list(self._services.values())
            self._services.clear()
        for handle in reversed(handles):
            if handle.process.stdin:
                try:
                    handle.process.stdin.close()
                except OSError:
                    pass
        # Services and transient children share one grace window
        self.process_group.terminate_all(grace_sec=self._shutdown_grace_sec)
        for handle in handles:
            handle.health = ServiceHealth.DEAD
        logger.info("[SUPERVISOR] All child processes terminated")


def _redacted_command(spec: ServiceSpec) -> str:
    command = " ".join(spec.argv)
    password = spec.credentials.get("password")
    if password:
        command = command.replace(password, "***")
    return command
