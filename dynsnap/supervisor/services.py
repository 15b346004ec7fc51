"""
ServiceSpec factories for the external programs dynsnap runs.
"""

import shlex
from typing import List, Optional
from urllib.parse import quote

from dynsnap.config import DynsnapConfig
from dynsnap.constants import CHANNELS, PCM_FORMAT, SAMPLE_RATE
from dynsnap.supervisor.process_supervisor import ServiceKind, ServiceSpec


def icecast_url(config: DynsnapConfig) -> str:
    user = quote(config.icecast_user, safe="")
    password = quote(config.icecast_password, safe="")
    return f"icecast://{user}:{password}@{config.icecast_host}:{config.icecast_port}{config.icecast_mount}"


def build_encoder_command(config: DynsnapConfig) -> List[str]:
    """ffmpeg reading canonical PCM on stdin and pushing FLAC-in-Ogg to icecast."""
    return [
        config.ffmpeg_bin,
        "-hide_banner",
        "-nostats",
        "-loglevel", "warning",
        "-f", PCM_FORMAT,
        "-ar", str(SAMPLE_RATE),
        "-ac", str(CHANNELS),
        "-i", "pipe:0",
        "-c:a", "flac",
        "-compression_level", "6",
        "-content_type", config.content_type,
        "-f", "ogg",
        icecast_url(config),
    ]


def icecast_service(config: DynsnapConfig) -> ServiceSpec:
    return ServiceSpec(
        kind=ServiceKind.SINK,
        name="icecast",
        argv=[config.icecast_bin, "-c", config.icecast_config],
        bind_address=config.icecast_host,
        port=config.icecast_port,
        config_path=config.icecast_config,
        credentials={"user": config.icecast_user, "password": config.icecast_password},
        essential=True,
        startup_grace_sec=config.service_startup_grace_sec,
    )


def snapserver_service(config: DynsnapConfig) -> ServiceSpec:
    return ServiceSpec(
        kind=ServiceKind.SINK,
        name="snapserver",
        argv=[config.snapserver_bin, "-c", config.snapserver_config],
        config_path=config.snapserver_config,
        essential=True,
        startup_grace_sec=config.service_startup_grace_sec,
    )


def encoder_service(config: DynsnapConfig) -> ServiceSpec:
    return ServiceSpec(
        kind=ServiceKind.TRANSPORT,
        name="encoder",
        argv=build_encoder_command(config),
        bind_address=config.icecast_host,
        port=config.icecast_port,
        credentials={"user": config.icecast_user, "password": config.icecast_password},
        essential=True,
        startup_grace_sec=config.service_startup_grace_sec,
        stdin_pipe=True,
    )


def control_channel_service(config: DynsnapConfig) -> ServiceSpec:
    """gwsocket relaying lines written to the log FIFO to websocket clients."""
    return ServiceSpec(
        kind=ServiceKind.CONTROL_CHANNEL,
        name="gwsocket",
        argv=[
            config.gwsocket_bin,
            f"--port={config.control_port}",
            f"--addr={config.control_bind_address}",
            f"--pipein={config.log_fifo}",
        ],
        bind_address=config.control_bind_address,
        port=config.control_port,
        essential=False,
        startup_grace_sec=config.service_startup_grace_sec,
    )


def watchdog_service(config: DynsnapConfig) -> Optional[ServiceSpec]:
    if not config.watchdog_cmd:
        return None
    return ServiceSpec(
        kind=ServiceKind.SUPERVISOR,
        name="watchdog",
        argv=shlex.split(config.watchdog_cmd),
        essential=False,
        startup_grace_sec=config.service_startup_grace_sec,
    )


def sink_service(config: DynsnapConfig) -> Optional[ServiceSpec]:
    """Local sink server to start, or None when the sink is run elsewhere."""
    if config.sink_mode == "icecast":
        return icecast_service(config) if config.icecast_config else None
    return snapserver_service(config) if config.snapserver_config else None
