"""
Subprocess supervision: the process table and long-running services.
"""

from dynsnap.supervisor.process_group import ProcessGroup
from dynsnap.supervisor.process_supervisor import (
    ProcessSupervisor,
    ServiceHandle,
    ServiceHealth,
    ServiceKind,
    ServiceSpec,
)

__all__ = [
    "ProcessGroup",
    "ProcessSupervisor",
    "ServiceHandle",
    "ServiceHealth",
    "ServiceKind",
    "ServiceSpec",
]
