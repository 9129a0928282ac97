"""Piped agent processes — registry, scratch files and the supervisor.

Each spawned agent gets a registry entry, a scratch context for any staged
files, and a supervising task that streams its output and guarantees the
entry and the files are gone once the terminal event has been emitted.
"""

from devflow.process.registry import Registry
from devflow.process.supervisor import ProcessHandle, ProcessSupervisor
from devflow.process.temp import TempContext, WorkdirFiles

__all__ = [
    "ProcessHandle",
    "ProcessSupervisor",
    "Registry",
    "TempContext",
    "WorkdirFiles",
]
