"""
Sandbox module for running repository previews in isolated containers.

Components:
- base: protocols for sandboxes, processes and the secondary engine
- container: Docker-backed sandbox with exposed preview ports
- supervisor: install then start, with output streaming and timeouts
- output: bounded output ring buffer
"""

from livepreview.sandbox.base import (
    Sandbox,
    SandboxFactory,
    SandboxProcess,
    SecondaryEngine,
    ServerReadyEvent,
)
from livepreview.sandbox.output import OutputBuffer
from livepreview.sandbox.supervisor import ProcessSupervisor, StartedServer

__all__ = [
    # Interfaces
    "Sandbox",
    "SandboxFactory",
    "SandboxProcess",
    "SecondaryEngine",
    "ServerReadyEvent",
    # Output
    "OutputBuffer",
    # Supervisor
    "ProcessSupervisor",
    "StartedServer",
]
