"""
Inference module for the local llama-server process.

This module provides the supervisor that launches and stops llama-server
and the prober that waits for its HTTP API to come up.
"""

from llamadesk.inference.supervisor import (
    ProcessSupervisor, ServerProcessHandle, ServerState
)
from llamadesk.inference.readiness import ReadinessProber, ReadinessResult

__all__ = [
    "ProcessSupervisor",
    "ServerProcessHandle",
    "ServerState",
    "ReadinessProber",
    "ReadinessResult"
]
