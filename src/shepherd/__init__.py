"""Shepherd: master/worker process supervision with signal-driven control."""

from __future__ import annotations

from shepherd._internal.config import ConfigSnapshot, LogSettings, load_snapshot
from shepherd._internal.errors import (
    ConfigError,
    ConfigFileError,
    ControlError,
    DaemonizeError,
    MissingPortError,
    OrchestratorError,
    ShepherdError,
)
from shepherd.engine.context import ServiceContext
from shepherd.engine.control import ControlChannel, ControlResult
from shepherd.engine.orchestrator import MasterOrchestrator, WorkerSlot
from shepherd.engine.protocol import ControlCommand, StatusReport, WorkerStatus
from shepherd.engine.respawn import RespawnPolicy
from shepherd.engine.worker import WorkerRuntime

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "ConfigFileError",
    "ConfigSnapshot",
    "ControlChannel",
    "ControlCommand",
    "ControlError",
    "ControlResult",
    "DaemonizeError",
    "LogSettings",
    "MasterOrchestrator",
    "MissingPortError",
    "OrchestratorError",
    "RespawnPolicy",
    "ServiceContext",
    "ShepherdError",
    "StatusReport",
    "WorkerRuntime",
    "WorkerSlot",
    "WorkerStatus",
    "load_snapshot",
]
