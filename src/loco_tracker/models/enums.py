"""Enumerations for loco-tracker."""

from enum import Enum


class FetchStatus(str, Enum):
    """Outcome of a single upstream call."""

    SUCCESS = "success"
    FAILURE = "failure"


class CollectorState(str, Enum):
    """Lifecycle of the cycle orchestrator.

    DISCONNECTED → CONNECTING → IDLE ⇄ COLLECTING, with FAILED on a fatal
    connect error and STOPPED after a drained shutdown.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDLE = "idle"
    COLLECTING = "collecting"
    FAILED = "failed"
    STOPPED = "stopped"
