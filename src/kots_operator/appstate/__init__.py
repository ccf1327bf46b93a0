# ABOUTME: Application health monitoring package
# ABOUTME: Importing it registers every per-kind controller with the kind registry

"""Application state monitoring."""

from kots_operator.appstate import kinds  # noqa: F401 - populates the kind registry
from kots_operator.appstate.monitor import AppMonitor, Monitor
from kots_operator.appstate.reporter import StatusReporter
from kots_operator.appstate.types import AppStatus, ResourceState, State, StatusInformer, min_state

__all__ = [
    "AppMonitor",
    "AppStatus",
    "Monitor",
    "ResourceState",
    "State",
    "StatusInformer",
    "StatusReporter",
    "min_state",
]
