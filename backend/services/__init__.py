"""Services package for the Door Access Edge Service."""

from services.authorization import AuthorizationWorkflow
from services.door_watchdog import DoorWatchdog
from services.reconciler import InputEventReconciler
from services.state_store import StateStore
from services.tasks import TaskDispatcher

__all__ = [
    "AuthorizationWorkflow",
    "DoorWatchdog",
    "InputEventReconciler",
    "StateStore",
    "TaskDispatcher",
]
