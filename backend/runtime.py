"""Runtime wiring for the Door Access Edge Service.

Builds the access components around one state store and one dispatcher.
Every component keeps its own state, so tests build isolated instances with
build_runtime(); the service uses the get_runtime() singleton.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from mqtt_client import OutputController, get_mqtt_client
from services.audit import AuditLog
from services.authorization import AuthorizationWorkflow
from services.authorizer import HttpAuthorizer, RemoteAuthorizer
from services.bookmarks import BookmarkClient
from services.door_opener import DoorOpener, TerminalDoorOpener
from services.door_watchdog import DoorWatchdog
from services.reconciler import InputEventReconciler
from services.state_store import StateStore
from services.tasks import TaskDispatcher

logger = logging.getLogger(__name__)


@dataclass
class AccessRuntime:
    """All access components sharing one store."""

    store: StateStore
    dispatcher: TaskDispatcher
    audit: AuditLog
    reconciler: InputEventReconciler
    workflow: AuthorizationWorkflow
    watchdog: DoorWatchdog


def build_runtime(
    outputs: OutputController,
    authorizer: Optional[RemoteAuthorizer] = None,
    door_opener: Optional[DoorOpener] = None,
    bookmarks: Optional[BookmarkClient] = None,
) -> AccessRuntime:
    """Wire the access components.

    Args:
        outputs: Relay output controller.
        authorizer: Remote authorization client, HTTP client by default.
        door_opener: Door release, access terminal by default.
        bookmarks: Bookmark forwarding client, REST client by default.

    Returns:
        Wired runtime.
    """
    store = StateStore()
    dispatcher = TaskDispatcher()
    audit = AuditLog(dispatcher, bookmarks or BookmarkClient())

    watchdog = DoorWatchdog(store, audit, outputs, dispatcher)
    reconciler = InputEventReconciler(
        store,
        outputs,
        audit,
        dispatcher,
        on_exit_press=watchdog.record_exit_press,
    )
    workflow = AuthorizationWorkflow(
        store,
        authorizer or HttpAuthorizer(),
        outputs,
        door_opener or TerminalDoorOpener(dispatcher),
        audit,
        dispatcher,
    )

    return AccessRuntime(
        store=store,
        dispatcher=dispatcher,
        audit=audit,
        reconciler=reconciler,
        workflow=workflow,
        watchdog=watchdog,
    )


# Global runtime instance
_runtime: Optional[AccessRuntime] = None


def get_runtime() -> AccessRuntime:
    """Get the service runtime (singleton), wired to the MQTT relay client."""
    global _runtime
    if _runtime is None:
        mqtt = get_mqtt_client()
        _runtime = build_runtime(mqtt)
        mqtt.set_input_handler(_runtime.reconciler.handle_events)
        logger.info("Access runtime initialized")
    return _runtime


def reset_runtime() -> None:
    """Drop the singleton (shutdown)."""
    global _runtime
    _runtime = None
