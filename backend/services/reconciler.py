"""Input Event Reconciler.

Turns relay controller input changes into access state patches.

Rules:
- Door contact mapping is inverted: contact closed (True) -> "Close",
  contact open (False) -> "Open".
- A closing door always clears the access decision back to noAccess.
- An exit button press switches the exit output and starts the exit-grant
  window; a door opening inside that window is logged once as "exit granted".
- A delivery carrying several events is folded in arrival order and
  persisted once.
"""

import logging
import time
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError

from config import get_config
from models import (
    AccessControlSection,
    AccessState,
    AccessStatus,
    AuditEvent,
    ButtonSection,
    DoorSection,
    DoorState,
    InputEvent,
    InputState,
    ReserveInputSection,
)
from mqtt_client import OutputController
from services.audit import AuditSink
from services.state_store import StateStore
from services.tasks import TaskDispatcher

logger = logging.getLogger(__name__)


class InputRole(str, Enum):
    """What a relay controller input is wired to."""

    EXIT_BUTTON = "exit_button"
    DOOR_CONTACT = "door_contact"
    RESERVE = "reserve"


def input_role(input_id: int) -> Optional[InputRole]:
    """Map an input id to its role using the relay configuration."""
    relay = get_config().relay
    if input_id == relay.exit_button_input:
        return InputRole.EXIT_BUTTON
    if input_id == relay.door_contact_input:
        return InputRole.DOOR_CONTACT
    if input_id == relay.reserve_input:
        return InputRole.RESERVE
    return None


def apply_input_event(current: AccessState, input_id: int, raw_state: bool) -> AccessState:
    """Apply one input change, touching only the field that input owns.

    Args:
        current: State before the event.
        input_id: Relay controller input id.
        raw_state: Raw contact state.

    Returns:
        New state. Unknown inputs return the state unchanged.
    """
    role = input_role(input_id)

    if role == InputRole.EXIT_BUTTON:
        return current.model_copy(update={"button": ButtonSection(exit_button_pressed=raw_state)})

    if role == InputRole.DOOR_CONTACT:
        door_state = DoorState.CLOSE if raw_state else DoorState.OPEN
        update: dict[str, Any] = {"door": DoorSection(door_state=door_state)}
        if door_state == DoorState.CLOSE:
            update["access_control"] = AccessControlSection(access_state=AccessStatus.NO_ACCESS)
        return current.model_copy(update=update)

    if role == InputRole.RESERVE:
        input_state = InputState.ON if raw_state else InputState.OFF
        return current.model_copy(update={"reserve_input": ReserveInputSection(input_state=input_state)})

    return current


def parse_input_events(raw_events: Iterable[Any]) -> list[InputEvent]:
    """Validate raw event dicts, dropping malformed ones.

    Args:
        raw_events: Items from a webhook body or MQTT notification.

    Returns:
        Valid events in arrival order.
    """
    events: list[InputEvent] = []
    for raw in raw_events:
        if not isinstance(raw, dict):
            logger.warning(f"Dropping non-object input event: {raw!r}")
            continue
        try:
            events.append(InputEvent.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Dropping malformed input event {raw!r}: {e.error_count()} error(s)")
    return events


class InputEventReconciler:
    """Applies input event batches to the state store."""

    def __init__(
        self,
        store: StateStore,
        outputs: OutputController,
        audit: AuditSink,
        dispatcher: TaskDispatcher,
        on_exit_press: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._store = store
        self._outputs = outputs
        self._audit = audit
        self._dispatcher = dispatcher
        self._on_exit_press = on_exit_press
        self._last_exit_press: Optional[float] = None

    @property
    def last_exit_press(self) -> Optional[float]:
        return self._last_exit_press

    def _observe(self, event: InputEvent, now: float) -> None:
        """Track exit presses and correlate door openings with them."""
        role = input_role(event.input_id)

        if role == InputRole.EXIT_BUTTON and event.state:
            logger.info("Exit button pressed")
            self._last_exit_press = now
            if self._on_exit_press is not None:
                self._on_exit_press(now)
            channel = get_config().relay.exit_button_output
            self._dispatcher.dispatch(self._outputs.set_output(channel, True), name="exit-output")

        elif role == InputRole.DOOR_CONTACT and not event.state:
            window = get_config().door.exit_grant_window_seconds
            if self._last_exit_press is not None and now - self._last_exit_press <= window:
                logger.info("Exit granted")
                self._audit.record(
                    AuditEvent(
                        name="✅ Ausgang gewährt",
                        message="✅ Ausgang gewährt: Türöffnung nach Exit-Taste",
                        tags=["TÜR", "EXIT", "GRANTED"],
                    )
                )
                self._last_exit_press = None

    async def handle_events(self, raw_events: Iterable[Any], now: Optional[float] = None) -> AccessState:
        """Apply a delivery of input events and persist once.

        Args:
            raw_events: Raw event dicts (``{"input"|"id": int, "state"|"value": bool}``).
            now: Arrival time, defaults to the current time.

        Returns:
            The state after the batch.
        """
        if now is None:
            now = time.time()

        events = parse_input_events(raw_events)
        if not events:
            return await self._store.load()

        for event in events:
            self._observe(event, now)

        def fold(state: AccessState) -> AccessState:
            for event in events:
                state = apply_input_event(state, event.input_id, event.state)
            return state

        state = await self._store.save(fold)
        logger.debug(
            f"Applied {len(events)} input event(s): door={state.door.door_state.value}, "
            f"access={state.access_control.access_state.value}"
        )
        return state
