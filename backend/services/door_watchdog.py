"""Door Watchdog.

Polls the access state and tracks each open cycle of the door:
- an open cycle is authorized when access was granted or the exit button was
  pressed recently; authorization is latched for the rest of the cycle
- an unauthorized opening is reported once per cycle after a short grace
- a door left open is reported at max_time_open, again first_repeat later,
  then every repeat interval until it closes

Cycle bookkeeping lives in memory only.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

from config import get_config
from models import AccessState, AuditEvent
from mqtt_client import OutputController
from services.audit import AuditSink
from services.state_store import StateStore
from services.tasks import TaskDispatcher

logger = logging.getLogger(__name__)


def format_duration(total_seconds: float, lang: str = "en") -> str:
    """Human readable duration, English for logs and German for bookmarks."""
    s = max(0, int(total_seconds))
    m, r = divmod(s, 60)
    if lang == "de":
        sec, minute, minutes, joiner = "Sekunden", "Minute", "Minuten", "und"
    else:
        sec, minute, minutes, joiner = "seconds", "minute", "minutes", "and"

    if m == 0:
        return f"{r} {sec}"
    unit = minute if m == 1 else minutes
    if r == 0:
        return f"{m} {unit}"
    return f"{m} {unit} {joiner} {r} {sec}"


@dataclass
class OpenCycle:
    """Bookkeeping for one continuous door-open interval."""

    opened_at: float
    next_alarm_at: float
    authorized: bool = False
    unauthorized_warned: bool = False
    alarms_fired: int = 0


class DoorWatchdog:
    """Watches door transitions and raises door alarms."""

    def __init__(
        self,
        store: StateStore,
        audit: AuditSink,
        outputs: OutputController,
        dispatcher: TaskDispatcher,
    ) -> None:
        self._store = store
        self._audit = audit
        self._outputs = outputs
        self._dispatcher = dispatcher
        self._cycle: Optional[OpenCycle] = None
        self._last_exit_button_at: Optional[float] = None
        self._alarm_channel: Optional[int] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def cycle(self) -> Optional[OpenCycle]:
        return self._cycle

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def record_exit_press(self, now: Optional[float] = None) -> None:
        """Exit button pressed; latches authorization if the door is open."""
        if now is None:
            now = time.time()
        self._last_exit_button_at = now
        if self._cycle is not None:
            self._cycle.authorized = True

    def _exit_pressed_recently(self, now: float) -> bool:
        if self._last_exit_button_at is None:
            return False
        return now - self._last_exit_button_at <= get_config().door.exit_grace_seconds

    async def tick(self, now: Optional[float] = None) -> None:
        """Evaluate one watchdog step against the current access state."""
        if now is None:
            now = time.time()

        state = await self._store.load()
        self.evaluate(state, now)

    def evaluate(self, state: AccessState, now: float) -> None:
        """Advance the open-cycle state machine for one observation."""
        door = get_config().door
        is_open = state.door_open
        granted_now = state.access_granted

        if state.button.exit_button_pressed:
            self.record_exit_press(now)
        exit_recent = self._exit_pressed_recently(now)

        if not is_open:
            if self._cycle is not None:
                logger.info("Door closed, watchdog reset")
                self._release_alarm_output()
            self._cycle = None
            return

        cycle = self._cycle
        if cycle is None:
            cycle = OpenCycle(
                opened_at=now,
                next_alarm_at=now + door.max_time_open_seconds,
                authorized=granted_now or exit_recent,
            )
            self._cycle = cycle
            logger.info(f"Door opened, watchdog tracking started (authorized={cycle.authorized})")
        elif not cycle.authorized and (granted_now or exit_recent):
            cycle.authorized = True
            logger.info("Open door cycle authorized")

        open_for = now - cycle.opened_at
        logger.debug(f"Door has been open for {format_duration(open_for)}")

        if (
            not cycle.authorized
            and not cycle.unauthorized_warned
            and open_for > door.min_illegal_open_seconds
            and not exit_recent
            and not granted_now
        ):
            cycle.unauthorized_warned = True
            self._raise_unauthorized(open_for)

        if now >= cycle.next_alarm_at:
            cycle.alarms_fired += 1
            repeat = door.first_repeat_seconds if cycle.alarms_fired == 1 else door.repeat_seconds
            cycle.next_alarm_at = now + repeat
            self._raise_long_open(open_for)

    def _raise_unauthorized(self, open_for: float) -> None:
        logger.warning(
            f"Unauthorized door opening detected (open for {format_duration(open_for)}, "
            f"no access, no exit button)"
        )
        open_de = format_duration(open_for, "de")
        self._audit.record(
            AuditEvent(
                name="⚠️ Unbefugter Zutritt",
                message=f"⚠️ Unbefugtes Türöffnen erkannt (offen seit {open_de}, kein Zutritt, kein Exit-Button)",
                tags=["TÜR", "UNAUTHORIZED", "ILLEGAL"],
                kv_tags={"dauer": open_de},
            )
        )
        self._raise_alarm_output()

    def _raise_long_open(self, open_for: float) -> None:
        logger.warning(f"WARNING: The door has been open for {format_duration(open_for)}")
        open_de = format_duration(open_for, "de")
        self._audit.record(
            AuditEvent(
                name="⚠️ Tür Warnung",
                message=f"⚠️ WARNUNG: Die Tür ist seit {open_de} offen",
                tags=["TÜR", "ALARM", "ZU_LANGE_OFFEN"],
                kv_tags={"dauer": open_de},
            )
        )
        self._raise_alarm_output()

    def _raise_alarm_output(self) -> None:
        channel = get_config().relay.alarm_output
        if channel is None:
            return
        self._alarm_channel = channel
        self._dispatcher.dispatch(self._outputs.set_output(channel, True), name="alarm-output")

    def _release_alarm_output(self) -> None:
        """Switch the alarm output off once the alarming cycle ends."""
        channel = self._alarm_channel
        if channel is None:
            return
        self._alarm_channel = None
        logger.info(f"Releasing alarm output {channel}")
        self._dispatcher.dispatch(self._outputs.set_output(channel, False), name="alarm-output-off")

    async def _run_loop(self) -> None:
        """Tick forever; a failing tick is logged and the loop keeps going."""
        logger.info("Door watchdog started")

        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                logger.info("Door watchdog stopping")
                break
            except Exception as e:
                logger.error(f"Door watchdog tick failed: {e}", exc_info=True)

            try:
                await asyncio.sleep(get_config().door.poll_interval_seconds)
            except asyncio.CancelledError:
                logger.info("Door watchdog stopping")
                break

    def start(self) -> asyncio.Task[None]:
        """Start the polling loop."""
        if self.is_running:
            logger.warning("Door watchdog already running")
            return self._task  # type: ignore[return-value]

        self._task = asyncio.create_task(self._run_loop())
        return self._task

    async def stop(self) -> None:
        """Stop the polling loop."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("Door watchdog stopped")

        self._task = None
