"""Device Heartbeat Service.

Background task that checks the devices the door depends on:
- the access terminal is asked for its ISAPI device info (digest auth)
- the relay controller counts as alive while it answered over MQTT recently;
  every round pings it so a healthy relay keeps answering

After max_fails failed checks in a row an offline audit event is recorded
once; the first good check afterwards records a back-online event.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import aiohttp
from aiohttp import DigestAuthMiddleware

from config import get_config
from models import AuditEvent
from mqtt_client import get_mqtt_client
from services.audit import AuditSink

logger = logging.getLogger(__name__)

DEVICE_INFO_PATH = "/ISAPI/System/deviceInfo"

# A liveness check returns None when the device is alive, otherwise the failure reason
LivenessCheck = Callable[[], Awaitable[Optional[str]]]


async def check_terminal() -> Optional[str]:
    """Fetch the access terminal's device info."""
    config = get_config()
    scanner = config.scanner
    url = f"http://{scanner.host}{DEVICE_INFO_PATH}"
    timeout = aiohttp.ClientTimeout(total=config.heartbeat.terminal_timeout_seconds)
    middlewares = (DigestAuthMiddleware(scanner.username, scanner.password),) if scanner.username else ()

    try:
        async with aiohttp.ClientSession(timeout=timeout, middlewares=middlewares) as session:
            async with session.get(url) as resp:
                if resp.status == 200:
                    return None
                return f"unexpected status {resp.status}"
    except asyncio.TimeoutError:
        return f"timeout after {config.heartbeat.terminal_timeout_seconds}s"
    except aiohttp.ClientError as e:
        return str(e) or type(e).__name__


async def check_relay() -> Optional[str]:
    """Judge the relay controller by its last MQTT message, then ping it."""
    mqtt = get_mqtt_client()
    stale = get_config().heartbeat.relay_stale_seconds
    last_seen = mqtt.last_seen_seconds

    if not mqtt.is_connected:
        return "MQTT broker not connected"

    await mqtt.ping()

    if last_seen is None:
        return "no message received yet"
    if last_seen > stale:
        return f"last message {last_seen}s ago"
    return None


class DeviceHeartbeat:
    """Fail counter and offline latch for one device."""

    def __init__(
        self,
        label: str,
        liveness: LivenessCheck,
        audit: AuditSink,
        is_configured: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.label = label
        self._liveness = liveness
        self._audit = audit
        self._is_configured = is_configured
        self.fail_count = 0
        self.offline = False

    @property
    def configured(self) -> bool:
        return self._is_configured is None or self._is_configured()

    async def check(self) -> bool:
        """Run one liveness check and update the fail counter.

        Returns:
            True if the device answered.
        """
        reason = await self._liveness()
        if reason is None:
            self._mark_alive()
            return True
        self._mark_fail(reason)
        return False

    def _mark_alive(self) -> None:
        if self.offline:
            logger.info(f"{self.label} is back online after {self.fail_count} failed checks")
            self._audit.record(
                AuditEvent(
                    name=f"✅ {self.label} wieder online",
                    message=f"{self.label} ist wieder erreichbar",
                    tags=["HEARTBEAT", "ONLINE"],
                    kv_tags={"geraet": self.label},
                )
            )
        else:
            logger.debug(f"{self.label} alive")
        self.fail_count = 0
        self.offline = False

    def _mark_fail(self, reason: str) -> None:
        self.fail_count += 1
        logger.warning(f"{self.label} check failed ({self.fail_count}): {reason}")

        max_fails = get_config().heartbeat.max_fails
        if self.fail_count >= max_fails and not self.offline:
            self.offline = True
            logger.error(f"{self.label} still offline after {self.fail_count} checks")
            self._audit.record(
                AuditEvent(
                    name=f"🔥 {self.label} offline",
                    message=f"{self.label} nach {self.fail_count} Versuchen nicht erreichbar | {reason}",
                    tags=["HEARTBEAT", "OFFLINE"],
                    kv_tags={"geraet": self.label},
                )
            )


def build_monitors(audit: AuditSink) -> list[DeviceHeartbeat]:
    """Heartbeats for the access terminal and the relay controller."""
    return [
        DeviceHeartbeat(
            "QR-Scanner",
            check_terminal,
            audit,
            is_configured=lambda: bool(get_config().scanner.host),
        ),
        DeviceHeartbeat("Relay", check_relay, audit),
    ]


# Task reference and monitors for the heartbeat loop
_heartbeat_task: Optional[asyncio.Task[None]] = None
_monitors: list[DeviceHeartbeat] = []


async def _run_heartbeat_loop(monitors: list[DeviceHeartbeat]) -> None:
    """Run the heartbeat loop.

    Config is re-read on each iteration to support hot-reload.
    """
    logger.info(f"Heartbeat service started for {', '.join(m.label for m in monitors)}")

    while True:
        try:
            config = get_config().heartbeat
            if config.enabled:
                active = [m for m in monitors if m.configured]
                await asyncio.gather(*(m.check() for m in active))

            await asyncio.sleep(config.interval_seconds)

        except asyncio.CancelledError:
            logger.info("Heartbeat service stopping")
            break
        except Exception as e:
            logger.error(f"Error in heartbeat: {e}", exc_info=True)
            await asyncio.sleep(10)


def start_heartbeat_service(monitors: list[DeviceHeartbeat]) -> asyncio.Task[None]:
    """Start the heartbeat background service.

    Args:
        monitors: Devices to watch, see build_monitors().

    Returns:
        Asyncio task running the heartbeat loop.
    """
    global _heartbeat_task, _monitors

    if _heartbeat_task is not None and not _heartbeat_task.done():
        logger.warning("Heartbeat service already running")
        return _heartbeat_task

    _monitors = monitors
    _heartbeat_task = asyncio.create_task(_run_heartbeat_loop(_monitors))
    return _heartbeat_task


async def stop_heartbeat_service() -> None:
    """Stop the heartbeat background service."""
    global _heartbeat_task

    if _heartbeat_task is not None and not _heartbeat_task.done():
        _heartbeat_task.cancel()
        try:
            await _heartbeat_task
        except asyncio.CancelledError:
            pass
        logger.info("Heartbeat service stopped")

    _heartbeat_task = None


def get_heartbeat_status() -> dict[str, dict[str, object]]:
    """Fail counters and offline flags per device."""
    return {m.label: {"fail_count": m.fail_count, "offline": m.offline} for m in _monitors}
