"""Door release on the QR access terminal.

Sends the ISAPI remote-control "open" command, which releases the terminal's
door and plays its open notification. Fire-and-forget: failures are logged.
"""

import asyncio
import logging
from typing import Protocol

import aiohttp
from aiohttp import DigestAuthMiddleware

from config import get_config
from services.tasks import TaskDispatcher

logger = logging.getLogger(__name__)

OPEN_DOOR_XML = """<?xml version="1.0" encoding="UTF-8"?>
<RemoteControlDoor xmlns="http://www.isapi.org/ver20/XMLSchema" version="2.0">
  <cmd>open</cmd>
</RemoteControlDoor>"""


class DoorOpener(Protocol):
    """Signals a physical door to unlock."""

    def open(self) -> None:
        ...


class TerminalDoorOpener:
    """Door opener backed by the access terminal's HTTP API."""

    def __init__(self, dispatcher: TaskDispatcher) -> None:
        self._dispatcher = dispatcher

    def open(self) -> None:
        """Release the door in the background."""
        self._dispatcher.dispatch(self.open_now(), name="door-open")

    async def open_now(self) -> bool:
        """Send the open command and wait for the result.

        Returns:
            True if the terminal acknowledged with HTTP 200.
        """
        config = get_config().scanner
        if not config.host or not config.username or not config.password:
            logger.error("Cannot open door: scanner host/username/password not configured")
            return False

        url = f"http://{config.host}/ISAPI/AccessControl/RemoteControl/door/{config.door_id}"
        timeout = aiohttp.ClientTimeout(total=config.request_timeout_seconds)
        digest = DigestAuthMiddleware(config.username, config.password)

        try:
            async with aiohttp.ClientSession(timeout=timeout, middlewares=(digest,)) as session:
                async with session.put(
                    url,
                    data=OPEN_DOOR_XML,
                    headers={"Content-Type": "application/xml"},
                ) as resp:
                    if resp.status == 200:
                        logger.info(f"Door {config.door_id} opened on terminal {config.host}")
                        return True
                    text = await resp.text()
                    logger.error(f"Door open failed. Status: {resp.status} | {text[:200]}")
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Exception during door open: {e}")
            return False
