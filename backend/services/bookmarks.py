"""Video management bookmark client.

Forwards audit events as bookmarks on every configured camera so they show up
on the recording timeline. Login yields a session token; each device gets its
own short-lived ticket.
"""

import asyncio
import logging
import time
from typing import Any, Optional

import aiohttp

from config import get_config

logger = logging.getLogger(__name__)


class BookmarkError(Exception):
    """Bookmark API call failed."""


class BookmarkClient:
    """Creates bookmarks through the REST v3 API."""

    async def _post_json(
        self,
        session: aiohttp.ClientSession,
        url: str,
        payload: Optional[dict[str, Any]] = None,
        token: str = "",
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            async with session.post(url, json=payload, headers=headers) as resp:
                text = await resp.text(errors="replace")
                if resp.status >= 400:
                    raise BookmarkError(f"HTTP {resp.status} from {url}: {text[:200]}")
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    return {}
                return data if isinstance(data, dict) else {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BookmarkError(f"Request to {url} failed: {e}") from e

    async def _create_on_device(
        self,
        session: aiohttp.ClientSession,
        login_token: str,
        device_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        server = get_config().bookmarks.server.rstrip("/")
        try:
            ticket_data = await self._post_json(session, f"{server}/rest/v3/login/tickets", token=login_token)
            ticket = ticket_data.get("token")
            if not ticket:
                raise BookmarkError("ticket request returned no token")

            url = f"{server}/rest/v3/devices/{device_id}/bookmarks"
            async with session.post(url, params={"_ticket": ticket}, json=payload) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise BookmarkError(f"HTTP {resp.status}: {text[:200]}")

            logger.info(f"Bookmark created on device {device_id} | name: {payload['name']}")
            return {"device_id": device_id, "success": True}
        except (BookmarkError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to create bookmark on device {device_id}: {e}")
            return {"device_id": device_id, "success": False, "error": str(e)}

    async def create_bookmark(
        self,
        name: str,
        description: str,
        tags: list[str],
        start_time_ms: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Create the bookmark on every configured device in parallel.

        Args:
            name: Bookmark title.
            description: Bookmark description.
            tags: Normalized tag list.
            start_time_ms: Start of the bookmark window, defaults to a few
                           seconds before now.

        Returns:
            Per-device results. Empty when forwarding is disabled or login failed.
        """
        config = get_config().bookmarks
        if not config.enabled or not config.server:
            return []
        if not config.device_ids:
            logger.warning("No bookmark device IDs configured")
            return []

        if start_time_ms is None:
            start_time_ms = int(time.time() * 1000) - config.start_offset_ms

        payload = {
            "name": name,
            "description": description,
            "startTimeMs": start_time_ms,
            "durationMs": config.duration_ms,
            "tags": tags,
        }

        timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)
        connector = aiohttp.TCPConnector(ssl=config.verify_ssl)
        async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
            try:
                login = await self._post_json(
                    session,
                    f"{config.server.rstrip('/')}/rest/v3/login/sessions",
                    {"username": config.username, "password": config.password},
                )
            except BookmarkError as e:
                logger.error(f"Bookmark login failed: {e}")
                return []

            login_token = login.get("token")
            if not login_token:
                logger.error("Bookmark login returned no token")
                return []

            return list(
                await asyncio.gather(
                    *(
                        self._create_on_device(session, login_token, device_id, payload)
                        for device_id in config.device_ids
                    )
                )
            )
