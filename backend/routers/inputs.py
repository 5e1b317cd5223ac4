"""Relay Controller Webhook Router.

Receives input change webhooks from the relay controller. The body is a
single event or an array of events; each event is
``{"input"|"id": <int>, "state"|"value": <bool>}``.
"""

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from runtime import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["devices"])


@router.post("/shelly", response_class=PlainTextResponse)
async def relay_input_webhook(request: Request) -> PlainTextResponse:
    """Apply input changes reported by the relay controller.

    Malformed events inside a batch are dropped; the rest are applied in
    order and persisted once.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Relay webhook body is not JSON: {e}")
        return PlainTextResponse("Bad event format", status_code=400)

    events = body if isinstance(body, list) else [body]
    if not events:
        return PlainTextResponse("Empty body", status_code=400)

    await get_runtime().reconciler.handle_events(events)
    return PlainTextResponse("OK")
