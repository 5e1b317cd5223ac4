"""QR Access Terminal Callback Router.

Receives AccessControllerEvent callbacks from the QR/badge terminal, either as
JSON or as multipart form data with an ``AccessControllerEvent`` field.

Every accepted request is answered with "OK" regardless of the access
outcome so the terminal never retries.
"""

import json
import logging
import time
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from config import get_config
from runtime import get_runtime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["devices"])

EVENT_TIME_FIELDS = ("dateTime", "eventTime", "time")
CODE_FIELDS = ("cardNo", "cardNumber", "qrCode", "QRCodeInfo", "qrCodeInfo")


class BadEventError(ValueError):
    """Callback body could not be decoded."""


async def _read_payload(request: Request) -> dict[str, Any]:
    """Decode the callback body into the outer event object."""
    content_type = request.headers.get("content-type", "")

    raw: Any
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        raw = form.get("AccessControllerEvent")
        if raw is None:
            raw = {key: value for key, value in form.items() if isinstance(value, str)}
    else:
        try:
            raw = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise BadEventError(f"body is not JSON: {e}") from e

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if hasattr(raw, "read"):
        raw = (await raw.read()).decode("utf-8", errors="replace")
    raw = _decode_json_field(raw)
    if not isinstance(raw, dict):
        raise BadEventError("event is not an object")

    nested = raw.get("AccessControllerEvent")
    if isinstance(nested, str):
        raw = {**raw, "AccessControllerEvent": _decode_json_field(nested)}
    return raw


def _decode_json_field(raw: Any) -> Any:
    """Decode an event that arrived as a JSON string."""
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise BadEventError(f"AccessControllerEvent is not JSON: {e}") from e


def parse_event_time(value: Any) -> Optional[float]:
    """Parse an ISO 8601 event time to a Unix timestamp.

    Times without an offset are taken as local time.
    """
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.astimezone()
    return dt.timestamp()


def extract_code(event: dict[str, Any]) -> Optional[str]:
    """Return the first non-empty code field of the event."""
    for field in CODE_FIELDS:
        value = event.get(field)
        if value not in (None, ""):
            return str(value)
    return None


@router.post("/qrScanner", response_class=PlainTextResponse)
async def scanner_callback(request: Request) -> PlainTextResponse:
    """Accept a scan event and hand it to the authorization workflow."""
    try:
        payload = await _read_payload(request)
    except BadEventError as e:
        logger.error(f"Failed to handle QR event: {e}")
        return PlainTextResponse("Bad event format", status_code=400)

    event = payload.get("AccessControllerEvent", payload)
    if not isinstance(event, dict):
        event = payload

    if "heartBeat" in (event.get("eventType"), payload.get("eventType")):
        return PlainTextResponse("OK")

    scanner = get_config().scanner
    now = time.time()

    time_value = next(
        (src.get(f) for src in (event, payload) for f in EVENT_TIME_FIELDS if src.get(f)),
        None,
    )
    event_time = parse_event_time(time_value)
    if event_time is None:
        logger.warning("Rejected event (invalid/missing dateTime)")
        return PlainTextResponse("OK")

    if now - event_time > scanner.event_max_age_seconds:
        logger.warning(f"Rejected too-old event | age>{scanner.event_max_age_seconds}s")
        return PlainTextResponse("OK")
    if event_time > now + scanner.event_max_future_seconds:
        logger.warning(f"Rejected future event | skew>{scanner.event_max_future_seconds}s")
        return PlainTextResponse("OK")

    code = extract_code(event)
    if not code:
        return PlainTextResponse("OK")

    outcome = await get_runtime().workflow.handle_scan(code, now)
    logger.debug(f"Scan {code} -> {outcome.value}")
    return PlainTextResponse("OK")
