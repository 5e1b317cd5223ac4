"""Audit API Router for the Door Access Edge Service.

Serves the audit trail and its CSV export.
"""

import csv
import io
import logging
from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse

from config import get_config
from database import get_audit_events_paginated
from models import AuditListResponse, AuditRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/audit", tags=["audit"])

EXPORT_LIMIT = 10000


async def verify_token(x_edge_token: Annotated[str | None, Header()] = None) -> None:
    """Verify authentication token if auth is enabled."""
    config = get_config()
    if config.auth.enabled:
        if not x_edge_token or x_edge_token != config.auth.token:
            raise HTTPException(status_code=401, detail="Invalid or missing authentication token")


def _parse_date(date_str: str | None) -> int | None:
    """Parse a YYYY-MM-DD date (UTC) to a Unix timestamp."""
    if not date_str:
        return None
    try:
        dt = datetime.strptime(date_str, "%Y-%m-%d").replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    except ValueError:
        return None


def _date_range(from_date: str | None, to_date: str | None) -> tuple[int | None, int | None]:
    from_ts = _parse_date(from_date)
    to_ts = _parse_date(to_date)
    # Inclusive end of day
    if to_ts:
        to_ts += 86400 - 1
    return from_ts, to_ts


def _to_record(item: dict[str, Any]) -> AuditRecord:
    return AuditRecord(
        id=item["id"],
        name=item["name"],
        message=item["message"],
        tags=item["tags"],
        created_at=datetime.fromtimestamp(item["created_at"], tz=timezone.utc),
    )


@router.get("", response_model=AuditListResponse)
async def get_audit_events(
    _: Annotated[None, Depends(verify_token)],
    page: int = Query(default=1, ge=1, description="Page number"),
    limit: int = Query(default=50, ge=1, le=100, description="Items per page"),
    from_date: str | None = Query(default=None, alias="from", description="Start date (YYYY-MM-DD)"),
    to_date: str | None = Query(default=None, alias="to", description="End date (YYYY-MM-DD)"),
) -> AuditListResponse:
    """Get the paginated audit trail, newest first."""
    from_ts, to_ts = _date_range(from_date, to_date)

    items, total = await get_audit_events_paginated(
        page=page,
        limit=limit,
        from_ts=from_ts,
        to_ts=to_ts,
    )

    return AuditListResponse(
        items=[_to_record(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/export")
async def export_audit_events(
    _: Annotated[None, Depends(verify_token)],
    from_date: str | None = Query(default=None, alias="from", description="Start date (YYYY-MM-DD)"),
    to_date: str | None = Query(default=None, alias="to", description="End date (YYYY-MM-DD)"),
) -> StreamingResponse:
    """Export the audit trail within the date range as CSV."""
    from_ts, to_ts = _date_range(from_date, to_date)

    items, _ = await get_audit_events_paginated(
        page=1,
        limit=EXPORT_LIMIT,
        from_ts=from_ts,
        to_ts=to_ts,
    )

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["ID", "Name", "Message", "Tags", "Created At"])

    for item in items:
        record = _to_record(item)
        writer.writerow([
            record.id,
            record.name,
            record.message,
            ";".join(record.tags),
            record.created_at.isoformat(),
        ])

    filename = f"audit_{from_date or 'all'}_{to_date or 'now'}.csv"

    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
