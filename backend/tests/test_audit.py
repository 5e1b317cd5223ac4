"""Tests for audit event normalization and recording."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from database import get_audit_events_paginated
from models import AuditEvent
from services.audit import AuditLog, build_description, build_tags


class TestBuildTags:
    def test_granted_event(self) -> None:
        assert build_tags(["QR"], granted=True) == ["api", "ACCESS_GRANTED", "QR"]

    def test_denied_event(self) -> None:
        assert build_tags(["QR"], granted=False) == ["api", "ACCESS_DENIED", "QR"]

    def test_unknown_outcome(self) -> None:
        assert build_tags(["TÜR"]) == ["api", "ACCESS_UNKNOWN", "TÜR"]

    def test_kv_tags_rendered(self) -> None:
        tags = build_tags(["TÜR"], kv_tags={"dauer": "5 Minuten", "skip": None})

        assert tags == ["api", "ACCESS_UNKNOWN", "TÜR", "dauer:5 Minuten"]

    def test_duplicates_dropped_in_order(self) -> None:
        assert build_tags(["QR", "api", "QR", "", " EXIT "]) == ["api", "ACCESS_UNKNOWN", "QR", "EXIT"]


class TestBuildDescription:
    def test_without_details(self) -> None:
        assert build_description("Tür geöffnet") == "Tür geöffnet"

    def test_details_appended(self) -> None:
        description = build_description(
            "Tür geöffnet",
            {"Granted": True, "Customer": "ACME", "ContactID": "", "Fullname": None},
        )

        assert description == "Tür geöffnet | Granted: True | Customer: ACME"


class TestAuditLog:
    """Test cases for background recording."""

    @pytest.mark.asyncio
    async def test_record_stores_broadcasts_and_bookmarks(self, dispatcher) -> None:
        bookmarks = MagicMock()
        bookmarks.create_bookmark = AsyncMock(return_value=[])
        ws = MagicMock()
        ws.broadcast_audit_event = AsyncMock()

        with patch("services.audit.insert_audit_event", new_callable=AsyncMock) as mock_insert, \
             patch("services.audit.get_ws_manager", return_value=ws):
            AuditLog(dispatcher, bookmarks).record(
                AuditEvent(name="✅ Zugang gewährt", message="Tür geöffnet", tags=["QR"], granted=True)
            )
            await dispatcher.drain()

        expected_tags = ["api", "ACCESS_GRANTED", "QR"]
        mock_insert.assert_awaited_once_with("✅ Zugang gewährt", "Tür geöffnet", expected_tags)
        ws.broadcast_audit_event.assert_awaited_once_with("✅ Zugang gewährt", "Tür geöffnet", expected_tags)
        bookmarks.create_bookmark.assert_awaited_once_with("✅ Zugang gewährt", "Tür geöffnet", expected_tags)

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_stop_forwarding(self, dispatcher) -> None:
        bookmarks = MagicMock()
        bookmarks.create_bookmark = AsyncMock(return_value=[])

        with patch("services.audit.insert_audit_event", AsyncMock(side_effect=RuntimeError("no db"))), \
             patch("services.audit.get_ws_manager", return_value=MagicMock(broadcast_audit_event=AsyncMock())):
            AuditLog(dispatcher, bookmarks).record(AuditEvent(name="Access Error", message="x"))
            await dispatcher.drain()

        bookmarks.create_bookmark.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_record_persists_to_audit_trail(self, db, dispatcher) -> None:
        with patch("services.audit.get_ws_manager", return_value=MagicMock(broadcast_audit_event=AsyncMock())):
            AuditLog(dispatcher).record(
                AuditEvent(
                    name="⚠️ Tür Warnung",
                    message="⚠️ WARNUNG: Die Tür ist seit 5 Minuten offen",
                    tags=["TÜR", "ALARM"],
                    kv_tags={"dauer": "5 Minuten"},
                )
            )
            await dispatcher.drain()

        items, total = await get_audit_events_paginated()

        assert total == 1
        assert items[0]["name"] == "⚠️ Tür Warnung"
        assert items[0]["tags"] == ["api", "ACCESS_UNKNOWN", "TÜR", "ALARM", "dauer:5 Minuten"]
