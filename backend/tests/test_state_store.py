"""Tests for the access state store.

Covers decode-or-default repair, partial patches and serialized writes.
"""

import asyncio
import json

import pytest

from database import read_state_document, write_state_document
from models import AccessControlSection, AccessState, AccessStatus, ButtonSection, DoorState, InputState
from services.state_store import StateStore, decode_state


def _assert_defaults(state: AccessState) -> None:
    assert state.button.exit_button_pressed is False
    assert state.door.door_state == DoorState.CLOSE
    assert state.reserve_input.input_state == InputState.OFF
    assert state.access_control.access_state == AccessStatus.NO_ACCESS
    assert state.access_control.pending_counter == 0


class TestDecodeState:
    """Test cases for document decoding."""

    @pytest.mark.parametrize("raw", [None, "", "not json", "{broken,}", "[1, 2]", "42"])
    def test_unusable_document_yields_defaults(self, raw) -> None:
        """Empty, non-JSON and non-object documents fall back to the default record."""
        _assert_defaults(decode_state(raw))

    def test_invalid_section_is_repaired_alone(self) -> None:
        """A bad sub-object is reset without touching valid siblings."""
        raw = json.dumps({
            "button": {"exitButtonPressed": True},
            "door": {"doorState": "Ajar"},
            "reserveInput": {"inputState": "on"},
            "accessControle": {"accessState": "grant"},
        })

        state = decode_state(raw)

        assert state.button.exit_button_pressed is True
        assert state.door.door_state == DoorState.CLOSE
        assert state.reserve_input.input_state == InputState.ON
        assert state.access_control.access_state == AccessStatus.GRANT

    def test_missing_sections_get_defaults(self) -> None:
        state = decode_state(json.dumps({"door": {"doorState": "Open"}}))

        assert state.door.door_state == DoorState.OPEN
        assert state.access_control.access_state == AccessStatus.NO_ACCESS

    def test_unknown_access_state_resets_access_section(self) -> None:
        raw = json.dumps({"accessControle": {"accessState": "maybe", "pendingCounter": 2}})

        state = decode_state(raw)

        assert state.access_control.access_state == AccessStatus.NO_ACCESS
        assert state.access_control.pending_counter == 0

    def test_negative_counter_resets_access_section(self) -> None:
        raw = json.dumps({"accessControle": {"accessState": "pending", "pendingCounter": -1}})

        assert decode_state(raw).access_control.pending_counter == 0

    def test_counter_cleared_outside_pending(self) -> None:
        """pendingCounter only survives while pending."""
        raw = json.dumps({"accessControle": {"accessState": "grant", "pendingCounter": 4}})

        assert decode_state(raw).access_control.pending_counter == 0

    def test_document_layout_uses_stored_keys(self) -> None:
        doc = AccessState().to_document()

        assert doc == {
            "button": {"exitButtonPressed": False},
            "door": {"doorState": "Close"},
            "reserveInput": {"inputState": "off"},
            "accessControle": {"accessState": "noAccess", "pendingCounter": 0},
        }


class TestStateStore:
    """Test cases for the store backed by SQLite."""

    @pytest.mark.asyncio
    async def test_load_empty_database_returns_defaults(self, db, store: StateStore) -> None:
        _assert_defaults(await store.load())

    @pytest.mark.asyncio
    async def test_initialize_writes_complete_record(self, db, store: StateStore) -> None:
        await store.initialize()

        stored = json.loads(await read_state_document())
        assert set(stored) == {"button", "door", "reserveInput", "accessControle"}

    @pytest.mark.asyncio
    async def test_save_persists_patch(self, db, store: StateStore) -> None:
        await store.save(lambda s: s.model_copy(update={"button": ButtonSection(exit_button_pressed=True)}))

        reloaded = await StateStore().load()
        assert reloaded.button.exit_button_pressed is True

    @pytest.mark.asyncio
    async def test_corrupt_stored_document_is_masked(self, db, store: StateStore) -> None:
        await write_state_document('{"door": {"doorState": "Open"},}')

        _assert_defaults(await store.load())

    @pytest.mark.asyncio
    async def test_concurrent_saves_lose_no_updates(self, db, store: StateStore) -> None:
        """Every concurrent read-merge-write lands."""

        def bump(state: AccessState) -> AccessState:
            counter = state.access_control.pending_counter + 1
            section = AccessControlSection(access_state=AccessStatus.PENDING, pending_counter=counter)
            return state.model_copy(update={"access_control": section})

        await asyncio.gather(*(store.save(bump) for _ in range(10)))

        state = await store.load()
        assert state.access_control.access_state == AccessStatus.PENDING
        assert state.access_control.pending_counter == 10

    @pytest.mark.asyncio
    async def test_patch_receives_private_copy(self, db, store: StateStore) -> None:
        seen: list[AccessState] = []

        def capture(state: AccessState) -> AccessState:
            seen.append(state)
            return state.model_copy(update={"button": ButtonSection(exit_button_pressed=True)})

        await store.save(capture)

        assert seen[0].button.exit_button_pressed is False

    @pytest.mark.asyncio
    async def test_works_in_memory_without_database(self, store: StateStore) -> None:
        """Persistence failures are logged and the patched state is still returned."""
        state = await store.save(lambda s: s.model_copy(update={"button": ButtonSection(exit_button_pressed=True)}))

        assert state.button.exit_button_pressed is True
        assert (await store.load()).button.exit_button_pressed is True
