"""Access State Store.

Durable single record describing exit button, door, reserve input and access
control state. All writers go through save(), which serializes the
load-patch-persist cycle so concurrent patches to different fields are never
lost.

Decoding is strict: a document that is not JSON (or not an object) is
replaced wholesale by the default record, and each sub-object that fails
validation is replaced by its own default. Nothing is ever raised to callers.
"""

import asyncio
import json
import logging
from typing import Any, Callable, Optional

import aiosqlite
from pydantic import BaseModel, ValidationError

from database import read_state_document, write_state_document
from models import (
    AccessControlSection,
    AccessState,
    ButtonSection,
    DoorSection,
    ReserveInputSection,
)

logger = logging.getLogger(__name__)

PatchFn = Callable[[AccessState], AccessState]

# document key -> (attribute name, section model)
_SECTIONS: dict[str, tuple[str, type[BaseModel]]] = {
    "button": ("button", ButtonSection),
    "door": ("door", DoorSection),
    "reserveInput": ("reserve_input", ReserveInputSection),
    "accessControle": ("access_control", AccessControlSection),
}


def decode_state(raw: Optional[str]) -> AccessState:
    """Decode a stored document, repairing anything that does not validate.

    Args:
        raw: Stored JSON text or None.

    Returns:
        A complete AccessState.
    """
    if not raw:
        return AccessState()

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Access state document is not valid JSON ({e}); resetting to defaults")
        return AccessState()

    if not isinstance(data, dict):
        logger.warning("Access state document is not an object; resetting to defaults")
        return AccessState()

    sections: dict[str, Any] = {}
    for key, (attr, model) in _SECTIONS.items():
        value = data.get(key)
        if value is None:
            sections[attr] = model()
            continue
        try:
            sections[attr] = model.model_validate(value)
        except ValidationError as e:
            logger.error(f"Access state section '{key}' invalid, resetting to default: {e.errors()}")
            sections[attr] = model()

    return AccessState(**sections)


class StateStore:
    """Serialized read-merge-write access to the access state record."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._last_known: AccessState = AccessState()

    @property
    def last_known(self) -> AccessState:
        """Most recent state seen by this process (no I/O)."""
        return self._last_known.model_copy(deep=True)

    async def _read(self) -> AccessState:
        try:
            raw = await read_state_document()
        except (aiosqlite.Error, OSError, RuntimeError) as e:
            logger.error(f"Failed to read access state, using last known: {e}")
            return self.last_known
        state = decode_state(raw)
        self._last_known = state
        return state.model_copy(deep=True)

    async def load(self) -> AccessState:
        """Return the current record. Never raises."""
        return await self._read()

    async def save(self, patch_fn: PatchFn) -> AccessState:
        """Atomically load, patch and persist the record.

        Args:
            patch_fn: Receives a private copy of the current record and returns
                      the new one.

        Returns:
            The patched record. Returned even when persisting failed.
        """
        async with self._lock:
            current = await self._read()
            patched = patch_fn(current)
            # Re-validate so section invariants hold after the patch
            patched = AccessState.model_validate(patched.to_document())
            self._last_known = patched
            try:
                await write_state_document(json.dumps(patched.to_document()))
            except (aiosqlite.Error, OSError, RuntimeError) as e:
                logger.error(f"Failed to persist access state, continuing in memory: {e}")
            return patched.model_copy(deep=True)

    async def initialize(self) -> AccessState:
        """Make sure a complete record is stored (startup)."""
        return await self.save(lambda state: state)
