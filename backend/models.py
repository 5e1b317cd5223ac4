"""Pydantic models for the Door Access Edge Service.

Persisted access state record, inbound device events, audit events and
request/response schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


class DoorState(str, Enum):
    """Door state derived from the door contact."""

    OPEN = "Open"
    CLOSE = "Close"


class InputState(str, Enum):
    """Reserve input contact state."""

    ON = "on"
    OFF = "off"


class AccessStatus(str, Enum):
    """Access control states."""

    NO_ACCESS = "noAccess"
    PENDING = "pending"
    GRANT = "grant"


class ScanOutcome(str, Enum):
    """What the authorization workflow did with a scan."""

    DUPLICATE = "DUPLICATE"
    REQUESTED = "REQUESTED"
    WAITING = "WAITING"
    RETRIED = "RETRIED"


# --- Access State Record ---


class ButtonSection(BaseModel):
    """Exit button contact."""

    model_config = ConfigDict(populate_by_name=True)

    exit_button_pressed: bool = Field(default=False, alias="exitButtonPressed")


class DoorSection(BaseModel):
    """Door contact, already mapped to Open/Close."""

    model_config = ConfigDict(populate_by_name=True)

    door_state: DoorState = Field(default=DoorState.CLOSE, alias="doorState")


class ReserveInputSection(BaseModel):
    """Reserve input contact."""

    model_config = ConfigDict(populate_by_name=True)

    input_state: InputState = Field(default=InputState.OFF, alias="inputState")


class AccessControlSection(BaseModel):
    """Access decision state.

    pending_counter only carries meaning while pending and is forced to 0
    in every other state.
    """

    model_config = ConfigDict(populate_by_name=True)

    access_state: AccessStatus = Field(default=AccessStatus.NO_ACCESS, alias="accessState")
    pending_counter: int = Field(default=0, ge=0, alias="pendingCounter")

    @model_validator(mode="after")
    def _reset_counter_outside_pending(self) -> "AccessControlSection":
        if self.access_state != AccessStatus.PENDING:
            self.pending_counter = 0
        return self


class AccessState(BaseModel):
    """The persisted access state record."""

    model_config = ConfigDict(populate_by_name=True)

    button: ButtonSection = Field(default_factory=ButtonSection)
    door: DoorSection = Field(default_factory=DoorSection)
    reserve_input: ReserveInputSection = Field(default_factory=ReserveInputSection, alias="reserveInput")
    access_control: AccessControlSection = Field(
        default_factory=AccessControlSection, alias="accessControle"
    )

    @property
    def door_open(self) -> bool:
        return self.door.door_state == DoorState.OPEN

    @property
    def access_granted(self) -> bool:
        return self.access_control.access_state == AccessStatus.GRANT

    def to_document(self) -> dict[str, Any]:
        """Serialize to the stored JSON document layout."""
        return self.model_dump(by_alias=True, mode="json")


# --- Inbound Device Events ---


class InputEvent(BaseModel):
    """Single input transition reported by the relay controller."""

    input_id: int = Field(validation_alias=AliasChoices("input", "id"))
    state: bool = Field(validation_alias=AliasChoices("state", "value"))

    @model_validator(mode="before")
    @classmethod
    def _drop_null_aliases(cls, data: Any) -> Any:
        # a null "input" or "state" falls back to "id" or "value"
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class AuthorizationResult(BaseModel):
    """Decision returned by the remote authorization service."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    granted: bool = False
    requested: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    contact_id: Optional[str] = None
    fullname: Optional[str] = None

    @field_validator("granted", mode="before")
    @classmethod
    def _truthy(cls, value: Any) -> bool:
        return bool(value)


# --- Audit Models ---


class AuditEvent(BaseModel):
    """Human readable event recorded in the audit trail."""

    name: str
    message: str
    tags: list[str] = Field(default_factory=list)
    kv_tags: dict[str, str] = Field(default_factory=dict)
    granted: Optional[bool] = None
    details: dict[str, Any] = Field(default_factory=dict, description="Identity fields appended to the description")


class AuditRecord(BaseModel):
    """Stored audit event."""

    id: int
    name: str
    message: str
    tags: list[str]
    created_at: datetime


class AuditListResponse(BaseModel):
    """Paginated audit event list response."""

    items: list[AuditRecord]
    total: int
    page: int
    limit: int


# --- Response Models ---


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    ok: bool = True
    mqtt_connected: bool
    db_ok: bool
    relay_last_seen_seconds: Optional[int] = None
    uptime_seconds: int = 0


class StatsResponse(BaseModel):
    """Response for statistics endpoint."""

    door_state: DoorState
    access_state: AccessStatus
    audit_events_last_24h: int

