"""Configuration API Router for the Door Access Edge Service.

Handles configuration get, partial update, and reload endpoints.
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ValidationError

from config import AccessConfig, get_config, reload_config, save_config
from routers.audit import verify_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/config", tags=["config"])

# (section, field) pairs never returned in clear text
SECRET_FIELDS = (
    ("mqtt", "password"),
    ("auth", "token"),
    ("authorizer", "token"),
    ("scanner", "password"),
    ("bookmarks", "password"),
)


class ConfigUpdateRequest(BaseModel):
    """Request body for configuration update."""

    mqtt: dict[str, Any] | None = None
    relay: dict[str, Any] | None = None
    scanner: dict[str, Any] | None = None
    authorizer: dict[str, Any] | None = None
    door: dict[str, Any] | None = None
    bookmarks: dict[str, Any] | None = None
    heartbeat: dict[str, Any] | None = None
    storage: dict[str, Any] | None = None


class ConfigResponse(BaseModel):
    """Response containing current configuration."""

    ok: bool = True
    config: dict[str, Any]


class ReloadResponse(BaseModel):
    """Response for configuration reload."""

    ok: bool = True
    message: str = "Configuration reloaded"


def mask_secrets(config: AccessConfig) -> dict[str, Any]:
    """Dump the configuration with secrets replaced by ``***``."""
    config_dict = config.model_dump()
    for section, field in SECRET_FIELDS:
        if config_dict.get(section, {}).get(field):
            config_dict[section][field] = "***"
    return config_dict


@router.get("", response_model=ConfigResponse)
async def get_current_config(
    _: Annotated[None, Depends(verify_token)],
) -> ConfigResponse:
    """Get the current service configuration without secrets."""
    return ConfigResponse(ok=True, config=mask_secrets(get_config()))


@router.put("", response_model=ConfigResponse)
async def update_config(
    request: ConfigUpdateRequest,
    _: Annotated[None, Depends(verify_token)],
) -> ConfigResponse:
    """Update service configuration.

    Partial updates are supported; only provided sections and fields change.
    Changes are persisted to the configuration file.
    """
    config_dict = get_config().model_dump()

    for section, update in request.model_dump(exclude_none=True).items():
        config_dict[section].update(update)

    try:
        new_config = AccessConfig.model_validate(config_dict)
    except ValidationError as e:
        logger.error(f"Failed to update configuration: {e}")
        raise HTTPException(status_code=400, detail=f"Invalid configuration: {e}") from e

    save_config(new_config)
    logger.info("Configuration updated successfully")

    return ConfigResponse(ok=True, config=mask_secrets(new_config))


@router.post("/reload", response_model=ReloadResponse)
async def reload_config_endpoint(
    _: Annotated[None, Depends(verify_token)],
) -> ReloadResponse:
    """Reload configuration from file.

    Thresholds and endpoints are re-read on use; the HTTP port and MQTT
    broker need a restart.
    """
    try:
        reload_config()
        logger.info("Configuration reloaded from file")
        return ReloadResponse(ok=True, message="Configuration reloaded successfully")
    except (OSError, ValueError) as e:
        logger.error(f"Failed to reload configuration: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to reload: {e}") from e
