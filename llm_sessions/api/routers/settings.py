"""Settings API router: inspect and change daemon defaults.

Changes are stored immediately but only picked up when the daemon builds
its registry, i.e. after a restart.
"""

import logging
from typing import Dict

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from ...db.settings import get_all_settings, get_setting, set_setting, validate_setting

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["settings"])


class SettingValue(BaseModel):
    """Request model for updating a setting."""

    value: str = Field(..., description="New value (empty clears optional settings)")


class SettingResponse(BaseModel):
    key: str
    value: str
    applies_after_restart: bool = Field(True, description="Running sessions keep their values")


class SettingsResponse(BaseModel):
    settings: Dict[str, str] = Field(..., description="All settings as key-value pairs")


def _not_found(key: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "SETTING_NOT_FOUND", "message": f"Setting '{key}' not found"},
    )


@router.get("/settings", response_model=SettingsResponse)
async def list_settings() -> SettingsResponse:
    return SettingsResponse(settings=get_all_settings())


@router.get("/settings/{key}", response_model=SettingResponse)
async def read_setting(key: str) -> SettingResponse:
    value = get_setting(key)
    if value is None:
        raise _not_found(key)
    return SettingResponse(key=key, value=value)


@router.put("/settings/{key}", response_model=SettingResponse)
async def update_setting(key: str, setting: SettingValue) -> SettingResponse:
    """
    Validate and store a setting.

    Raises:
        HTTPException: 404 for unknown keys, 422 for values of the wrong kind
    """
    try:
        value = validate_setting(key, setting.value)
    except KeyError:
        raise _not_found(key)
    except ValueError as e:
        raise HTTPException(
            status_code=422,
            detail={"code": "INVALID_SETTING", "message": str(e)},
        )

    set_setting(key, value)
    logger.info(f"Setting '{key}' changed to '{value}' (applies after restart)")
    return SettingResponse(key=key, value=value)
