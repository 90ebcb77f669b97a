"""Pydantic models for HTTP API responses."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from booter.models.status import PhaseEnum


class StatusData(BaseModel):
    """Status data nested in response."""

    phase: PhaseEnum = Field(..., description="Which root is live")
    boot_time: datetime = Field(..., description="When Bootstrap started")
    last_image_url: Optional[str] = Field(None, description="Most recently loaded image")
    target_pid: Optional[int] = Field(None, description="Target init PID while in target")
    text: str = Field(..., description="Same content as the status text on the channel")


class StatusResponse(BaseModel):
    """GET /api/v1.0/status response."""

    code: int = Field(default=200, description="Application-level status code")
    msg: str = Field(default="success", description="Status message")
    data: StatusData = Field(..., description="Status data")


class SuccessResponse(BaseModel):
    """Success response for command endpoints."""

    code: int = Field(default=200, description="Application-level status code (200)")
    msg: str = Field(default="success", description="Success message")
    data: Optional[dict] = Field(None, description="Optional response data")


class ErrorResponse(BaseModel):
    """Error response for all endpoints.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(..., description="Application-level error code (409/503)")
    msg: str = Field(..., description="Error message with error code prefix")
    phase: Optional[PhaseEnum] = Field(None, description="Phase when the request was refused")
