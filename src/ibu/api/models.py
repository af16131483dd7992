"""Pydantic models for HTTP API requests and responses."""

from typing import Optional
from pydantic import BaseModel, Field

from ibu.models.status import StageEnum


class ProgressData(BaseModel):
    """Progress data nested in response."""

    stage: StageEnum = Field(..., description="Stage derived from the condition history")
    desired_stage: StageEnum = Field(..., description="Stage requested in the spec")
    in_progress: bool = Field(..., description="Whether a phase is currently running")
    message: str = Field(..., description="Message of the most recent condition")
    degraded: Optional[str] = Field(
        None, description="Degraded condition message, if the resource is degraded"
    )
    generation: int = Field(..., description="Spec generation")
    observed_generation: int = Field(..., description="Generation last acted on")


class ProgressResponse(BaseModel):
    """GET /api/v1alpha1/progress response."""

    code: int = Field(default=200, description="Application-level status code")
    msg: str = Field(default="success", description="Status message")
    data: ProgressData = Field(..., description="Progress data")


class ResourceResponse(BaseModel):
    """GET /api/v1alpha1/imagebasedupgrade response.

    The resource is serialized with its schema (camelCase) field names.
    """

    code: int = Field(default=200, description="Application-level status code")
    msg: str = Field(default="success", description="Status message")
    data: dict = Field(..., description="The ImageBasedUpgrade resource")


class ErrorResponse(BaseModel):
    """Error response for all endpoints.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(..., description="Application-level error code (409/422/500)")
    msg: str = Field(..., description="Error message")
    field: Optional[str] = Field(None, description="Rejected field, on admission errors")
    stage: Optional[StageEnum] = Field(None, description="Current stage")
