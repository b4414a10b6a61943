"""
Pydantic schemas for API request/response validation.
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from core.models import DiagramCoordinates, ImageDimensions


class CoordinatesModel(BaseModel):
    """Bounding box in page pixels."""
    x1: float
    y1: float
    x2: float
    y2: float
    confidence: float = 1.0
    type: str = "other"
    description: str = ""

    def to_coordinates(self) -> DiagramCoordinates:
        return DiagramCoordinates.from_dict(self.model_dump())


class DimensionsModel(BaseModel):
    """Page image size."""
    width: int = Field(gt=0)
    height: int = Field(gt=0)

    def to_dimensions(self) -> ImageDimensions:
        return ImageDimensions(self.width, self.height)


class ValidateRequest(BaseModel):
    """Request body for coordinate validation."""
    coordinates: List[CoordinatesModel]
    image_dimensions: DimensionsModel
    allow_overlap: bool = False


class SanitizeRequest(BaseModel):
    """Request body for coordinate sanitization."""
    coordinates: CoordinatesModel
    image_dimensions: DimensionsModel


class DiagramUpdateRequest(BaseModel):
    """Request body for a manual diagram edit."""
    coordinates: CoordinatesModel


class CleanupRequest(BaseModel):
    """Request body for session cleanup."""
    max_age_hours: Optional[float] = Field(default=None, ge=0)


class RenderRequest(BaseModel):
    """Optional render settings for a stored diagram."""
    quality: float = Field(default=0.9, gt=0, le=1)
    format: str = Field(default="png", pattern="^(png|jpeg|webp)$")
    background_color: str = "#ffffff"
    padding: int = Field(default=0, ge=0)
    max_width: Optional[int] = Field(default=None, gt=0)
    max_height: Optional[int] = Field(default=None, gt=0)


class SessionCreatedResponse(BaseModel):
    """Response for a newly started session."""
    session_id: str
    status: str
    total_files: int


class DocumentResponse(BaseModel):
    """Response for document metadata."""
    id: str
    filename: str
    file_type: str
    total_pages: int
    created_at: Optional[str] = None
