"""Core package - Domain models, constants and exceptions."""

from .models import (
    DiagramType,
    DiagramCoordinates,
    ImageDimensions,
    ValidationResult,
    SanitizationChange,
    SanitizationResult,
    DiagramRecord,
    CoordinateMetadata,
    FileStatus,
    SessionStatus,
    InputFile,
    FileEntry,
    SessionProgress,
    ProcessingSession,
    RenderOptions,
    RenderedDiagram,
    DiagramOverlay,
)
from .constants import (
    DEFAULT_MIN_DIAGRAM_SIZE,
    DIAGRAM_TYPE_RULES,
    DEFAULT_PIPELINE_CONFIG,
    DETECTION_PROMPT,
    PAGE_IMAGE_KEY_FORMAT,
)
from .exceptions import DiagramFlowError

__all__ = [
    # Models
    'DiagramType',
    'DiagramCoordinates',
    'ImageDimensions',
    'ValidationResult',
    'SanitizationChange',
    'SanitizationResult',
    'DiagramRecord',
    'CoordinateMetadata',
    'FileStatus',
    'SessionStatus',
    'InputFile',
    'FileEntry',
    'SessionProgress',
    'ProcessingSession',
    'RenderOptions',
    'RenderedDiagram',
    'DiagramOverlay',

    # Constants
    'DEFAULT_MIN_DIAGRAM_SIZE',
    'DIAGRAM_TYPE_RULES',
    'DEFAULT_PIPELINE_CONFIG',
    'DETECTION_PROMPT',
    'PAGE_IMAGE_KEY_FORMAT',

    # Errors
    'DiagramFlowError',
]
