"""Geometry package - Validation, sanitization and interactive editing of diagram boxes."""

from .validator import CoordinateValidator, CoordinateTransform, ValidationRules
from .sanitizer import CoordinateSanitizer, SanitizationOptions, PROFILE_NAMES
from .editor import CoordinateEditor, EditorViewport, EditState

__all__ = [
    # Validation
    'CoordinateValidator',
    'CoordinateTransform',
    'ValidationRules',

    # Sanitization
    'CoordinateSanitizer',
    'SanitizationOptions',
    'PROFILE_NAMES',

    # Editing
    'CoordinateEditor',
    'EditorViewport',
    'EditState',
]
