"""
Coordinate validation for diagram bounding boxes.

All checks are pure: they report problems as data and never raise.
"""
import math
from collections import Counter
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from core.constants import DEFAULT_MIN_DIAGRAM_SIZE, DIAGRAM_TYPE_RULES
from core.models import DiagramCoordinates, DiagramType, ImageDimensions, ValidationResult


@dataclass
class CoordinateTransform:
    """Affine scale + offset between two coordinate spaces."""
    scale_x: float = 1.0
    scale_y: float = 1.0
    offset_x: float = 0.0
    offset_y: float = 0.0


@dataclass
class ValidationRules:
    """Custom constraints layered on top of the basic validation."""
    min_width: Optional[float] = None
    min_height: Optional[float] = None
    max_width: Optional[float] = None
    max_height: Optional[float] = None
    aspect_ratio_range: Optional[Tuple[float, float]] = None
    allowed_types: Optional[Sequence[DiagramType]] = None
    min_confidence: Optional[float] = None


def _is_number(value) -> bool:
    if isinstance(value, bool):
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


class CoordinateValidator:
    """Checks diagram boxes against image bounds and basic geometry."""

    def __init__(self, min_size: int = DEFAULT_MIN_DIAGRAM_SIZE):
        self.min_size = min_size

    def validate(
        self,
        coords: DiagramCoordinates,
        dims: ImageDimensions,
        min_size: Optional[int] = None
    ) -> ValidationResult:
        """
        Validate a single box against an image.

        Args:
            coords: Box to check
            dims: Dimensions of the image the box refers to
            min_size: Minimum width and height in pixels

        Returns:
            ValidationResult listing every problem found
        """
        min_size = self.min_size if min_size is None else min_size
        errors: List[str] = []

        if not all(_is_number(v) for v in (coords.x1, coords.y1, coords.x2, coords.y2)):
            return ValidationResult(is_valid=False, errors=["Coordinates must be valid numbers"])

        if coords.x2 <= coords.x1:
            errors.append("x2 must be greater than x1")
        if coords.y2 <= coords.y1:
            errors.append("y2 must be greater than y1")

        if not self.validate_bounds(coords, dims):
            errors.append("Coordinates are outside image boundaries")
            if coords.x1 < 0:
                errors.append("x1 cannot be negative")
            if coords.y1 < 0:
                errors.append("y1 cannot be negative")
            if coords.x2 > dims.width:
                errors.append(f"x2 exceeds image width ({dims.width})")
            if coords.y2 > dims.height:
                errors.append(f"y2 exceeds image height ({dims.height})")

        if coords.width < min_size or coords.height < min_size:
            errors.append(f"Diagram must be at least {min_size}px in width and height")

        if not _is_number(coords.confidence) or not 0 <= coords.confidence <= 1:
            errors.append("Confidence must be between 0 and 1")

        return ValidationResult(is_valid=not errors, errors=errors)

    def validate_bounds(self, coords: DiagramCoordinates, dims: ImageDimensions) -> bool:
        """True when the box lies inside [0, width] x [0, height]."""
        return (
            coords.x1 >= 0 and coords.y1 >= 0
            and coords.x2 <= dims.width and coords.y2 <= dims.height
        )

    def validate_array(
        self,
        coords_list: Sequence[DiagramCoordinates],
        dims: ImageDimensions,
        allow_overlap: bool = False,
        min_size: Optional[int] = None
    ) -> ValidationResult:
        """
        Validate several boxes on the same image.

        Per-item errors are prefixed with the item index. Unless
        ``allow_overlap`` is set, any pair of individually valid boxes that
        intersect with positive area makes the whole list invalid.
        """
        errors: List[str] = []
        valid_indices = []

        for i, coords in enumerate(coords_list):
            result = self.validate(coords, dims, min_size=min_size)
            if result.is_valid:
                valid_indices.append(i)
            else:
                errors.extend(f"Coordinate {i}: {e}" for e in result.errors)

        if not allow_overlap:
            for a_pos, i in enumerate(valid_indices):
                for j in valid_indices[a_pos + 1:]:
                    a, b = coords_list[i], coords_list[j]
                    if self.do_overlap(a, b):
                        pct = self.overlap_percentage(a, b)
                        errors.append(f"Coordinates {i} and {j} overlap by {pct:.1f}%")

        return ValidationResult(is_valid=not errors, errors=errors)

    # Geometry helpers

    @staticmethod
    def do_overlap(a: DiagramCoordinates, b: DiagramCoordinates) -> bool:
        """Positive-area intersection test. Touching edges do not overlap."""
        return not (
            a.x2 <= b.x1 or b.x2 <= a.x1
            or a.y2 <= b.y1 or b.y2 <= a.y1
        )

    @staticmethod
    def intersection_area(a: DiagramCoordinates, b: DiagramCoordinates) -> float:
        width = min(a.x2, b.x2) - max(a.x1, b.x1)
        height = min(a.y2, b.y2) - max(a.y1, b.y1)
        if width <= 0 or height <= 0:
            return 0.0
        return width * height

    def overlap_percentage(self, a: DiagramCoordinates, b: DiagramCoordinates) -> float:
        """Intersection over union, as a percentage."""
        inter = self.intersection_area(a, b)
        if inter == 0:
            return 0.0
        union = a.area + b.area - inter
        return inter / union * 100 if union > 0 else 0.0

    @staticmethod
    def calculate_area(coords: DiagramCoordinates) -> float:
        return coords.area

    @staticmethod
    def merge(a: DiagramCoordinates, b: DiagramCoordinates) -> DiagramCoordinates:
        """Smallest box containing both; keeps the more confident box's label."""
        primary = a if a.confidence >= b.confidence else b
        return DiagramCoordinates(
            x1=min(a.x1, b.x1),
            y1=min(a.y1, b.y1),
            x2=max(a.x2, b.x2),
            y2=max(a.y2, b.y2),
            confidence=max(a.confidence, b.confidence),
            type=primary.type,
            description=primary.description
        )

    def merge_overlapping(
        self,
        coords_list: Iterable[DiagramCoordinates],
        threshold: float = 0.0
    ) -> List[DiagramCoordinates]:
        """Repeatedly merge boxes whose IoU percentage exceeds ``threshold``."""
        merged = list(coords_list)
        changed = True
        while changed:
            changed = False
            for i in range(len(merged)):
                for j in range(i + 1, len(merged)):
                    a, b = merged[i], merged[j]
                    if self.do_overlap(a, b) and self.overlap_percentage(a, b) > threshold:
                        merged[i] = self.merge(a, b)
                        del merged[j]
                        changed = True
                        break
                if changed:
                    break
        return merged

    @staticmethod
    def scale(coords: DiagramCoordinates, scale_x: float, scale_y: Optional[float] = None) -> DiagramCoordinates:
        scale_y = scale_x if scale_y is None else scale_y
        return coords.copy(
            x1=coords.x1 * scale_x,
            y1=coords.y1 * scale_y,
            x2=coords.x2 * scale_x,
            y2=coords.y2 * scale_y
        )

    @staticmethod
    def transform(coords: DiagramCoordinates, transform: CoordinateTransform) -> DiagramCoordinates:
        return coords.copy(
            x1=coords.x1 * transform.scale_x + transform.offset_x,
            y1=coords.y1 * transform.scale_y + transform.offset_y,
            x2=coords.x2 * transform.scale_x + transform.offset_x,
            y2=coords.y2 * transform.scale_y + transform.offset_y
        )

    @staticmethod
    def create_scale_transform(source: ImageDimensions, target: ImageDimensions) -> CoordinateTransform:
        """Transform mapping boxes on ``source`` onto an image of size ``target``."""
        return CoordinateTransform(
            scale_x=target.width / source.width,
            scale_y=target.height / source.height
        )

    @staticmethod
    def to_viewport(coords: DiagramCoordinates, zoom: float, offset: Tuple[float, float] = (0, 0)) -> DiagramCoordinates:
        """Image space to display space."""
        ox, oy = offset
        return coords.copy(
            x1=coords.x1 * zoom + ox,
            y1=coords.y1 * zoom + oy,
            x2=coords.x2 * zoom + ox,
            y2=coords.y2 * zoom + oy
        )

    @staticmethod
    def from_viewport(coords: DiagramCoordinates, zoom: float, offset: Tuple[float, float] = (0, 0)) -> DiagramCoordinates:
        """Display space back to image space."""
        ox, oy = offset
        return coords.copy(
            x1=(coords.x1 - ox) / zoom,
            y1=(coords.y1 - oy) / zoom,
            x2=(coords.x2 - ox) / zoom,
            y2=(coords.y2 - oy) / zoom
        )

    # Rule-based validation

    def validate_with_rules(
        self,
        coords: DiagramCoordinates,
        dims: ImageDimensions,
        rules: ValidationRules
    ) -> ValidationResult:
        """Basic validation plus caller-supplied rules."""
        base = self.validate(coords, dims, min_size=0)
        errors = list(base.errors)
        if "Coordinates must be valid numbers" in errors:
            return base

        width, height = coords.width, coords.height
        if rules.min_width is not None and width < rules.min_width:
            errors.append(f"Width {width:.0f}px is below minimum {rules.min_width:.0f}px")
        if rules.min_height is not None and height < rules.min_height:
            errors.append(f"Height {height:.0f}px is below minimum {rules.min_height:.0f}px")
        if rules.max_width is not None and width > rules.max_width:
            errors.append(f"Width {width:.0f}px exceeds maximum {rules.max_width:.0f}px")
        if rules.max_height is not None and height > rules.max_height:
            errors.append(f"Height {height:.0f}px exceeds maximum {rules.max_height:.0f}px")
        if rules.aspect_ratio_range is not None and height > 0:
            low, high = rules.aspect_ratio_range
            ratio = coords.aspect_ratio
            if not low <= ratio <= high:
                errors.append(f"Aspect ratio {ratio:.2f} is outside range {low}-{high}")
        if rules.allowed_types is not None:
            allowed = {DiagramType.coerce(t) for t in rules.allowed_types}
            if coords.type not in allowed:
                errors.append(f"Diagram type '{coords.type.value}' is not allowed")
        if rules.min_confidence is not None and coords.confidence < rules.min_confidence:
            errors.append(
                f"Confidence {coords.confidence:.2f} is below minimum {rules.min_confidence}"
            )

        return ValidationResult(is_valid=not errors, errors=errors)

    def validate_for_type(self, coords: DiagramCoordinates, dims: ImageDimensions) -> ValidationResult:
        """Apply the built-in rule set for the box's diagram type."""
        type_rules = DIAGRAM_TYPE_RULES.get(coords.type.value, DIAGRAM_TYPE_RULES['other'])
        rules = ValidationRules(
            min_width=type_rules['min_width'],
            min_height=type_rules['min_height'],
            aspect_ratio_range=type_rules['aspect_ratio'],
            min_confidence=type_rules['min_confidence']
        )
        return self.validate_with_rules(coords, dims, rules)

    def batch_validate(
        self,
        coords_list: Sequence[DiagramCoordinates],
        dims: ImageDimensions,
        min_size: Optional[int] = None
    ) -> Dict:
        """
        Validate many boxes independently.

        Returns:
            Dict with ``results`` (one ValidationResult per input) and
            ``summary`` (total_valid, total_invalid, common_errors).
        """
        results = [self.validate(c, dims, min_size=min_size) for c in coords_list]
        counter = Counter(e for r in results for e in r.errors)
        total_valid = sum(1 for r in results if r.is_valid)
        return {
            'results': results,
            'summary': {
                'total_valid': total_valid,
                'total_invalid': len(results) - total_valid,
                'common_errors': [e for e, _ in counter.most_common(5)]
            }
        }

    # Defaults

    @staticmethod
    def create_default_coordinates(dims: ImageDimensions) -> DiagramCoordinates:
        """Centered box spanning 30% of the shorter image side."""
        size = min(dims.width, dims.height) * 0.3
        cx, cy = dims.width / 2, dims.height / 2
        return DiagramCoordinates(
            x1=cx - size / 2,
            y1=cy - size / 2,
            x2=cx + size / 2,
            y2=cy + size / 2,
            confidence=1.0,
            type=DiagramType.OTHER,
            description="Manual selection"
        )

    @staticmethod
    def is_reasonable_size(coords: DiagramCoordinates, dims: ImageDimensions) -> bool:
        """Box covers between 1% and 80% of the image."""
        if dims.area <= 0:
            return False
        ratio = coords.area / dims.area
        return 0.01 <= ratio <= 0.8
