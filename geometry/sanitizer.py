"""
Coordinate sanitization.

Repairs boxes coming from the detection API or from manual edits so that they
are always storable: inside the image, correctly ordered and at least the
configured minimum size. Every repair is recorded as a SanitizationChange.

Pipeline order is fixed: bounds -> size -> aspect -> type -> grid -> confidence.
"""
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from config.logging_config import get_logger
from core.constants import (
    GEOMETRIC_ASPECT_TOLERANCE,
    GRAPH_ASPECT_RANGE,
    GRAPH_TARGET_ASPECT_RATIO,
    TABLE_MIN_ASPECT_RATIO,
    TABLE_TARGET_ASPECT_RATIO,
)
from core.models import (
    DiagramCoordinates,
    DiagramType,
    ImageDimensions,
    SanitizationChange,
    SanitizationResult,
)

logger = get_logger(__name__)

CONFIDENCE_BOOST = 0.1
CONFIDENCE_PENALTY_PER_CHANGE = 0.05
CONFIDENCE_MAX_PENALTY = 0.3
CONFIDENCE_PENALTY_FLOOR = 0.1
ASPECT_TOLERANCE = 0.01


@dataclass
class SanitizationOptions:
    """Knobs for a sanitization pass."""
    min_size: Tuple[float, float] = (10, 10)
    max_size: Optional[Tuple[float, float]] = None
    snap_to_grid: int = 0
    preserve_aspect_ratio: bool = False
    reference_aspect_ratio: Optional[float] = None
    type_specific_rules: bool = False
    confidence_adjustment: str = "none"  # boost | penalize | none


PROFILE_NAMES = ('manual_edit', 'api_response', 'storage')


class _Box:
    """Mutable working copy of the four corners."""

    __slots__ = ('x1', 'y1', 'x2', 'y2')

    def __init__(self, x1: float, y1: float, x2: float, y2: float):
        self.x1, self.y1, self.x2, self.y2 = x1, y1, x2, y2

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def ratio(self) -> float:
        return self.width / self.height if self.height > 0 else 0.0

    def snapshot(self) -> Dict[str, float]:
        return {'x1': self.x1, 'y1': self.y1, 'x2': self.x2, 'y2': self.y2}


def _fit_span(center: float, length: float, limit: float) -> Tuple[float, float]:
    """Place a span of ``length`` around ``center``, shifted to stay in [0, limit]."""
    length = min(length, limit)
    start = center - length / 2
    end = center + length / 2
    if start < 0:
        end -= start
        start = 0.0
    if end > limit:
        start -= end - limit
        end = float(limit)
    return max(0.0, start), end


def _ceil_to_grid(value: float, grid: int) -> float:
    if grid <= 0:
        return value
    return math.ceil(value / grid) * grid


class CoordinateSanitizer:
    """Repairs diagram boxes according to SanitizationOptions."""

    def sanitize(
        self,
        coords: DiagramCoordinates,
        dims: ImageDimensions,
        options: Optional[SanitizationOptions] = None
    ) -> SanitizationResult:
        """
        Sanitize one box.

        Args:
            coords: Raw box, possibly out of bounds or inverted
            dims: Image the box refers to
            options: Sanitization options; defaults to a 10px minimum only

        Returns:
            SanitizationResult whose box is in bounds, ordered and at least
            the configured minimum size (clipped to the image if smaller)
        """
        options = options or SanitizationOptions()
        changes: List[SanitizationChange] = []
        warnings: List[str] = []

        min_w = max(1.0, min(float(options.min_size[0]), dims.width))
        min_h = max(1.0, min(float(options.min_size[1]), dims.height))
        max_w = max_h = None
        if options.max_size is not None:
            max_w = max(min_w, min(float(options.max_size[0]), dims.width))
            max_h = max(min_h, min(float(options.max_size[1]), dims.height))

        box = self._initial_box(coords, dims, changes, warnings)
        raw_width = abs(box.width)
        raw_height = abs(box.height)

        self._apply_bounds(box, dims, changes)
        self._apply_size(box, dims, min_w, min_h, max_w, max_h, changes, warnings)

        if options.preserve_aspect_ratio:
            target = options.reference_aspect_ratio
            if target is None and raw_height > 0:
                target = raw_width / raw_height
            if target:
                self._apply_aspect(box, dims, target, min_w, min_h, max_w, max_h, changes)

        if options.type_specific_rules:
            self._apply_type_rules(box, coords.type, dims, min_w, min_h, max_w, max_h, changes, warnings)

        if options.snap_to_grid and options.snap_to_grid > 0:
            self._apply_grid(box, dims, options.snap_to_grid, min_w, min_h, changes)

        confidence = self._adjust_confidence(
            coords.confidence, options.confidence_adjustment, changes
        )

        sanitized = DiagramCoordinates(
            x1=box.x1,
            y1=box.y1,
            x2=box.x2,
            y2=box.y2,
            confidence=confidence,
            type=coords.type,
            description=coords.description
        )
        return SanitizationResult(sanitized=sanitized, changes=changes, warnings=warnings)

    # Steps

    def _initial_box(self, coords, dims, changes, warnings) -> _Box:
        values = (coords.x1, coords.y1, coords.x2, coords.y2)
        try:
            finite = all(math.isfinite(float(v)) for v in values)
        except (TypeError, ValueError):
            finite = False
        if finite:
            return _Box(*(float(v) for v in values))

        size = min(dims.width, dims.height) * 0.3
        cx, cy = dims.width / 2, dims.height / 2
        box = _Box(cx - size / 2, cy - size / 2, cx + size / 2, cy + size / 2)
        changes.append(SanitizationChange(
            type='bounds',
            description='Replaced non-numeric coordinates with a centered default box',
            before={'x1': coords.x1, 'y1': coords.y1, 'x2': coords.x2, 'y2': coords.y2},
            after=box.snapshot()
        ))
        warnings.append("Coordinates were not valid numbers")
        return box

    def _apply_bounds(self, box: _Box, dims: ImageDimensions, changes) -> None:
        before = box.snapshot()
        if box.x1 > box.x2:
            box.x1, box.x2 = box.x2, box.x1
        if box.y1 > box.y2:
            box.y1, box.y2 = box.y2, box.y1

        box.x1 = min(max(box.x1, 0.0), dims.width - 1.0)
        box.y1 = min(max(box.y1, 0.0), dims.height - 1.0)
        box.x2 = max(box.x1 + 1.0, min(box.x2, float(dims.width)))
        box.y2 = max(box.y1 + 1.0, min(box.y2, float(dims.height)))

        after = box.snapshot()
        if after != before:
            changes.append(SanitizationChange(
                type='bounds',
                description='Clamped coordinates to image boundaries',
                before=before,
                after=after
            ))

    def _apply_size(self, box, dims, min_w, min_h, max_w, max_h, changes, warnings) -> None:
        before = box.snapshot()
        cx, cy = (box.x1 + box.x2) / 2, (box.y1 + box.y2) / 2

        expanded = False
        if box.width < min_w:
            box.x1, box.x2 = _fit_span(cx, min_w, dims.width)
            expanded = True
        if box.height < min_h:
            box.y1, box.y2 = _fit_span(cy, min_h, dims.height)
            expanded = True
        if expanded:
            changes.append(SanitizationChange(
                type='size',
                description=f'Expanded diagram to minimum size {min_w:.0f}x{min_h:.0f}',
                before=before,
                after=box.snapshot()
            ))
            if before['x2'] - before['x1'] < min_w - 1 or before['y2'] - before['y1'] < min_h - 1:
                warnings.append("Diagram was expanded to minimum size")

        before = box.snapshot()
        contracted = False
        if max_w is not None and box.width > max_w:
            box.x1, box.x2 = _fit_span((box.x1 + box.x2) / 2, max_w, dims.width)
            contracted = True
        if max_h is not None and box.height > max_h:
            box.y1, box.y2 = _fit_span((box.y1 + box.y2) / 2, max_h, dims.height)
            contracted = True
        if contracted:
            changes.append(SanitizationChange(
                type='size',
                description=f'Reduced diagram to maximum size {max_w:.0f}x{max_h:.0f}',
                before=before,
                after=box.snapshot()
            ))
            warnings.append("Diagram was larger than maximum allowed size")

    def _resize(self, box, dims, new_w: float, new_h: float) -> None:
        cx, cy = (box.x1 + box.x2) / 2, (box.y1 + box.y2) / 2
        box.x1, box.x2 = _fit_span(cx, new_w, dims.width)
        box.y1, box.y2 = _fit_span(cy, new_h, dims.height)

    @staticmethod
    def _width_range(dims, min_w, max_w) -> Tuple[float, float]:
        return min_w, (max_w if max_w is not None else float(dims.width))

    @staticmethod
    def _height_range(dims, min_h, max_h) -> Tuple[float, float]:
        return min_h, (max_h if max_h is not None else float(dims.height))

    def _reshape(self, box, dims, ratio, min_w, min_h, max_w, max_h) -> bool:
        """Change width (or height if width cannot move) so width / height == ratio."""
        w_low, w_high = self._width_range(dims, min_w, max_w)
        h_low, h_high = self._height_range(dims, min_h, max_h)

        new_w = box.height * ratio
        if w_low <= new_w <= w_high:
            self._resize(box, dims, new_w, box.height)
            return True
        new_h = box.width / ratio
        if h_low <= new_h <= h_high:
            self._resize(box, dims, box.width, new_h)
            return True
        return False

    def _apply_aspect(self, box, dims, target, min_w, min_h, max_w, max_h, changes) -> None:
        if abs(box.ratio - target) < ASPECT_TOLERANCE:
            return
        before = box.snapshot()
        if self._reshape(box, dims, target, min_w, min_h, max_w, max_h):
            changes.append(SanitizationChange(
                type='aspect',
                description=f'Restored aspect ratio {target:.2f}',
                before=before,
                after=box.snapshot()
            ))

    def _apply_type_rules(self, box, diagram_type, dims, min_w, min_h, max_w, max_h, changes, warnings) -> None:
        before = box.snapshot()
        ratio = box.ratio
        message = None

        if diagram_type == DiagramType.TABLE and ratio < TABLE_MIN_ASPECT_RATIO:
            if self._reshape(box, dims, TABLE_TARGET_ASPECT_RATIO, min_w, min_h, max_w, max_h):
                message = "Adjusted table to have appropriate width-to-height ratio"

        elif diagram_type == DiagramType.GRAPH and not (
            GRAPH_ASPECT_RANGE[0] <= ratio <= GRAPH_ASPECT_RANGE[1]
        ):
            w_low, w_high = self._width_range(dims, min_w, max_w)
            h_low, h_high = self._height_range(dims, min_h, max_h)
            size = min(box.width, box.height)
            new_w = min(max(size * GRAPH_TARGET_ASPECT_RATIO, w_low), w_high)
            new_h = min(max(size, h_low), h_high)
            self._resize(box, dims, new_w, new_h)
            message = "Adjusted graph proportions for better readability"

        elif diagram_type == DiagramType.GEOMETRIC and abs(ratio - 1.0) > GEOMETRIC_ASPECT_TOLERANCE:
            w_low, w_high = self._width_range(dims, min_w, max_w)
            h_low, h_high = self._height_range(dims, min_h, max_h)
            size = min(box.width, box.height)
            new_w = min(max(size, w_low), w_high)
            new_h = min(max(size, h_low), h_high)
            self._resize(box, dims, new_w, new_h)
            message = "Made geometric figure more square"

        after = box.snapshot()
        if message and after != before:
            changes.append(SanitizationChange(
                type='type',
                description=message,
                before=before,
                after=after
            ))
            warnings.append(message)

    def _apply_grid(self, box, dims, grid, min_w, min_h, changes) -> None:
        before = box.snapshot()
        box.x1 = round(box.x1 / grid) * grid
        box.y1 = round(box.y1 / grid) * grid
        box.x2 = round(box.x2 / grid) * grid
        box.y2 = round(box.y2 / grid) * grid

        box.x1, box.x2 = self._grid_span(box.x1, box.x2, min_w, dims.width, grid)
        box.y1, box.y2 = self._grid_span(box.y1, box.y2, min_h, dims.height, grid)

        after = box.snapshot()
        if after != before:
            changes.append(SanitizationChange(
                type='grid',
                description=f'Snapped coordinates to {grid}px grid',
                before=before,
                after=after
            ))

    @staticmethod
    def _grid_span(start: float, end: float, min_len: float, limit: float, grid: int) -> Tuple[float, float]:
        """Clamp a snapped span into [0, limit] and keep it at least ``min_len`` long."""
        start = min(max(start, 0.0), float(limit))
        end = min(max(end, 0.0), float(limit))
        if end - start < min_len:
            end = min(float(limit), start + _ceil_to_grid(min_len, grid))
        if end - start < min_len:
            start = max(0.0, end - _ceil_to_grid(min_len, grid))
        if end - start < min_len:
            start, end = 0.0, float(limit)
        return start, end

    def _adjust_confidence(self, confidence, mode: str, changes) -> float:
        try:
            value = float(confidence)
        except (TypeError, ValueError):
            value = 0.0
        if not math.isfinite(value):
            value = 0.0
        original = value

        if mode == 'boost':
            value = min(1.0, value + CONFIDENCE_BOOST)
        elif mode == 'penalize' and changes:
            penalty = min(CONFIDENCE_MAX_PENALTY, len(changes) * CONFIDENCE_PENALTY_PER_CHANGE)
            value = max(CONFIDENCE_PENALTY_FLOOR, value - penalty)

        value = min(1.0, max(0.0, value))
        if value != original:
            changes.append(SanitizationChange(
                type='confidence',
                description=f'Adjusted confidence ({mode})',
                before={'confidence': confidence},
                after={'confidence': value}
            ))
        return value

    # Profiles

    def sanitize_for_manual_edit(self, coords: DiagramCoordinates, dims: ImageDimensions) -> SanitizationResult:
        """User edits: 5px grid, 20x20 minimum, confidence boost."""
        return self.sanitize(coords, dims, SanitizationOptions(
            min_size=(20, 20),
            snap_to_grid=5,
            confidence_adjustment='boost'
        ))

    def sanitize_for_api_response(self, coords: DiagramCoordinates, dims: ImageDimensions) -> SanitizationResult:
        """Detection output: keep aspect, apply type rules, 30x30 min, 80% of image max."""
        return self.sanitize(coords, dims, SanitizationOptions(
            min_size=(30, 30),
            max_size=(dims.width * 0.8, dims.height * 0.8),
            preserve_aspect_ratio=True,
            type_specific_rules=True
        ))

    def sanitize_for_storage(self, coords: DiagramCoordinates, dims: ImageDimensions) -> SanitizationResult:
        """Persisted boxes: whole pixels, 10x10 minimum."""
        return self.sanitize(coords, dims, SanitizationOptions(
            min_size=(10, 10),
            snap_to_grid=1
        ))

    def sanitize_profile(self, profile: str, coords: DiagramCoordinates, dims: ImageDimensions) -> SanitizationResult:
        """Dispatch to a named profile."""
        handlers = {
            'manual_edit': self.sanitize_for_manual_edit,
            'api_response': self.sanitize_for_api_response,
            'storage': self.sanitize_for_storage,
        }
        key = profile.replace('-', '_').lower()
        if key not in handlers:
            raise ValueError(f"Unknown sanitization profile: {profile}")
        return handlers[key](coords, dims)

    def batch_sanitize(
        self,
        coords_list: Sequence[DiagramCoordinates],
        dims: ImageDimensions,
        options: Optional[SanitizationOptions] = None
    ) -> List[SanitizationResult]:
        """Sanitize each box independently."""
        results = [self.sanitize(c, dims, options) for c in coords_list]
        modified = sum(1 for r in results if r.changes)
        if modified:
            logger.debug("Batch sanitize modified %d/%d boxes", modified, len(results))
        return results
