"""
Interactive coordinate editor.

Translates pointer positions on a (possibly zoomed and panned) canvas into
edits of a single diagram box. Points passed to the editor are in canvas
space; the box itself is kept in image space:

    image = (canvas - pan_offset) / zoom_level
"""
import math
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from config.logging_config import get_logger
from core.models import DiagramCoordinates, ImageDimensions, SanitizationResult
from .sanitizer import CoordinateSanitizer

logger = get_logger(__name__)

Point = Tuple[float, float]

HANDLES = ('tl', 'tr', 'bl', 'br')
DEFAULT_HANDLE_SIZE = 8
DEFAULT_MIN_SIZE = 10
DEFAULT_GRID_SIZE = 10


@dataclass
class EditorViewport:
    """Canvas zoom and pan."""
    zoom_level: float = 1.0
    pan_offset: Point = (0.0, 0.0)


@dataclass
class EditState:
    """Observable editor state."""
    is_dragging: bool = False
    drag_handle: Optional[str] = None
    start_position: Optional[Point] = None
    start_coordinates: Optional[DiagramCoordinates] = None
    current_coordinates: Optional[DiagramCoordinates] = None


class CoordinateEditor:
    """Drag / resize / move logic for one diagram box."""

    def __init__(
        self,
        coordinates: DiagramCoordinates,
        image_dimensions: ImageDimensions,
        min_size: float = DEFAULT_MIN_SIZE,
        grid_size: int = DEFAULT_GRID_SIZE,
        snap_to_grid: bool = False,
        handle_size: int = DEFAULT_HANDLE_SIZE,
        viewport: Optional[EditorViewport] = None,
        sanitizer: Optional[CoordinateSanitizer] = None
    ):
        """
        Initialize the editor.

        Args:
            coordinates: Box being edited (image space)
            image_dimensions: Size of the underlying page image
            min_size: Minimum width/height the box may shrink to
            grid_size: Grid spacing used when snapping is enabled
            snap_to_grid: Whether drag and input updates snap to the grid
            handle_size: Corner handle hit tolerance in canvas pixels
            viewport: Initial zoom / pan
            sanitizer: Sanitizer used by ``finalize``
        """
        self.image_dimensions = image_dimensions
        self.min_size = min_size
        self.grid_size = grid_size
        self.snap_to_grid = snap_to_grid
        self.handle_size = handle_size
        self.viewport = viewport or EditorViewport()
        self.sanitizer = sanitizer or CoordinateSanitizer()

        self.original = coordinates.copy()
        self.state = EditState(current_coordinates=coordinates.copy())
        self._subscribers: List[Callable[[EditState], None]] = []

    # Observers

    def subscribe(self, callback: Callable[[EditState], None]) -> Callable[[], None]:
        """Register a state listener. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            callback(self.state)

    # Coordinate transforms

    def set_viewport(self, zoom_level: Optional[float] = None, pan_offset: Optional[Point] = None) -> None:
        if zoom_level is not None:
            if zoom_level <= 0:
                raise ValueError("zoom_level must be positive")
            self.viewport.zoom_level = zoom_level
        if pan_offset is not None:
            self.viewport.pan_offset = pan_offset

    def canvas_to_image(self, point: Point) -> Point:
        zoom = self.viewport.zoom_level
        ox, oy = self.viewport.pan_offset
        return ((point[0] - ox) / zoom, (point[1] - oy) / zoom)

    def image_to_canvas(self, point: Point) -> Point:
        zoom = self.viewport.zoom_level
        ox, oy = self.viewport.pan_offset
        return (point[0] * zoom + ox, point[1] * zoom + oy)

    # Hit testing

    @property
    def coordinates(self) -> DiagramCoordinates:
        return self.state.current_coordinates

    def _corner_positions(self, coords: DiagramCoordinates) -> dict:
        return {
            'tl': (coords.x1, coords.y1),
            'tr': (coords.x2, coords.y1),
            'bl': (coords.x1, coords.y2),
            'br': (coords.x2, coords.y2),
        }

    def get_handle_at_position(self, point: Point) -> Optional[str]:
        """Nearest corner handle within tolerance, 'move' inside the box, else None."""
        coords = self.coordinates
        best, best_dist = None, None
        for handle, corner in self._corner_positions(coords).items():
            cx, cy = self.image_to_canvas(corner)
            dist = max(abs(point[0] - cx), abs(point[1] - cy))
            if dist <= self.handle_size and (best_dist is None or dist < best_dist):
                best, best_dist = handle, dist
        if best is not None:
            return best

        ix, iy = self.canvas_to_image(point)
        left, right = sorted((coords.x1, coords.x2))
        top, bottom = sorted((coords.y1, coords.y2))
        if left < ix < right and top < iy < bottom:
            return 'move'
        return None

    def get_cursor_style(self, point: Optional[Point] = None) -> str:
        """CSS cursor hint for the handle under ``point``."""
        if self.state.is_dragging:
            return 'grabbing' if self.state.drag_handle == 'move' else self._resize_cursor(self.state.drag_handle)
        if point is None:
            return 'default'
        handle = self.get_handle_at_position(point)
        if handle is None:
            return 'default'
        if handle == 'move':
            return 'move'
        return self._resize_cursor(handle)

    def _resize_cursor(self, handle: str) -> str:
        coords = self.coordinates
        vertical = 'n' if handle[0] == 't' else 's'
        horizontal = 'w' if handle[1] == 'l' else 'e'
        if coords.x2 < coords.x1:
            horizontal = 'e' if horizontal == 'w' else 'w'
        if coords.y2 < coords.y1:
            vertical = 's' if vertical == 'n' else 'n'
        return f"{vertical}{horizontal}-resize"

    # Drag lifecycle

    def start_edit(self, point: Point) -> bool:
        """Begin a drag if ``point`` hits a handle or the box interior."""
        if self.state.is_dragging:
            return False
        handle = self.get_handle_at_position(point)
        if handle is None:
            return False

        self.state.is_dragging = True
        self.state.drag_handle = handle
        self.state.start_position = point
        self.state.start_coordinates = self.coordinates.copy()
        self._notify()
        return True

    def update_edit(self, point: Point) -> DiagramCoordinates:
        """Apply the pointer position to the active drag."""
        if not self.state.is_dragging:
            return self.coordinates

        zoom = self.viewport.zoom_level
        dx = (point[0] - self.state.start_position[0]) / zoom
        dy = (point[1] - self.state.start_position[1]) / zoom
        start = self.state.start_coordinates
        handle = self.state.drag_handle

        if handle == 'move':
            updated = self._translate(start, dx, dy)
        else:
            x1, y1, x2, y2 = start.x1, start.y1, start.x2, start.y2
            if 'l' in handle:
                x1 = self._snap(x1 + dx)
            else:
                x2 = self._snap(x2 + dx)
            if 't' in handle:
                y1 = self._snap(y1 + dy)
            else:
                y2 = self._snap(y2 + dy)
            updated = self._constrain_resize(start, x1, y1, x2, y2, handle)

        self.state.current_coordinates = updated
        self._notify()
        return updated

    def end_edit(self) -> DiagramCoordinates:
        """Finish the drag and return the edited box."""
        self.state.is_dragging = False
        self.state.drag_handle = None
        self.state.start_position = None
        self.state.start_coordinates = None
        self._notify()
        return self.coordinates

    def cancel_edit(self) -> DiagramCoordinates:
        """Discard changes and restore the original box."""
        self.state = EditState(current_coordinates=self.original.copy())
        self._notify()
        return self.coordinates

    def reset(self) -> DiagramCoordinates:
        return self.cancel_edit()

    @property
    def is_modified(self) -> bool:
        return self.coordinates.bounds() != self.original.bounds()

    # Numeric input

    def update_coordinates_from_input(self, **fields) -> DiagramCoordinates:
        """
        Set one or more of x1/y1/x2/y2 from numeric input.

        Applies the same snapping and constraints as drag updates.
        """
        current = self.coordinates
        values = {
            name: self._snap(float(fields.get(name, getattr(current, name))))
            for name in ('x1', 'y1', 'x2', 'y2')
        }
        updated = self.constrain_coordinates(current.copy(**values))
        self.state.current_coordinates = updated
        self._notify()
        return updated

    def set_coordinates(self, coordinates: DiagramCoordinates) -> None:
        """Replace the edited box without constraints (e.g. on reload)."""
        self.original = coordinates.copy()
        self.state = EditState(current_coordinates=coordinates.copy())
        self._notify()

    # Constraints

    def _snap(self, value: float) -> float:
        if not self.snap_to_grid or self.grid_size <= 0:
            return value
        return round(value / self.grid_size) * self.grid_size

    def _min_extent(self, limit: float) -> float:
        return min(self.min_size, limit)

    def _translate(self, start: DiagramCoordinates, dx: float, dy: float) -> DiagramCoordinates:
        width, height = start.width, start.height
        dims = self.image_dimensions
        x1 = self._snap(start.x1 + dx)
        y1 = self._snap(start.y1 + dy)
        x1 = min(max(x1, 0.0), max(0.0, dims.width - width))
        y1 = min(max(y1, 0.0), max(0.0, dims.height - height))
        return start.copy(x1=x1, y1=y1, x2=x1 + width, y2=y1 + height)

    def _constrain_resize(self, start, x1, y1, x2, y2, handle) -> DiagramCoordinates:
        """Clamp the dragged edges; the opposite corner never moves."""
        dims = self.image_dimensions
        min_w = self._min_extent(dims.width)
        min_h = self._min_extent(dims.height)

        if 'l' in handle:
            x1 = self._snap_down(min(max(x1, 0.0), start.x2 - min_w))
        else:
            x2 = self._snap_up(max(min(x2, float(dims.width)), start.x1 + min_w), dims.width)
        if 't' in handle:
            y1 = self._snap_down(min(max(y1, 0.0), start.y2 - min_h))
        else:
            y2 = self._snap_up(max(min(y2, float(dims.height)), start.y1 + min_h), dims.height)

        return self.constrain_coordinates(start.copy(x1=x1, y1=y1, x2=x2, y2=y2))

    # A clamped edge is moved outward to the next grid line so the box only grows
    def _snap_down(self, value: float) -> float:
        if not self.snap_to_grid or self.grid_size <= 0:
            return value
        return max(0.0, math.floor(value / self.grid_size) * self.grid_size)

    def _snap_up(self, value: float, limit: float) -> float:
        if not self.snap_to_grid or self.grid_size <= 0:
            return value
        return min(float(limit), math.ceil(value / self.grid_size) * self.grid_size)

    def constrain_coordinates(self, coords: DiagramCoordinates) -> DiagramCoordinates:
        """Clamp to the image and enforce the minimum size."""
        dims = self.image_dimensions
        x1, x2 = sorted((coords.x1, coords.x2))
        y1, y2 = sorted((coords.y1, coords.y2))

        x1, x2 = self._constrain_span(x1, x2, self._min_extent(dims.width), float(dims.width))
        y1, y2 = self._constrain_span(y1, y2, self._min_extent(dims.height), float(dims.height))
        return coords.copy(x1=x1, y1=y1, x2=x2, y2=y2)

    @staticmethod
    def _constrain_span(start: float, end: float, min_len: float, limit: float) -> Tuple[float, float]:
        start = min(max(start, 0.0), limit)
        end = min(max(end, 0.0), limit)
        if end - start < min_len:
            end = start + min_len
            if end > limit:
                end = limit
                start = limit - min_len
        return start, end

    @staticmethod
    def maintain_aspect_ratio(
        coords: DiagramCoordinates,
        aspect_ratio: float,
        handle: str = 'br'
    ) -> DiagramCoordinates:
        """Adjust height to ``aspect_ratio`` keeping the corner opposite ``handle`` fixed."""
        if aspect_ratio <= 0:
            return coords
        new_height = coords.width / aspect_ratio
        if handle in ('tl', 'tr'):
            return coords.copy(y1=coords.y2 - new_height)
        return coords.copy(y2=coords.y1 + new_height)

    # Commit

    def finalize(self) -> SanitizationResult:
        """Run the edited box through the manual-edit sanitization profile."""
        if self.state.is_dragging:
            self.end_edit()
        result = self.sanitizer.sanitize_for_manual_edit(self.coordinates, self.image_dimensions)
        if result.changes:
            logger.debug("Manual edit adjusted by sanitizer: %s", result.change_types)
        return result
