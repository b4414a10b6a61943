"""
Unit tests for geometry.editor module.
"""
import pytest

from core.models import DiagramCoordinates, ImageDimensions
from geometry.editor import CoordinateEditor, EditorViewport


@pytest.fixture
def editor():
    coords = DiagramCoordinates(x1=100, y1=150, x2=300, y2=250, confidence=0.8, type='graph')
    return CoordinateEditor(coords, ImageDimensions(800, 600))


class TestHitTesting:
    """Tests for handle detection and cursor hints."""

    def test_corner_handles(self, editor):
        assert editor.get_handle_at_position((100, 150)) == 'tl'
        assert editor.get_handle_at_position((303, 148)) == 'tr'
        assert editor.get_handle_at_position((100, 250)) == 'bl'
        assert editor.get_handle_at_position((300, 250)) == 'br'

    def test_inside_and_outside(self, editor):
        assert editor.get_handle_at_position((200, 200)) == 'move'
        assert editor.get_handle_at_position((500, 500)) is None

    def test_cursor_styles(self, editor):
        assert editor.get_cursor_style((100, 150)) == 'nw-resize'
        assert editor.get_cursor_style((300, 150)) == 'ne-resize'
        assert editor.get_cursor_style((100, 250)) == 'sw-resize'
        assert editor.get_cursor_style((300, 250)) == 'se-resize'
        assert editor.get_cursor_style((200, 200)) == 'move'
        assert editor.get_cursor_style((700, 10)) == 'default'

    def test_grabbing_while_moving(self, editor):
        editor.start_edit((200, 200))

        assert editor.get_cursor_style() == 'grabbing'

    def test_handles_follow_zoom(self, editor):
        editor.set_viewport(zoom_level=2.0, pan_offset=(10, 10))

        assert editor.get_handle_at_position((210, 310)) == 'tl'
        assert editor.get_handle_at_position((100, 150)) is None

    def test_zoom_must_be_positive(self, editor):
        with pytest.raises(ValueError):
            editor.set_viewport(zoom_level=0)


class TestDragging:
    """Tests for the drag lifecycle."""

    def test_resize_top_left(self, editor):
        assert editor.start_edit((100, 150))
        updated = editor.update_edit((110, 160))

        assert updated.bounds() == {'x1': 110, 'y1': 160, 'x2': 300, 'y2': 250}

    def test_resize_keeps_opposite_corner_and_min_size(self, editor):
        editor.start_edit((300, 250))
        updated = editor.update_edit((0, 0))

        assert updated.x1 == 100
        assert updated.y1 == 150
        assert updated.width == 10
        assert updated.height == 10

    def test_move_is_clamped_to_image(self, editor):
        editor.start_edit((200, 200))
        updated = editor.update_edit((900, 200))

        assert updated.bounds() == {'x1': 600, 'y1': 150, 'x2': 800, 'y2': 250}

    def test_drag_deltas_scale_with_zoom(self):
        coords = DiagramCoordinates(x1=100, y1=150, x2=300, y2=250)
        editor = CoordinateEditor(
            coords, ImageDimensions(800, 600), viewport=EditorViewport(zoom_level=2.0)
        )

        editor.start_edit((200, 300))
        updated = editor.update_edit((220, 300))

        assert updated.x1 == 110

    def test_start_outside_box_does_nothing(self, editor):
        assert not editor.start_edit((700, 10))
        assert not editor.state.is_dragging

    def test_update_without_drag_is_noop(self, editor):
        before = editor.coordinates

        assert editor.update_edit((10, 10)) == before

    def test_end_and_cancel(self, editor):
        editor.start_edit((100, 150))
        editor.update_edit((120, 170))
        ended = editor.end_edit()

        assert not editor.state.is_dragging
        assert ended.x1 == 120
        assert editor.is_modified

        restored = editor.cancel_edit()

        assert restored.x1 == 100
        assert not editor.is_modified

    def test_snap_to_grid(self):
        coords = DiagramCoordinates(x1=100, y1=150, x2=300, y2=250)
        editor = CoordinateEditor(coords, ImageDimensions(800, 600), snap_to_grid=True)

        editor.start_edit((100, 150))
        updated = editor.update_edit((113, 157))

        assert updated.x1 == 110
        assert updated.y1 == 160

    def test_snapped_resize_past_min_size_stays_on_grid(self):
        coords = DiagramCoordinates(x1=100, y1=150, x2=300, y2=250)
        editor = CoordinateEditor(
            coords, ImageDimensions(800, 600), min_size=12, snap_to_grid=True
        )

        editor.start_edit((100, 150))
        shrunk_from_top_left = editor.update_edit((400, 400))
        editor.cancel_edit()
        editor.start_edit((300, 250))
        shrunk_from_bottom_right = editor.update_edit((0, 0))

        assert shrunk_from_top_left.bounds() == {'x1': 280, 'y1': 230, 'x2': 300, 'y2': 250}
        assert shrunk_from_bottom_right.bounds() == {'x1': 100, 'y1': 150, 'x2': 120, 'y2': 170}
        for updated in (shrunk_from_top_left, shrunk_from_bottom_right):
            assert all(value % 10 == 0 for value in updated.bounds().values())
            assert updated.width >= 12
            assert updated.height >= 12

    def test_subscribers_notified(self, editor):
        states = []
        unsubscribe = editor.subscribe(lambda state: states.append(state.is_dragging))

        editor.start_edit((200, 200))
        editor.end_edit()
        unsubscribe()
        editor.start_edit((200, 200))

        assert states == [True, False]


class TestNumericInput:
    """Tests for numeric updates and finalization."""

    def test_input_is_clamped(self, editor):
        updated = editor.update_coordinates_from_input(x1=-50, x2=1000)

        assert updated.x1 == 0
        assert updated.x2 == 800
        assert updated.y1 == 150

    def test_inverted_input_reordered(self, editor):
        updated = editor.update_coordinates_from_input(x1=400)

        assert updated.x1 == 300
        assert updated.x2 == 400

    def test_maintain_aspect_ratio(self):
        coords = DiagramCoordinates(x1=0, y1=0, x2=200, y2=50)

        bottom = CoordinateEditor.maintain_aspect_ratio(coords, 2.0, handle='br')
        top = CoordinateEditor.maintain_aspect_ratio(coords, 2.0, handle='tl')

        assert bottom.y2 == 100
        assert top.y1 == -50

    def test_finalize_uses_manual_edit_profile(self, editor):
        editor.update_coordinates_from_input(x1=101, y1=152)

        result = editor.finalize()

        assert result.sanitized.x1 == 100
        assert result.sanitized.y1 == 150
        assert result.sanitized.confidence == pytest.approx(0.9)
        assert 'grid' in result.change_types
