"""
Unit tests for geometry.validator module.
"""
import pytest

from core.models import DiagramCoordinates, DiagramType, ImageDimensions
from geometry.validator import CoordinateTransform, CoordinateValidator, ValidationRules


@pytest.fixture
def validator():
    return CoordinateValidator()


@pytest.fixture
def dims():
    return ImageDimensions(800, 600)


def box(x1, y1, x2, y2, **kwargs):
    return DiagramCoordinates(x1=x1, y1=y1, x2=x2, y2=y2, **kwargs)


class TestValidate:
    """Tests for single box validation."""

    def test_valid_box(self, validator, dims):
        """Test a box well inside the image."""
        result = validator.validate(box(100, 150, 300, 250), dims)

        assert result.is_valid
        assert result.errors == []

    def test_box_touching_image_edges_is_valid(self, validator, dims):
        result = validator.validate(box(0, 0, 800, 600), dims)

        assert result.is_valid

    def test_non_numeric_short_circuits(self, validator, dims):
        """Test that non-finite values report a single error."""
        result = validator.validate(box(float('nan'), 0, 100, 100), dims)

        assert not result.is_valid
        assert result.errors == ["Coordinates must be valid numbers"]

    def test_inverted_box(self, validator, dims):
        result = validator.validate(box(300, 150, 100, 250), dims)

        assert not result.is_valid
        assert "x2 must be greater than x1" in result.errors

    def test_negative_origin(self, validator, dims):
        result = validator.validate(box(-10, 0, 100, 100), dims)

        assert "Coordinates are outside image boundaries" in result.errors
        assert "x1 cannot be negative" in result.errors

    def test_exceeds_width(self, validator, dims):
        result = validator.validate(box(100, 100, 900, 200), dims)

        assert "x2 exceeds image width (800)" in result.errors
        assert not any("height" in e and "exceeds" in e for e in result.errors)

    def test_below_minimum_size(self, validator, dims):
        result = validator.validate(box(0, 0, 5, 5), dims)

        assert result.errors == ["Diagram must be at least 10px in width and height"]

    def test_custom_minimum_size(self, validator, dims):
        result = validator.validate(box(0, 0, 5, 5), dims, min_size=2)

        assert result.is_valid

    def test_confidence_out_of_range(self, validator, dims):
        result = validator.validate(box(100, 100, 200, 200, confidence=1.5), dims)

        assert result.errors == ["Confidence must be between 0 and 1"]


class TestValidateArray:
    """Tests for validating several boxes on one page."""

    def test_overlap_reported_with_iou(self, validator, dims):
        """Test overlapping boxes produce an IoU percentage."""
        coords = [box(100, 150, 300, 250), box(200, 200, 400, 350)]

        result = validator.validate_array(coords, dims)

        assert not result.is_valid
        assert result.errors == ["Coordinates 0 and 1 overlap by 11.1%"]

    def test_allow_overlap(self, validator, dims):
        coords = [box(100, 150, 300, 250), box(200, 200, 400, 350)]

        result = validator.validate_array(coords, dims, allow_overlap=True)

        assert result.is_valid

    def test_touching_edges_do_not_overlap(self, validator, dims):
        coords = [box(0, 0, 100, 100), box(100, 0, 200, 100)]

        assert validator.validate_array(coords, dims).is_valid

    def test_item_errors_are_prefixed(self, validator, dims):
        coords = [box(0, 0, 100, 100), box(300, 0, 200, 100)]

        result = validator.validate_array(coords, dims)

        assert "Coordinate 1: x2 must be greater than x1" in result.errors
        assert not any(e.startswith("Coordinate 0") for e in result.errors)

    def test_invalid_items_skip_overlap_check(self, validator, dims):
        coords = [box(0, 0, 100, 100), box(50, 50, 900, 150)]

        result = validator.validate_array(coords, dims)

        assert not any("overlap" in e for e in result.errors)

    def test_empty_list_is_valid(self, validator, dims):
        assert validator.validate_array([], dims).is_valid


class TestGeometryHelpers:
    """Tests for overlap, merge and transform helpers."""

    def test_intersection_and_overlap(self, validator):
        a, b = box(0, 0, 100, 100), box(50, 50, 150, 150)

        assert validator.intersection_area(a, b) == 2500
        assert validator.overlap_percentage(a, b) == pytest.approx(2500 / 17500 * 100)

    def test_disjoint_overlap_is_zero(self, validator):
        assert validator.overlap_percentage(box(0, 0, 10, 10), box(20, 20, 30, 30)) == 0.0

    def test_merge_keeps_confident_label(self, validator):
        a = box(0, 0, 100, 100, confidence=0.9, type='graph', description='Graph')
        b = box(50, 50, 150, 150, confidence=0.5, type='table')

        merged = validator.merge(a, b)

        assert merged.bounds() == {'x1': 0, 'y1': 0, 'x2': 150, 'y2': 150}
        assert merged.type == DiagramType.GRAPH
        assert merged.confidence == 0.9

    def test_merge_overlapping(self, validator):
        coords = [box(0, 0, 100, 100), box(50, 50, 150, 150), box(400, 400, 500, 500)]

        merged = validator.merge_overlapping(coords)

        assert len(merged) == 2
        assert merged[0].bounds() == {'x1': 0, 'y1': 0, 'x2': 150, 'y2': 150}

    def test_scale_transform(self, validator):
        transform = validator.create_scale_transform(ImageDimensions(800, 600), ImageDimensions(400, 300))

        scaled = validator.transform(box(100, 100, 200, 200), transform)

        assert scaled.bounds() == {'x1': 50, 'y1': 50, 'x2': 100, 'y2': 100}

    def test_transform_with_offset(self, validator):
        transform = CoordinateTransform(scale_x=2, scale_y=2, offset_x=10, offset_y=5)

        moved = validator.transform(box(0, 0, 10, 10), transform)

        assert moved.bounds() == {'x1': 10, 'y1': 5, 'x2': 30, 'y2': 25}

    def test_viewport_round_trip(self, validator):
        original = box(100, 120, 300, 260)

        shown = validator.to_viewport(original, 2.0, (10, 20))
        back = validator.from_viewport(shown, 2.0, (10, 20))

        assert shown.x1 == 210
        assert back.bounds() == pytest.approx(original.bounds())

    def test_default_coordinates(self, validator, dims):
        default = validator.create_default_coordinates(dims)

        assert default.bounds() == {'x1': 310, 'y1': 210, 'x2': 490, 'y2': 390}
        assert default.description == "Manual selection"

    def test_is_reasonable_size(self, validator, dims):
        assert validator.is_reasonable_size(box(100, 100, 300, 300), dims)
        assert not validator.is_reasonable_size(box(0, 0, 10, 10), dims)
        assert not validator.is_reasonable_size(box(0, 0, 800, 600), dims)


class TestRules:
    """Tests for rule-based validation."""

    def test_custom_rules(self, validator, dims):
        rules = ValidationRules(min_width=200, allowed_types=['table'], min_confidence=0.5)

        result = validator.validate_with_rules(box(0, 0, 100, 100, confidence=0.3), dims, rules)

        assert "Width 100px is below minimum 200px" in result.errors
        assert "Diagram type 'other' is not allowed" in result.errors
        assert "Confidence 0.30 is below minimum 0.5" in result.errors

    def test_type_rules_for_table(self, validator, dims):
        """Test that a tall table fails the built-in table aspect rule."""
        table = box(100, 100, 300, 400, type='table', confidence=0.9)

        result = validator.validate_for_type(table, dims)

        assert not result.is_valid
        assert any(e.startswith("Aspect ratio 0.67") for e in result.errors)

    def test_type_rules_pass_for_wide_graph(self, validator, dims):
        graph = box(100, 100, 400, 300, type='graph', confidence=0.9)

        assert validator.validate_for_type(graph, dims).is_valid

    def test_batch_validate_summary(self, validator, dims):
        coords = [box(0, 0, 100, 100), box(0, 0, 5, 5), box(10, 10, 15, 15)]

        report = validator.batch_validate(coords, dims)

        assert report['summary']['total_valid'] == 1
        assert report['summary']['total_invalid'] == 2
        assert report['summary']['common_errors'] == [
            "Diagram must be at least 10px in width and height"
        ]
