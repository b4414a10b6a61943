"""
Unit tests for core.models module.
"""
import math

import pytest
from core.models import (
    CoordinateMetadata,
    DetectedQuestion,
    DiagramCoordinates,
    DiagramRecord,
    DiagramType,
    FileEntry,
    FileProcessingResult,
    FileStatus,
    ImageDimensions,
    InputFile,
    ProcessingSession,
    SessionProgress,
    SessionStatus,
)


class TestDiagramType:
    """Tests for DiagramType coercion."""

    @pytest.mark.parametrize("value,expected", [
        ("graph", DiagramType.GRAPH),
        (" Table ", DiagramType.TABLE),
        (DiagramType.MAP, DiagramType.MAP),
        ("pie chart", DiagramType.OTHER),
        (None, DiagramType.OTHER),
    ])
    def test_coerce(self, value, expected):
        assert DiagramType.coerce(value) == expected


class TestDiagramCoordinates:
    """Tests for DiagramCoordinates dataclass."""

    def test_geometry(self):
        box = DiagramCoordinates(100, 150, 300, 250)

        assert box.width == 200
        assert box.height == 100
        assert box.area == 20000
        assert box.aspect_ratio == 2.0
        assert box.center == (200, 200)

    def test_degenerate_box(self):
        box = DiagramCoordinates(300, 250, 100, 150)

        assert box.area == 0.0
        assert box.aspect_ratio == 0.0

    def test_type_string_coerced(self):
        assert DiagramCoordinates(0, 0, 1, 1, type="circuit").type == DiagramType.CIRCUIT

    def test_is_finite(self):
        assert DiagramCoordinates(0, 0, 10, 10).is_finite()
        assert not DiagramCoordinates(0, math.nan, 10, 10).is_finite()
        assert not DiagramCoordinates(0, 0, math.inf, 10).is_finite()
        assert not DiagramCoordinates(0, 0, "wide", 10).is_finite()

    def test_copy(self):
        box = DiagramCoordinates(0, 0, 10, 10, type="graph")

        moved = box.copy(x1=5)

        assert moved.x1 == 5
        assert moved.type == DiagramType.GRAPH
        assert box.x1 == 0

    def test_dict_conversion(self):
        box = DiagramCoordinates.from_dict({
            'x1': 1, 'y1': 2, 'x2': 3, 'y2': 4, 'diagram_type': 'map', 'description': None
        })

        assert box.type == DiagramType.MAP
        assert box.description == ""
        assert box.confidence == 1.0
        assert box.to_dict()['type'] == 'map'


class TestRecords:
    """Tests for DiagramRecord and CoordinateMetadata."""

    def test_from_coordinates(self):
        box = DiagramCoordinates(0, 0, 10, 10, confidence=0.7, type="table", description="prices")

        record = DiagramRecord.from_coordinates(box)

        assert record.id.startswith("diagram_")
        assert record.type == DiagramType.TABLE
        assert record.description == "prices"
        assert record.confidence == 0.7
        assert record.modified_by == "ai"

    def test_explicit_id(self):
        record = DiagramRecord.from_coordinates(DiagramCoordinates(0, 0, 1, 1), "user", record_id="d1")

        assert record.id == "d1"
        assert record.modified_by == "user"

    def test_get_diagram(self):
        record = DiagramRecord.from_coordinates(DiagramCoordinates(0, 0, 1, 1), record_id="d1")
        metadata = CoordinateMetadata("q1", 1, ImageDimensions(800, 600), [record])

        assert metadata.get_diagram("d1") is record
        assert metadata.get_diagram("d2") is None
        assert metadata.to_dict()['original_image_dimensions'] == {'width': 800, 'height': 600}


class TestResults:
    """Tests for processing result types."""

    def test_input_file_size(self):
        assert InputFile("a.pdf", b"12345").size == 5

    def test_diagram_count(self):
        result = FileProcessingResult(
            test_id="t",
            file_name="a.pdf",
            page_count=1,
            questions=[
                DetectedQuestion("q1", 1, diagrams=[DiagramCoordinates(0, 0, 1, 1)] * 2),
                DetectedQuestion("q2", 1),
            ]
        )

        assert result.diagram_count == 2
        assert result.to_dict()['questions'][1]['has_diagram'] is False


class TestSession:
    """Tests for session bookkeeping types."""

    def test_progress_update(self):
        progress = SessionProgress()

        progress.update(1, 3, "processing")

        assert progress.percentage == pytest.approx(33.33)
        assert progress.current_step == "processing"

    def test_progress_empty_session(self):
        progress = SessionProgress()
        progress.update(0, 0)

        assert progress.percentage == 100.0

    def test_terminal_statuses(self):
        assert FileStatus.CANCELLED.is_terminal
        assert not FileStatus.PROCESSING.is_terminal
        assert SessionStatus.FAILED.is_terminal
        assert not SessionStatus.PENDING.is_terminal

    def test_files_with_status(self):
        session = ProcessingSession(id="s1", files=[
            FileEntry("a.pdf", 10, status=FileStatus.COMPLETED),
            FileEntry("b.pdf", 10, status=FileStatus.FAILED),
        ])

        assert [f.name for f in session.files_with_status(FileStatus.FAILED)] == ["b.pdf"]
        assert session.to_dict()['files'][0]['status'] == "completed"
        assert session.to_dict()['end_time'] is None
