"""
Core domain models for the diagram extraction workflow.

These are pure data structures without business logic. Geometry lives in
image pixel space with the origin at the top-left corner.
"""
import json
import math
import uuid
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class DiagramType(str, Enum):
    """Kinds of diagrams the detection API reports."""
    GRAPH = "graph"
    FLOWCHART = "flowchart"
    SCIENTIFIC = "scientific"
    GEOMETRIC = "geometric"
    TABLE = "table"
    CIRCUIT = "circuit"
    MAP = "map"
    OTHER = "other"

    @classmethod
    def coerce(cls, value) -> "DiagramType":
        """Map arbitrary input to a DiagramType, defaulting to OTHER."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


@dataclass
class DiagramCoordinates:
    """Axis-aligned bounding box of a diagram on a page image."""
    x1: float
    y1: float
    x2: float
    y2: float
    confidence: float = 1.0
    type: DiagramType = DiagramType.OTHER
    description: str = ""

    def __post_init__(self):
        self.type = DiagramType.coerce(self.type)

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    @property
    def aspect_ratio(self) -> float:
        """Width divided by height, 0.0 for degenerate boxes."""
        if self.height <= 0:
            return 0.0
        return self.width / self.height

    @property
    def center(self) -> Tuple[float, float]:
        return ((self.x1 + self.x2) / 2, (self.y1 + self.y2) / 2)

    def is_finite(self) -> bool:
        """True when every numeric field is a finite number."""
        try:
            return all(
                math.isfinite(float(v))
                for v in (self.x1, self.y1, self.x2, self.y2, self.confidence)
            )
        except (TypeError, ValueError):
            return False

    def copy(self, **changes) -> "DiagramCoordinates":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    def bounds(self) -> Dict[str, float]:
        """Only the corner coordinates."""
        return {'x1': self.x1, 'y1': self.y1, 'x2': self.x2, 'y2': self.y2}

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'x1': self.x1,
            'y1': self.y1,
            'x2': self.x2,
            'y2': self.y2,
            'confidence': self.confidence,
            'type': self.type.value,
            'description': self.description
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DiagramCoordinates":
        """Build from a dictionary; missing optional fields take defaults."""
        return cls(
            x1=data['x1'],
            y1=data['y1'],
            x2=data['x2'],
            y2=data['y2'],
            confidence=data.get('confidence', 1.0),
            type=data.get('type', data.get('diagram_type', DiagramType.OTHER)),
            description=data.get('description', '') or ''
        )


@dataclass(frozen=True)
class ImageDimensions:
    """Pixel size of a page image."""
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    def to_dict(self) -> dict:
        return {'width': self.width, 'height': self.height}

    @classmethod
    def from_dict(cls, data: dict) -> "ImageDimensions":
        return cls(width=int(data['width']), height=int(data['height']))


@dataclass
class ValidationResult:
    """Outcome of validating one box or a list of boxes."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    sanitized_coordinates: Optional[DiagramCoordinates] = None

    def to_dict(self) -> dict:
        return {
            'is_valid': self.is_valid,
            'errors': list(self.errors),
            'sanitized_coordinates': (
                self.sanitized_coordinates.to_dict()
                if self.sanitized_coordinates else None
            )
        }


@dataclass
class SanitizationChange:
    """A single repair applied by the sanitizer."""
    type: str  # bounds | size | aspect | type | grid | confidence
    description: str
    before: Dict[str, Any]
    after: Dict[str, Any]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SanitizationResult:
    """Sanitized box plus the audit trail of repairs."""
    sanitized: DiagramCoordinates
    changes: List[SanitizationChange] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def change_types(self) -> List[str]:
        return [c.type for c in self.changes]

    @property
    def modified(self) -> bool:
        return bool(self.changes)

    def to_dict(self) -> dict:
        return {
            'sanitized': self.sanitized.to_dict(),
            'changes': [c.to_dict() for c in self.changes],
            'warnings': list(self.warnings)
        }


@dataclass
class DiagramRecord:
    """A stored diagram belonging to a question."""
    id: str
    coordinates: DiagramCoordinates
    type: DiagramType
    description: str
    confidence: float
    last_modified: datetime = field(default_factory=datetime.now)
    modified_by: str = "ai"  # 'ai' or 'user'

    @classmethod
    def from_coordinates(
        cls,
        coordinates: DiagramCoordinates,
        modified_by: str = "ai",
        record_id: Optional[str] = None
    ) -> "DiagramRecord":
        """Wrap coordinates into a record, mirroring type/description/confidence."""
        return cls(
            id=record_id or f"diagram_{uuid.uuid4().hex[:12]}",
            coordinates=coordinates,
            type=coordinates.type,
            description=coordinates.description,
            confidence=coordinates.confidence,
            modified_by=modified_by
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'coordinates': self.coordinates.to_dict(),
            'type': self.type.value,
            'description': self.description,
            'confidence': self.confidence,
            'last_modified': self.last_modified.isoformat(),
            'modified_by': self.modified_by
        }


@dataclass
class CoordinateMetadata:
    """All diagrams detected for one question, with the page size they refer to."""
    question_id: str
    page_number: int
    original_image_dimensions: ImageDimensions
    diagrams: List[DiagramRecord] = field(default_factory=list)

    def get_diagram(self, diagram_id: str) -> Optional[DiagramRecord]:
        for record in self.diagrams:
            if record.id == diagram_id:
                return record
        return None

    def to_dict(self) -> dict:
        return {
            'question_id': self.question_id,
            'page_number': self.page_number,
            'original_image_dimensions': self.original_image_dimensions.to_dict(),
            'diagrams': [d.to_dict() for d in self.diagrams]
        }


class FileStatus(str, Enum):
    """Lifecycle of one file inside a session."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (FileStatus.COMPLETED, FileStatus.FAILED, FileStatus.CANCELLED)


class SessionStatus(str, Enum):
    """Lifecycle of a processing session."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)


@dataclass
class InputFile:
    """A file submitted for processing."""
    name: str
    content: bytes
    mime_type: str = "application/pdf"

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class PageContent:
    """Text and rendered image of one page."""
    page_number: int
    text: str = ""
    has_images: bool = False
    confidence: float = 1.0
    image_base64: str = ""
    width: int = 0
    height: int = 0

    @property
    def dimensions(self) -> ImageDimensions:
        return ImageDimensions(self.width, self.height)

    def to_dict(self) -> dict:
        return {
            'page_number': self.page_number,
            'text': self.text,
            'has_images': self.has_images,
            'confidence': self.confidence,
            'width': self.width,
            'height': self.height
        }


@dataclass
class PageExtractionResult:
    """Output of the page extraction layer for one file."""
    text: str
    page_count: int
    pages: List[PageContent] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DetectedQuestion:
    """A question found on a page, with the diagrams attached to it."""
    id: str
    page_number: int
    text: str = ""
    confidence: float = 1.0
    diagrams: List[DiagramCoordinates] = field(default_factory=list)

    @property
    def has_diagram(self) -> bool:
        return bool(self.diagrams)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'page_number': self.page_number,
            'text': self.text,
            'confidence': self.confidence,
            'has_diagram': self.has_diagram,
            'diagrams': [d.to_dict() for d in self.diagrams]
        }


@dataclass
class FileProcessingResult:
    """Per-file output of the extraction pipeline."""
    test_id: str
    file_name: str
    page_count: int
    questions: List[DetectedQuestion] = field(default_factory=list)
    coordinate_metadata: List[CoordinateMetadata] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    processing_time: float = 0.0

    @property
    def diagram_count(self) -> int:
        return sum(len(q.diagrams) for q in self.questions)

    def to_dict(self) -> dict:
        return {
            'test_id': self.test_id,
            'file_name': self.file_name,
            'page_count': self.page_count,
            'questions': [q.to_dict() for q in self.questions],
            'coordinate_metadata': [m.to_dict() for m in self.coordinate_metadata],
            'warnings': list(self.warnings),
            'processing_time': self.processing_time,
            'diagram_count': self.diagram_count
        }


@dataclass
class FileEntry:
    """Status of one file inside a session."""
    name: str
    size: int
    mime_type: str = "application/pdf"
    status: FileStatus = FileStatus.PENDING
    result: Optional[FileProcessingResult] = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'size': self.size,
            'status': self.status.value,
            'error': self.error,
            'attempts': self.attempts,
            'result': self.result.to_dict() if self.result else None
        }


@dataclass
class SessionProgress:
    """Completed / total files of a session."""
    current_step: str = "pending"
    completed_steps: int = 0
    total_steps: int = 0
    percentage: float = 0.0

    def update(self, completed: int, total: int, current_step: Optional[str] = None):
        self.completed_steps = completed
        self.total_steps = total
        self.percentage = round(completed / total * 100, 2) if total else 100.0
        if current_step is not None:
            self.current_step = current_step

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProcessingSession:
    """A batch of files moving through the extraction pipeline."""
    id: str
    files: List[FileEntry] = field(default_factory=list)
    progress: SessionProgress = field(default_factory=SessionProgress)
    status: SessionStatus = SessionStatus.PENDING
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def files_with_status(self, status: FileStatus) -> List[FileEntry]:
        return [f for f in self.files if f.status == status]

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'status': self.status.value,
            'progress': self.progress.to_dict(),
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'files': [f.to_dict() for f in self.files],
            'errors': list(self.errors),
            'warnings': list(self.warnings)
        }


@dataclass
class OrchestrationResult:
    """Aggregated outcome of a finished session."""
    session_id: str
    success: bool
    results: List[FileProcessingResult] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'success': self.success,
            'results': [r.to_dict() for r in self.results],
            'summary': dict(self.summary),
            'errors': list(self.errors),
            'warnings': list(self.warnings)
        }


class ErrorCategory(str, Enum):
    """Broad error families, each with its own recovery strategies."""
    NETWORK = "network"
    FILE = "file"
    PROCESSING = "processing"
    VALIDATION = "validation"
    MEMORY = "memory"
    SECURITY = "security"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorClassification:
    """Result of classifying an error code, status or message."""
    code: str
    category: ErrorCategory
    severity: ErrorSeverity
    recoverable: bool
    user_message: str = ""

    def to_dict(self) -> dict:
        return {
            'code': self.code,
            'category': self.category.value,
            'severity': self.severity.value,
            'recoverable': self.recoverable,
            'user_message': self.user_message
        }


@dataclass
class RecoveryStep:
    """One strategy tried during a recovery."""
    method: str
    success: bool
    timestamp: float
    details: Optional[str] = None


@dataclass
class RecoveryAttempt:
    """Record of a recovery run through a category's strategy chain."""
    category: str
    error: str
    attempts: List[RecoveryStep] = field(default_factory=list)
    duration: float = 0.0
    final_method: Optional[str] = None
    result: Any = None

    @property
    def success(self) -> bool:
        return self.final_method is not None

    def to_dict(self) -> dict:
        return {
            'category': self.category,
            'error': self.error,
            'attempts': [asdict(a) for a in self.attempts],
            'duration': self.duration,
            'final_method': self.final_method,
            'success': self.success
        }


@dataclass
class MemoryAllocation:
    """A tracked buffer allocation."""
    id: str
    size: int
    type: str
    timestamp: float
    can_cleanup: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RenderOptions:
    """Output settings for a rendered diagram crop."""
    quality: float = 0.9
    format: str = "png"  # png | jpeg | webp
    background_color: str = "#ffffff"
    padding: int = 0
    max_width: Optional[int] = None
    max_height: Optional[int] = None
    maintain_aspect_ratio: bool = True
    enable_smoothing: bool = True

    def cache_key(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)


@dataclass
class RenderedDiagram:
    """A cropped, encoded diagram ready for display."""
    id: str
    coordinates: DiagramCoordinates
    image_data: str  # data URL
    dimensions: ImageDimensions
    scale: float
    render_time: float  # milliseconds

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'coordinates': self.coordinates.to_dict(),
            'image_data': self.image_data,
            'dimensions': self.dimensions.to_dict(),
            'scale': self.scale,
            'render_time': self.render_time
        }


@dataclass
class DiagramOverlay:
    """Percent-positioned highlight box over a displayed page image."""
    left: float
    top: float
    width: float
    height: float
    diagram_type: DiagramType
    confidence: float
    class_name: str = "diagram-overlay"

    def style(self) -> Dict[str, str]:
        return {
            'position': 'absolute',
            'left': f"{self.left:.4f}%",
            'top': f"{self.top:.4f}%",
            'width': f"{self.width:.4f}%",
            'height': f"{self.height:.4f}%",
        }

    def attributes(self) -> Dict[str, str]:
        return {
            'class': self.class_name,
            'data-diagram-type': self.diagram_type.value,
            'data-confidence': f"{self.confidence:.2f}",
        }

    def to_html(self) -> str:
        style = "; ".join(f"{k}: {v}" for k, v in self.style().items())
        attrs = " ".join(f'{k}="{v}"' for k, v in self.attributes().items())
        return f'<div {attrs} style="{style}"></div>'
