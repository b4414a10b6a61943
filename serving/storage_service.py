"""
Diagram Storage Service

Handles CRUD operations for documents, page images, question coordinate
metadata and persisted diagram renders.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Generator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config.logging_config import get_logger
from core.constants import PAGE_IMAGE_KEY_FORMAT
from core.exceptions import StorageError
from core.models import (
    CoordinateMetadata, DiagramCoordinates, DiagramRecord, DiagramType, ImageDimensions
)
from data.database import DatabaseManager
from data.db_models import Document, PageImage, QuestionCoordinates, StoredDiagram
from data.repositories import (
    DocumentRepository,
    PageImageRepository,
    QuestionCoordinatesRepository,
    RenderCacheRepository
)

logger = get_logger(__name__)


def page_image_key(test_id: str, page_number: int) -> str:
    """Key under which a page image is stored."""
    return PAGE_IMAGE_KEY_FORMAT.format(test_id=test_id, page_number=page_number)


class DiagramStorageService:
    """Service for storing and retrieving extracted diagram data."""

    def __init__(self, session: Session):
        """
        Initialize storage service.

        Args:
            session: SQLAlchemy database session
        """
        self.session = session
        self.documents = DocumentRepository(session)
        self.page_images = PageImageRepository(session)
        self.questions = QuestionCoordinatesRepository(session)
        self.render_cache = RenderCacheRepository(session)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def create_document(
        self,
        filename: str,
        file_type: str,
        total_pages: int,
        document_id: Optional[str] = None
    ) -> Document:
        """
        Create a new document entry.

        Args:
            filename: Original filename
            file_type: File type, usually 'pdf'
            total_pages: Total number of pages
            document_id: Optional explicit ID (the test ID)

        Returns:
            Created Document object
        """
        existing = self.documents.get_by_id(document_id) if document_id else None
        if existing is not None:
            existing.filename = filename
            existing.file_type = file_type
            existing.total_pages = total_pages
            self._commit("update document")
            return existing
        try:
            return self.documents.create(filename, file_type, total_pages, document_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise StorageError(f"Failed to create document: {e}") from e

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.documents.get_by_id(document_id)

    def list_documents(self, limit: int = 50, offset: int = 0) -> List[Document]:
        return self.documents.list_all(limit=limit, offset=offset)

    def delete_document(self, document_id: str) -> bool:
        """Delete a document with its page images and questions."""
        return self.documents.delete(document_id)

    # ------------------------------------------------------------------
    # Page images
    # ------------------------------------------------------------------

    def save_page_image(
        self,
        test_id: str,
        page_number: int,
        image_base64: str,
        width: int,
        height: int,
        text_content: str = ""
    ) -> str:
        """
        Store a rendered page image.

        Returns:
            The storage key, ``{test_id}_page_{page_number}``
        """
        key = page_image_key(test_id, page_number)
        try:
            self.page_images.upsert(
                key, test_id, page_number, image_base64, width, height, text_content
            )
        except SQLAlchemyError as e:
            self.session.rollback()
            raise StorageError(f"Failed to store page image {key}: {e}") from e
        return key

    def get_page_image(self, key: str) -> Optional[PageImage]:
        return self.page_images.get(key)

    # ------------------------------------------------------------------
    # Coordinate metadata
    # ------------------------------------------------------------------

    def save_coordinate_metadata(
        self,
        metadata: CoordinateMetadata,
        test_id: Optional[str] = None,
        question_text: str = ""
    ) -> CoordinateMetadata:
        """
        Store coordinate metadata for a question, replacing its diagrams.

        Args:
            metadata: Metadata to persist
            test_id: Owning document ID, if any
            question_text: Question text kept alongside the coordinates

        Returns:
            The metadata as stored
        """
        row = self.questions.get(metadata.question_id)
        if row is None:
            row = QuestionCoordinates(question_id=metadata.question_id)
            self.session.add(row)
        if test_id is not None:
            row.document_id = test_id
        row.page_number = metadata.page_number
        row.image_width = metadata.original_image_dimensions.width
        row.image_height = metadata.original_image_dimensions.height
        if question_text:
            row.question_text = question_text
        row.diagrams = [
            self._to_row(record, index) for index, record in enumerate(metadata.diagrams)
        ]
        self._commit(f"save coordinates for {metadata.question_id}")
        logger.debug(
            "Stored %d diagrams for question %s", len(metadata.diagrams), metadata.question_id
        )
        return self._to_metadata(row)

    def get_coordinate_metadata(self, question_id: str) -> Optional[CoordinateMetadata]:
        row = self.questions.get(question_id)
        return self._to_metadata(row) if row is not None else None

    def update_diagram_coordinates(
        self,
        question_id: str,
        diagram_id: str,
        coordinates: DiagramCoordinates,
        modified_by: str = 'user'
    ) -> Optional[DiagramRecord]:
        """
        Overwrite one diagram's box.

        Returns:
            The updated record, or None when the question or diagram is unknown
        """
        diagram = self.questions.get_diagram(question_id, diagram_id)
        if diagram is None:
            return None
        diagram.x1 = coordinates.x1
        diagram.y1 = coordinates.y1
        diagram.x2 = coordinates.x2
        diagram.y2 = coordinates.y2
        diagram.diagram_type = coordinates.type.value
        diagram.description = coordinates.description
        diagram.confidence = coordinates.confidence
        diagram.modified_by = modified_by
        diagram.last_modified = datetime.utcnow()
        self._commit(f"update diagram {diagram_id}")
        return self._to_record(diagram)

    def delete_coordinate_metadata(self, question_id: str) -> bool:
        return self.questions.delete(question_id)

    def list_by_test(self, test_id: str) -> List[CoordinateMetadata]:
        """All coordinate metadata stored for a test, in page order."""
        return [self._to_metadata(row) for row in self.questions.get_by_document(test_id)]

    # ------------------------------------------------------------------
    # Render cache
    # ------------------------------------------------------------------

    def get_render_cache(self, cache_key: str) -> Optional[Dict]:
        entry = self.render_cache.get(cache_key)
        return dict(entry.payload) if entry is not None else None

    def save_render_cache(self, cache_key: str, payload: Dict) -> None:
        try:
            self.render_cache.put(cache_key, payload)
        except SQLAlchemyError as e:
            self.session.rollback()
            raise StorageError(f"Failed to store render: {e}") from e

    # ------------------------------------------------------------------
    # Conversion helpers
    # ------------------------------------------------------------------

    def _commit(self, action: str):
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise StorageError(f"Failed to {action}: {e}") from e

    @staticmethod
    def _to_row(record: DiagramRecord, sequence_order: int) -> StoredDiagram:
        coords = record.coordinates
        return StoredDiagram(
            id=record.id,
            x1=coords.x1,
            y1=coords.y1,
            x2=coords.x2,
            y2=coords.y2,
            diagram_type=record.type.value,
            description=record.description,
            confidence=record.confidence,
            last_modified=record.last_modified,
            modified_by=record.modified_by,
            sequence_order=sequence_order
        )

    @staticmethod
    def _to_record(row: StoredDiagram) -> DiagramRecord:
        diagram_type = DiagramType.coerce(row.diagram_type)
        return DiagramRecord(
            id=row.id,
            coordinates=DiagramCoordinates(
                x1=row.x1,
                y1=row.y1,
                x2=row.x2,
                y2=row.y2,
                confidence=row.confidence,
                type=diagram_type,
                description=row.description or ""
            ),
            type=diagram_type,
            description=row.description or "",
            confidence=row.confidence,
            last_modified=row.last_modified or datetime.utcnow(),
            modified_by=row.modified_by
        )

    def _to_metadata(self, row: QuestionCoordinates) -> CoordinateMetadata:
        return CoordinateMetadata(
            question_id=row.question_id,
            page_number=row.page_number,
            original_image_dimensions=ImageDimensions(row.image_width, row.image_height),
            diagrams=[self._to_record(d) for d in row.diagrams]
        )


class ScopedDiagramStore:
    """
    Opens a fresh session per operation.

    Long-lived components (renderer, pipeline) hold this instead of a
    session so each call commits or rolls back on its own.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @contextmanager
    def scope(self) -> Generator[DiagramStorageService, None, None]:
        with self.db_manager.session() as session:
            yield DiagramStorageService(session)

    def get_render_cache(self, cache_key: str) -> Optional[Dict]:
        with self.scope() as storage:
            return storage.get_render_cache(cache_key)

    def save_render_cache(self, cache_key: str, payload: Dict) -> None:
        with self.scope() as storage:
            storage.save_render_cache(cache_key, payload)
