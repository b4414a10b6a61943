"""
Repository pattern for data access.

Provides clean separation between data access and business logic.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from data.db_models import (
    Document, PageImage, QuestionCoordinates, StoredDiagram, RenderCacheEntry
)


class DocumentRepository:
    """Repository for Document operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        filename: str,
        file_type: str,
        total_pages: int,
        document_id: Optional[str] = None
    ) -> Document:
        """Create a new document."""
        document = Document(
            filename=filename,
            file_type=file_type,
            total_pages=total_pages
        )
        if document_id:
            document.id = document_id
        self.session.add(document)
        self.session.commit()
        self.session.refresh(document)
        return document

    def get_by_id(self, document_id: str) -> Optional[Document]:
        """Get document by ID."""
        return self.session.query(Document).filter(
            Document.id == document_id
        ).first()

    def list_all(self, limit: int = 50, offset: int = 0) -> List[Document]:
        """List documents with pagination."""
        return self.session.query(Document)\
            .order_by(Document.created_at.desc())\
            .limit(limit)\
            .offset(offset)\
            .all()

    def delete(self, document_id: str) -> bool:
        """Delete a document."""
        document = self.get_by_id(document_id)
        if document:
            self.session.delete(document)
            self.session.commit()
            return True
        return False


class PageImageRepository:
    """Repository for PageImage operations."""

    def __init__(self, session: Session):
        self.session = session

    def upsert(
        self,
        key: str,
        document_id: str,
        page_number: int,
        image_base64: str,
        width: int,
        height: int,
        text_content: str = ""
    ) -> PageImage:
        """Create or replace the page image stored under ``key``."""
        page = self.get(key)
        if page is None:
            page = PageImage(id=key, document_id=document_id)
            self.session.add(page)
        page.page_number = page_number
        page.image_base64 = image_base64
        page.width = width
        page.height = height
        page.text_content = text_content
        self.session.commit()
        return page

    def get(self, key: str) -> Optional[PageImage]:
        """Get page image by key."""
        return self.session.get(PageImage, key)

    def get_by_document(self, document_id: str) -> List[PageImage]:
        """Get all page images for a document."""
        return self.session.query(PageImage)\
            .filter(PageImage.document_id == document_id)\
            .order_by(PageImage.page_number)\
            .all()


class QuestionCoordinatesRepository:
    """Repository for QuestionCoordinates and their diagrams."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, question_id: str) -> Optional[QuestionCoordinates]:
        """Get coordinate metadata row by question ID."""
        return self.session.get(QuestionCoordinates, question_id)

    def get_diagram(self, question_id: str, diagram_id: str) -> Optional[StoredDiagram]:
        """Get a single diagram of a question."""
        return self.session.query(StoredDiagram).filter(
            StoredDiagram.question_id == question_id,
            StoredDiagram.id == diagram_id
        ).first()

    def get_by_document(self, document_id: str) -> List[QuestionCoordinates]:
        """Get all questions for a document, in page order."""
        return self.session.query(QuestionCoordinates)\
            .filter(QuestionCoordinates.document_id == document_id)\
            .order_by(QuestionCoordinates.page_number, QuestionCoordinates.question_id)\
            .all()

    def delete(self, question_id: str) -> bool:
        """Delete a question; its diagrams go with it."""
        row = self.get(question_id)
        if row:
            self.session.delete(row)
            self.session.commit()
            return True
        return False


class RenderCacheRepository:
    """Repository for persisted diagram renders."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, cache_key: str) -> Optional[RenderCacheEntry]:
        """Get a cached render and bump its access time."""
        entry = self.session.get(RenderCacheEntry, cache_key)
        if entry is not None:
            entry.accessed_at = datetime.utcnow()
            self.session.commit()
        return entry

    def put(self, cache_key: str, payload: dict) -> RenderCacheEntry:
        """Create or overwrite a cached render."""
        entry = self.session.get(RenderCacheEntry, cache_key)
        if entry is None:
            entry = RenderCacheEntry(cache_key=cache_key, payload=payload)
            self.session.add(entry)
        else:
            entry.payload = payload
            entry.accessed_at = datetime.utcnow()
        self.session.commit()
        return entry

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete entries not accessed since ``cutoff``. Returns the count."""
        count = self.session.query(RenderCacheEntry)\
            .filter(RenderCacheEntry.accessed_at < cutoff)\
            .delete(synchronize_session=False)
        self.session.commit()
        return count
