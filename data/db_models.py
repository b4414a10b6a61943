"""
Database models for diagram extraction storage.

Stores documents (tests), rendered page images, per-question coordinate
metadata with its diagrams, and cached diagram renders.
"""
import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Integer, Float, Text, DateTime, ForeignKey, JSON
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def generate_uuid():
    """Generate UUID string for primary keys."""
    return str(uuid.uuid4())


class Document(Base):
    """A processed test paper."""

    __tablename__ = 'documents'

    id = Column(String, primary_key=True, default=generate_uuid)
    filename = Column(String, nullable=False)
    file_type = Column(String, nullable=False, default='pdf')
    total_pages = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    page_images = relationship("PageImage", back_populates="document", cascade="all, delete-orphan")
    questions = relationship("QuestionCoordinates", back_populates="document", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Document(id={self.id}, filename={self.filename}, pages={self.total_pages})>"

    def to_dict(self):
        return {
            'id': self.id,
            'filename': self.filename,
            'file_type': self.file_type,
            'total_pages': self.total_pages,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class PageImage(Base):
    """Rendered page image, keyed ``{test_id}_page_{n}``."""

    __tablename__ = 'page_images'

    id = Column(String, primary_key=True)
    document_id = Column(String, ForeignKey('documents.id'), nullable=False)
    page_number = Column(Integer, nullable=False)
    image_base64 = Column(Text, nullable=False)
    width = Column(Integer, nullable=False)
    height = Column(Integer, nullable=False)
    text_content = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    document = relationship("Document", back_populates="page_images")

    def __repr__(self):
        return f"<PageImage(id={self.id}, size={self.width}x{self.height})>"


class QuestionCoordinates(Base):
    """Coordinate metadata for one question."""

    __tablename__ = 'question_coordinates'

    question_id = Column(String, primary_key=True)
    document_id = Column(String, ForeignKey('documents.id'), nullable=True)
    page_number = Column(Integer, nullable=False)
    image_width = Column(Integer, nullable=False)
    image_height = Column(Integer, nullable=False)
    question_text = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    document = relationship("Document", back_populates="questions")
    diagrams = relationship(
        "StoredDiagram",
        back_populates="question",
        cascade="all, delete-orphan",
        order_by="StoredDiagram.sequence_order"
    )

    def __repr__(self):
        return f"<QuestionCoordinates(question_id={self.question_id}, diagrams={len(self.diagrams)})>"


class StoredDiagram(Base):
    """One diagram box belonging to a question."""

    __tablename__ = 'diagram_records'

    id = Column(String, primary_key=True, default=generate_uuid)
    question_id = Column(String, ForeignKey('question_coordinates.question_id'), nullable=False)

    # Absolute pixel coordinates on the original page image
    x1 = Column(Float, nullable=False)
    y1 = Column(Float, nullable=False)
    x2 = Column(Float, nullable=False)
    y2 = Column(Float, nullable=False)

    diagram_type = Column(String, nullable=False, default='other')
    description = Column(Text, default='')
    confidence = Column(Float, nullable=False, default=1.0)
    last_modified = Column(DateTime, default=datetime.utcnow)
    modified_by = Column(String, nullable=False, default='ai')  # 'ai' or 'user'
    sequence_order = Column(Integer, default=0)

    question = relationship("QuestionCoordinates", back_populates="diagrams")

    def __repr__(self):
        return (
            f"<StoredDiagram(id={self.id}, type={self.diagram_type}, "
            f"bbox=({self.x1},{self.y1})-({self.x2},{self.y2}))>"
        )

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            'id': self.id,
            'question_id': self.question_id,
            'coordinates': {
                'x1': self.x1,
                'y1': self.y1,
                'x2': self.x2,
                'y2': self.y2
            },
            'type': self.diagram_type,
            'description': self.description,
            'confidence': self.confidence,
            'last_modified': self.last_modified.isoformat() if self.last_modified else None,
            'modified_by': self.modified_by
        }


class RenderCacheEntry(Base):
    """Persisted diagram render, keyed by render cache key."""

    __tablename__ = 'render_cache'

    cache_key = Column(String, primary_key=True)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    accessed_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<RenderCacheEntry(key={self.cache_key[:40]}...)>"
