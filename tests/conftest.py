"""
Pytest configuration and global fixtures.
"""
import base64
import json
import sys
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image, ImageDraw
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.models import ImageDimensions, PageContent, PageExtractionResult
from data.database import DatabaseManager
from data.db_models import Base
from services.detection_service import DiagramDetectionService
from services.error_handler import ErrorHandler
from services.memory_manager import MemoryManager
from services.recovery_manager import RecoveryManager
from services.retry import RetryPolicy


@pytest.fixture
def test_db_engine():
    """Create in-memory SQLite engine for tests."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={'check_same_thread': False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def test_db_session(test_db_engine):
    """Create fresh database session for each test."""
    Session = sessionmaker(bind=test_db_engine)
    session = Session()

    yield session

    # Rollback any uncommitted changes and close
    session.rollback()
    session.close()


@pytest.fixture
def db_manager():
    """DatabaseManager over a private in-memory database."""
    manager = DatabaseManager("sqlite://")
    manager.create_tables()
    return manager


@pytest.fixture
def temp_dir(tmp_path):
    """Provide temporary directory for test files."""
    return tmp_path


@pytest.fixture
def sample_image_path(temp_dir):
    """Create a sample test image."""
    img_path = temp_dir / "test_image.png"
    img = Image.new('RGB', (800, 600), color='white')
    img.save(img_path)

    return str(img_path)


@pytest.fixture
def sample_base64_image():
    """Provide base64 encoded sample image."""
    img = Image.new('RGB', (100, 100), color='blue')
    buf = BytesIO()
    img.save(buf, format='PNG')
    return base64.b64encode(buf.getvalue()).decode()


def make_page_image(width: int = 800, height: int = 600) -> Image.Image:
    """White page with a black rectangle standing in for a diagram."""
    img = Image.new('RGB', (width, height), color='white')
    draw = ImageDraw.Draw(img)
    draw.rectangle([100, 150, 300, 250], outline='black', fill='gray')
    return img


def image_to_b64(img: Image.Image) -> str:
    buf = BytesIO()
    img.save(buf, format='PNG')
    return base64.b64encode(buf.getvalue()).decode()


@pytest.fixture
def page_image():
    """800x600 page image."""
    return make_page_image()


@pytest.fixture
def page_image_base64(page_image):
    """Base64 PNG of the 800x600 page image."""
    return image_to_b64(page_image)


@pytest.fixture
def page_dims():
    return ImageDimensions(800, 600)


@pytest.fixture
def sample_pdf_bytes():
    """Two-page PDF with a line of text and a drawn rectangle per page."""
    import fitz

    doc = fitz.open()
    for number in (1, 2):
        page = doc.new_page(width=595, height=842)
        page.insert_text((72, 72), f"{number}. Study the figure below.")
        page.draw_rect(fitz.Rect(100, 150, 300, 250), color=(0, 0, 0))
    data = doc.tobytes()
    doc.close()
    return data


# ----------------------------------------------------------------------
# Fake collaborators
# ----------------------------------------------------------------------

class FakeExtractor:
    """
    PageExtractor returning fixed 800x600 pages.

    ``failures`` is a list of exceptions raised by successive calls before
    extraction starts succeeding.
    """

    def __init__(self, pages: int = 1, failures=None, delay: float = 0.0, text: str = "1. Question"):
        self.pages = pages
        self.failures = list(failures or [])
        self.delay = delay
        self.text = text
        self.calls = 0
        self._image_b64 = image_to_b64(make_page_image())

    async def extract(self, content: bytes, file_name: str = "") -> PageExtractionResult:
        import asyncio

        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        pages = [
            PageContent(
                page_number=n,
                text=self.text,
                has_images=True,
                image_base64=self._image_b64,
                width=800,
                height=600
            )
            for n in range(1, self.pages + 1)
        ]
        return PageExtractionResult(
            text="\n\n".join(p.text for p in pages),
            page_count=len(pages),
            pages=pages,
            metadata={'file_name': file_name}
        )


DEFAULT_DETECTION = {
    'questions': [
        {'id': '1', 'text': 'Study the figure below.', 'confidence': 0.9, 'diagram_indices': [0]}
    ],
    'diagrams': [
        {
            'coordinates': {'x1': 100, 'y1': 150, 'x2': 300, 'y2': 250},
            'type': 'graph',
            'confidence': 0.85,
            'description': 'Line graph'
        }
    ]
}


class FakeDetector(DiagramDetectionService):
    """
    Detection service answering from a script instead of the network.

    ``responses`` items are strings (returned as raw model text), dicts
    (JSON encoded) or exceptions (raised). The last item repeats.
    """

    def __init__(self, responses=None):
        super().__init__(client=None)
        self.responses = list(responses or [DEFAULT_DETECTION])
        self.calls = 0

    async def request_detection(self, page_image_b64: str, dims: ImageDimensions) -> str:
        index = min(self.calls, len(self.responses) - 1)
        self.calls += 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            return response
        return json.dumps(response)


@pytest.fixture
def fake_extractor():
    return FakeExtractor()


@pytest.fixture
def fake_detector():
    return FakeDetector()


@pytest.fixture
def memory_manager():
    """MemoryManager that always sees low system usage."""
    return MemoryManager(usage_provider=lambda: 0.1)


@pytest.fixture
def error_handler(memory_manager):
    """ErrorHandler whose retries do not sleep."""
    recovery = RecoveryManager(
        retry_policy=RetryPolicy(max_retries=2, delay=0.0),
        memory_manager=memory_manager
    )
    return ErrorHandler(recovery_manager=recovery)


@pytest.fixture
def fast_pipeline_config():
    return {
        'batch_size': 2,
        'max_concurrency': 2,
        'max_retries': 2,
        'retry_delay': 0.0,
    }
