"""
API Dependencies - Dependency injection for FastAPI.

Services are built once by ``build_services`` and stored on the app state;
request handlers reach them through ``get_services``.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from openai import AsyncOpenAI

from config.settings import Settings, settings
from data.database import DatabaseManager
from geometry.sanitizer import CoordinateSanitizer
from geometry.validator import CoordinateValidator
from rendering.renderer import DiagramRenderer
from serving.storage_service import ScopedDiagramStore
from services.detection_service import DiagramDetectionService
from services.error_handler import ErrorHandler
from services.memory_manager import MemoryManager
from services.orchestrator import PipelineOrchestrator
from services.page_extraction import PageExtractor, PyMuPDFPageExtractor
from services.pipeline import ExtractionPipeline
from services.recovery_manager import RecoveryManager
from services.retry import RetryPolicy


@dataclass
class ServiceContainer:
    """Everything the HTTP layer and CLI share."""
    validator: CoordinateValidator
    sanitizer: CoordinateSanitizer
    renderer: DiagramRenderer
    memory_manager: MemoryManager
    error_handler: ErrorHandler
    pipeline: ExtractionPipeline
    orchestrator: PipelineOrchestrator
    store: Optional[ScopedDiagramStore] = None
    session_max_age_hours: float = 24.0


def get_detection_client(config: Settings = settings) -> AsyncOpenAI:
    """
    Create the detection API client.

    Returns:
        AsyncOpenAI client configured for the vision server
    """
    return AsyncOpenAI(
        api_key=config.vision_api_key,
        base_url=config.vision_server_url
    )


def build_services(
    config: Settings = settings,
    db_manager: Optional[DatabaseManager] = None,
    extractor: Optional[PageExtractor] = None,
    detector: Optional[DiagramDetectionService] = None
) -> ServiceContainer:
    """
    Construct the shared managers and wire them together.

    Args:
        config: Settings to read from
        db_manager: Database manager; storage is disabled when None or when
            ``enable_database_storage`` is off
        extractor: Page extractor; PyMuPDF by default
        detector: Detection service; built from ``config`` by default
    """
    memory_manager = MemoryManager(
        warning_threshold=config.memory_warning_threshold,
        critical_threshold=config.memory_critical_threshold,
        max_tracked_bytes=config.memory_max_tracked_mb * 1024 * 1024
    )
    recovery_manager = RecoveryManager(
        history_size=config.error_history_size,
        retry_policy=RetryPolicy.from_config(config.get_pipeline_config()),
        memory_manager=memory_manager
    )
    error_handler = ErrorHandler(
        history_size=config.error_history_size,
        recovery_manager=recovery_manager
    )

    store = None
    if db_manager is not None and config.enable_database_storage:
        store = ScopedDiagramStore(db_manager)

    if extractor is None:
        extractor = PyMuPDFPageExtractor(
            target_dpi=config.page_target_dpi,
            max_image_size=config.page_max_image_size
        )
    if detector is None and config.enable_diagram_detection:
        detector = DiagramDetectionService(
            client=get_detection_client(config),
            **config.get_vision_config()
        )

    validator = CoordinateValidator()
    sanitizer = CoordinateSanitizer()
    pipeline = ExtractionPipeline(
        extractor=extractor,
        detector=detector,
        validator=validator,
        sanitizer=sanitizer,
        error_handler=error_handler,
        memory_manager=memory_manager,
        storage_factory=store.scope if store is not None else None,
        enable_detection=config.enable_diagram_detection
    )
    orchestrator = PipelineOrchestrator(
        pipeline,
        config=config.get_pipeline_config(),
        error_handler=error_handler,
        memory_manager=memory_manager
    )
    renderer = DiagramRenderer(max_cache_size=config.render_cache_size, store=store)
    memory_manager.register_cleanup_callback(renderer.clear_cache, tier='aggressive')

    return ServiceContainer(
        validator=validator,
        sanitizer=sanitizer,
        renderer=renderer,
        memory_manager=memory_manager,
        error_handler=error_handler,
        pipeline=pipeline,
        orchestrator=orchestrator,
        store=store,
        session_max_age_hours=config.session_max_age_hours
    )


def get_services(request: Request) -> ServiceContainer:
    """Dependency returning the container built at startup."""
    return request.app.state.services
