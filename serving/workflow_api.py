"""
Workflow API for the diagram extraction pipeline.

Provides endpoints for:
- Processing sessions (upload, status, cancel, results, cleanup)
- Coordinate validation and sanitization
- Stored question coordinates and manual diagram edits
- Diagram rendering from stored page images
"""
from typing import List

from fastapi import FastAPI, File, UploadFile, Depends, HTTPException
from sqlalchemy.orm import Session

from api.dependencies import ServiceContainer, build_services, get_services
from api.schemas import (
    CleanupRequest,
    DiagramUpdateRequest,
    DocumentResponse,
    RenderRequest,
    SanitizeRequest,
    SessionCreatedResponse,
    ValidateRequest
)
from config.logging_config import get_logger, setup_logging
from config.settings import settings
from core.models import InputFile, RenderOptions
from core.exceptions import RenderError
from data.database import get_db, get_db_manager, init_database
from geometry.editor import CoordinateEditor
from geometry.sanitizer import PROFILE_NAMES
from .storage_service import DiagramStorageService, page_image_key

logger = get_logger(__name__)


# Create FastAPI app
workflow_app = FastAPI(
    title="Diagram Extraction Workflow API",
    description="Diagram detection, coordinate repair and storage for question papers",
    version="1.0.0"
)


@workflow_app.on_event("startup")
async def startup_event():
    """Initialize database tables and shared services on startup."""
    setup_logging()
    if getattr(workflow_app.state, 'services', None) is None:
        init_database(settings.database_url)
        workflow_app.state.services = build_services(settings, db_manager=get_db_manager())
    logger.info("Workflow API initialized")


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------

@workflow_app.post("/sessions", response_model=SessionCreatedResponse)
async def create_session(
    files: List[UploadFile] = File(...),
    services: ServiceContainer = Depends(get_services)
):
    """
    Start a processing session for the uploaded files.

    Processing continues in the background; poll ``GET /sessions/{id}``.
    """
    inputs = []
    for upload in files:
        content = await upload.read()
        inputs.append(InputFile(
            name=upload.filename or "upload",
            content=content,
            mime_type=upload.content_type or "application/octet-stream"
        ))

    session_id = await services.orchestrator.start_processing_session(inputs)
    session = services.orchestrator.get_session_status(session_id)
    return SessionCreatedResponse(
        session_id=session_id,
        status=session.status.value,
        total_files=len(session.files)
    )


@workflow_app.get("/sessions/{session_id}")
async def get_session(session_id: str, services: ServiceContainer = Depends(get_services)):
    """Current state and progress of a session."""
    session = services.orchestrator.get_session_status(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_dict()


@workflow_app.post("/sessions/{session_id}/cancel")
async def cancel_session(session_id: str, services: ServiceContainer = Depends(get_services)):
    """Cancel a running session; completed files keep their results."""
    if services.orchestrator.get_session_status(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    cancelled = services.orchestrator.cancel_session(session_id)
    return {"session_id": session_id, "cancelled": cancelled}


@workflow_app.get("/sessions/{session_id}/results")
async def get_session_results(session_id: str, services: ServiceContainer = Depends(get_services)):
    """Aggregated results of a finished session."""
    if services.orchestrator.get_session_status(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    results = services.orchestrator.get_orchestration_results(session_id)
    if results is None:
        raise HTTPException(status_code=409, detail="Session is still processing")
    return results.to_dict()


@workflow_app.post("/sessions/cleanup")
async def cleanup_sessions(
    request: CleanupRequest,
    services: ServiceContainer = Depends(get_services)
):
    """Forget finished sessions older than ``max_age_hours``."""
    max_age = request.max_age_hours
    if max_age is None:
        max_age = services.session_max_age_hours
    removed = services.orchestrator.cleanup_sessions(max_age)
    return {"removed": removed}


# ----------------------------------------------------------------------
# Coordinates
# ----------------------------------------------------------------------

@workflow_app.post("/coordinates/validate")
async def validate_coordinates(
    request: ValidateRequest,
    services: ServiceContainer = Depends(get_services)
):
    """Validate one or more boxes against an image size."""
    dims = request.image_dimensions.to_dimensions()
    coords = [c.to_coordinates() for c in request.coordinates]
    if len(coords) == 1:
        result = services.validator.validate(coords[0], dims)
    else:
        result = services.validator.validate_array(coords, dims, allow_overlap=request.allow_overlap)
    return result.to_dict()


@workflow_app.post("/coordinates/sanitize/{profile}")
async def sanitize_coordinates(
    profile: str,
    request: SanitizeRequest,
    services: ServiceContainer = Depends(get_services)
):
    """Run a box through a named sanitization profile."""
    if profile not in PROFILE_NAMES:
        raise HTTPException(
            status_code=404,
            detail=f"Unknown profile '{profile}'. Available: {', '.join(PROFILE_NAMES)}"
        )
    result = services.sanitizer.sanitize_profile(
        profile,
        request.coordinates.to_coordinates(),
        request.image_dimensions.to_dimensions()
    )
    return result.to_dict()


@workflow_app.get("/tests/{test_id}")
async def get_test(test_id: str, db: Session = Depends(get_db)):
    """Stored document with the coordinate metadata of all its questions."""
    storage = DiagramStorageService(db)
    document = storage.get_document(test_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Test not found")
    return {
        "document": DocumentResponse(**document.to_dict()).model_dump(),
        "questions": [m.to_dict() for m in storage.list_by_test(test_id)]
    }


@workflow_app.delete("/tests/{test_id}")
async def delete_test(test_id: str, db: Session = Depends(get_db)):
    """Delete a stored document with its page images and coordinates."""
    storage = DiagramStorageService(db)
    if not storage.delete_document(test_id):
        raise HTTPException(status_code=404, detail="Test not found")
    return {"deleted": test_id}


@workflow_app.get("/questions/{question_id}/coordinates")
async def get_question_coordinates(question_id: str, db: Session = Depends(get_db)):
    """Stored coordinate metadata of a question."""
    storage = DiagramStorageService(db)
    metadata = storage.get_coordinate_metadata(question_id)
    if metadata is None:
        raise HTTPException(status_code=404, detail="Question not found")
    return metadata.to_dict()


@workflow_app.put("/questions/{question_id}/diagrams/{diagram_id}")
async def update_diagram(
    question_id: str,
    diagram_id: str,
    request: DiagramUpdateRequest,
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services)
):
    """
    Apply a manual edit to a stored diagram.

    The new box is constrained to the page, passed through the manual-edit
    sanitization profile and stored with ``modified_by='user'``.
    """
    storage = DiagramStorageService(db)
    metadata = storage.get_coordinate_metadata(question_id)
    if metadata is None:
        raise HTTPException(status_code=404, detail="Question not found")
    record = metadata.get_diagram(diagram_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Diagram not found")

    requested = request.coordinates.to_coordinates()
    editor = CoordinateEditor(
        record.coordinates.copy(
            type=requested.type,
            description=requested.description,
            confidence=requested.confidence
        ),
        metadata.original_image_dimensions,
        sanitizer=services.sanitizer
    )
    editor.update_coordinates_from_input(
        x1=requested.x1, y1=requested.y1, x2=requested.x2, y2=requested.y2
    )
    sanitized = editor.finalize()

    check = services.validator.validate(sanitized.sanitized, metadata.original_image_dimensions)
    if not check.is_valid:
        raise HTTPException(status_code=422, detail=check.errors)

    updated = storage.update_diagram_coordinates(
        question_id, diagram_id, sanitized.sanitized, modified_by='user'
    )
    return {
        "diagram": updated.to_dict(),
        "changes": [c.to_dict() for c in sanitized.changes],
        "warnings": sanitized.warnings
    }


@workflow_app.post("/questions/{question_id}/diagrams/{diagram_id}/render")
async def render_diagram(
    question_id: str,
    diagram_id: str,
    request: RenderRequest,
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services)
):
    """Render a stored diagram from its stored page image."""
    storage = DiagramStorageService(db)
    question = storage.questions.get(question_id)
    if question is None or question.document_id is None:
        raise HTTPException(status_code=404, detail="Question not found")
    metadata = storage.get_coordinate_metadata(question_id)
    record = metadata.get_diagram(diagram_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Diagram not found")

    key = page_image_key(question.document_id, metadata.page_number)
    page = storage.get_page_image(key)
    if page is None:
        raise HTTPException(status_code=404, detail=f"Page image {key} not found")

    try:
        rendered = services.renderer.render_diagram(
            page.image_base64,
            record.coordinates,
            RenderOptions(**request.model_dump()),
            source_key=key,
            diagram_id=diagram_id
        )
    except RenderError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return rendered.to_dict()


# ----------------------------------------------------------------------
# Misc
# ----------------------------------------------------------------------

@workflow_app.get("/health")
async def health(services: ServiceContainer = Depends(get_services)):
    """Liveness plus memory, renderer and error statistics."""
    memory = services.memory_manager.get_memory_stats()
    return {
        "status": "ok",
        "memory": memory,
        "renderer": services.renderer.get_stats(),
        "errors": {
            k: v for k, v in services.error_handler.get_error_statistics().items()
            if k != 'recent_errors'
        },
        "sessions": len(services.orchestrator.list_sessions())
    }


@workflow_app.get("/")
async def root():
    """API root endpoint."""
    return {
        "name": "Diagram Extraction Workflow API",
        "version": "1.0.0",
        "endpoints": {
            "create_session": "POST /sessions",
            "get_session": "GET /sessions/{session_id}",
            "cancel_session": "POST /sessions/{session_id}/cancel",
            "get_results": "GET /sessions/{session_id}/results",
            "cleanup_sessions": "POST /sessions/cleanup",
            "get_test": "GET /tests/{test_id}",
            "delete_test": "DELETE /tests/{test_id}",
            "validate": "POST /coordinates/validate",
            "sanitize": "POST /coordinates/sanitize/{profile}",
            "get_coordinates": "GET /questions/{question_id}/coordinates",
            "update_diagram": "PUT /questions/{question_id}/diagrams/{diagram_id}",
            "render_diagram": "POST /questions/{question_id}/diagrams/{diagram_id}/render",
            "health": "GET /health"
        }
    }


# Export app for uvicorn
app = workflow_app
