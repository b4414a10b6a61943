"""
Pipeline Orchestrator - Runs extraction sessions over batches of files.

A session validates its files up front, then processes them in batches
with bounded concurrency. Each file is retried while the ErrorHandler
classifies its failure as recoverable. Sessions can be cancelled; files
that already completed keep their results.
"""
import asyncio
import random
import string
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from config.logging_config import get_logger
from core.constants import DEFAULT_PIPELINE_CONFIG
from core.exceptions import FileValidationError, OperationCancelledError, SessionNotFoundError
from core.models import (
    FileEntry,
    FileStatus,
    InputFile,
    OrchestrationResult,
    ProcessingSession,
    SessionStatus
)
from .error_handler import ErrorHandler
from .memory_manager import MemoryManager
from .pipeline import ExtractionPipeline
from .retry import NO_RETRY, CancellationToken, RetryPolicy, retry_async

logger = get_logger(__name__)

ProgressCallback = Callable[[ProcessingSession], Any]


def new_session_id() -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class PipelineOrchestrator:
    """Owns processing sessions and drives the per-file pipeline."""

    def __init__(
        self,
        pipeline: ExtractionPipeline,
        config: Optional[Dict[str, Any]] = None,
        error_handler: Optional[ErrorHandler] = None,
        memory_manager: Optional[MemoryManager] = None
    ):
        """
        Initialize orchestrator.

        Args:
            pipeline: Per-file extraction pipeline
            config: Pipeline configuration, merged over DEFAULT_PIPELINE_CONFIG
            error_handler: Classifier deciding which failures are retried;
                defaults to the pipeline's
            memory_manager: Memory manager; defaults to the pipeline's
        """
        self.pipeline = pipeline
        self.config = {**DEFAULT_PIPELINE_CONFIG, **(config or {})}
        self.error_handler = error_handler or pipeline.error_handler
        self.memory_manager = memory_manager or pipeline.memory_manager
        self.retry_policy = RetryPolicy.from_config(self.config)

        self._sessions: Dict[str, ProcessingSession] = {}
        self._inputs: Dict[str, List[Optional[InputFile]]] = {}
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._callbacks: Dict[str, Optional[ProgressCallback]] = {}

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_processing_session(
        self,
        files: List[InputFile],
        session_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> str:
        """
        Create a session and schedule its processing in the background.

        Args:
            files: Input files
            session_id: Optional explicit session ID
            on_progress: Called with the live session after every file transition

        Returns:
            The session ID
        """
        session_id = session_id or new_session_id()
        session = ProcessingSession(id=session_id)
        inputs: List[Optional[InputFile]] = []

        for input_file in files:
            entry = FileEntry(name=input_file.name, size=input_file.size, mime_type=input_file.mime_type)
            try:
                self.validate_file(input_file)
            except FileValidationError as e:
                entry.status = FileStatus.FAILED
                entry.error = str(e)
                session.errors.append(f"{input_file.name}: {e}")
                self.error_handler.record_error(e, context={'file_name': input_file.name})
                inputs.append(None)
            else:
                inputs.append(input_file)
            session.files.append(entry)

        session.progress.update(
            self._finished_count(session), len(session.files), "validated"
        )
        self._sessions[session_id] = session
        self._inputs[session_id] = inputs
        self._tokens[session_id] = CancellationToken()
        self._callbacks[session_id] = on_progress

        logger.info(
            "Session %s started with %d files (%d rejected)",
            session_id, len(files), inputs.count(None)
        )
        self._tasks[session_id] = asyncio.create_task(self._run_session(session_id))
        return session_id

    def validate_file(self, input_file: InputFile) -> None:
        """
        Check MIME type, size and content of a file.

        Raises:
            FileValidationError: describing the first problem found
        """
        supported = self.config['supported_formats']
        if input_file.mime_type not in supported:
            raise FileValidationError(
                f"Unsupported file type '{input_file.mime_type}'. Supported: {', '.join(supported)}",
                code='INVALID_FORMAT'
            )
        max_bytes = self.config['max_file_size_mb'] * 1024 * 1024
        if input_file.size > max_bytes:
            raise FileValidationError(
                f"File is {input_file.size / (1024 * 1024):.1f}MB, "
                f"larger than the {self.config['max_file_size_mb']}MB limit",
                code='FILE_TOO_LARGE'
            )
        if input_file.size == 0:
            raise FileValidationError("File is empty", code='FILE_CORRUPTED')

    async def _run_session(self, session_id: str) -> None:
        session = self._sessions[session_id]
        token = self._tokens[session_id]
        inputs = self._inputs[session_id]

        pending = [
            i for i, entry in enumerate(session.files) if entry.status == FileStatus.PENDING
        ]
        if pending and not token.is_cancelled:
            session.status = SessionStatus.PROCESSING
        semaphore = asyncio.Semaphore(self.config['max_concurrency'])
        batch_size = max(1, self.config['batch_size'])

        try:
            for start in range(0, len(pending), batch_size):
                if token.is_cancelled:
                    break
                batch = pending[start:start + batch_size]
                session.progress.current_step = (
                    f"batch {start // batch_size + 1} of {-(-len(pending) // batch_size)}"
                )
                await asyncio.gather(*(
                    self._process_entry(session, index, inputs[index], semaphore, token)
                    for index in batch
                ))
        finally:
            self._finish_session(session, token)
            self._inputs.pop(session_id, None)

    async def _process_entry(
        self,
        session: ProcessingSession,
        index: int,
        input_file: InputFile,
        semaphore: asyncio.Semaphore,
        token: CancellationToken
    ) -> None:
        entry = session.files[index]
        async with semaphore:
            if token.is_cancelled or entry.status != FileStatus.PENDING:
                return
            entry.status = FileStatus.PROCESSING
            session.progress.current_step = f"processing {entry.name}"
            self._notify(session)

            def attempt():
                entry.attempts += 1
                return self.pipeline.process_file(
                    input_file, token=token, call_retry_policy=NO_RETRY
                )

            def on_retry(attempt_number: int, error: Exception):
                session.warnings.append(
                    f"{entry.name}: attempt {attempt_number} failed ({error}), retrying"
                )

            try:
                result = await retry_async(
                    attempt,
                    self.retry_policy,
                    should_retry=self._is_recoverable,
                    token=token,
                    on_retry=on_retry
                )
            except OperationCancelledError:
                entry.status = FileStatus.CANCELLED
                logger.info("%s cancelled in session %s", entry.name, session.id)
            except Exception as e:
                if token.is_cancelled:
                    entry.status = FileStatus.CANCELLED
                else:
                    classification = self.error_handler.classify_exception(e)
                    entry.status = FileStatus.FAILED
                    entry.error = f"{classification.user_message}: {e}"
                    session.errors.append(f"{entry.name}: {e}")
                    self.error_handler.record_error(
                        e, context={'file_name': entry.name, 'session_id': session.id}
                    )
                    logger.error("%s failed in session %s: %s", entry.name, session.id, e)
            else:
                # Results that land after cancellation are discarded
                if token.is_cancelled or entry.status == FileStatus.CANCELLED:
                    entry.status = FileStatus.CANCELLED
                else:
                    entry.status = FileStatus.COMPLETED
                    entry.result = result
                    session.warnings.extend(f"{entry.name}: {w}" for w in result.warnings)

            session.progress.update(self._finished_count(session), len(session.files))
            self._notify(session)

    def _is_recoverable(self, error: Exception) -> bool:
        return self.error_handler.classify_exception(error).recoverable

    def _finish_session(self, session: ProcessingSession, token: CancellationToken) -> None:
        if token.is_cancelled:
            for entry in session.files:
                if not entry.status.is_terminal:
                    entry.status = FileStatus.CANCELLED
            session.status = SessionStatus.CANCELLED
        elif session.files_with_status(FileStatus.COMPLETED):
            session.status = SessionStatus.COMPLETED
        else:
            session.status = SessionStatus.FAILED

        session.end_time = datetime.now()
        session.progress.update(
            self._finished_count(session), len(session.files), session.status.value
        )
        logger.info(
            "Session %s %s: %d completed, %d failed, %d cancelled",
            session.id, session.status.value,
            len(session.files_with_status(FileStatus.COMPLETED)),
            len(session.files_with_status(FileStatus.FAILED)),
            len(session.files_with_status(FileStatus.CANCELLED))
        )
        self._notify(session)

    @staticmethod
    def _finished_count(session: ProcessingSession) -> int:
        return sum(1 for entry in session.files if entry.status.is_terminal)

    def _notify(self, session: ProcessingSession) -> None:
        callback = self._callbacks.get(session.id)
        if callback is None:
            return
        try:
            callback(session)
        except Exception as e:
            logger.warning("Progress callback for %s raised: %s", session.id, e)

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    def cancel_session(self, session_id: str) -> bool:
        """
        Cancel a running session.

        Returns:
            False when the session is unknown or already finished
        """
        session = self._sessions.get(session_id)
        if session is None or session.is_terminal:
            return False
        self._tokens[session_id].cancel()
        for entry in session.files:
            if not entry.status.is_terminal:
                entry.status = FileStatus.CANCELLED
        session.progress.update(self._finished_count(session), len(session.files), "cancelling")
        logger.info("Session %s cancellation requested", session_id)
        self._notify(session)
        return True

    def get_session_status(self, session_id: str) -> Optional[ProcessingSession]:
        return self._sessions.get(session_id)

    def list_sessions(self) -> List[ProcessingSession]:
        return list(self._sessions.values())

    async def wait_for_session(self, session_id: str, timeout: Optional[float] = None) -> ProcessingSession:
        """
        Wait until a session's background task finishes.

        Raises:
            SessionNotFoundError: for unknown session IDs
            asyncio.TimeoutError: if ``timeout`` elapses first
        """
        if session_id not in self._sessions:
            raise SessionNotFoundError(f"Session {session_id} not found")
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self._sessions[session_id]

    def get_orchestration_results(self, session_id: str) -> Optional[OrchestrationResult]:
        """Aggregated results; None while the session is unknown or still running."""
        session = self._sessions.get(session_id)
        if session is None or not session.is_terminal:
            return None

        results = [
            entry.result for entry in session.files
            if entry.status == FileStatus.COMPLETED and entry.result is not None
        ]
        questions = [q for r in results for q in r.questions]
        summary = {
            'total_files': len(session.files),
            'successful_files': len(session.files_with_status(FileStatus.COMPLETED)),
            'failed_files': len(session.files_with_status(FileStatus.FAILED)),
            'cancelled_files': len(session.files_with_status(FileStatus.CANCELLED)),
            'total_questions': len(questions),
            'questions_with_diagrams': sum(1 for q in questions if q.has_diagram),
            'total_diagrams': sum(r.diagram_count for r in results),
            'total_processing_time': sum(r.processing_time for r in results),
        }
        return OrchestrationResult(
            session_id=session_id,
            success=session.status == SessionStatus.COMPLETED,
            results=results,
            summary=summary,
            errors=list(session.errors),
            warnings=list(session.warnings)
        )

    def cleanup_sessions(self, max_age_hours: float = 24) -> int:
        """
        Forget finished sessions whose end time predates the cutoff.

        Returns:
            Number of sessions removed
        """
        cutoff = datetime.now() - timedelta(hours=max_age_hours)
        expired = [
            sid for sid, session in self._sessions.items()
            if session.end_time is not None and session.end_time < cutoff
        ]
        for sid in expired:
            self._sessions.pop(sid, None)
            self._tokens.pop(sid, None)
            self._tasks.pop(sid, None)
            self._callbacks.pop(sid, None)
        if expired:
            logger.info("Cleaned up %d sessions", len(expired))
        return len(expired)
