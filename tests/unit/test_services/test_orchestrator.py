"""
Unit tests for services.orchestrator module.
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from conftest import FakeDetector, FakeExtractor
from core.exceptions import (
    DetectionAPIError, FileValidationError, PageExtractionError, SessionNotFoundError
)
from core.models import FileStatus, InputFile, SessionStatus
from services.orchestrator import PipelineOrchestrator, new_session_id
from services.pipeline import ExtractionPipeline


def pdf(name="paper.pdf", content=b"%PDF-1.4 fake"):
    return InputFile(name=name, content=content, mime_type="application/pdf")


@pytest.fixture
def make_orchestrator(error_handler, memory_manager, fast_pipeline_config):
    def factory(extractor=None, detector=None, **config):
        pipeline = ExtractionPipeline(
            extractor=extractor or FakeExtractor(),
            detector=detector or FakeDetector(),
            error_handler=error_handler,
            memory_manager=memory_manager
        )
        return PipelineOrchestrator(pipeline, config={**fast_pipeline_config, **config})
    return factory


class TestValidation:
    """Tests for validate_file."""

    def test_accepts_pdf(self, make_orchestrator):
        make_orchestrator().validate_file(pdf())

    def test_rejects_unsupported_type(self, make_orchestrator):
        with pytest.raises(FileValidationError) as exc_info:
            make_orchestrator().validate_file(InputFile("notes.txt", b"hello", "text/plain"))

        assert exc_info.value.code == 'INVALID_FORMAT'
        assert "Unsupported file type 'text/plain'" in str(exc_info.value)

    def test_rejects_large_file(self, make_orchestrator):
        orchestrator = make_orchestrator(max_file_size_mb=1)

        with pytest.raises(FileValidationError) as exc_info:
            orchestrator.validate_file(pdf(content=b"x" * (2 * 1024 * 1024)))

        assert exc_info.value.code == 'FILE_TOO_LARGE'

    def test_rejects_empty_file(self, make_orchestrator):
        with pytest.raises(FileValidationError, match="File is empty"):
            make_orchestrator().validate_file(pdf(content=b""))


class TestSessions:
    """Tests for running sessions."""

    def test_session_ids(self):
        assert new_session_id().startswith("session_")
        assert new_session_id() != new_session_id()

    @pytest.mark.asyncio
    async def test_successful_session(self, make_orchestrator):
        orchestrator = make_orchestrator()

        session_id = await orchestrator.start_processing_session([pdf("a.pdf"), pdf("b.pdf")])
        session = await orchestrator.wait_for_session(session_id, timeout=5)

        assert session.status == SessionStatus.COMPLETED
        assert [f.status for f in session.files] == [FileStatus.COMPLETED, FileStatus.COMPLETED]
        assert session.progress.percentage == 100.0
        assert session.end_time is not None

        results = orchestrator.get_orchestration_results(session_id)
        assert results.success
        assert results.summary['total_files'] == 2
        assert results.summary['successful_files'] == 2
        assert results.summary['total_questions'] == 2
        assert results.summary['questions_with_diagrams'] == 2
        assert results.summary['total_diagrams'] == 2

    @pytest.mark.asyncio
    async def test_explicit_session_id(self, make_orchestrator):
        orchestrator = make_orchestrator()

        session_id = await orchestrator.start_processing_session([pdf()], session_id="mine")
        await orchestrator.wait_for_session(session_id, timeout=5)

        assert session_id == "mine"
        assert orchestrator.get_session_status("mine") is orchestrator.list_sessions()[0]

    @pytest.mark.asyncio
    async def test_invalid_file_fails_alone(self, make_orchestrator):
        orchestrator = make_orchestrator()

        session_id = await orchestrator.start_processing_session([
            InputFile("notes.txt", b"hello", "text/plain"), pdf()
        ])
        session = await orchestrator.wait_for_session(session_id, timeout=5)

        assert session.status == SessionStatus.COMPLETED
        assert session.files[0].status == FileStatus.FAILED
        assert session.files[0].attempts == 0
        assert session.files[1].status == FileStatus.COMPLETED
        assert session.errors[0].startswith("notes.txt: Unsupported file type")

    @pytest.mark.asyncio
    async def test_three_pdfs_and_one_text_file(self, make_orchestrator):
        orchestrator = make_orchestrator()
        files = [pdf("a.pdf"), pdf("b.pdf"), InputFile("notes.txt", b"hello", "text/plain"), pdf("c.pdf")]

        session_id = await orchestrator.start_processing_session(files)
        await orchestrator.wait_for_session(session_id, timeout=5)
        summary = orchestrator.get_orchestration_results(session_id).summary

        assert summary['successful_files'] == 3
        assert summary['failed_files'] == 1

    @pytest.mark.asyncio
    async def test_all_files_invalid(self, make_orchestrator):
        orchestrator = make_orchestrator()

        session_id = await orchestrator.start_processing_session([pdf(content=b"")])
        session = await orchestrator.wait_for_session(session_id, timeout=5)

        assert session.status == SessionStatus.FAILED
        assert not orchestrator.get_orchestration_results(session_id).success

    @pytest.mark.asyncio
    async def test_corrupted_file_not_retried(self, make_orchestrator):
        extractor = FakeExtractor(failures=[PageExtractionError("bad pdf", code='FILE_CORRUPTED')])
        orchestrator = make_orchestrator(extractor=extractor)

        session_id = await orchestrator.start_processing_session([pdf()])
        session = await orchestrator.wait_for_session(session_id, timeout=5)

        entry = session.files[0]
        assert session.status == SessionStatus.FAILED
        assert entry.status == FileStatus.FAILED
        assert entry.attempts == 1
        assert entry.error == "The file appears to be corrupted: bad pdf"

    @pytest.mark.asyncio
    async def test_recoverable_failure_retried(self, make_orchestrator):
        extractor = FakeExtractor(failures=[PageExtractionError("glitch")])
        orchestrator = make_orchestrator(extractor=extractor)

        session_id = await orchestrator.start_processing_session([pdf()])
        session = await orchestrator.wait_for_session(session_id, timeout=5)

        assert session.files[0].status == FileStatus.COMPLETED
        assert session.files[0].attempts == 2
        assert any("attempt 1 failed (glitch), retrying" in w for w in session.warnings)

    @pytest.mark.asyncio
    async def test_network_failure_calls_detector_once_per_attempt(self, make_orchestrator):
        detector = FakeDetector([DetectionAPIError("connection refused", code='CONNECTION_FAILED')])
        orchestrator = make_orchestrator(detector=detector, max_retries=3)

        session_id = await orchestrator.start_processing_session([pdf()])
        session = await orchestrator.wait_for_session(session_id, timeout=5)

        entry = session.files[0]
        assert entry.status == FileStatus.FAILED
        assert entry.attempts == 4
        assert detector.calls == 4

    @pytest.mark.asyncio
    async def test_progress_callback(self, make_orchestrator):
        seen = []
        orchestrator = make_orchestrator()

        session_id = await orchestrator.start_processing_session(
            [pdf()], on_progress=lambda s: seen.append(s.files[0].status)
        )
        await orchestrator.wait_for_session(session_id, timeout=5)

        assert FileStatus.PROCESSING in seen
        assert seen[-1] == FileStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_session(self, make_orchestrator):
        def broken(session):
            raise RuntimeError("ui went away")

        orchestrator = make_orchestrator()
        session_id = await orchestrator.start_processing_session([pdf()], on_progress=broken)
        session = await orchestrator.wait_for_session(session_id, timeout=5)

        assert session.status == SessionStatus.COMPLETED


class TestControl:
    """Tests for cancellation, queries and cleanup."""

    @pytest.mark.asyncio
    async def test_cancel_running_session(self, make_orchestrator):
        orchestrator = make_orchestrator(extractor=FakeExtractor(delay=0.2))

        session_id = await orchestrator.start_processing_session([pdf("a.pdf"), pdf("b.pdf")])
        await asyncio.sleep(0.05)
        assert orchestrator.cancel_session(session_id)
        session = await orchestrator.wait_for_session(session_id, timeout=5)

        assert session.status == SessionStatus.CANCELLED
        assert all(f.status == FileStatus.CANCELLED for f in session.files)
        assert orchestrator.get_orchestration_results(session_id).summary['cancelled_files'] == 2

    @pytest.mark.asyncio
    async def test_cancel_keeps_completed_results(self, make_orchestrator):
        orchestrator = make_orchestrator(
            extractor=FakeExtractor(delay=0.2), batch_size=1, max_concurrency=1
        )

        session_id = await orchestrator.start_processing_session(
            [pdf("a.pdf"), pdf("b.pdf"), pdf("c.pdf")]
        )
        await asyncio.sleep(0.3)
        orchestrator.cancel_session(session_id)
        session = await orchestrator.wait_for_session(session_id, timeout=5)

        assert session.status == SessionStatus.CANCELLED
        assert session.files[0].status == FileStatus.COMPLETED
        assert session.files[0].result is not None
        assert [f.status for f in session.files[1:]] == [FileStatus.CANCELLED, FileStatus.CANCELLED]

    @pytest.mark.asyncio
    async def test_cancel_unknown_or_finished(self, make_orchestrator):
        orchestrator = make_orchestrator()
        session_id = await orchestrator.start_processing_session([pdf()])
        await orchestrator.wait_for_session(session_id, timeout=5)

        assert not orchestrator.cancel_session("missing")
        assert not orchestrator.cancel_session(session_id)

    @pytest.mark.asyncio
    async def test_wait_for_unknown_session(self, make_orchestrator):
        with pytest.raises(SessionNotFoundError):
            await make_orchestrator().wait_for_session("missing")

    @pytest.mark.asyncio
    async def test_results_unavailable_while_running(self, make_orchestrator):
        orchestrator = make_orchestrator(extractor=FakeExtractor(delay=0.1))

        session_id = await orchestrator.start_processing_session([pdf()])

        assert orchestrator.get_orchestration_results(session_id) is None
        assert orchestrator.get_orchestration_results("missing") is None
        await orchestrator.wait_for_session(session_id, timeout=5)
        assert orchestrator.get_orchestration_results(session_id) is not None

    @pytest.mark.asyncio
    async def test_cleanup_old_sessions(self, make_orchestrator):
        orchestrator = make_orchestrator()
        old_id = await orchestrator.start_processing_session([pdf()])
        new_id = await orchestrator.start_processing_session([pdf()])
        await orchestrator.wait_for_session(old_id, timeout=5)
        await orchestrator.wait_for_session(new_id, timeout=5)

        orchestrator.get_session_status(old_id).end_time = datetime.now() - timedelta(hours=48)

        assert orchestrator.cleanup_sessions(max_age_hours=24) == 1
        assert orchestrator.get_session_status(old_id) is None
        assert orchestrator.get_session_status(new_id) is not None
