"""
Extraction Pipeline - Turns one input file into validated diagram coordinates.

Steps per file:
1. Track the raw file buffer with the MemoryManager
2. Extract page images and text
3. Store each page image under ``{test_id}_page_{n}``
4. Ask the detection service for questions and diagrams on each page
5. Validate every box; repair invalid ones with the API-response profile,
   then normalize all of them with the storage profile
6. Build CoordinateMetadata per question and persist it when storage is enabled
"""
import time
import uuid
from contextlib import AbstractContextManager
from typing import Callable, Dict, List, Optional, Tuple

from config.logging_config import get_logger
from core.exceptions import MemoryLimitError, ValidationError
from core.models import (
    CoordinateMetadata,
    DetectedQuestion,
    DiagramCoordinates,
    DiagramRecord,
    FileProcessingResult,
    ImageDimensions,
    InputFile,
    PageContent,
    PageExtractionResult
)
from geometry.sanitizer import CoordinateSanitizer
from geometry.validator import CoordinateValidator
from .detection_service import DetectionResult, DiagramDetectionService
from .error_handler import ErrorHandler
from .memory_manager import MemoryManager
from .page_extraction import PageExtractor
from .retry import CancellationToken, RetryPolicy

logger = get_logger(__name__)

EMPTY_DETECTION = {'questions': [], 'diagrams': []}

StorageFactory = Callable[[], AbstractContextManager]


def new_test_id() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


class ExtractionPipeline:
    """Processes a single file end to end."""

    def __init__(
        self,
        extractor: PageExtractor,
        detector: Optional[DiagramDetectionService],
        validator: Optional[CoordinateValidator] = None,
        sanitizer: Optional[CoordinateSanitizer] = None,
        error_handler: Optional[ErrorHandler] = None,
        memory_manager: Optional[MemoryManager] = None,
        storage_factory: Optional[StorageFactory] = None,
        enable_detection: bool = True
    ):
        """
        Initialize pipeline.

        Args:
            extractor: Page extraction collaborator
            detector: Diagram detection collaborator (unused when detection is disabled)
            validator: Coordinate validator
            sanitizer: Coordinate sanitizer
            error_handler: Error classifier / recovery driver
            memory_manager: Allocation tracker
            storage_factory: Callable returning a context manager that yields a
                DiagramStorageService; storage is skipped when None
            enable_detection: Whether to call the detection service at all
        """
        self.extractor = extractor
        self.detector = detector
        self.validator = validator or CoordinateValidator()
        self.sanitizer = sanitizer or CoordinateSanitizer()
        self.error_handler = error_handler or ErrorHandler()
        self.memory_manager = memory_manager or MemoryManager()
        self.storage_factory = storage_factory
        self.enable_detection = enable_detection and detector is not None

    async def process_file(
        self,
        input_file: InputFile,
        test_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        call_retry_policy: Optional[RetryPolicy] = None
    ) -> FileProcessingResult:
        """
        Run the full pipeline on one file.

        Args:
            input_file: File name, bytes and MIME type
            test_id: ID used for storage keys; generated when omitted
            token: Cancellation token checked between pages
            call_retry_policy: Policy for the per-call retry recovery; pass
                ``NO_RETRY`` when the caller retries the whole file

        Returns:
            FileProcessingResult with questions and coordinate metadata

        Raises:
            DiagramFlowError subclasses (or collaborator errors) when a step
            fails and cannot be recovered
        """
        test_id = test_id or new_test_id()
        started = time.time()
        logger.info("Processing %s as %s", input_file.name, test_id)

        allocation_id = await self._allocate(
            input_file.size, 'file_buffer', can_cleanup=False, file_name=input_file.name
        )
        page_allocations: List[str] = []
        try:
            extract = self.error_handler.wrap_async(
                self.extractor.extract,
                context=self._call_context(
                    token, call_retry_policy, file_name=input_file.name
                )
            )
            extraction: PageExtractionResult = await extract(input_file.content, input_file.name)

            for page in extraction.pages:
                if page.image_base64:
                    page_allocations.append(await self._allocate(
                        len(page.image_base64), 'page_image',
                        file_name=input_file.name, page_number=page.page_number
                    ))

            result = FileProcessingResult(
                test_id=test_id,
                file_name=input_file.name,
                page_count=extraction.page_count
            )

            pages_data = []
            for page in extraction.pages:
                if token is not None:
                    token.raise_if_cancelled()
                questions, metadata, warnings = await self._process_page(
                    page, test_id, token, call_retry_policy
                )
                result.questions.extend(questions)
                result.coordinate_metadata.extend(metadata)
                result.warnings.extend(warnings)
                pages_data.append((page, questions, metadata))

            if self.storage_factory is not None:
                self._persist(input_file, test_id, extraction, pages_data)

            result.processing_time = time.time() - started
            logger.info(
                "Finished %s: %d pages, %d questions, %d diagrams in %.2fs",
                input_file.name, result.page_count, len(result.questions),
                result.diagram_count, result.processing_time
            )
            return result
        finally:
            for page_allocation in page_allocations:
                self.memory_manager.release_allocation(page_allocation)
            self.memory_manager.release_allocation(allocation_id)

    # ------------------------------------------------------------------
    # Per page
    # ------------------------------------------------------------------

    async def _process_page(
        self,
        page: PageContent,
        test_id: str,
        token: Optional[CancellationToken],
        call_retry_policy: Optional[RetryPolicy] = None
    ) -> Tuple[List[DetectedQuestion], List[CoordinateMetadata], List[str]]:
        if not self.enable_detection:
            return self._text_questions(page, test_id), [], []

        if not page.image_base64 or page.width <= 0 or page.height <= 0:
            return (
                self._text_questions(page, test_id),
                [],
                [f"Page {page.page_number}: no page image, diagram detection skipped"]
            )

        dims = page.dimensions
        detection = await self._detect(page, dims, token, call_retry_policy)
        warnings = list(detection.warnings)

        cleaned, clean_warnings = self.clean_diagrams(detection.diagrams, dims, page.page_number)
        warnings.extend(clean_warnings)
        # Model index -> cleaned box (None when dropped)
        by_index = dict(zip(detection.diagram_indices, cleaned))

        questions = self._assign_diagrams(detection, by_index, page, test_id)
        metadata = [
            CoordinateMetadata(
                question_id=q.id,
                page_number=page.page_number,
                original_image_dimensions=dims,
                diagrams=[DiagramRecord.from_coordinates(c, modified_by='ai') for c in q.diagrams]
            )
            for q in questions if q.has_diagram
        ]
        return questions, metadata, warnings

    async def _detect(
        self,
        page: PageContent,
        dims: ImageDimensions,
        token: Optional[CancellationToken],
        call_retry_policy: Optional[RetryPolicy] = None
    ) -> DetectionResult:
        request = self.error_handler.wrap_async(
            self.detector.request_detection,
            context=self._call_context(
                token, call_retry_policy, page_number=page.page_number
            )
        )
        raw = await request(page.image_base64, dims)

        try:
            return self.detector.parse_response(raw, page.page_number, dims)
        except ValidationError as e:
            outcome = await self.error_handler.handle_error(e, context={
                'page_number': page.page_number,
                'data': raw,
                'defaults': EMPTY_DETECTION
            })
            if outcome['recovery']['final_status'] != 'recovered':
                raise
            detection = self.detector.parse_payload(
                outcome['recovery']['result'], page.page_number, dims
            )
            detection.raw_response = raw
            method = next(
                (a['method'] for a in outcome['recovery']['attempted'] if a['success']), None
            )
            if method == 'default_values':
                detection.warnings.append(
                    f"Page {page.page_number}: detection output unusable, no diagrams recorded"
                )
            else:
                detection.warnings.append(
                    f"Page {page.page_number}: repaired malformed detection output"
                )
            return detection

    @staticmethod
    def _call_context(
        token: Optional[CancellationToken],
        retry_policy: Optional[RetryPolicy],
        **details
    ) -> dict:
        context = {'cancellation_token': token, **details}
        if retry_policy is not None:
            context['retry_policy'] = retry_policy
        return context

    def clean_diagrams(
        self,
        diagrams: List[DiagramCoordinates],
        dims: ImageDimensions,
        page_number: int = 0
    ) -> Tuple[List[Optional[DiagramCoordinates]], List[str]]:
        """
        Validate and sanitize detected boxes.

        Returns:
            A list aligned with ``diagrams`` holding the cleaned box or None
            for boxes that had to be dropped, and the warnings produced
        """
        cleaned: List[Optional[DiagramCoordinates]] = []
        warnings: List[str] = []
        for index, coords in enumerate(diagrams):
            check = self.validator.validate(coords, dims)
            if not check.is_valid:
                repaired = self.sanitizer.sanitize_for_api_response(coords, dims)
                logger.debug(
                    "Page %d diagram %d repaired (%s): %s", page_number, index,
                    ", ".join(repaired.change_types), "; ".join(check.errors)
                )
                coords = repaired.sanitized

            stored = self.sanitizer.sanitize_for_storage(coords, dims).sanitized
            final = self.validator.validate(stored, dims)
            if final.is_valid:
                cleaned.append(stored)
            else:
                cleaned.append(None)
                warnings.append(
                    f"Page {page_number}: dropped diagram {index}: {'; '.join(final.errors)}"
                )
        return cleaned, warnings

    @staticmethod
    def _question_id(test_id: str, page_number: int, index: int) -> str:
        return f"{test_id}_p{page_number}_q{index}"

    def _text_questions(self, page: PageContent, test_id: str) -> List[DetectedQuestion]:
        if not page.text:
            return []
        return [DetectedQuestion(
            id=self._question_id(test_id, page.page_number, 1),
            page_number=page.page_number,
            text=page.text,
            confidence=page.confidence
        )]

    def _assign_diagrams(
        self,
        detection: DetectionResult,
        by_index: Dict[int, Optional[DiagramCoordinates]],
        page: PageContent,
        test_id: str
    ) -> List[DetectedQuestion]:
        """
        Attach cleaned diagrams to questions.

        A diagram claimed by several questions goes to the first one.
        Unclaimed diagrams go to the last question on the page, or to a
        page-level question when the page has none.
        """
        questions = [
            DetectedQuestion(
                id=self._question_id(test_id, page.page_number, i + 1),
                page_number=page.page_number,
                text=q.text,
                confidence=q.confidence
            )
            for i, q in enumerate(detection.questions)
        ]

        claimed = set()
        for question, schema in zip(questions, detection.questions):
            for index in schema.diagram_indices:
                if index in claimed or by_index.get(index) is None:
                    continue
                question.diagrams.append(by_index[index])
                claimed.add(index)

        leftovers = [
            coords for index, coords in sorted(by_index.items())
            if coords is not None and index not in claimed
        ]
        if leftovers:
            if not questions:
                questions.append(DetectedQuestion(
                    id=f"{test_id}_p{page.page_number}_page",
                    page_number=page.page_number,
                    text=page.text
                ))
            questions[-1].diagrams.extend(leftovers)
        return questions

    # ------------------------------------------------------------------
    # Memory and storage
    # ------------------------------------------------------------------

    async def _allocate(self, size: int, kind: str, can_cleanup: bool = True, **metadata) -> str:
        try:
            return self.memory_manager.allocate_memory(
                size, kind, can_cleanup=can_cleanup, metadata=metadata
            )
        except MemoryLimitError as e:
            outcome = await self.error_handler.handle_error(
                e, context={'memory_manager': self.memory_manager, **metadata}
            )
            if outcome['recovery']['final_status'] != 'recovered':
                raise
            return self.memory_manager.allocate_memory(
                size, kind, can_cleanup=can_cleanup, metadata=metadata
            )

    def _persist(
        self,
        input_file: InputFile,
        test_id: str,
        extraction: PageExtractionResult,
        pages_data: list
    ) -> None:
        with self.storage_factory() as storage:
            storage.create_document(
                filename=input_file.name,
                file_type=input_file.mime_type.split('/')[-1],
                total_pages=extraction.page_count,
                document_id=test_id
            )
            for page, questions, metadata in pages_data:
                if page.image_base64:
                    storage.save_page_image(
                        test_id, page.page_number, page.image_base64,
                        page.width, page.height, page.text
                    )
                texts = {q.id: q.text for q in questions}
                for item in metadata:
                    storage.save_coordinate_metadata(
                        item, test_id=test_id, question_text=texts.get(item.question_id, "")
                    )
        logger.debug("Persisted %s (%d pages)", test_id, extraction.page_count)
