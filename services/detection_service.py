"""
Diagram Detection Service - Asks a vision model where the diagrams are.

The model is reached through an OpenAI-compatible chat completions endpoint
with the page image attached as a base64 data URL. Its answer is untrusted:
it is parsed into a pydantic schema and every box is converted to page
pixels, but geometric validity is left to the geometry package.
"""
import json
from dataclasses import dataclass, field
from typing import Any, List, Optional

import openai
from pydantic import BaseModel, Field, ValidationError as SchemaError

from config.logging_config import get_logger
from core.constants import DEFAULT_DETECTION_PARAMS, DETECTION_PROMPT
from core.exceptions import DetectionAPIError, ValidationError
from core.models import DiagramCoordinates, ImageDimensions
from utils.bbox_utils import coerce_pixel_box
from utils.json_utils import extract_json

logger = get_logger(__name__)


class DetectedDiagramSchema(BaseModel):
    """A diagram as returned by the model."""
    coordinates: Any
    type: str = "other"
    confidence: float = 0.5
    description: str = ""


class DetectedQuestionSchema(BaseModel):
    """A question as returned by the model."""
    id: Optional[str] = None
    text: str = ""
    confidence: float = 1.0
    diagram_indices: List[int] = Field(default_factory=list)


class DetectionResponse(BaseModel):
    """Top-level model answer."""
    questions: List[DetectedQuestionSchema] = Field(default_factory=list)
    diagrams: List[DetectedDiagramSchema] = Field(default_factory=list)


@dataclass
class DetectionResult:
    """Parsed detection output for one page, in page pixels."""
    page_number: int
    questions: List[DetectedQuestionSchema] = field(default_factory=list)
    diagrams: List[DiagramCoordinates] = field(default_factory=list)
    diagram_indices: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    raw_response: str = ""


class DiagramDetectionService:
    """Service for diagram detection using a vision model."""

    def __init__(
        self,
        client,
        model: str = "gpt-4o-mini",
        max_tokens: int = DEFAULT_DETECTION_PARAMS['max_tokens'],
        temperature: float = DEFAULT_DETECTION_PARAMS['temperature'],
        prompt: str = DETECTION_PROMPT,
        timeout: Optional[float] = None
    ):
        """
        Initialize detection service.

        Args:
            client: AsyncOpenAI client instance
            model: Model name
            max_tokens: Completion token limit
            temperature: Sampling temperature
            prompt: Prompt template with ``{width}`` / ``{height}`` placeholders
            timeout: Per-request timeout in seconds
        """
        self.client = client
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.prompt = prompt
        self.timeout = timeout

    async def detect(
        self,
        page_image_b64: str,
        page_number: int,
        dims: ImageDimensions
    ) -> DetectionResult:
        """
        Detect questions and diagrams on a page.

        Raises:
            DetectionAPIError: if the API call fails
            ValidationError: if the answer is not usable JSON of the expected shape
        """
        raw = await self.request_detection(page_image_b64, dims)
        return self.parse_response(raw, page_number, dims)

    async def request_detection(self, page_image_b64: str, dims: ImageDimensions) -> str:
        """Call the model and return its raw text answer."""
        prompt = (
            self.prompt
            .replace("{width}", str(dims.width))
            .replace("{height}", str(dims.height))
        )
        kwargs = {}
        if self.timeout is not None:
            kwargs['timeout'] = self.timeout
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{page_image_b64}"}}
                    ]
                }],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                **kwargs
            )
        except openai.APITimeoutError as e:
            raise DetectionAPIError(f"Detection request timed out: {e}", code='TIMEOUT') from e
        except openai.APIConnectionError as e:
            raise DetectionAPIError(f"Detection API connection failed: {e}", code='CONNECTION_FAILED') from e
        except openai.APIStatusError as e:
            raise DetectionAPIError(
                f"Detection API returned HTTP {e.status_code}: {e.message}",
                status_code=e.status_code
            ) from e

        if not response.choices:
            raise DetectionAPIError("Detection API returned no choices")
        return response.choices[0].message.content or ""

    def parse_response(self, raw: str, page_number: int, dims: ImageDimensions) -> DetectionResult:
        """Parse raw model text. Raises ValidationError(code='INVALID_JSON') on bad JSON."""
        try:
            data = extract_json(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Malformed JSON from detection API: {e}", code='INVALID_JSON') from e
        result = self.parse_payload(data, page_number, dims)
        result.raw_response = raw
        return result

    def parse_payload(self, data: Any, page_number: int, dims: ImageDimensions) -> DetectionResult:
        """
        Convert decoded JSON into a DetectionResult.

        Diagrams whose coordinates cannot be interpreted are skipped with a
        warning; ``diagram_indices`` keeps each kept diagram's position in
        the model's list so question references stay valid.
        """
        if isinstance(data, list):
            data = {'diagrams': data}
        try:
            response = DetectionResponse.model_validate(data)
        except SchemaError as e:
            raise ValidationError(f"Unexpected detection response shape: {e}", code='SCHEMA_VIOLATION') from e

        result = DetectionResult(page_number=page_number, questions=response.questions)
        for index, diagram in enumerate(response.diagrams):
            try:
                box = coerce_pixel_box(diagram.coordinates, dims.width, dims.height)
            except (ValueError, TypeError, KeyError) as e:
                result.warnings.append(f"Page {page_number}: skipped diagram {index}: {e}")
                continue
            result.diagrams.append(DiagramCoordinates(
                x1=box['x1'],
                y1=box['y1'],
                x2=box['x2'],
                y2=box['y2'],
                confidence=diagram.confidence,
                type=diagram.type,
                description=diagram.description
            ))
            result.diagram_indices.append(index)

        logger.debug(
            "Page %d: %d questions, %d diagrams", page_number,
            len(result.questions), len(result.diagrams)
        )
        return result
