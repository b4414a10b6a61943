"""
Diagram Renderer - Crops, scales and encodes diagrams from page images.

Rendering is raster only: a region of the page image is cropped (with
optional padding), optionally downscaled, flattened onto a background colour
and encoded as a data URL. Results are kept in an LRU cache keyed by
(image identity, coordinates, options).
"""
import base64
import hashlib
import json
import math
import time
import uuid
from collections import OrderedDict
from dataclasses import replace
from io import BytesIO
from typing import Dict, List, Optional, Tuple, Union

from PIL import Image, ImageColor

from config.logging_config import get_logger
from core.exceptions import RenderError
from core.models import (
    DiagramCoordinates,
    DiagramOverlay,
    ImageDimensions,
    RenderedDiagram,
    RenderOptions,
)
from utils.bbox_utils import draw_bounding_boxes
from utils.image_utils import decode_base64_image, pil_to_data_url
from .cache import RenderCache

logger = get_logger(__name__)

ImageSource = Union[Image.Image, bytes, str]

FORMAT_MIME = {
    'png': 'image/png',
    'jpeg': 'image/jpeg',
    'jpg': 'image/jpeg',
    'webp': 'image/webp',
}


def load_image(source: ImageSource) -> Image.Image:
    """Accept a PIL image, raw encoded bytes or a base64 / data URL string."""
    if isinstance(source, Image.Image):
        return source
    if isinstance(source, (bytes, bytearray)):
        return Image.open(BytesIO(bytes(source)))
    if isinstance(source, str):
        return decode_base64_image(source)
    raise RenderError(f"Unsupported image source: {type(source).__name__}")


def image_identity(image: Image.Image) -> str:
    """Content hash identifying a page image for cache keys."""
    digest = hashlib.sha1(image.tobytes())
    digest.update(f"{image.mode}:{image.size}".encode())
    return digest.hexdigest()


class DiagramRenderer:
    """Renders diagram crops with caching and render statistics."""

    def __init__(self, max_cache_size: int = 100, store=None):
        """
        Initialize renderer.

        Args:
            max_cache_size: Maximum number of cached renders
            store: Optional storage service with ``get_render_cache`` /
                ``save_render_cache`` used as a second-level cache
        """
        self.cache = RenderCache(max_cache_size)
        self.store = store
        self.reset_stats()

    # Public API

    def render_diagram(
        self,
        image: ImageSource,
        coordinates: DiagramCoordinates,
        options: Optional[RenderOptions] = None,
        source_key: Optional[str] = None,
        diagram_id: Optional[str] = None
    ) -> RenderedDiagram:
        """
        Render one diagram.

        Args:
            image: Page image
            coordinates: Diagram box in page pixels
            options: Output options
            source_key: Stable identifier of the page image; hashed from
                pixel data when omitted
            diagram_id: Id to attach to the result

        Returns:
            RenderedDiagram with a data URL

        Raises:
            RenderError: if the coordinates are invalid for the image or
                encoding fails
        """
        return self._render(image, coordinates, options, source_key, diagram_id)

    def render_multiple_diagrams(
        self,
        image: ImageSource,
        diagrams: List[Dict],
        options: Optional[RenderOptions] = None,
        source_key: Optional[str] = None
    ) -> List[RenderedDiagram]:
        """
        Render several diagrams from one page.

        Args:
            image: Page image
            diagrams: Items ``{'id': str, 'coordinates': DiagramCoordinates}``
            options: Output options applied to every item
            source_key: Stable identifier of the page image

        Returns:
            Successful renders, tagged with their item id. Invalid items are
            skipped.
        """
        page = load_image(image)
        key = source_key or image_identity(page)
        rendered = []
        for item in diagrams:
            item_id = item.get('id') if isinstance(item, dict) else None
            coordinates = item.get('coordinates') if isinstance(item, dict) else None
            if not isinstance(coordinates, DiagramCoordinates):
                self._stats['total_diagrams'] += 1
                self._stats['failed_renders'] += 1
                logger.warning("Skipping diagram %s: malformed entry %r", item_id, item)
                continue
            try:
                rendered.append(self._render(page, coordinates, options, key, item_id))
            except RenderError as e:
                logger.warning("Skipping diagram %s: %s", item_id, e)
        return rendered

    def create_responsive_diagram(
        self,
        image: ImageSource,
        coordinates: DiagramCoordinates,
        container_width: int,
        container_height: int,
        options: Optional[RenderOptions] = None,
        source_key: Optional[str] = None
    ) -> RenderedDiagram:
        """Render scaled to fit a container: scale = min(cw / w, ch / h)."""
        options = options or RenderOptions()
        crop_w, crop_h = self._crop_size(coordinates, options.padding)
        scale = min(container_width / crop_w, container_height / crop_h)
        target = (max(1, int(round(crop_w * scale))), max(1, int(round(crop_h * scale))))
        return self._render(image, coordinates, options, source_key, None, target_size=target)

    def create_overlay(
        self,
        coordinates: DiagramCoordinates,
        original_dimensions: ImageDimensions,
        class_name: str = "diagram-overlay"
    ) -> DiagramOverlay:
        """Percent-positioned overlay for highlighting a diagram on the displayed page."""
        w, h = original_dimensions.width, original_dimensions.height
        return DiagramOverlay(
            left=coordinates.x1 / w * 100,
            top=coordinates.y1 / h * 100,
            width=coordinates.width / w * 100,
            height=coordinates.height / h * 100,
            diagram_type=coordinates.type,
            confidence=coordinates.confidence,
            class_name=class_name
        )

    def render_page_preview(
        self,
        image: ImageSource,
        diagrams: List[DiagramCoordinates],
        fmt: str = 'png'
    ) -> str:
        """Page image with every diagram box drawn on it, as a data URL."""
        page = load_image(image)
        elements = [
            {'label': d.type.value, 'x1': int(d.x1), 'y1': int(d.y1), 'x2': int(d.x2), 'y2': int(d.y2)}
            for d in diagrams
        ]
        annotated, _ = draw_bounding_boxes(page, elements, extract_images=False)
        return pil_to_data_url(annotated, fmt)

    # Stats and cache

    def get_stats(self) -> Dict:
        stats = dict(self._stats)
        stats['average_render_time'] = (
            stats['total_render_time'] / stats['rendered'] if stats['rendered'] else 0.0
        )
        stats['cache_size'] = len(self.cache)
        del stats['rendered']
        return stats

    def reset_stats(self) -> None:
        self._stats = {
            'total_diagrams': 0,
            'successful_renders': 0,
            'failed_renders': 0,
            'total_render_time': 0.0,
            'cache_hits': 0,
            'cache_misses': 0,
            'rendered': 0,
        }

    def clear_cache(self) -> None:
        self.cache.clear()

    # Internals

    @staticmethod
    def build_cache_key(source_key: str, coordinates: DiagramCoordinates, options: RenderOptions) -> str:
        coords = json.dumps(
            [coordinates.x1, coordinates.y1, coordinates.x2, coordinates.y2]
        )
        return f"{source_key}|{coords}|{options.cache_key()}"

    @staticmethod
    def _crop_size(coordinates: DiagramCoordinates, padding: int) -> Tuple[int, int]:
        width = math.ceil(coordinates.x2) - math.floor(coordinates.x1) + 2 * padding
        height = math.ceil(coordinates.y2) - math.floor(coordinates.y1) + 2 * padding
        return max(1, width), max(1, height)

    @staticmethod
    def validate_coordinates(coordinates: DiagramCoordinates, dims: Tuple[int, int]) -> None:
        """Raise RenderError when a box cannot be cropped from an image of ``dims``."""
        width, height = dims
        if not coordinates.is_finite():
            raise RenderError("Coordinates must be valid numbers")
        if min(coordinates.x1, coordinates.y1, coordinates.x2, coordinates.y2) < 0:
            raise RenderError("Coordinates cannot be negative")
        if coordinates.x2 > width or coordinates.y2 > height:
            raise RenderError("Coordinates exceed image dimensions")
        if coordinates.x2 <= coordinates.x1 or coordinates.y2 <= coordinates.y1:
            raise RenderError("Invalid coordinate order")

    def _render(
        self,
        image: ImageSource,
        coordinates: DiagramCoordinates,
        options: Optional[RenderOptions],
        source_key: Optional[str],
        diagram_id: Optional[str],
        target_size: Optional[Tuple[int, int]] = None
    ) -> RenderedDiagram:
        options = options or RenderOptions()
        self._stats['total_diagrams'] += 1
        started = time.perf_counter()

        try:
            page = load_image(image)
            self.validate_coordinates(coordinates, page.size)
            source_key = source_key or image_identity(page)
            key = self.build_cache_key(source_key, coordinates, options)
            if target_size is not None:
                key = f"{key}|{target_size[0]}x{target_size[1]}"

            cached = self._lookup(key)
            if cached is not None:
                self._stats['cache_hits'] += 1
                self._stats['successful_renders'] += 1
                if diagram_id and cached.id != diagram_id:
                    cached = replace(cached, id=diagram_id)
                return cached
            self._stats['cache_misses'] += 1

            data_url, dims, scale = self._rasterize(page, coordinates, options, target_size)
        except RenderError as e:
            self._stats['failed_renders'] += 1
            raise RenderError(f"Failed to render diagram: {e}") from e
        except (OSError, ValueError) as e:
            self._stats['failed_renders'] += 1
            raise RenderError(f"Failed to render diagram: {e}") from e

        elapsed = (time.perf_counter() - started) * 1000
        rendered = RenderedDiagram(
            id=diagram_id or f"diagram_{uuid.uuid4().hex[:12]}",
            coordinates=coordinates.copy(),
            image_data=data_url,
            dimensions=dims,
            scale=scale,
            render_time=elapsed
        )
        self._stats['successful_renders'] += 1
        self._stats['rendered'] += 1
        self._stats['total_render_time'] += elapsed

        self.cache.set(key, rendered)
        if self.store is not None:
            self.store.save_render_cache(key, rendered.to_dict())
        return rendered

    def _lookup(self, key: str) -> Optional[RenderedDiagram]:
        cached = self.cache.get(key)
        if cached is not None or self.store is None:
            return cached
        stored = self.store.get_render_cache(key)
        if stored is None:
            return None
        rendered = RenderedDiagram(
            id=stored['id'],
            coordinates=DiagramCoordinates.from_dict(stored['coordinates']),
            image_data=stored['image_data'],
            dimensions=ImageDimensions.from_dict(stored['dimensions']),
            scale=stored['scale'],
            render_time=stored['render_time']
        )
        self.cache.set(key, rendered)
        return rendered

    def _rasterize(
        self,
        page: Image.Image,
        coordinates: DiagramCoordinates,
        options: RenderOptions,
        target_size: Optional[Tuple[int, int]]
    ) -> Tuple[str, ImageDimensions, float]:
        fmt = options.format.lower()
        if fmt not in FORMAT_MIME:
            raise RenderError(f"Unsupported output format: {options.format}")

        pad = max(0, int(options.padding))
        left = math.floor(coordinates.x1) - pad
        top = math.floor(coordinates.y1) - pad
        right = math.ceil(coordinates.x2) + pad
        bottom = math.ceil(coordinates.y2) + pad

        crop = page.convert('RGBA').crop((left, top, right, bottom))
        crop_w, crop_h = crop.size

        out_w, out_h = crop_w, crop_h
        if target_size is not None:
            out_w, out_h = target_size
        elif options.max_width or options.max_height:
            max_w = options.max_width or crop_w
            max_h = options.max_height or crop_h
            if options.maintain_aspect_ratio:
                factor = min(max_w / crop_w, max_h / crop_h, 1.0)
                out_w = max(1, int(round(crop_w * factor)))
                out_h = max(1, int(round(crop_h * factor)))
            else:
                out_w, out_h = min(crop_w, max_w), min(crop_h, max_h)

        if (out_w, out_h) != (crop_w, crop_h):
            resample = Image.Resampling.LANCZOS if options.enable_smoothing else Image.Resampling.NEAREST
            crop = crop.resize((out_w, out_h), resample)

        background = Image.new('RGBA', crop.size, ImageColor.getcolor(options.background_color, 'RGBA'))
        flattened = Image.alpha_composite(background, crop).convert('RGB')

        buf = BytesIO()
        save_format = 'JPEG' if fmt in ('jpeg', 'jpg') else fmt.upper()
        save_kwargs = {}
        if save_format in ('JPEG', 'WEBP'):
            save_kwargs['quality'] = max(1, min(100, int(round(options.quality * 100))))
        flattened.save(buf, format=save_format, **save_kwargs)
        encoded = base64.b64encode(buf.getvalue()).decode()

        return (
            f"data:{FORMAT_MIME[fmt]};base64,{encoded}",
            ImageDimensions(out_w, out_h),
            out_w / crop_w
        )


class BatchDiagramRenderer:
    """
    Queues render requests and processes them grouped by page image, so each
    page is decoded and hashed once.
    """

    def __init__(self, renderer: Optional[DiagramRenderer] = None):
        self.renderer = renderer or DiagramRenderer()
        self._queue: "OrderedDict[str, dict]" = OrderedDict()

    def add(
        self,
        diagram_id: str,
        image: ImageSource,
        coordinates: DiagramCoordinates,
        source_key: Optional[str] = None,
        options: Optional[RenderOptions] = None
    ) -> None:
        group_key = source_key or f"object:{id(image)}"
        group = self._queue.setdefault(group_key, {
            'image': image,
            'source_key': source_key,
            'items': []
        })
        group['items'].append({'id': diagram_id, 'coordinates': coordinates, 'options': options})

    @property
    def pending(self) -> int:
        return sum(len(g['items']) for g in self._queue.values())

    def process(self) -> Dict[str, Union[RenderedDiagram, RenderError]]:
        """Render everything queued. Failed items map to their RenderError."""
        results: Dict[str, Union[RenderedDiagram, RenderError]] = {}
        while self._queue:
            _, group = self._queue.popitem(last=False)
            page = load_image(group['image'])
            key = group['source_key'] or image_identity(page)
            for item in group['items']:
                try:
                    results[item['id']] = self.renderer.render_diagram(
                        page, item['coordinates'], item['options'], key, item['id']
                    )
                except RenderError as e:
                    results[item['id']] = e
        return results
