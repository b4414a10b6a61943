"""Rendering package - Raster diagram crops and render caching."""

from .cache import RenderCache, CacheEntry
from .renderer import DiagramRenderer, BatchDiagramRenderer, load_image, image_identity

__all__ = [
    'RenderCache',
    'CacheEntry',
    'DiagramRenderer',
    'BatchDiagramRenderer',
    'load_image',
    'image_identity',
]
