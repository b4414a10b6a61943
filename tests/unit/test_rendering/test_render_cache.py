"""
Unit tests for rendering.cache module.
"""
import pytest

from core.models import DiagramCoordinates, ImageDimensions, RenderedDiagram
from rendering.cache import RenderCache


def make_render(render_id: str) -> RenderedDiagram:
    return RenderedDiagram(
        id=render_id,
        coordinates=DiagramCoordinates(x1=0, y1=0, x2=10, y2=10),
        image_data="data:image/png;base64,",
        dimensions=ImageDimensions(10, 10),
        scale=1.0,
        render_time=0.1
    )


class TestRenderCache:
    """Tests for the LRU render cache."""

    def test_get_missing(self):
        assert RenderCache().get('missing') is None

    def test_set_and_get(self):
        cache = RenderCache()
        cache.set('k', make_render('a'))

        assert cache.get('k').id == 'a'
        assert 'k' in cache
        assert len(cache) == 1

    def test_evicts_least_recently_used(self):
        cache = RenderCache(max_size=2)
        cache.set('a', make_render('a'))
        cache.set('b', make_render('b'))
        cache.get('a')
        cache.set('c', make_render('c'))

        assert cache.keys() == ['a', 'c']
        assert cache.evictions == 1

    def test_overwrite_does_not_evict(self):
        cache = RenderCache(max_size=2)
        cache.set('a', make_render('a'))
        cache.set('b', make_render('b'))
        cache.set('a', make_render('a2'))

        assert cache.get('a').id == 'a2'
        assert cache.evictions == 0

    def test_delete_and_clear(self):
        cache = RenderCache()
        cache.set('a', make_render('a'))
        cache.set('b', make_render('b'))

        assert cache.delete('a')
        assert not cache.delete('a')

        cache.clear()
        assert len(cache) == 0

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            RenderCache(max_size=0)
