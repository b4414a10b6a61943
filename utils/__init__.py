"""Utilities package - Helper functions for image, bbox, and JSON processing."""

from .image_utils import (
    render_pdf_page,
    pil_to_base64,
    pil_to_data_url,
    decode_base64_image
)

from .bbox_utils import (
    draw_bounding_boxes,
    unit_box_to_pixels,
    coerce_pixel_box
)

from .json_utils import (
    extract_json,
    fix_json_errors,
    strip_code_fences
)

__all__ = [
    # Image utils
    'render_pdf_page',
    'pil_to_base64',
    'pil_to_data_url',
    'decode_base64_image',

    # BBox utils
    'draw_bounding_boxes',
    'unit_box_to_pixels',
    'coerce_pixel_box',

    # JSON utils
    'extract_json',
    'fix_json_errors',
    'strip_code_fences'
]
