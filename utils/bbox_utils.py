"""
Bounding box utilities for the diagram workflow.

Handles conversion between coordinate conventions returned by vision models
and visualization of detected boxes.
"""
import base64
from io import BytesIO
from typing import List, Dict, Tuple, Sequence

import numpy as np
from PIL import Image, ImageDraw, ImageFont


def draw_bounding_boxes(
    image: Image.Image,
    layout_elements: List[Dict],
    extract_images: bool = True
) -> Tuple[Image.Image, List[Image.Image]]:
    """
    Draw bounding boxes on image and optionally crop each boxed region.

    Args:
        image: PIL Image to draw on
        layout_elements: Dicts with label, x1, y1, x2, y2
        extract_images: Whether to crop and return the boxed regions

    Returns:
        Tuple of (annotated image, list of cropped images)
    """
    img_draw = image.convert('RGB')
    draw = ImageDraw.Draw(img_draw)
    overlay = Image.new('RGBA', img_draw.size, (0, 0, 0, 0))
    draw2 = ImageDraw.Draw(overlay)

    try:
        font = ImageFont.truetype("/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf", 20)
    except OSError:
        font = ImageFont.load_default()

    crops = []
    color_map = {}
    rng = np.random.default_rng(42)

    for elem in layout_elements:
        label = elem['label']

        # Consistent color per label
        if label not in color_map:
            color_map[label] = tuple(int(c) for c in rng.integers(50, 255, size=3))

        color = color_map[label]
        color_a = color + (60,)

        x1, y1, x2, y2 = elem['x1'], elem['y1'], elem['x2'], elem['y2']

        if extract_images:
            crop = image.crop((x1, y1, x2, y2))
            crops.append(crop)
            buf = BytesIO()
            crop.convert('RGB').save(buf, format='PNG')
            elem['crop_image'] = base64.b64encode(buf.getvalue()).decode()

        draw.rectangle([x1, y1, x2, y2], outline=color, width=3)
        draw2.rectangle([x1, y1, x2, y2], fill=color_a)

        text_bbox = draw.textbbox((0, 0), label, font=font)
        tw = text_bbox[2] - text_bbox[0]
        th = text_bbox[3] - text_bbox[1]

        ty = max(0, y1 - th - 4)
        draw.rectangle([x1, ty, x1 + tw + 4, ty + th + 4], fill=color)
        draw.text((x1 + 2, ty + 2), label, font=font, fill=(255, 255, 255))

    img_draw.paste(overlay, (0, 0), overlay)
    return img_draw, crops


def unit_box_to_pixels(box: Dict, img_width: int, img_height: int) -> Dict:
    """
    Convert a 0-1 normalized ``x, y, width, height`` box to pixel corners.
    """
    x = float(box['x'])
    y = float(box['y'])
    return {
        'x1': x * img_width,
        'y1': y * img_height,
        'x2': (x + float(box['width'])) * img_width,
        'y2': (y + float(box['height'])) * img_height
    }


def coerce_pixel_box(raw, img_width: int, img_height: int) -> Dict:
    """
    Interpret the coordinate formats vision models return as pixel corners.

    Accepted shapes:
        - ``{'x1', 'y1', 'x2', 'y2'}`` in pixels (values all <= 1 are treated
          as fractions of the image)
        - ``{'x', 'y', 'width', 'height'}`` as fractions of the image
        - ``[x1, y1, x2, y2]`` on the 0-999 grid

    Raises:
        ValueError: if the shape is not recognized
    """
    if isinstance(raw, dict):
        if all(k in raw for k in ('x1', 'y1', 'x2', 'y2')):
            values = [float(raw[k]) for k in ('x1', 'y1', 'x2', 'y2')]
            if all(0 <= v <= 1 for v in values) and any(v > 0 for v in values):
                return {
                    'x1': values[0] * img_width,
                    'y1': values[1] * img_height,
                    'x2': values[2] * img_width,
                    'y2': values[3] * img_height
                }
            return dict(zip(('x1', 'y1', 'x2', 'y2'), values))
        if all(k in raw for k in ('x', 'y', 'width', 'height')):
            return unit_box_to_pixels(raw, img_width, img_height)
    if isinstance(raw, Sequence) and not isinstance(raw, str) and len(raw) == 4:
        keys = ('x1', 'y1', 'x2', 'y2')
        return {
            k: v
            for k, v in zip(keys, (
                float(raw[0]) / 999.0 * img_width,
                float(raw[1]) / 999.0 * img_height,
                float(raw[2]) / 999.0 * img_width,
                float(raw[3]) / 999.0 * img_height,
            ))
        }
    raise ValueError(f"Unrecognized coordinate format: {raw!r}")
