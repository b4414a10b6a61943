"""
Image utilities for the diagram workflow.

Handles page rendering and base64 / data URL conversion.
"""
import base64
from io import BytesIO

import fitz  # PyMuPDF
from PIL import Image


def render_pdf_page(page: "fitz.Page", target_dpi: int = 150) -> Image.Image:
    """
    Render an open PDF page to a PIL image.

    Args:
        page: PyMuPDF page
        target_dpi: Target DPI for rendering

    Returns:
        RGB PIL Image
    """
    mat = fitz.Matrix(target_dpi / 72, target_dpi / 72)
    pix = page.get_pixmap(matrix=mat, alpha=False)
    return Image.open(BytesIO(pix.tobytes("png"))).convert('RGB')


def pil_to_base64(img: Image.Image, fmt: str = 'PNG') -> str:
    """Encode a PIL image as a base64 string."""
    buf = BytesIO()
    img.save(buf, format=fmt)
    return base64.b64encode(buf.getvalue()).decode()


def pil_to_data_url(img: Image.Image, fmt: str = 'png') -> str:
    """Encode a PIL image as a ``data:`` URL."""
    fmt = fmt.lower()
    save_format = 'JPEG' if fmt in ('jpg', 'jpeg') else fmt.upper()
    mime = 'jpeg' if save_format == 'JPEG' else fmt
    if save_format == 'JPEG' and img.mode != 'RGB':
        img = img.convert('RGB')
    return f"data:image/{mime};base64,{pil_to_base64(img, save_format)}"


def decode_base64_image(b64_string: str) -> Image.Image:
    """
    Decode base64 string (optionally a data URL) to PIL Image.

    Args:
        b64_string: Base64-encoded image string

    Returns:
        PIL Image object
    """
    if b64_string.startswith('data:'):
        b64_string = b64_string.split(',', 1)[1]
    img_data = base64.b64decode(b64_string)
    return Image.open(BytesIO(img_data))
