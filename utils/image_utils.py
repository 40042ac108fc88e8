"""Image helpers for recognition providers: decode, OCR preprocessing, vision encoding."""

from __future__ import annotations

import base64
import io

from PIL import Image, ImageEnhance, ImageFilter, UnidentifiedImageError

try:
    from pdf2image import convert_from_bytes
    PDF_AVAILABLE = True
except ImportError:
    PDF_AVAILABLE = False
    convert_from_bytes = None  # type: ignore

# First-page vision defaults (PDF/image -> single JPEG for vision LLM)
VISION_IMAGE_MAX_PX = 1024
VISION_JPEG_QUALITY = 85
PDF_DPI = 250
# Tesseract struggles below this; small crops are upscaled first
MIN_SIDE_PX = 300


def detect_media_type(data: bytes) -> str:
    """Sniff media type from magic bytes. Empty string when unknown."""
    if data.startswith(b"%PDF"):
        return "application/pdf"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data[:4] in (b"II*\x00", b"MM\x00*"):
        return "image/tiff"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return ""


def load_pages(data: bytes, *, first_page_only: bool = False) -> list[Image.Image]:
    """
    Decode document bytes into RGB pages. PDF needs pdf2image (+ poppler).
    Raises ValueError for empty, unsupported or undecodable input.
    """
    if not data:
        raise ValueError("empty document")
    if detect_media_type(data) == "application/pdf":
        if not PDF_AVAILABLE or convert_from_bytes is None:
            raise ValueError("pdf2image is not installed; PDF input unsupported")
        kwargs = {"dpi": PDF_DPI}
        if first_page_only:
            kwargs.update(first_page=1, last_page=1)
        pages = convert_from_bytes(data, **kwargs)
        return [p.convert("RGB") if p.mode != "RGB" else p for p in pages]
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"undecodable image: {e}") from e
    return [img.convert("RGB") if img.mode != "RGB" else img]


def resize_to_max_px(img: Image.Image, max_px: int = VISION_IMAGE_MAX_PX) -> Image.Image:
    """Resize image so longest side is at most max_px."""
    w, h = img.size
    if max(w, h) <= max_px:
        return img
    ratio = max_px / max(w, h)
    return img.resize((int(w * ratio), int(h * ratio)), Image.Resampling.LANCZOS)


def preprocess_for_ocr(image: Image.Image) -> Image.Image:
    """Grayscale, upscale if small, sharpen, contrast."""
    if image.mode != "L":
        image = image.convert("L")
    min_side = min(image.size)
    if 0 < min_side < MIN_SIDE_PX:
        scale = MIN_SIDE_PX / min_side
        image = image.resize(
            (max(MIN_SIDE_PX, int(image.width * scale)), max(MIN_SIDE_PX, int(image.height * scale))),
            Image.Resampling.LANCZOS,
        )
    image = image.filter(ImageFilter.SHARPEN)
    return ImageEnhance.Contrast(image).enhance(1.3)


def jpeg_bytes(img: Image.Image, quality: int = VISION_JPEG_QUALITY) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def prepare_for_vision(data: bytes) -> bytes:
    """First page as size-limited JPEG, suitable for a vision API."""
    pages = load_pages(data, first_page_only=True)
    return jpeg_bytes(resize_to_max_px(pages[0]))


def image_to_data_url(image_bytes: bytes, media_type: str = "image/jpeg") -> str:
    """Encode image bytes as data URL for vision API."""
    b64 = base64.b64encode(image_bytes).decode("ascii")
    return f"data:{media_type};base64,{b64}"
