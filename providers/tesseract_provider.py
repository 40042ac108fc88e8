"""Local OCR recognition via Tesseract (pytesseract + Pillow). Zero marginal cost."""

from __future__ import annotations

import logging
from collections import defaultdict

import pytesseract
from pytesseract import Output

from core.exceptions import ProviderRejected, ProviderTimeout
from core.models import ProviderSpec, RawRecognition
from providers.base import BaseRecognitionProvider
from utils.image_utils import load_pages, preprocess_for_ocr

logger = logging.getLogger(__name__)
TESSERACT_CONFIG = "--psm 6 --oem 3"


class TesseractProvider(BaseRecognitionProvider):
    """
    Runs Tesseract on every page. Native confidence is the mean word confidence
    reported by Tesseract (0-100 scaled to 0-1); pages with no words count as 0.
    """

    def __init__(self, spec: ProviderSpec | None = None, language: str = "eng") -> None:
        super().__init__(spec or ProviderSpec(name="tesseract", cost=0.0, declared_accuracy=0.80, timeout_sec=30.0))
        self.language = language

    def recognize(self, data: bytes, timeout: float) -> RawRecognition:
        pages = load_pages(data)
        texts: list[str] = []
        confidences: list[float] = []
        for page in pages:
            try:
                ocr = pytesseract.image_to_data(
                    preprocess_for_ocr(page),
                    lang=self.language,
                    config=TESSERACT_CONFIG,
                    output_type=Output.DICT,
                    timeout=timeout,
                )
            except pytesseract.TesseractNotFoundError as e:
                raise ProviderRejected(f"tesseract binary not available: {e}", provider=self.name) from e
            except RuntimeError as e:
                # pytesseract signals its own subprocess timeout as RuntimeError
                if "timeout" in str(e).lower():
                    raise ProviderTimeout(f"tesseract timed out after {timeout}s", provider=self.name) from e
                raise
            text, conf = _assemble(ocr)
            texts.append(text)
            confidences.append(conf)
        native = sum(confidences) / len(confidences) if confidences else 0.0
        logger.debug("tesseract pages=%s chars=%s conf=%.3f", len(pages), sum(len(t) for t in texts), native)
        return self._result("\n\n".join(t for t in texts if t), native)


def _assemble(ocr: dict[str, list]) -> tuple[str, float]:
    """Rebuild line-ordered text and mean word confidence from image_to_data output."""
    lines: dict[tuple[int, int, int], list[str]] = defaultdict(list)
    word_conf: list[float] = []
    for i, word in enumerate(ocr.get("text", [])):
        word = (word or "").strip()
        try:
            conf = float(ocr["conf"][i])
        except (KeyError, IndexError, TypeError, ValueError):
            conf = -1.0
        if not word or conf < 0:
            continue
        key = (ocr["block_num"][i], ocr["par_num"][i], ocr["line_num"][i])
        lines[key].append(word)
        word_conf.append(conf)
    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    mean = (sum(word_conf) / len(word_conf) / 100.0) if word_conf else 0.0
    return text, max(0.0, min(1.0, mean))
