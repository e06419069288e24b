from __future__ import annotations

import asyncio
import logging
import re
from io import BytesIO

import pytesseract
from PIL import Image, ImageOps, UnidentifiedImageError

from ..domain.entities import QualityTier
from ..errors import NoTextDetected, OcrError
from ..pipeline.cancellation import CancellationSignal, guarded
from ..pipeline.ports import OcrProvider

logger = logging.getLogger(__name__)

LIGHT_MAX_SIDE = 1000
FULL_MIN_SIDE = 1600
BINARY_THRESHOLD = 140
TESSERACT_CONFIG = "--psm 6 --oem 3"


def _prepare_light(image: Image.Image) -> Image.Image:
    image = image.convert("L")
    image.thumbnail((LIGHT_MAX_SIDE, LIGHT_MAX_SIDE))
    return image


def _prepare_full(image: Image.Image) -> Image.Image:
    # Upscale small photos, then grayscale, stretch contrast and binarise
    if max(image.width, image.height) < FULL_MIN_SIDE:
        scale = FULL_MIN_SIDE / max(image.width, image.height)
        image = image.resize(
            (int(image.width * scale), int(image.height * scale)),
            Image.Resampling.LANCZOS,
        )
    image = image.convert("L")
    image = ImageOps.autocontrast(image)
    return image.point(lambda x: 0 if x < BINARY_THRESHOLD else 255, "1")


def _clean(text: str) -> str:
    normalised = text.replace("\r", "\n")
    normalised = re.sub(r"[ \t]+", " ", normalised)
    return "\n".join(line.strip() for line in normalised.split("\n") if line.strip())


class TesseractOcrProvider(OcrProvider):
    """Tesseract with a quick, low-resolution pass and a slower, cleaned-up pass."""

    def __init__(self, languages: str = "jpn+eng") -> None:
        self.languages = languages

    async def extract_text(self, image: bytes, tier: QualityTier, signal: CancellationSignal) -> str:
        text = await guarded(signal, asyncio.to_thread, self._read, image, tier)
        if not text:
            raise NoTextDetected(f"{tier.value} OCR found no text")
        return text

    def _read(self, image_bytes: bytes, tier: QualityTier) -> str:
        try:
            image = Image.open(BytesIO(image_bytes))
            image = ImageOps.exif_transpose(image)
        except (UnidentifiedImageError, OSError) as exc:
            raise OcrError(f"Unreadable image: {exc}") from exc

        prepared = _prepare_light(image) if tier is QualityTier.LIGHT else _prepare_full(image)
        try:
            text = pytesseract.image_to_string(prepared, lang=self.languages, config=TESSERACT_CONFIG)
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as exc:
            raise OcrError(f"Tesseract failed: {exc}") from exc

        cleaned = _clean(text)
        preview = cleaned if len(cleaned) <= 500 else f"{cleaned[:500]}…"
        logger.info("%s OCR extracted text: %s", tier.value, preview)
        return cleaned
