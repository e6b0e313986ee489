"""Tesseract OCR engine.

Recognition runs pytesseract in a worker thread under a hard wall-clock
timeout. Tesseract's own subprocess timeout is set to the same bound so an
abandoned call does not keep the process alive.

Usage:
    from evidence_engine.ocr.engine import ocr_engine

    result = await ocr_engine.extract_text_from_image(image_bytes, languages="jpn+eng")
    report = ocr_engine.evaluate_quality(result)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any

import pytesseract
from PIL import Image

from evidence_engine.config import settings
from evidence_engine.events import emit
from evidence_engine.exceptions import OcrError, OcrTimeout
from evidence_engine.ocr.preprocessor import prepare_decoded, prepare_image
from evidence_engine.ocr.quality import evaluate_quality
from evidence_engine.schemas.events import EventType, SystemEvent
from evidence_engine.schemas.ocr import BoundingBox, OcrQualityReport, OcrResult, OcrWord

logger = logging.getLogger(__name__)


class OcrEngine:
    """Async wrapper around Tesseract with size, resolution and time bounds."""

    def __init__(
        self,
        timeout: float | None = None,
        languages: str | None = None,
        max_file_size: int | None = None,
        max_side: int | None = None,
        min_word_confidence: float | None = None,
    ) -> None:
        self._timeout = timeout if timeout is not None else settings.ocr.ocr_timeout
        self._languages = languages or settings.ocr.ocr_languages
        self._max_file_size = max_file_size if max_file_size is not None else settings.ocr.max_file_size
        self._max_side = max_side if max_side is not None else settings.ocr.ocr_max_image_side
        self._min_word_confidence = (
            min_word_confidence if min_word_confidence is not None else settings.ocr.ocr_min_word_confidence
        )

    @property
    def timeout(self) -> float:
        return self._timeout

    async def extract_text_from_image(
        self,
        data: bytes,
        languages: str | None = None,
        preprocess_image: bool = True,
    ) -> OcrResult:
        """Recognize text in an encoded image.

        Args:
            data: Encoded image bytes (JPEG, PNG, BMP, TIFF).
            languages: Tesseract language hint, e.g. "jpn+eng".
            preprocess_image: Apply grayscale/contrast/denoise/sharpen first.

        Returns:
            OcrResult with text, mean word confidence (0–1), words and line boxes.

        Raises:
            OcrError: If the file is too large, undecodable, or Tesseract fails.
            OcrTimeout: If decoding plus recognition exceeds the configured timeout.
        """
        if len(data) > self._max_file_size:
            msg = f"Image too large for OCR: {len(data)} bytes (limit {self._max_file_size})"
            raise OcrError(msg)

        # One deadline covers decode, preprocessing and recognition
        deadline = asyncio.get_running_loop().time() + self._timeout
        try:
            async with asyncio.timeout_at(deadline):
                prepared = await asyncio.to_thread(prepare_image, data, self._max_side, preprocess_image)
        except TimeoutError as exc:
            await self._emit_failure("timeout")
            raise OcrTimeout(self._timeout) from exc
        return await self.recognize(prepared.image, languages, deadline=deadline)

    async def extract_text_from_pil(
        self,
        image: Image.Image,
        languages: str | None = None,
        preprocess_image: bool = True,
        page: int | None = None,
    ) -> OcrResult:
        """Recognize text in a decoded image (e.g. a rendered PDF page)."""
        prepared, _ = await asyncio.to_thread(prepare_decoded, image, self._max_side, preprocess_image)
        return await self.recognize(prepared, languages, page)

    async def recognize(
        self,
        image: Image.Image,
        languages: str | None = None,
        page: int | None = None,
        deadline: float | None = None,
    ) -> OcrResult:
        """Recognize text in an already-decoded Pillow image.

        deadline is an event-loop time; by default the full timeout starts now.
        """
        lang = languages or self._languages
        start = time.monotonic()
        loop = asyncio.get_running_loop()
        if deadline is None:
            deadline = loop.time() + self._timeout
        remaining = max(deadline - loop.time(), 0.001)

        await emit(SystemEvent(
            event_type=EventType.OCR_STARTED,
            data={"languages": lang, "width": image.width, "height": image.height},
            source_module="ocr.engine",
        ))

        try:
            async with asyncio.timeout_at(deadline):
                raw = await asyncio.to_thread(
                    pytesseract.image_to_data,
                    image,
                    lang=lang,
                    output_type=pytesseract.Output.DICT,
                    timeout=remaining,
                )
        except TimeoutError as exc:
            await self._emit_failure("timeout")
            raise OcrTimeout(self._timeout) from exc
        except pytesseract.TesseractError as exc:
            await self._emit_failure(str(exc))
            raise OcrError(f"OCR failed: {exc}") from exc
        except RuntimeError as exc:
            # pytesseract signals its subprocess timeout as a bare RuntimeError
            if "timeout" in str(exc).lower():
                await self._emit_failure("timeout")
                raise OcrTimeout(self._timeout) from exc
            await self._emit_failure(str(exc))
            raise OcrError(f"OCR failed: {exc}") from exc
        except pytesseract.TesseractNotFoundError as exc:
            await self._emit_failure("tesseract_not_installed")
            raise OcrError("OCR engine is not installed") from exc

        text, words, boxes, confidence = parse_tesseract_data(raw, self._min_word_confidence)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        await emit(SystemEvent(
            event_type=EventType.OCR_COMPLETED,
            data={"confidence": round(confidence, 3), "chars": len(text), "processing_time_ms": elapsed_ms},
            source_module="ocr.engine",
        ))

        return OcrResult(
            text=text,
            confidence=confidence,
            language=lang,
            words=words,
            bounding_boxes=boxes,
            processing_time_ms=elapsed_ms,
            page=page,
        )

    async def process_multiple_images(
        self,
        images: Sequence[bytes],
        languages: str | None = None,
        max_concurrency: int | None = None,
        preprocess_image: bool = True,
    ) -> list[OcrResult]:
        """OCR several images concurrently; output order matches input order.

        A failed image yields an empty OcrResult instead of failing the batch.
        """
        limit = max_concurrency or settings.ocr.ocr_batch_concurrency
        semaphore = asyncio.Semaphore(max(limit, 1))
        lang = languages or self._languages

        async def _one(index: int, data: bytes) -> OcrResult:
            async with semaphore:
                try:
                    return await self.extract_text_from_image(data, lang, preprocess_image)
                except OcrError as exc:
                    logger.warning("Batch OCR failed for image %d: %s", index, exc)
                    return OcrResult(language=lang)

        return list(await asyncio.gather(*[_one(i, d) for i, d in enumerate(images)]))

    def evaluate_quality(self, result: OcrResult) -> OcrQualityReport:
        return evaluate_quality(result)

    async def _emit_failure(self, error: str) -> None:
        logger.warning("OCR failed: %s", error)
        await emit(SystemEvent(
            event_type=EventType.OCR_FAILED,
            data={"error": error},
            source_module="ocr.engine",
        ))


def parse_tesseract_data(
    raw: dict[str, list[Any]],
    min_word_confidence: float,
) -> tuple[str, list[OcrWord], list[BoundingBox], float]:
    """Turn pytesseract's image_to_data dict into text, words, line boxes and confidence.

    Tesseract confidences (0–100, -1 for non-word rows) are scaled to 0–1.
    Words below min_word_confidence are dropped. Lines are keyed by
    (page, block, paragraph, line) and keep Tesseract's reading order.
    """
    lines: dict[tuple[int, int, int, int], list[OcrWord]] = {}
    words: list[OcrWord] = []

    tokens = raw.get("text", [])
    page_nums = raw.get("page_num") or [1] * len(tokens)

    for i, token in enumerate(tokens):
        token = (token or "").strip()
        if not token:
            continue
        try:
            conf = float(raw["conf"][i])
        except (KeyError, IndexError, TypeError, ValueError):
            continue
        if conf < 0:
            continue
        conf = conf / 100.0
        if conf < min_word_confidence:
            continue

        box = BoundingBox(
            x=int(raw["left"][i]),
            y=int(raw["top"][i]),
            width=int(raw["width"][i]),
            height=int(raw["height"][i]),
            text=token,
            confidence=conf,
        )
        word = OcrWord(text=token, confidence=conf, bbox=box)
        words.append(word)
        key = (
            int(page_nums[i]),
            int(raw["block_num"][i]),
            int(raw["par_num"][i]),
            int(raw["line_num"][i]),
        )
        lines.setdefault(key, []).append(word)

    boxes: list[BoundingBox] = []
    text_lines: list[str] = []
    for line_words in lines.values():
        line_text = " ".join(w.text for w in line_words)
        text_lines.append(line_text)
        left = min(w.bbox.x for w in line_words if w.bbox)
        top = min(w.bbox.y for w in line_words if w.bbox)
        right = max(w.bbox.x + w.bbox.width for w in line_words if w.bbox)
        bottom = max(w.bbox.y + w.bbox.height for w in line_words if w.bbox)
        boxes.append(BoundingBox(
            x=left,
            y=top,
            width=right - left,
            height=bottom - top,
            text=line_text,
            confidence=sum(w.confidence for w in line_words) / len(line_words),
        ))

    confidence = sum(w.confidence for w in words) / len(words) if words else 0.0
    return "\n".join(text_lines), words, boxes, confidence


# Module-level singleton
ocr_engine = OcrEngine()
