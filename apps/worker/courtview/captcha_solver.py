"""
Captcha solver.

Reads a short fixed-alphabet captcha by voting across OCR runs:

  variants: orig, gray-{t} for each threshold, upscale{f}-{t} for the two
            highest thresholds (nearest-neighbour upscale keeps strokes sharp)
  engines:  Tesseract once per page-segmentation mode, optionally EasyOCR
            once per variant

Every raw read is reduced to the alphabet and truncated to the expected
length, then candidates are ranked by (votes desc, distance from expected
length asc, text asc). The ranking is deterministic for a given set of reads.

If the unique best read is short, a zero-padded copy is appended as a
low-confidence candidate. It is a guess to try last, never a verified read.

solve() never raises. A corrupt image or no readable text yields [].
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO

import cv2
import numpy as np
import pytesseract
from PIL import Image, ImageOps

from courtview.config import settings

logger = logging.getLogger(__name__)

ALPHABETS = {
    "digits": "0123456789",
    "alphanumeric": "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789",
}


@dataclass(frozen=True)
class CaptchaCandidate:
    text: str
    votes: int
    low_confidence: bool = False


def decode_captcha_token(raw: str, expected_length: int = 6) -> str:
    """
    Decode a text challenge: the code itself, or the code base64-encoded.

    Raises ValueError if neither form yields expected_length digits.
    """
    pattern = re.compile(rf"^\d{{{expected_length}}}$")
    clean = raw.strip().strip('"')
    if pattern.match(clean):
        return clean
    try:
        decoded = base64.b64decode(clean, validate=True).decode("utf-8").strip()
    except (binascii.Error, UnicodeDecodeError, ValueError):
        decoded = ""
    if pattern.match(decoded):
        return decoded
    raise ValueError("Could not decode captcha token")


class CaptchaSolver:
    """Multi-variant OCR voting for short fixed-alphabet captchas."""

    def __init__(
        self,
        alphabet: str = "digits",
        expected_length: int = 6,
        thresholds: tuple[int, ...] = (140, 160, 180),
        upscale_factor: int = 3,
        psm_modes: tuple[int, ...] = (8, 7, 13),
        use_easyocr: bool = False,
    ):
        if alphabet not in ALPHABETS:
            raise ValueError(f"Unknown captcha alphabet: {alphabet!r}")
        self.alphabet = alphabet
        self.charset = ALPHABETS[alphabet]
        self.expected_length = expected_length
        self.thresholds = tuple(thresholds)
        self.upscale_factor = upscale_factor
        self.psm_modes = tuple(psm_modes)
        self.use_easyocr = use_easyocr

        pytesseract.pytesseract.tesseract_cmd = settings.tesseract_cmd

    # ------------------------------------------------------------------
    # EasyOCR reader (singleton, heavy to initialize)
    # ------------------------------------------------------------------

    _easyocr_reader = None

    @classmethod
    def _get_easyocr_reader(cls):
        if cls._easyocr_reader is None:
            import easyocr

            cls._easyocr_reader = easyocr.Reader(["en"], gpu=False, verbose=False)
        return cls._easyocr_reader

    # ------------------------------------------------------------------
    # Preprocessing
    # ------------------------------------------------------------------

    @staticmethod
    def _binarize(img: Image.Image, threshold: int) -> Image.Image:
        arr = np.array(img, dtype=np.uint8)
        _, arr = cv2.threshold(arr, threshold, 255, cv2.THRESH_BINARY)
        # 10px white border helps Tesseract on tight crops
        return ImageOps.expand(Image.fromarray(arr), border=10, fill=255)

    def preprocess_variants(self, image_bytes: bytes) -> list[tuple[str, Image.Image]]:
        """Deterministic (name, image) variants of one captcha image."""
        img = Image.open(BytesIO(image_bytes))
        img.load()

        variants: list[tuple[str, Image.Image]] = [("orig", img.convert("RGB"))]

        gray = ImageOps.autocontrast(img.convert("L"))
        for t in self.thresholds:
            variants.append((f"gray-{t}", self._binarize(gray, t)))

        if self.upscale_factor > 1:
            f = self.upscale_factor
            upscaled = gray.resize((gray.width * f, gray.height * f), Image.NEAREST)
            for t in sorted(self.thresholds)[-2:]:
                variants.append((f"upscale{f}-{t}", self._binarize(upscaled, t)))

        return variants

    # ------------------------------------------------------------------
    # OCR
    # ------------------------------------------------------------------

    def ocr_variant(self, image: Image.Image, psm: int) -> str:
        """Raw Tesseract read of one variant. Any OCR failure reads as ""."""
        config = f"--psm {psm} -c tessedit_char_whitelist={self.charset}"
        try:
            return pytesseract.image_to_string(image, config=config).strip()
        except Exception:
            logger.debug("Tesseract failed with psm %d", psm, exc_info=True)
            return ""

    def easyocr_variant(self, image: Image.Image) -> str:
        try:
            reader = self._get_easyocr_reader()
            results = reader.readtext(np.array(image), allowlist=self.charset, detail=0)
            return "".join(results).strip()
        except Exception:
            logger.debug("EasyOCR failed", exc_info=True)
            return ""

    def _normalize(self, raw: str) -> str:
        text = raw.upper() if self.alphabet == "alphanumeric" else raw
        text = "".join(ch for ch in text if ch in self.charset)
        if self.expected_length and len(text) > self.expected_length:
            text = text[: self.expected_length]
        return text

    def rank_candidates(self, raw_outputs: list[str]) -> list[CaptchaCandidate]:
        votes: Counter[str] = Counter()
        for raw in raw_outputs:
            text = self._normalize(raw or "")
            if text:
                votes[text] += 1

        exp = self.expected_length
        ranked = sorted(
            votes.items(),
            key=lambda kv: (-kv[1], abs(len(kv[0]) - exp) if exp else 0, kv[0]),
        )
        candidates = [CaptchaCandidate(text=t, votes=v) for t, v in ranked]

        if candidates and exp and self.alphabet == "digits":
            best = candidates[0]
            unique_best = len(candidates) == 1 or candidates[1].votes < best.votes
            if unique_best and len(best.text) < exp:
                padded = best.text.zfill(exp)
                if padded not in votes:
                    candidates.append(
                        CaptchaCandidate(text=padded, votes=0, low_confidence=True)
                    )
        return candidates

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def solve_ranked(self, image_bytes: bytes) -> list[CaptchaCandidate]:
        try:
            variants = self.preprocess_variants(image_bytes)
        except Exception:
            self._log_captcha_failure(image_bytes, "")
            return []

        raw: list[str] = []
        try:
            for name, image in variants:
                for psm in self.psm_modes:
                    raw.append(self.ocr_variant(image, psm))
                if self.use_easyocr:
                    raw.append(self.easyocr_variant(image))
            candidates = self.rank_candidates(raw)
        except Exception:
            logger.error("Captcha solving failed unexpectedly", exc_info=True)
            candidates = []

        if not candidates:
            last = next((r for r in reversed(raw) if r), "")
            self._log_captcha_failure(image_bytes, last)
            return []

        logger.debug(
            "Captcha candidates from %d reads: %s",
            len(raw), [(c.text, c.votes) for c in candidates[:5]],
        )
        return candidates

    def solve(self, image_bytes: bytes) -> list[str]:
        """Ordered candidate codes, best first. Never raises."""
        return [c.text for c in self.solve_ranked(image_bytes)]

    async def solve_async(self, image_bytes: bytes, timeout: float | None = None) -> list[str]:
        """solve() in a worker thread, bounded by timeout. Timeout yields []."""
        timeout = settings.captcha_ocr_timeout_seconds if timeout is None else timeout
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.solve, image_bytes),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Captcha OCR timed out after %.1fs", timeout)
            return []

    def _log_captcha_failure(self, image_bytes: bytes, last_ocr_text: str) -> None:
        """Log diagnostic info when no candidate could be read."""
        try:
            img = Image.open(BytesIO(image_bytes))
            logger.warning(
                "CAPTCHA_DIAGNOSTIC: no candidates. "
                "Last OCR text: %r. Image: %dx%d mode=%s size=%d bytes",
                last_ocr_text, img.width, img.height, img.mode, len(image_bytes),
            )
        except Exception:
            logger.warning(
                "CAPTCHA_DIAGNOSTIC: no candidates. "
                "Last OCR text: %r. Image size: %d bytes (could not open)",
                last_ocr_text, len(image_bytes),
            )

        if settings.captcha_debug_dir:
            try:
                os.makedirs(settings.captcha_debug_dir, exist_ok=True)
                ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
                path = os.path.join(settings.captcha_debug_dir, f"captcha_fail_{ts}.png")
                with open(path, "wb") as f:
                    f.write(image_bytes)
                logger.warning("CAPTCHA_DIAGNOSTIC: saved failed captcha to %s", path)
            except Exception:
                logger.warning("Failed to save captcha debug image", exc_info=True)
