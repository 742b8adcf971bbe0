"""Default text extractor for plain-text documents.

Binary formats (PDF, Word) need a dedicated TextExtractor; this one only
reads text-like files and grades what it finds.
"""

import logging
import re
from pathlib import Path

from .collaborators import ExtractionResult, TextExtractor
from .exceptions import EmptyDocument, LowQualityExtraction, UnsupportedFileType

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
TEXT_EXTENSIONS = (".txt", ".md", ".csv")
TEXT_MIME_PREFIXES = ("text/",)

RESUME_KEYWORDS = [
    "experience", "education", "skills", "work", "job", "position",
    "university", "college", "degree", "certification", "project",
    "responsibilities", "achievements", "contact", "email", "phone",
]
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(r"[+]?[1-9]?[-.\s]?\(?[0-9]{3}\)?[-.\s]?[0-9]{3}[-.\s]?[0-9]{4}")


def score_text(text: str, word_count: int) -> float:
    """Heuristic 0..1 quality score of extracted resume text."""
    quality = 0.5
    if word_count > 100:
        quality += 0.2
    if word_count > 200:
        quality += 0.1

    lowered = text.lower()
    matches = sum(1 for keyword in RESUME_KEYWORDS if keyword in lowered)
    quality += matches / len(RESUME_KEYWORDS) * 0.2

    if EMAIL_PATTERN.search(text):
        quality += 0.1
    if PHONE_PATTERN.search(text):
        quality += 0.05
    return min(quality, 1.0)


class PlainTextExtractor(TextExtractor):
    """Decodes text files, normalises whitespace and grades the result."""

    def __init__(self, min_word_count: int = 50, max_file_size: int = MAX_FILE_SIZE):
        self.min_word_count = min_word_count
        self.max_file_size = max_file_size

    def extract(self, content: bytes, filename: str, mime_type: str) -> ExtractionResult:
        ext = Path(filename).suffix.lower()
        if ext not in TEXT_EXTENSIONS and not mime_type.startswith(TEXT_MIME_PREFIXES):
            raise UnsupportedFileType(
                f"Unsupported file type for {filename} ({mime_type}). "
                f"Supported: {', '.join(TEXT_EXTENSIONS)}"
            )
        if not content:
            raise EmptyDocument(f"{filename} is empty")
        if len(content) > self.max_file_size:
            raise UnsupportedFileType(
                f"File too large: {len(content) / 1024 / 1024:.2f}MB. "
                f"Max size: {self.max_file_size / 1024 / 1024:.2f}MB"
            )

        text = " ".join(content.decode("utf-8", errors="replace").split())
        if not text:
            raise EmptyDocument(f"No text extracted from {filename}")

        word_count = len(text.split())
        if word_count < self.min_word_count:
            raise LowQualityExtraction(
                f"Too few words in {filename}: {word_count}. Minimum required: {self.min_word_count}"
            )

        quality = score_text(text, word_count)
        logger.debug("Extracted %d words from %s (quality %.2f)", word_count, filename, quality)
        return ExtractionResult(text=text, word_count=word_count, quality=quality)
