"""Interfaces of the external collaborators the processor drives.

Concrete services (document extraction, text compression, the generation
API) are plugged in behind these. Default implementations shipped with the
package live in extraction, parsing and rate_limiter.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class ExtractionResult:
    """Text pulled out of a raw document."""
    text: str
    word_count: int
    quality: float = 1.0             # 0..1 score


@dataclass
class OptimizationResult:
    """Compressed document text."""
    optimized_text: str
    original_word_count: int
    final_word_count: int
    reduction_percentage: float


class TextExtractor(ABC):
    """Turns raw document bytes into text."""

    @abstractmethod
    def extract(self, content: bytes, filename: str, mime_type: str) -> ExtractionResult:
        """Extract text.

        Raises:
            UnsupportedFileType, EmptyDocument, LowQualityExtraction
        """
        pass


class TextOptimizer(ABC):
    """Shrinks document text to save tokens."""

    @abstractmethod
    def optimize(self, text: str) -> OptimizationResult:
        pass


class ResponseParser(ABC):
    """Turns one document's share of the service response into a record."""

    @abstractmethod
    def parse_response(self, raw_text: str, context: str = "") -> Dict[str, Any]:
        """Parse a raw record.

        Raises:
            ParseError: The text cannot be mapped to a record
        """
        pass


class GenerationClient(ABC):
    """The external text-generation service."""

    @abstractmethod
    def generate(self, prompt: str) -> str:
        """Send one prompt and return the response text.

        Raises:
            RateLimitExceeded: The provider refused the call for quota reasons
            BatchDispatchError: Transport or provider failure
        """
        pass


class RateLimiter(ABC):
    """Gate in front of every service call."""

    @abstractmethod
    def await_permit(self) -> None:
        """Block until a call may be made.

        Raises:
            RateLimitExceeded: No call may be made within the current window
        """
        pass

    def get_status(self) -> Dict[str, Any]:
        return {}
