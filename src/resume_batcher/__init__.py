"""Token-budget batch processing of documents against a rate-limited generation service."""

__version__ = "0.1.0"
