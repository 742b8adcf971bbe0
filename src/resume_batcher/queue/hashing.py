"""Content fingerprints for duplicate suppression.

The fingerprint covers the document itself, never its queue metadata, so the
same resume uploaded twice (under any name, priority or job) hashes the same.
"""

import hashlib
from typing import Union

from .models import DocumentPayload


def compute_content_hash(payload: Union[DocumentPayload, dict]) -> str:
    """Compute the dedup fingerprint of a document.

    Args:
        payload: DocumentPayload (or an equivalent dict)

    Returns:
        SHA-256 hex digest over, in order of preference, the extracted text,
        the raw bytes, or the file name

    Notes:
        - Text is hashed after whitespace normalisation so re-flowed copies
          of the same text still collide
        - Raw bytes are hashed as-is
    """
    if isinstance(payload, dict):
        payload = DocumentPayload(**payload)

    hasher = hashlib.sha256()

    if payload.text:
        hasher.update(b"text:")
        hasher.update(" ".join(payload.text.split()).encode("utf-8"))
    elif payload.content:
        hasher.update(b"bytes:")
        hasher.update(payload.content)
    else:
        hasher.update(b"name:")
        hasher.update(payload.filename.encode("utf-8"))

    return hasher.hexdigest()
