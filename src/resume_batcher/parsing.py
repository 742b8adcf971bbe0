"""Mapping service responses back onto documents.

A batch call returns one JSON object holding a record per document
(``item_1`` .. ``item_N``). split_batch_response cuts it into per-document
texts; a ResponseParser then turns each into a validated record.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from .collaborators import ResponseParser
from .exceptions import ParseError
from .prompts import RECORD_KEY

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
TRAILING_COMMA_PATTERN = re.compile(r",\s*([}\]])")

LIST_FIELDS = ("skills", "experience", "education", "projects")
EXPECTED_FIELDS = ("name", "email", "phone", "location", "summary") + LIST_FIELDS


def extract_json(raw: str) -> Dict[str, Any]:
    """Pull the outermost JSON object out of a model response.

    Strips markdown code fences and surrounding prose, and repairs trailing
    commas before giving up.

    Raises:
        ParseError: No JSON object can be decoded
    """
    if not raw or not raw.strip():
        raise ParseError("Empty response")

    text = FENCE_PATTERN.sub("", raw)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ParseError("No JSON object found in response")
    candidate = text[start:end + 1]

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        try:
            data = json.loads(TRAILING_COMMA_PATTERN.sub(r"\1", candidate))
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON in response: {e}") from e

    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def split_batch_response(raw: str, count: int) -> List[str]:
    """Split a combined batch response into ``count`` per-document JSON texts.

    Raises:
        ParseError: The response is not JSON, or a record is missing or not an object
    """
    data = extract_json(raw)
    records = []
    for index in range(1, count + 1):
        key = RECORD_KEY.format(index=index)
        record = data.get(key)
        if record is None:
            raise ParseError(f"No data found for {key} ({len(data)} key(s) in response)")
        if not isinstance(record, dict):
            raise ParseError(f"Record {key} is a {type(record).__name__}, expected an object")
        records.append(json.dumps(record))
    return records


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [value]


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


class JsonRecordParser(ResponseParser):
    """Validates and normalises one resume record."""

    def __init__(self, required_fields: Optional[List[str]] = None):
        self.required_fields = required_fields or ["name"]

    def parse_response(self, raw_text: str, context: str = "") -> Dict[str, Any]:
        record = extract_json(raw_text)

        missing = [f for f in self.required_fields if _is_empty(record.get(f))]
        if missing:
            raise ParseError(f"Missing required field(s): {', '.join(missing)}")

        for field_name in LIST_FIELDS:
            if field_name in record:
                record[field_name] = _as_list(record[field_name])

        if isinstance(record.get("name"), str):
            record["name"] = " ".join(record["name"].split())

        record = {k: v for k, v in record.items() if not _is_empty(v)}

        present = sum(1 for f in EXPECTED_FIELDS if f in record)
        record["metadata"] = {
            "confidence": round(present / len(EXPECTED_FIELDS), 2),
            "parsed_at": datetime.now().isoformat(),
        }
        return record
