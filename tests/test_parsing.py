import json

import pytest

from resume_batcher.exceptions import ParseError
from resume_batcher.parsing import JsonRecordParser, extract_json, split_batch_response


class TestExtractJson:
    def test_plain_object(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_with_prose(self):
        raw = 'Here you go:\n```json\n{"a": {"b": 2}}\n```\nAnything else?'
        assert extract_json(raw) == {"a": {"b": 2}}

    def test_trailing_commas_repaired(self):
        assert extract_json('{"a": [1, 2,], "b": 3,}') == {"a": [1, 2], "b": 3}

    @pytest.mark.parametrize("raw", ["", "   ", "no json here", "{not: valid json", "[1, 2]"])
    def test_unusable(self, raw):
        with pytest.raises(ParseError):
            extract_json(raw)


class TestSplitBatchResponse:
    def test_records_in_order(self):
        raw = json.dumps({"item_2": {"name": "B"}, "item_1": {"name": "A"}})
        parts = split_batch_response(raw, 2)
        assert [json.loads(p)["name"] for p in parts] == ["A", "B"]

    def test_missing_record(self):
        raw = json.dumps({"item_1": {"name": "A"}})
        with pytest.raises(ParseError, match="item_2"):
            split_batch_response(raw, 2)

    def test_record_not_an_object(self):
        with pytest.raises(ParseError):
            split_batch_response(json.dumps({"item_1": "A"}), 1)


class TestJsonRecordParser:
    def test_normalises_record(self):
        raw = json.dumps({
            "name": "  Jane   Doe ",
            "email": "jane@example.com",
            "skills": "python, sql ,",
            "summary": "",
            "phone": None,
        })
        record = JsonRecordParser().parse_response(raw)

        assert record["name"] == "Jane Doe"
        assert record["skills"] == ["python", "sql"]
        assert "summary" not in record
        assert "phone" not in record
        # name, email, skills out of 9 expected fields
        assert record["metadata"]["confidence"] == 0.33
        assert "parsed_at" in record["metadata"]

    def test_missing_required_field(self):
        with pytest.raises(ParseError, match="name"):
            JsonRecordParser().parse_response(json.dumps({"email": "x@example.com"}))

    def test_custom_required_fields(self):
        parser = JsonRecordParser(required_fields=["name", "email"])
        with pytest.raises(ParseError, match="email"):
            parser.parse_response(json.dumps({"name": "Jane"}))
