"""Tests for Roam export parsing."""

import json

import pytest

from rtb.errors import ImportValidationError
from rtb.roam import load_export, parse_block, parse_export, parse_page


class TestParseExport:

    def test_parses_pages_and_nested_blocks(self, sample_export_data):
        pages = parse_export(sample_export_data)

        assert [p.title for p in pages] == ["Sleep", "Exercise"]
        sleep = pages[0]
        assert sleep.edit_time == 2000
        assert sleep.create_time == 1000
        assert [b.uid for b in sleep.children] == ["s1", "s3"]
        assert sleep.children[0].children[0].string == "Avoid screens before bed"
        assert sleep.count_blocks() == 3
        assert pages[1].count_blocks() == 2

    def test_unknown_keys_are_ignored(self, sample_export_data):
        """Keys like 'heading' and 'create-email' carry nothing we store."""
        sample_export_data[1]["children"][0]["create-email"] = "me@example.com"
        pages = parse_export(sample_export_data)
        assert pages[1].children[0].uid == "e1"

    def test_missing_string_is_empty_contents(self):
        block = parse_block({"uid": "x"})
        assert block.string == ""
        assert block.children == []

    def test_explicit_order_is_kept(self):
        block = parse_block({"uid": "x", "string": "a", "order": 4})
        assert block.order == 4

    def test_export_must_be_a_list(self):
        with pytest.raises(ImportValidationError, match="JSON array"):
            parse_export({"title": "Not a list"})


class TestMalformedInput:

    def test_block_without_uid(self):
        with pytest.raises(ImportValidationError, match="without a uid"):
            parse_block({"string": "orphan text"})

    def test_block_with_empty_uid(self):
        with pytest.raises(ImportValidationError):
            parse_block({"uid": "", "string": "text"})

    def test_non_integer_order(self):
        with pytest.raises(ImportValidationError) as exc_info:
            parse_block({"uid": "x", "string": "a", "order": "first"})
        assert exc_info.value.block_id == "x"

    def test_boolean_order_is_not_an_integer(self):
        with pytest.raises(ImportValidationError):
            parse_block({"uid": "x", "string": "a", "order": True})

    def test_non_text_contents(self):
        with pytest.raises(ImportValidationError, match="non-text"):
            parse_block({"uid": "x", "string": 42})

    def test_invalid_timestamp(self):
        with pytest.raises(ImportValidationError, match="edit-time"):
            parse_block({"uid": "x", "string": "a", "edit-time": "yesterday"})

    def test_page_without_title(self):
        with pytest.raises(ImportValidationError, match="title"):
            parse_page({"edit-time": 1, "children": []})

    def test_page_without_edit_time(self):
        with pytest.raises(ImportValidationError, match="edit-time") as exc_info:
            parse_page({"title": "Undated"})
        assert exc_info.value.block_id == "Undated"

    def test_malformed_nested_block_fails_whole_parse(self, sample_export_data):
        del sample_export_data[0]["children"][0]["children"][0]["uid"]
        with pytest.raises(ImportValidationError):
            parse_export(sample_export_data)


class TestLoadExport:

    def test_load_from_file(self, sample_export_file):
        pages = load_export(sample_export_file)
        assert len(pages) == 2

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("[{\"title\": ")
        with pytest.raises(ImportValidationError, match="not valid JSON"):
            load_export(path)

    def test_empty_export(self, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text(json.dumps([]))
        assert load_export(path) == []
