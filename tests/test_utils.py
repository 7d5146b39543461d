"""
Tests for blogsmith.utils: timestamps, JSON persistence, text metrics,
slugs and tolerant JSON parsing of model output.
"""

import json
from datetime import timezone

import pytest

from blogsmith.utils import (
    count_words,
    extract_json_block,
    extract_urls,
    generate_slug,
    load_json,
    now_iso,
    parse_iso,
    parse_model_json,
    repair_json,
    save_json,
    strip_html,
    truncate,
)


# ===================================================================
# Time & persistence
# ===================================================================

class TestTime:

    @pytest.mark.unit
    def test_now_iso_is_utc(self):
        assert parse_iso(now_iso()).tzinfo is not None

    @pytest.mark.unit
    def test_parse_iso_accepts_z_suffix(self):
        dt = parse_iso("2025-03-01T10:00:00Z")
        assert dt.tzinfo is not None
        assert dt.utcoffset().total_seconds() == 0

    @pytest.mark.unit
    def test_parse_iso_naive_assumed_utc(self):
        dt = parse_iso("2025-03-01T10:00:00")
        assert dt.tzinfo == timezone.utc

    @pytest.mark.unit
    def test_parse_iso_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_iso("next tuesday")


class TestJsonFiles:

    @pytest.mark.unit
    def test_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "data.json"
        save_json(path, {"a": 1, "b": ["é"]})
        assert load_json(path) == {"a": 1, "b": ["é"]}
        assert not path.with_suffix(".tmp").exists()

    @pytest.mark.unit
    def test_missing_file_returns_default(self, tmp_path):
        assert load_json(tmp_path / "nope.json", []) == []
        assert load_json(tmp_path / "nope.json") == {}

    @pytest.mark.unit
    def test_corrupt_file_returns_default(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        assert load_json(path, []) == []


# ===================================================================
# Text helpers
# ===================================================================

class TestText:

    @pytest.mark.unit
    def test_strip_html(self):
        assert strip_html("<p>Hello <strong>world</strong></p>\n<p>again</p>") == "Hello world again"

    @pytest.mark.unit
    def test_count_words(self):
        assert count_words("<h2>Title</h2><p>one two three</p>") == 4
        assert count_words("") == 0
        assert count_words("<div></div>") == 0

    @pytest.mark.unit
    def test_extract_urls_unique_in_order(self):
        text = "see https://a.com/x and http://b.org then https://a.com/x again"
        assert extract_urls(text) == ["https://a.com/x", "http://b.org"]

    @pytest.mark.unit
    def test_extract_urls_stops_at_quotes(self):
        assert extract_urls('<a href="https://example.com/page">x</a>') == ["https://example.com/page"]

    @pytest.mark.unit
    def test_truncate(self):
        assert truncate("short", 10) == "short"
        out = truncate("a" * 100, 60)
        assert len(out) == 60
        assert out.endswith("...")


class TestSlug:

    @pytest.mark.unit
    def test_basic(self):
        assert generate_slug("Intro to Composting!") == "intro-to-composting"

    @pytest.mark.unit
    def test_accents_transliterated(self):
        assert generate_slug("Éléments du café crème") == "elements-du-cafe-creme"

    @pytest.mark.unit
    def test_collapses_separators(self):
        assert generate_slug("  a -- b __ c  ") == "a-b-c"

    @pytest.mark.unit
    def test_max_length_without_trailing_hyphen(self):
        slug = generate_slug("word " * 40, max_length=20)
        assert len(slug) <= 20
        assert not slug.endswith("-")


# ===================================================================
# JSON from model output
# ===================================================================

class TestModelJson:

    @pytest.mark.unit
    def test_extract_block_strips_fences(self):
        text = '```json\n{"a": 1}\n```'
        assert extract_json_block(text) == '{"a": 1}'

    @pytest.mark.unit
    def test_extract_block_ignores_prose(self):
        assert extract_json_block('Sure! Here it is: {"a": {"b": 2}} Enjoy.') == '{"a": {"b": 2}}'

    @pytest.mark.unit
    def test_repair_unescaped_quote(self):
        broken = '{"title": "The "best" compost", "n": 1}'
        assert json.loads(repair_json(broken)) == {"title": 'The "best" compost', "n": 1}

    @pytest.mark.unit
    def test_repair_newline_in_string(self):
        broken = '{"text": "line one\nline two"}'
        assert json.loads(repair_json(broken)) == {"text": "line one line two"}

    @pytest.mark.unit
    def test_repair_trailing_comma(self):
        assert json.loads(repair_json('{"a": [1, 2,], }')) == {"a": [1, 2]}

    @pytest.mark.unit
    def test_repair_leaves_valid_json_alone(self):
        valid = '{"a": "x \\"q\\" y", "b": [1, 2]}'
        assert json.loads(repair_json(valid)) == json.loads(valid)

    @pytest.mark.unit
    def test_parse_model_json_direct(self):
        assert parse_model_json('{"ok": true}') == {"ok": True}

    @pytest.mark.unit
    def test_parse_model_json_with_repair(self):
        assert parse_model_json('```\n{"a": "say "hi"",}\n```') == {"a": 'say "hi"'}

    @pytest.mark.unit
    def test_parse_model_json_unrecoverable(self):
        with pytest.raises(ValueError):
            parse_model_json("no json here at all")

    @pytest.mark.unit
    def test_parse_model_json_rejects_arrays(self):
        with pytest.raises(ValueError):
            parse_model_json("[1, 2, 3]")
