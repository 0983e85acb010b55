"""Tests for app.pipeline.llm reply parsing."""

import pytest

from app.pipeline.llm import extract_code, extract_json_object


class TestExtractJsonObject:
    def test_plain_object(self):
        assert extract_json_object('{"intent_type": "bug_fix"}') == {"intent_type": "bug_fix"}

    def test_fenced_object(self):
        reply = 'Sure:\n```json\n{"a": 1}\n```\nLet me know {if} you need more.'
        assert extract_json_object(reply) == {"a": 1}

    def test_trailing_prose_with_braces(self):
        reply = '{"intent_type": "bug_fix", "confidence": 0.9}\nNote: placeholders look like {name}.'
        assert extract_json_object(reply) == {"intent_type": "bug_fix", "confidence": 0.9}

    def test_leading_prose(self):
        assert extract_json_object('Result: {"nested": {"x": [1, 2]}} done') == {"nested": {"x": [1, 2]}}

    def test_no_object(self):
        with pytest.raises(ValueError, match="No JSON object"):
            extract_json_object("Sorry, I cannot produce JSON.")

    def test_malformed_object(self):
        with pytest.raises(ValueError):
            extract_json_object('{"a": 1,')


def test_extract_code():
    assert extract_code("```php\n<?php echo 1;\n```") == "<?php echo 1;"
    assert extract_code("  <?php echo 1;  ") == "<?php echo 1;"
