"""Tests for VariableResolver - [label] tokens in instructions."""

from blockflow.graph import BlockType, VariableResolver
from blockflow.runtime import PropagatedRecord


def _record(label: str, content: str, timestamp: float = 1.0) -> PropagatedRecord:
    return PropagatedRecord(
        block_id=label.lower(),
        label=label,
        primary_content=content,
        type=BlockType.TEXT,
        timestamp=timestamp,
    )


class TestParse:
    def test_positions_and_labels(self):
        refs = VariableResolver().parse("say [A01] and [B01-2]")

        assert [r.label for r in refs] == ["A01", "B01-2"]
        assert refs[0].token == "[A01]"
        assert (refs[0].start, refs[0].end) == (4, 9)

    def test_ignores_malformed_tokens(self):
        resolver = VariableResolver()

        assert resolver.parse("[a01] [A] [01] [AB1]") == []
        assert resolver.has_variables("no tokens here") is False

    def test_unique_labels_sorted(self):
        assert VariableResolver().unique_labels("[B01] [A01] [B01]") == ["A01", "B01"]


class TestResolve:
    def test_substitutes_upstream_content(self):
        result = VariableResolver().resolve("say [A01]", [_record("A01", "hi")])

        assert result == "say hi"

    def test_multiple_tokens_and_repeats(self):
        records = [_record("A01", "cat"), _record("B01", "hat")]

        result = VariableResolver().resolve("[A01] in a [B01], [A01]!", records)

        assert result == "cat in a hat, cat!"

    def test_suffixed_token_uses_suffixed_record(self):
        records = [_record("B01", "whole"), _record("B01-2", "second")]

        assert VariableResolver().resolve("use [B01-2]", records) == "use second"

    def test_unknown_token_left_literal(self):
        assert VariableResolver().resolve("say [C01]", [_record("A01", "hi")]) == "say [C01]"

    def test_empty_text(self):
        assert VariableResolver().resolve("", [_record("A01", "hi")]) == ""


class TestValidation:
    def test_validate_reports_unavailable_labels(self):
        findings = VariableResolver().validate("[A01] [C01]", ["A01", "B01"])

        assert len(findings) == 1
        assert "[C01]" in findings[0]

    def test_validate_clean_text(self):
        assert VariableResolver().validate("[A01]", ["A01"]) == []

    def test_is_valid_token(self):
        assert VariableResolver.is_valid_token("[A01]") is True
        assert VariableResolver.is_valid_token("[B01-2]") is True
        assert VariableResolver.is_valid_token("A01") is False
        assert VariableResolver.is_valid_token("[A01] ") is False


def test_escape_and_replace():
    resolver = VariableResolver()

    assert resolver.escape(" see [A01] ") == "see (A01)"
    assert resolver.replace("[A01] and [A01]", "A01", "x") == "x and x"


def test_suggestions():
    suggestions = VariableResolver().suggestions(["A01"])

    assert suggestions[0]["variable"] == "[A01]"
    assert "A01" in suggestions[0]["description"]
