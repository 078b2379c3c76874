"""
Variable references in block instructions.

A block instruction may reference the output of a direct upstream block by
label in square brackets:

    "Write a caption for [B01] in the tone of [A01]"

Split multi-output blocks are addressed with a numeric suffix, e.g. [B01-2]
for the second output of B01 (labelled "B01-2" on the canvas).
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from blockflow.runtime.propagation import PropagatedRecord

VARIABLE_PATTERN = re.compile(r"\[([A-Z]\d+(?:-\d+)?)\]")
_FULL_VARIABLE_PATTERN = re.compile(r"^\[([A-Z]\d+)(?:-(\d+))?\]$")


@dataclass(frozen=True)
class VariableReference:
    """A single [label] token found in an instruction."""

    token: str  # "[A01]"
    label: str  # "A01"
    start: int
    end: int


class VariableResolver:
    """
    Parses and substitutes [label] tokens.

    Example:
        resolver = VariableResolver()
        resolver.resolve("say [A01]", upstream_records)  # -> "say hi"
    """

    def parse(self, text: str) -> list[VariableReference]:
        """Find every variable token in text, in order of appearance."""
        return [
            VariableReference(token=m.group(0), label=m.group(1), start=m.start(), end=m.end())
            for m in VARIABLE_PATTERN.finditer(text or "")
        ]

    def resolve(self, text: str, records: Iterable["PropagatedRecord"]) -> str:
        """
        Replace tokens with the primary content of the matching upstream record.

        Tokens without a matching record are left as literal text; the
        validator reports them before a run starts.
        """
        content_by_label = {record.label: record.primary_content for record in records}

        def _substitute(match: re.Match) -> str:
            content = content_by_label.get(match.group(1))
            return content if content is not None else match.group(0)

        return VARIABLE_PATTERN.sub(_substitute, text or "")

    def find_undefined(
        self, text: str, available_labels: Iterable[str]
    ) -> list[VariableReference]:
        """Return the references whose label is not in available_labels."""
        available = set(available_labels)
        return [ref for ref in self.parse(text) if ref.label not in available]

    def validate(self, text: str, available_labels: Iterable[str]) -> list[str]:
        """
        Check the tokens in text against the labels a block can see.

        Returns:
            One message per undefined token (empty when text is valid)
        """
        return [
            f"Variable {ref.token} references unavailable block {ref.label}"
            for ref in self.find_undefined(text, available_labels)
        ]

    def has_variables(self, text: str) -> bool:
        """Check whether text contains at least one token."""
        return VARIABLE_PATTERN.search(text or "") is not None

    def unique_labels(self, text: str) -> list[str]:
        """Sorted, de-duplicated labels referenced by text."""
        return sorted({ref.label for ref in self.parse(text)})

    def replace(self, text: str, label: str, replacement: str) -> str:
        """Replace every occurrence of one specific token."""
        return text.replace(f"[{label}]", replacement)

    def suggestions(self, labels: Iterable[str]) -> list[dict[str, str]]:
        """Token suggestions for the instruction editor."""
        return [
            {
                "variable": f"[{label}]",
                "description": f"Output from block {label}",
                "example": f"Use [{label}] to reference the content from block {label}",
            }
            for label in labels
        ]

    @staticmethod
    def escape(content: str) -> str:
        """Make content safe to embed: brackets become parentheses."""
        return content.replace("[", "(").replace("]", ")").strip()

    @staticmethod
    def is_valid_token(token: str) -> bool:
        """Check that token is exactly one well-formed [label]."""
        return _FULL_VARIABLE_PATTERN.match(token) is not None
