"""
Structural Parser Interface

Shared span type returned by the per-language structure parsers. A parser
returns None when it cannot parse the content (the chunker then falls back to
a sliding window) and an empty list when the file has no declarations.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Protocol


@dataclass
class SemanticSpan:
    """A declaration and its line range (1-based, inclusive)."""
    start_line: int
    end_line: int
    semantic_type: Optional[str] = None
    semantic_name: Optional[str] = None
    namespace: Optional[str] = None
    children: List["SemanticSpan"] = field(default_factory=list)


class StructureParser(Protocol):
    """Extracts top-level declarations (with members as children)."""

    language: str

    def try_parse_structure(self, content: str) -> Optional[List[SemanticSpan]]:
        ...


def sorted_spans(spans: List[SemanticSpan]) -> List[SemanticSpan]:
    """Order spans by start line and drop any nested inside an earlier one."""
    result: List[SemanticSpan] = []
    for span in sorted(spans, key=lambda s: (s.start_line, -s.end_line)):
        if result and span.start_line <= result[-1].end_line:
            continue
        result.append(span)
    return result
