"""
Structure Parsers for Semantic Chunking

Per-language parsers that locate declarations and their members. Files with
no parser are chunked with a sliding window.
"""

from pathlib import Path
from typing import Dict, Optional

from .base import SemanticSpan, StructureParser
from .csharp_parser import CSharpStructureParser
from .java_parser import JavaStructureParser
from .javascript_parser import JavaScriptStructureParser
from .python_parser import PythonStructureParser
from .rust_parser import RustStructureParser
from .typescript_parser import TypeScriptStructureParser

_PARSERS: Dict[str, StructureParser] = {}


def _build_parser(extension: str) -> Optional[StructureParser]:
    if extension == '.py':
        return PythonStructureParser()
    if extension == '.rs':
        return RustStructureParser()
    if extension == '.ts':
        return TypeScriptStructureParser()
    if extension == '.tsx':
        return TypeScriptStructureParser(tsx=True)
    if extension == '.cs':
        return CSharpStructureParser()
    if extension == '.java':
        return JavaStructureParser()
    if extension in ('.js', '.jsx'):
        return JavaScriptStructureParser()
    return None


def get_structure_parser(file_path: str) -> Optional[StructureParser]:
    """Return the (cached) structure parser for a file's extension, if any."""
    extension = Path(file_path).suffix.lower()
    if extension not in _PARSERS:
        parser = _build_parser(extension)
        if parser is None:
            return None
        _PARSERS[extension] = parser
    return _PARSERS[extension]


__all__ = [
    'SemanticSpan',
    'StructureParser',
    'CSharpStructureParser',
    'JavaStructureParser',
    'JavaScriptStructureParser',
    'PythonStructureParser',
    'RustStructureParser',
    'TypeScriptStructureParser',
    'get_structure_parser',
]
