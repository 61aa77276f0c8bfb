"""
Python Structure Parser

Uses the standard library ast module to find top-level classes and functions
and the members of each class.
"""

import ast
import logging
from typing import List, Optional

from .base import SemanticSpan, sorted_spans

logger = logging.getLogger(__name__)

INTERFACE_BASES = {'Protocol', 'ABC', 'ABCMeta'}


def _decorator_names(node) -> List[str]:
    names = []
    for decorator in getattr(node, 'decorator_list', []):
        target = decorator.func if isinstance(decorator, ast.Call) else decorator
        if isinstance(target, ast.Attribute):
            names.append(target.attr)
        elif isinstance(target, ast.Name):
            names.append(target.id)
    return names


def _start_line(node) -> int:
    """First line of the node including its decorators."""
    lines = [node.lineno] + [d.lineno for d in getattr(node, 'decorator_list', [])]
    return min(lines)


def _class_type(node: ast.ClassDef) -> str:
    if 'dataclass' in _decorator_names(node):
        return 'record'
    for base in node.bases:
        name = base.attr if isinstance(base, ast.Attribute) else getattr(base, 'id', None)
        if name in INTERFACE_BASES:
            return 'interface'
    return 'class'


def _target_name(node) -> Optional[str]:
    target = node.target if isinstance(node, ast.AnnAssign) else node.targets[0]
    if isinstance(target, ast.Name):
        return target.id
    if isinstance(target, ast.Attribute):
        return target.attr
    return None


class PythonStructureParser:
    """Python declarations via ast (classes, functions, class members)."""

    language = 'python'

    def try_parse_structure(self, content: str) -> Optional[List[SemanticSpan]]:
        try:
            tree = ast.parse(content)
        except (SyntaxError, ValueError) as e:
            logger.debug(f"Python parse failed: {e}")
            return None

        spans = []
        for node in tree.body:
            if isinstance(node, ast.ClassDef):
                spans.append(self._class_span(node))
            elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                spans.append(SemanticSpan(
                    start_line=_start_line(node),
                    end_line=node.end_lineno,
                    semantic_type='method',
                    semantic_name=node.name,
                ))
        return sorted_spans(spans)

    def _class_span(self, node: ast.ClassDef) -> SemanticSpan:
        members = []
        for child in node.body:
            if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                decorators = _decorator_names(child)
                if child.name == '__init__':
                    member_type = 'constructor'
                elif 'property' in decorators or 'setter' in decorators or 'cached_property' in decorators:
                    member_type = 'property'
                else:
                    member_type = 'method'
                members.append(SemanticSpan(
                    start_line=_start_line(child),
                    end_line=child.end_lineno,
                    semantic_type=member_type,
                    semantic_name=child.name,
                    namespace=node.name,
                ))
            elif isinstance(child, ast.ClassDef):
                nested = self._class_span(child)
                nested.namespace = node.name
                members.append(nested)
            elif isinstance(child, (ast.Assign, ast.AnnAssign)):
                members.append(SemanticSpan(
                    start_line=child.lineno,
                    end_line=child.end_lineno,
                    semantic_type='field',
                    semantic_name=_target_name(child) or 'field',
                    namespace=node.name,
                ))

        return SemanticSpan(
            start_line=_start_line(node),
            end_line=node.end_lineno,
            semantic_type=_class_type(node),
            semantic_name=node.name,
            children=sorted_spans(members),
        )
