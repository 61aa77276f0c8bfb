"""
JavaScript Structure Parser

Extracts classes and functions (including const/let/var bound arrow and
function expressions) with tree-sitter-javascript, which also covers JSX.
"""

import logging
from typing import Optional

import tree_sitter
import tree_sitter_javascript as ts_js

from .tree_sitter_parser import Declaration, node_text
from .typescript_parser import TypeScriptStructureParser

logger = logging.getLogger(__name__)


class JavaScriptStructureParser(TypeScriptStructureParser):
    """JavaScript declarations via tree-sitter, sharing the TypeScript node rules."""

    language = 'javascript'
    LEADING_NODE_TYPES = {'comment'}

    def __init__(self):
        super().__init__(tsx=False)

    def _load_language(self) -> tree_sitter.Language:
        return tree_sitter.Language(ts_js.language())

    def describe(self, node) -> Optional[Declaration]:
        if node.type == 'field_definition':
            return 'field', node_text(node.child_by_field_name('property')) or node.type, None
        if node.type == 'variable_declaration':
            return self._describe_function_variable(node)
        return super().describe(node)
