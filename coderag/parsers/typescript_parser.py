"""
TypeScript Structure Parser

Extracts classes, interfaces, enums, namespaces and functions with
tree-sitter-typescript (TSX grammar for .tsx files), plus class and interface
members.
"""

import logging
from typing import Optional

import tree_sitter
import tree_sitter_typescript as ts_ts

from .tree_sitter_parser import Declaration, TreeSitterStructureParser, node_text

logger = logging.getLogger(__name__)

FUNCTION_VALUES = {'arrow_function', 'function_expression', 'function'}


class TypeScriptStructureParser(TreeSitterStructureParser):
    """TypeScript declarations via tree-sitter."""

    language = 'typescript'
    LEADING_NODE_TYPES = {'comment', 'decorator'}

    DECLARATION_TYPES = {
        'class_declaration': 'class',
        'abstract_class_declaration': 'class',
        'interface_declaration': 'interface',
        'enum_declaration': 'enum',
        'internal_module': 'module',
        'module': 'module',
        'function_declaration': 'method',
        'generator_function_declaration': 'method',
        'type_alias_declaration': 'type',
    }

    MEMBER_TYPES = {
        'method_definition': 'method',
        'method_signature': 'method',
        'abstract_method_signature': 'method',
        'public_field_definition': 'field',
        'property_signature': 'property',
        'index_signature': 'indexer',
        'enum_assignment': 'field',
    }

    def __init__(self, tsx: bool = False):
        self.tsx = tsx
        super().__init__()

    def _load_language(self) -> tree_sitter.Language:
        capsule = ts_ts.language_tsx() if self.tsx else ts_ts.language_typescript()
        return tree_sitter.Language(capsule)

    def describe(self, node) -> Optional[Declaration]:
        if node.type == 'export_statement':
            inner = node.child_by_field_name('declaration')
            return self.describe(inner) if inner is not None else None

        if node.type == 'lexical_declaration':
            return self._describe_function_variable(node)

        if node.type in self.DECLARATION_TYPES:
            semantic_type = self.DECLARATION_TYPES[node.type]
            name = node_text(node.child_by_field_name('name'))
            body = None if semantic_type == 'method' else node.child_by_field_name('body')
            return semantic_type, name or node.type, body

        if node.type in self.MEMBER_TYPES:
            semantic_type = self.MEMBER_TYPES[node.type]
            name_node = node.child_by_field_name('name')
            name = node_text(name_node) if name_node is not None else node.type
            if node.type == 'method_definition':
                if name == 'constructor':
                    semantic_type = 'constructor'
                elif any(child.type in ('get', 'set') for child in node.children):
                    semantic_type = 'property'
            return semantic_type, name, None

        if node.type == 'property_identifier' and node.parent is not None and node.parent.type == 'enum_body':
            return 'field', node_text(node), None

        return None

    def _describe_function_variable(self, node) -> Optional[Declaration]:
        """const handler = (...) => {...} counts as a function declaration."""
        declarators = [c for c in node.named_children if c.type == 'variable_declarator']
        if len(declarators) != 1:
            return None
        value = declarators[0].child_by_field_name('value')
        if value is None or value.type not in FUNCTION_VALUES:
            return None
        return 'method', node_text(declarators[0].child_by_field_name('name')), None
