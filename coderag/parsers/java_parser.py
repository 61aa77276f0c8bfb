"""
Java Structure Parser

Extracts classes, interfaces, enums, records and annotation types with
tree-sitter-java, plus their members. The package name becomes the
namespace of the top-level types.
"""

import logging
from typing import Optional

import tree_sitter
import tree_sitter_java as ts_java

from .tree_sitter_parser import Declaration, Scope, TreeSitterStructureParser, node_text

logger = logging.getLogger(__name__)


class JavaStructureParser(TreeSitterStructureParser):
    """Java declarations via tree-sitter."""

    language = 'java'
    LEADING_NODE_TYPES = {'line_comment', 'block_comment'}
    TRANSPARENT_NODE_TYPES = {'enum_body_declarations'}
    FILE_SCOPE_NODE_TYPES = {'package_declaration'}

    TYPE_DECLARATIONS = {
        'class_declaration': 'class',
        'interface_declaration': 'interface',
        'enum_declaration': 'enum',
        'record_declaration': 'record',
        'annotation_type_declaration': 'interface',
    }

    MEMBER_DECLARATIONS = {
        'method_declaration': 'method',
        'constructor_declaration': 'constructor',
        'compact_constructor_declaration': 'constructor',
        'field_declaration': 'field',
        'constant_declaration': 'field',
        'enum_constant': 'field',
        'annotation_type_element_declaration': 'method',
    }

    def _load_language(self) -> tree_sitter.Language:
        return tree_sitter.Language(ts_java.language())

    def scope(self, node) -> Optional[Scope]:
        if node.type != 'package_declaration':
            return None
        names = [c for c in node.named_children if c.type in ('identifier', 'scoped_identifier')]
        return (node_text(names[-1]) if names else ''), []

    def describe(self, node) -> Optional[Declaration]:
        if node.type in self.TYPE_DECLARATIONS:
            name = node_text(node.child_by_field_name('name')) or node.type
            return self.TYPE_DECLARATIONS[node.type], name, node.child_by_field_name('body')

        semantic_type = self.MEMBER_DECLARATIONS.get(node.type)
        if semantic_type is None:
            return None

        if node.type in ('field_declaration', 'constant_declaration'):
            declarator = node.child_by_field_name('declarator')
            name = node_text(declarator.child_by_field_name('name')) if declarator is not None else ''
        else:
            name = node_text(node.child_by_field_name('name'))
        return semantic_type, name or node.type, None
