"""
C# Structure Parser

Extracts classes, structs, interfaces, records, enums and delegates with
tree-sitter-c-sharp, plus their members (methods, constructors, properties,
fields, events, indexers, operators, nested types). Block and file-scoped
namespaces are carried onto the declarations they contain.
"""

import logging
from typing import Optional

import tree_sitter
import tree_sitter_c_sharp as ts_csharp

from .tree_sitter_parser import Declaration, Scope, TreeSitterStructureParser, first_descendant, node_text

logger = logging.getLogger(__name__)


def declarator_name(node) -> str:
    """Name of the first variable declared by a field or event field."""
    declarator = first_descendant(node, 'variable_declarator')
    if declarator is None:
        return node.type
    name = declarator.child_by_field_name('name')
    if name is None:
        name = next((c for c in declarator.named_children if c.type == 'identifier'), None)
    return node_text(name) or node.type


class CSharpStructureParser(TreeSitterStructureParser):
    """C# declarations via tree-sitter."""

    language = 'csharp'
    TRANSPARENT_NODE_TYPES = {'preproc_if', 'preproc_elif', 'preproc_else', 'preproc_region'}
    FILE_SCOPE_NODE_TYPES = {'file_scoped_namespace_declaration'}

    TYPE_DECLARATIONS = {
        'class_declaration': 'class',
        'struct_declaration': 'struct',
        'interface_declaration': 'interface',
        'enum_declaration': 'enum',
        'record_declaration': 'record',
        'record_struct_declaration': 'record',
        'delegate_declaration': 'delegate',
    }

    MEMBER_DECLARATIONS = {
        'method_declaration': 'method',
        'local_function_statement': 'method',
        'constructor_declaration': 'constructor',
        'destructor_declaration': 'method',
        'property_declaration': 'property',
        'indexer_declaration': 'indexer',
        'event_declaration': 'event',
        'event_field_declaration': 'event',
        'field_declaration': 'field',
        'operator_declaration': 'operator',
        'conversion_operator_declaration': 'operator',
        'enum_member_declaration': 'field',
    }

    def _load_language(self) -> tree_sitter.Language:
        return tree_sitter.Language(ts_csharp.language())

    def scope(self, node) -> Optional[Scope]:
        if node.type not in ('namespace_declaration', 'file_scoped_namespace_declaration'):
            return None
        name = node_text(node.child_by_field_name('name'))
        body = node.child_by_field_name('body')
        inner = body.named_children if body is not None else node.named_children
        return name, inner

    def describe(self, node) -> Optional[Declaration]:
        if node.type in self.TYPE_DECLARATIONS:
            name = node_text(node.child_by_field_name('name')) or node.type
            return self.TYPE_DECLARATIONS[node.type], name, node.child_by_field_name('body')

        semantic_type = self.MEMBER_DECLARATIONS.get(node.type)
        if semantic_type is None:
            return None

        if node.type in ('field_declaration', 'event_field_declaration'):
            name = declarator_name(node)
        elif node.type == 'indexer_declaration':
            name = 'this'
        elif node.type == 'operator_declaration':
            name = node_text(node.child_by_field_name('operator')) or 'operator'
        elif node.type == 'conversion_operator_declaration':
            name = node_text(node.child_by_field_name('type')) or 'operator'
        elif node.type == 'destructor_declaration':
            name = f"~{node_text(node.child_by_field_name('name'))}"
        else:
            name = node_text(node.child_by_field_name('name')) or node.type
        return semantic_type, name, None
