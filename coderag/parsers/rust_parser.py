"""
Rust Structure Parser

Extracts structs, enums, traits, impl blocks, modules and functions with
tree-sitter-rust, plus their members (methods, fields, variants).
"""

import logging
from typing import Optional

import tree_sitter
import tree_sitter_rust as ts_rust

from .tree_sitter_parser import Declaration, TreeSitterStructureParser, node_text

logger = logging.getLogger(__name__)


class RustStructureParser(TreeSitterStructureParser):
    """Rust declarations via tree-sitter."""

    language = 'rust'
    LEADING_NODE_TYPES = {'attribute_item', 'line_comment', 'block_comment'}

    ITEM_TYPES = {
        'struct_item': 'struct',
        'union_item': 'struct',
        'enum_item': 'enum',
        'trait_item': 'interface',
        'impl_item': 'impl',
        'mod_item': 'module',
        'function_item': 'method',
        'function_signature_item': 'method',
        'macro_definition': 'macro',
        'const_item': 'field',
        'static_item': 'field',
        'type_item': 'field',
        'associated_type': 'field',
        'field_declaration': 'field',
        'enum_variant': 'field',
    }

    def _load_language(self) -> tree_sitter.Language:
        return tree_sitter.Language(ts_rust.language())

    def describe(self, node) -> Optional[Declaration]:
        semantic_type = self.ITEM_TYPES.get(node.type)
        if semantic_type is None:
            return None

        if node.type == 'impl_item':
            type_name = node_text(node.child_by_field_name('type'))
            trait = node.child_by_field_name('trait')
            name = f"{node_text(trait)} for {type_name}" if trait is not None else type_name
        else:
            name = node_text(node.child_by_field_name('name'))

        if semantic_type == 'method' and name == 'new':
            semantic_type = 'constructor'

        # Function bodies are not walked for members
        body = None if semantic_type in ('method', 'constructor') else node.child_by_field_name('body')
        return semantic_type, name or node.type, body
