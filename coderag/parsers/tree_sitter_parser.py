"""
Tree-sitter Structure Parser Base

Walks a tree-sitter syntax tree and turns declaration nodes into semantic
spans. Language subclasses decide which node types are declarations, which
child node holds their members, and which nodes only open a namespace.
"""

import logging
from typing import List, Optional, Tuple

import tree_sitter

from .base import SemanticSpan, sorted_spans

logger = logging.getLogger(__name__)

# (semantic_type, semantic_name, body node or None)
Declaration = Tuple[str, str, Optional["tree_sitter.Node"]]

# (namespace name, nodes inside it)
Scope = Tuple[str, List["tree_sitter.Node"]]


def node_text(node) -> str:
    if node is None:
        return ''
    return node.text.decode('utf-8', errors='replace')


def first_descendant(node, node_type: str):
    """Depth-first search for the first descendant of node_type."""
    for child in node.named_children:
        if child.type == node_type:
            return child
        found = first_descendant(child, node_type)
        if found is not None:
            return found
    return None


class TreeSitterStructureParser:
    """
    Base class for tree-sitter backed parsers.

    Responsibilities:
    - Parse content and reject trees with syntax errors
    - Extend each declaration upward over attached comments and attributes
    - Recurse into declaration bodies to collect members
    - Carry namespace names from namespace/package nodes onto declarations

    Parsers are shared per extension, so nothing per-call is kept on self;
    each call builds its own tree_sitter.Parser.
    """

    language = ''
    LEADING_NODE_TYPES = {'comment'}
    # Walked through as if their children were siblings
    TRANSPARENT_NODE_TYPES: set = set()
    # Namespace nodes that also apply to the siblings after them
    FILE_SCOPE_NODE_TYPES: set = set()

    def __init__(self):
        self._language = self._load_language()

    def _load_language(self) -> tree_sitter.Language:
        raise NotImplementedError

    def describe(self, node) -> Optional[Declaration]:
        """Return the declaration info for node, or None if it is not one."""
        raise NotImplementedError

    def scope(self, node) -> Optional[Scope]:
        """Return (namespace, inner nodes) when node only opens a namespace."""
        return None

    def try_parse_structure(self, content: str) -> Optional[List[SemanticSpan]]:
        parser = tree_sitter.Parser(self._language)
        tree = parser.parse(content.encode('utf-8'))
        root = tree.root_node
        if root.has_error:
            logger.debug(f"{self.language} syntax tree contains errors")
            return None
        return self._spans(root.named_children, namespace=None)

    def _spans(self, nodes, namespace: Optional[str]) -> List[SemanticSpan]:
        spans = []
        for node in nodes:
            if node.type in self.TRANSPARENT_NODE_TYPES:
                spans.extend(self._spans(node.named_children, namespace))
                continue

            scope = self.scope(node)
            if scope is not None:
                scope_name, inner = scope
                spans.extend(self._spans(inner, scope_name))
                if node.type in self.FILE_SCOPE_NODE_TYPES:
                    namespace = scope_name
                continue

            declaration = self.describe(node)
            if declaration is None:
                continue
            semantic_type, name, body = declaration
            children = self._spans(body.named_children, namespace=name) if body is not None else []
            spans.append(SemanticSpan(
                start_line=self._leading_start_row(node) + 1,
                end_line=node.end_point[0] + 1,
                semantic_type=semantic_type,
                semantic_name=name,
                namespace=namespace,
                children=children,
            ))
        return sorted_spans(spans)

    def _leading_start_row(self, node) -> int:
        """Start row including directly attached comments and attributes."""
        start_row = node.start_point[0]
        sibling = node.prev_named_sibling
        while sibling is not None and sibling.type in self.LEADING_NODE_TYPES:
            if sibling.end_point[0] < start_row - 1:
                break
            start_row = sibling.start_point[0]
            sibling = sibling.prev_named_sibling
        return start_row
