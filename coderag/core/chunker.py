"""
Semantic Chunker

Splits file content into chunks along declaration boundaries when a structure
parser is available, and with a token-bounded sliding window otherwise.
Chunk hashes are derived from project, path, line range and content, so
chunking is deterministic.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..parsers import SemanticSpan, StructureParser, get_structure_parser
from .config import ChunkerOptions, detect_language
from .models import Chunk, compute_chunk_hash, compute_hash
from .tokenizer import HeuristicTokenizer

logger = logging.getLogger(__name__)

# (semantic_type, semantic_name, namespace)
Tag = Tuple[Optional[str], Optional[str], Optional[str]]
NO_TAG: Tag = (None, None, None)


@dataclass
class _Unit:
    start_line: int
    end_line: int
    tag: Tag


def split_lines(content: str) -> List[str]:
    """Split on '\\n', dropping the empty element after a final newline."""
    lines = content.split('\n')
    if len(lines) > 1 and lines[-1] == '':
        lines.pop()
    return lines


class SemanticChunker:
    """
    Turns (file_path, content) into an ordered list of chunks.

    Responsibilities:
    - Extract declaration units via the file's structure parser
    - Split types that exceed max_chunk_tokens into member units covering the
      whole type with no line gaps
    - Re-chunk oversized units with a sliding window that inherits the unit's tag
    - Fall back to a whole-file sliding window when parsing fails or finds nothing
    """

    def __init__(
        self,
        options: Optional[ChunkerOptions] = None,
        tokenizer: Optional[HeuristicTokenizer] = None,
        parser_lookup: Callable[[str], Optional[StructureParser]] = get_structure_parser
    ):
        self.options = options or ChunkerOptions()
        self.tokenizer = tokenizer or HeuristicTokenizer()
        self.parser_lookup = parser_lookup

    def chunk(self, file_path: str, content: str, project_id: str) -> List[Chunk]:
        """
        Chunk one file.

        Args:
            file_path: Repository-relative path (part of the chunk hash)
            content: File text
            project_id: Owning project (part of the chunk hash)

        Returns:
            Chunks in ascending line order; empty for blank content
        """
        if not content or not content.strip():
            logger.warning(f"⚠️ Skipping empty or whitespace-only file {file_path}")
            return []

        language = detect_language(file_path)
        lines = split_lines(content)

        chunks: List[Chunk] = []
        if self.options.use_semantic_splitting:
            units = self._semantic_units(file_path, content, lines)
            if units:
                chunks = self._chunk_units(file_path, lines, units, project_id, language)

        if not chunks:
            chunks = self._sliding_window(file_path, lines, 1, project_id, language, NO_TAG)

        logger.debug(f"Created {len(chunks)} chunks for {file_path} ({language})")
        return chunks

    def chunk_files(self, files: Dict[str, str], project_id: str) -> List[Chunk]:
        """Chunk several files, in the iteration order of files."""
        all_chunks = []
        for file_path, content in files.items():
            all_chunks.extend(self.chunk(file_path, content, project_id))
        logger.info(f"✅ Created {len(all_chunks)} chunks from {len(files)} files")
        return all_chunks

    # ===== semantic units =====

    def _semantic_units(self, file_path: str, content: str, lines: List[str]) -> Optional[List[_Unit]]:
        parser = self.parser_lookup(file_path)
        if parser is None:
            return None

        try:
            spans = parser.try_parse_structure(content)
        except Exception as e:
            logger.warning(f"⚠️ Structure parser failed for {file_path}, using sliding window: {e}")
            return None

        if spans is None:
            logger.warning(f"⚠️ Could not parse {file_path}, using sliding window")
            return None
        if not spans:
            return None

        return self._expand(spans, 1, len(lines), lines, NO_TAG)

    def _text(self, lines: List[str], start_line: int, end_line: int) -> str:
        return '\n'.join(lines[start_line - 1:end_line])

    def _tokens(self, lines: List[str], start_line: int, end_line: int) -> int:
        return self.tokenizer.count_tokens(self._text(lines, start_line, end_line))

    def _expand(
        self,
        spans: List[SemanticSpan],
        range_start: int,
        range_end: int,
        lines: List[str],
        parent_tag: Tag
    ) -> List[_Unit]:
        """Cover [range_start, range_end] with units built from spans and the gaps between them."""
        units: List[_Unit] = []
        cursor = range_start
        for span in spans:
            start = max(span.start_line, cursor)
            end = min(span.end_line, range_end)
            if start > end:
                continue
            if start > cursor:
                self._add_gap(units, cursor, start - 1, lines, parent_tag)
            units.extend(self._expand_span(span, start, end, lines))
            cursor = end + 1

        if cursor <= range_end:
            self._add_gap(units, cursor, range_end, lines, parent_tag)

        return self._merge_small_units(units, lines)

    def _expand_span(self, span: SemanticSpan, start: int, end: int, lines: List[str]) -> List[_Unit]:
        tag = (span.semantic_type, span.semantic_name, span.namespace)
        if not span.children or self._tokens(lines, start, end) <= self.options.max_chunk_tokens:
            return [_Unit(start, end, tag)]
        return self._expand(span.children, start, end, lines, tag)

    def _add_gap(self, units: List[_Unit], start: int, end: int, lines: List[str], tag: Tag) -> None:
        # Blank lines join the preceding unit
        if units and not self._text(lines, start, end).strip():
            units[-1].end_line = end
            return
        units.append(_Unit(start, end, tag))

    def _merge_small_units(self, units: List[_Unit], lines: List[str]) -> List[_Unit]:
        """Merge units under min_chunk_tokens into the next unit (the last one into the previous)."""
        merged: List[_Unit] = []
        pending: Optional[_Unit] = None
        for unit in units:
            if pending is not None:
                unit = _Unit(pending.start_line, unit.end_line, unit.tag)
                pending = None
            if self._tokens(lines, unit.start_line, unit.end_line) < self.options.min_chunk_tokens:
                pending = unit
                continue
            merged.append(unit)

        if pending is not None:
            if merged:
                merged[-1].end_line = pending.end_line
            else:
                merged.append(pending)
        return merged

    def _chunk_units(
        self,
        file_path: str,
        lines: List[str],
        units: List[_Unit],
        project_id: str,
        language: str
    ) -> List[Chunk]:
        chunks: List[Chunk] = []
        for unit in units:
            text = self._text(lines, unit.start_line, unit.end_line)
            token_count = self.tokenizer.count_tokens(text)

            if token_count > self.options.max_chunk_tokens:
                unit_lines = lines[unit.start_line - 1:unit.end_line]
                chunks.extend(self._sliding_window(
                    file_path, unit_lines, unit.start_line, project_id, language, unit.tag
                ))
            elif token_count >= self.options.min_chunk_tokens:
                chunks.append(self._create_chunk(
                    file_path, text, project_id, unit.start_line, unit.end_line,
                    token_count, language, unit.tag
                ))
            else:
                logger.debug(
                    f"Dropping {token_count}-token unit {unit.tag[1]} in {file_path} "
                    f"(lines {unit.start_line}-{unit.end_line})"
                )
        return chunks

    # ===== sliding window =====

    def _sliding_window(
        self,
        file_path: str,
        lines: List[str],
        base_line: int,
        project_id: str,
        language: str,
        tag: Tag
    ) -> List[Chunk]:
        """
        Window over lines, each window at most max_chunk_tokens.

        Windows below min_chunk_tokens are dropped; consecutive windows share
        up to overlap_tokens worth of lines. Always returns at least one chunk.
        """
        max_tokens = self.options.max_chunk_tokens
        chunks: List[Chunk] = []
        index = 0

        while index < len(lines):
            start_index = index
            current: List[str] = []
            while index < len(lines):
                candidate = '\n'.join(current + [lines[index]])
                if current and self.tokenizer.count_tokens(candidate) > max_tokens:
                    break
                current.append(lines[index])
                index += 1

            text = '\n'.join(current)
            token_count = self.tokenizer.count_tokens(text)
            if token_count >= self.options.min_chunk_tokens:
                chunks.append(self._create_chunk(
                    file_path, text, project_id, base_line + start_index,
                    base_line + index - 1, token_count, language, tag
                ))

            if index < len(lines):
                # Back up at most consumed - 1 lines so every window advances
                consumed = index - start_index
                overlap_lines = 0
                overlap_tokens = 0
                while overlap_lines < consumed - 1 and overlap_tokens < self.options.overlap_tokens:
                    overlap_lines += 1
                    overlap_tokens += self.tokenizer.count_tokens(lines[index - overlap_lines])
                index -= overlap_lines

        if not chunks:
            text = '\n'.join(lines)
            chunks.append(self._create_chunk(
                file_path, text, project_id, base_line, base_line + max(0, len(lines) - 1),
                self.tokenizer.count_tokens(text), language, tag
            ))

        total = len(chunks)
        for i, chunk in enumerate(chunks):
            chunk.chunk_index = i
            chunk.total_chunks = total
        return chunks

    def _create_chunk(
        self,
        file_path: str,
        content: str,
        project_id: str,
        start_line: int,
        end_line: int,
        token_count: int,
        language: str,
        tag: Tag
    ) -> Chunk:
        semantic_type, semantic_name, namespace = tag
        text_hash = compute_hash(content)
        return Chunk(
            project_id=project_id,
            file_path=file_path,
            start_line=start_line,
            end_line=end_line,
            content=content,
            token_count=token_count,
            language=language,
            text_hash=text_hash,
            chunk_hash=compute_chunk_hash(project_id, file_path, start_line, end_line, text_hash),
            semantic_type=semantic_type or 'file',
            semantic_name=semantic_name or Path(file_path).name,
            namespace=namespace,
        )
