"""
Content filtering for file discovery.
Excludes build artifacts, lock files and generated code that add noise to
retrieval without carrying semantic value.
"""

import re
from typing import List, Optional, Pattern


DEFAULT_EXCLUDE_PATTERNS = [
    r'(^|/)\.git/',                   # Git metadata
    r'(^|/)node_modules/',            # JavaScript dependencies
    r'(^|/)__pycache__/',             # Python cache
    r'(^|/)target/',                  # Rust build artifacts
    r'(^|/)dist/',                    # Frontend build
    r'(^|/)\.next/',                  # Next.js build cache
    r'pnpm-lock\.yaml$',
    r'package-lock\.json$',
    r'yarn\.lock$',
    r'cargo\.lock$',
    r'poetry\.lock$',
    r'pipfile\.lock$',
    r'composer\.lock$',
    r'go\.sum$',
    r'-lock\.json$',
    r'\.min\.js$',                    # Minified JavaScript (low semantic value)
    r'\.min\.css$',
    r'\.designer\.cs$',               # Generated WinForms/resources code
    r'\.g\.cs$',                      # Source-generator output
    r'\.pb\.go$',                     # Generated protobuf code
]


class ContentFilter:
    """Decide whether a discovered file should be ingested."""

    def __init__(self, extra_patterns: Optional[List[str]] = None):
        patterns = DEFAULT_EXCLUDE_PATTERNS + list(extra_patterns or [])
        self.exclude_patterns: List[Pattern] = [re.compile(p) for p in patterns]

    def should_include_file(self, relative_path: str) -> bool:
        normalized = relative_path.replace('\\', '/').lower()
        return not any(pattern.search(normalized) for pattern in self.exclude_patterns)


# Shared default instance
content_filter = ContentFilter()
