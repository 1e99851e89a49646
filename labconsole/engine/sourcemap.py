"""Generated-to-original position correlation for rewritten submissions.

The rewriter keeps original locations on every node it moves or replaces and
leaves synthesized nodes unpositioned (line 0). Re-parsing the emitted text and
walking both trees in lock-step pairs each positioned node with its generated
position.
"""

from __future__ import annotations

import ast
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger()


def character_column(line: str, byte_offset: int) -> int:
    """Convert a UTF-8 byte offset within ``line`` into a character offset."""
    if byte_offset <= 0:
        return 0
    return len(line.encode("utf-8")[:byte_offset].decode("utf-8", errors="replace"))


def byte_column(line: str, char_offset: int) -> int:
    """Convert a character offset within ``line`` into a UTF-8 byte offset."""
    if char_offset <= 0:
        return 0
    return len(line[:char_offset].encode("utf-8"))


@dataclass(frozen=True)
class Mapping:
    generated_line: int
    generated_column: int
    original_line: int
    original_column: int


@dataclass
class SourceMap:
    """Maps (line, byte column) in generated text to original source positions.

    Positions returned to callers are 1-based lines and 1-based character
    columns in the submitted text.
    """

    original_source: str
    generated_source: str
    first_line_shift: int = 0
    _by_line: dict[int, list[Mapping]] = field(default_factory=dict)
    _columns: dict[int, list[int]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._original_lines = self.original_source.splitlines()
        self._generated_lines = self.generated_source.splitlines()

    @classmethod
    def build(
        cls,
        rewritten: ast.AST,
        generated_source: str,
        original_source: str,
        *,
        parse: Callable[[str], ast.AST] = ast.parse,
        first_line_shift: int = 0,
    ) -> "SourceMap":
        source_map = cls(original_source, generated_source, first_line_shift)
        regenerated = parse(generated_source)
        pairs = 0
        for orig, gen in zip(ast.walk(rewritten), ast.walk(regenerated)):
            if type(orig) is not type(gen):
                # Structure diverged; keep what was paired so far
                logger.debug(
                    "source_map_divergence",
                    original=type(orig).__name__,
                    generated=type(gen).__name__,
                    pairs=pairs,
                )
                break
            line = getattr(orig, "lineno", 0) or 0
            gen_line = getattr(gen, "lineno", 0) or 0
            if line <= 0 or gen_line <= 0:
                continue
            source_map.add(gen_line, gen.col_offset, line, orig.col_offset)
            pairs += 1
        source_map._finish()
        return source_map

    def add(self, gen_line: int, gen_col: int, orig_line: int, orig_col: int) -> None:
        self._by_line.setdefault(gen_line, []).append(
            Mapping(gen_line, gen_col, orig_line, orig_col)
        )

    def _finish(self) -> None:
        for line, entries in self._by_line.items():
            # Stable sort keeps deeper (later walked) nodes after their parents
            entries.sort(key=lambda m: m.generated_column)
            self._columns[line] = [m.generated_column for m in entries]

    def lookup(self, line: int, column: int) -> Optional[Mapping]:
        """Find the mapping that best covers a generated (line, byte column)."""
        entries = self._by_line.get(line)
        if entries:
            idx = bisect_right(self._columns[line], column)
            return entries[idx - 1] if idx > 0 else entries[0]
        for previous in range(line - 1, 0, -1):
            entries = self._by_line.get(previous)
            if entries:
                return entries[-1]
        return None

    def original_position(
        self, line: Optional[int], column: Optional[int] = None
    ) -> Optional[tuple[int, int]]:
        """Translate a generated (line, byte column) to an original (line, column).

        Returns 1-based line and 1-based character column, or None when the
        position falls in wrapper code with no original counterpart.
        """
        if not line:
            return None
        mapping = self.lookup(line, column or 0)
        if mapping is None:
            return None
        orig_col = mapping.original_column
        if mapping.original_line == 1:
            # First-line offsets were taken against the parenthesized text
            orig_col = max(orig_col - self.first_line_shift, 0)
        text = self._original_line(mapping.original_line)
        return mapping.original_line, character_column(text, orig_col) + 1

    def original_position_for_syntax_error(
        self, line: Optional[int], offset: Optional[int]
    ) -> Optional[tuple[int, int]]:
        """Translate a SyntaxError position (1-based character offset) in generated text."""
        if not line:
            return None
        text = self._generated_line(line)
        return self.original_position(line, byte_column(text, (offset or 1) - 1))

    def _original_line(self, line: int) -> str:
        if 0 < line <= len(self._original_lines):
            return self._original_lines[line - 1]
        return ""

    def _generated_line(self, line: int) -> str:
        if 0 < line <= len(self._generated_lines):
            return self._generated_lines[line - 1]
        return ""

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._by_line.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "first_line_shift": self.first_line_shift,
            "mappings": [
                [m.generated_line, m.generated_column, m.original_line, m.original_column]
                for line in sorted(self._by_line)
                for m in self._by_line[line]
            ],
        }
