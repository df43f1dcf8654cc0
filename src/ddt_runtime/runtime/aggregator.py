"""Append-only output buffer for one run."""

from __future__ import annotations

__all__ = ["OutputAggregator", "LINE_SEPARATOR"]

LINE_SEPARATOR = "\n"


class OutputAggregator:
    """Accumulates output chunks in arrival order.

    A separator is inserted between successive chunks; nothing already
    appended is ever rewritten or reordered. There is no size cap.

    Example:
        agg = OutputAggregator()
        agg.append("a")
        agg.append("b")
        assert agg.text == "a\\nb"
    """

    def __init__(self, separator: str = LINE_SEPARATOR) -> None:
        self.separator = separator
        self._parts: list[str] = []
        self._text = ""

    def append(self, chunk: str) -> str:
        """Append a chunk and return the full buffer so far."""
        if self._parts:
            self._text += self.separator + chunk
        else:
            self._text = chunk
        self._parts.append(chunk)
        return self._text

    @property
    def text(self) -> str:
        return self._text

    @property
    def chunks(self) -> tuple[str, ...]:
        return tuple(self._parts)

    def __len__(self) -> int:
        return len(self._parts)

    def __bool__(self) -> bool:
        # An aggregator holding only empty chunks is still non-empty
        return bool(self._parts)
