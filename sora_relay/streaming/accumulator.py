"""Append-only accumulation of content fragments for one relay session."""

from __future__ import annotations

from typing import Optional


class ContentAccumulator:
    """Concatenates content fragments in arrival order.

    Nothing is truncated or compacted: the media marker may sit anywhere in
    the document, including across fragment boundaries, so the extractor must
    see all of it.
    """

    __slots__ = ("_fragments", "_length", "_document")

    def __init__(self) -> None:
        self._fragments: list[str] = []
        self._length = 0
        self._document: Optional[str] = None

    def append(self, fragment: str) -> None:
        if not fragment:
            return
        self._fragments.append(fragment)
        self._length += len(fragment)
        self._document = None

    def document(self) -> str:
        """Return the whole accumulated document."""
        if self._document is None:
            self._document = "".join(self._fragments)
        return self._document

    @property
    def fragment_count(self) -> int:
        return len(self._fragments)

    def __len__(self) -> int:
        return self._length

    def __bool__(self) -> bool:
        return self._length > 0
