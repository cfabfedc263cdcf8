"""
Utterance aggregation.

Final transcript fragments are merged until the caller goes quiet; the owning
session re-arms a silence timer on every fragment and calls `take()` when it
fires. Segmentation is idle-based, so a caller who keeps talking is never cut off.
"""

from __future__ import annotations

from typing import List, Optional


class UtteranceAggregator:
    """Pending-text buffer with a minimum-length noise floor."""

    def __init__(self, min_chars: int = 2):
        self.min_chars = min_chars
        self._fragments: List[str] = []
        self.discarded = 0

    def __bool__(self) -> bool:
        return bool(self._fragments)

    @property
    def text(self) -> str:
        return " ".join(self._fragments).strip()

    def append(self, fragment: str) -> None:
        fragment = (fragment or "").strip()
        if fragment:
            self._fragments.append(fragment)

    def extend(self, fragments: List[str]) -> None:
        for fragment in fragments:
            self.append(fragment)

    def take(self) -> Optional[str]:
        """
        Consume the pending text.

        Returns None (and still clears the buffer) when the text is below the
        noise floor.
        """
        text = self.text
        self._fragments.clear()
        if len(text) < self.min_chars:
            if text:
                self.discarded += 1
            return None
        return text

    def clear(self) -> None:
        self._fragments.clear()
