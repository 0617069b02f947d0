"""Incremental sanitizer for model output.

The model backend may finish its output with a stop marker that must never
reach the client. Since the marker can arrive split across fragments, the
cleaner always withholds the most recent ``window`` characters and only
decides what to do with them once the backend signals completion.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence

DEFAULT_WINDOW = 6
DEFAULT_STOP_MARKERS = ("<STOP>", "</s>")


class StreamCleaner:
    def __init__(self, window: int = DEFAULT_WINDOW, markers: Sequence[str] = DEFAULT_STOP_MARKERS) -> None:
        if window < 0:
            raise ValueError("cleaner window must not be negative")
        ordered = sorted({marker for marker in markers if marker}, key=len, reverse=True)
        for marker in ordered:
            if len(marker) > window:
                raise ValueError(f"stop marker {marker!r} is longer than the cleaner window ({window})")
        self.window = window
        self.markers = tuple(ordered)
        self.cleaned = False
        self._pending = ""

    def write(self, fragment: str) -> str:
        """Buffer ``fragment`` and return the text that is now safe to release."""
        if self.cleaned:
            raise RuntimeError("cleaner already finalized")
        if not fragment:
            return ""
        self._pending += fragment
        cut = len(self._pending) - self.window
        if cut <= 0:
            return ""
        released = self._pending[:cut]
        self._pending = self._pending[cut:]
        return released

    def get_cleaned_data(self) -> str:
        """Return the withheld remainder without a trailing stop marker.

        Only the first call yields data; later calls return an empty string.
        """
        if self.cleaned:
            return ""
        self.cleaned = True
        remainder = self._pending
        self._pending = ""
        for marker in self.markers:
            if remainder.endswith(marker):
                return remainder[: -len(marker)]
        return remainder


@dataclass
class StreamState:
    """Per-request writer state: the cleaner plus everything released so far."""

    cleaner: StreamCleaner
    released: List[str] = field(default_factory=list)

    def write(self, fragment: str) -> str:
        chunk = self.cleaner.write(fragment)
        if chunk:
            self.released.append(chunk)
        return chunk

    def finish(self) -> str:
        if self.cleaner.cleaned:
            return ""
        chunk = self.cleaner.get_cleaned_data()
        if chunk:
            self.released.append(chunk)
        return chunk

    @property
    def answer(self) -> str:
        return "".join(self.released)
