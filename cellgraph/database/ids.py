"""
Identifier generation for Cellgraph.

Cells get two identifiers: an opaque id that sorts by creation time, and a
short base-36 id ("A7", "2K", ...) for people to type.
"""

import time
import uuid
from typing import Iterable, Optional

SHORT_ID_CHARS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def new_sortable_id() -> str:
    """Return a 26-char id: 12 hex digits of epoch milliseconds + 14 random hex digits."""
    millis = int(time.time() * 1000)
    return f"{millis:012x}{uuid.uuid4().hex[:14]}"


def new_cell_id() -> str:
    return new_sortable_id()


def new_snapshot_id() -> str:
    return "s-" + new_sortable_id()


def new_trace_id() -> str:
    return "t-" + new_sortable_id()


class ShortIdGenerator:
    """
    Generates short, case-insensitive ids.

    Starts at two characters and widens by one character whenever the
    current namespace is exhausted.
    """

    def __init__(self, length: int = 2):
        self.length = length
        self.counter = 0
        self.max_value = len(SHORT_ID_CHARS) ** length

    def next(self) -> str:
        if self.counter >= self.max_value:
            self._expand()
        short_id = self.encode(self.counter, self.length)
        self.counter += 1
        return short_id

    def _expand(self):
        self.length += 1
        self.max_value = len(SHORT_ID_CHARS) ** self.length
        self.counter = 0

    @staticmethod
    def encode(number: int, length: int) -> str:
        base = len(SHORT_ID_CHARS)
        digits = []
        for _ in range(length):
            digits.append(SHORT_ID_CHARS[number % base])
            number //= base
        return "".join(reversed(digits))

    @staticmethod
    def decode(short_id: str) -> Optional[int]:
        base = len(SHORT_ID_CHARS)
        value = 0
        for char in short_id.upper():
            digit = SHORT_ID_CHARS.find(char)
            if digit < 0:
                return None
            value = value * base + digit
        return value

    @classmethod
    def from_existing(cls, existing: Iterable[str]) -> "ShortIdGenerator":
        """
        Build a generator that continues after the highest existing id.

        Only ids of the widest length in use are considered; narrower ids can
        never collide with the generator's output.
        """
        existing = [short_id for short_id in existing if short_id]
        if not existing:
            return cls()

        width = max(len(short_id) for short_id in existing)
        highest = -1
        for short_id in existing:
            if len(short_id) == width:
                value = cls.decode(short_id)
                if value is not None:
                    highest = max(highest, value)

        generator = cls(width)
        generator.counter = highest + 1
        return generator
