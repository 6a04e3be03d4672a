"""
Structured game/package versions with a total ordering.

Versions are dot-separated numeric components of arbitrary arity
("01.02", "1.2.0", "1"). Missing components compare as zero, so
"1.0" == "01.00.0" and both hash the same.
"""

from __future__ import annotations

import enum
import functools
from typing import Tuple, Union

from pkgvault.domain.errors import VersionParseError


class Ordering(enum.Enum):
    LESS = -1
    EQUAL = 0
    GREATER = 1


@functools.total_ordering
class GameVersion:
    """Parsed version identifier. Keeps the original text for display."""

    __slots__ = ("text", "components")

    def __init__(self, text: str):
        self.text = text.strip()
        self.components = _parse_components(self.text)

    @classmethod
    def parse(cls, value: Union[str, "GameVersion"]) -> "GameVersion":
        if isinstance(value, GameVersion):
            return value
        return cls(str(value))

    @property
    def _key(self) -> Tuple[int, ...]:
        # Trailing zeros are insignificant ("1.2.0" == "1.2").
        parts = list(self.components)
        while len(parts) > 1 and parts[-1] == 0:
            parts.pop()
        return tuple(parts)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GameVersion):
            return NotImplemented
        return self._key == other._key

    def __lt__(self, other: "GameVersion") -> bool:
        if not isinstance(other, GameVersion):
            return NotImplemented
        return compare_versions(self, other) is Ordering.LESS

    def __hash__(self) -> int:
        return hash(self._key)

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"GameVersion({self.text!r})"


def _parse_components(text: str) -> Tuple[int, ...]:
    if not text:
        raise VersionParseError(text)
    components = []
    for part in text.split("."):
        if not (part.isascii() and part.isdigit()):
            raise VersionParseError(text)
        components.append(int(part))
    return tuple(components)


def compare_versions(a: Union[str, GameVersion], b: Union[str, GameVersion]) -> Ordering:
    """
    Compare two versions component by component, padding the shorter one
    with zeros. Raises VersionParseError for malformed input.
    """
    left = GameVersion.parse(a).components
    right = GameVersion.parse(b).components
    width = max(len(left), len(right))
    left = left + (0,) * (width - len(left))
    right = right + (0,) * (width - len(right))
    if left < right:
        return Ordering.LESS
    if left > right:
        return Ordering.GREATER
    return Ordering.EQUAL


def versions_match(a: str, b: str) -> bool:
    """
    Equality used when matching catalog applicability against the installed
    game: structured when both sides parse, literal text otherwise.
    """
    try:
        return compare_versions(a, b) is Ordering.EQUAL
    except VersionParseError:
        return a.strip() == b.strip()


def version_sort_key(value: str) -> Tuple[int, Tuple[int, ...], str]:
    """Sortable key that places unparsable versions after all valid ones."""
    try:
        return (0, GameVersion(value)._key, value)
    except VersionParseError:
        return (1, (), value)
