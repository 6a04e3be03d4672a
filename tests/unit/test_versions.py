from __future__ import annotations

import pytest

from pkgvault.domain.errors import VersionParseError
from pkgvault.domain.versions import (
    GameVersion,
    Ordering,
    compare_versions,
    version_sort_key,
    versions_match,
)


def test_shorter_version_is_padded_with_zeros() -> None:
    assert compare_versions("1.0", "01.00.0") is Ordering.EQUAL
    assert GameVersion("1.0") == GameVersion("01.00.0")
    assert hash(GameVersion("1.0")) == hash(GameVersion("01.00.0"))


def test_components_compare_numerically() -> None:
    assert compare_versions("1.10", "1.9") is Ordering.GREATER
    assert compare_versions("0.90", "1.00") is Ordering.LESS
    assert compare_versions("1.2.1", "1.2") is Ordering.GREATER


def test_ordering_is_transitive_and_antisymmetric() -> None:
    values = ["0.90", "1.00", "1.01", "1.10", "2"]
    parsed = sorted(GameVersion(v) for v in reversed(values))

    assert [v.text for v in parsed] == values
    for a in values:
        for b in values:
            forward = compare_versions(a, b)
            backward = compare_versions(b, a)
            assert forward.value == -backward.value


@pytest.mark.parametrize("value", ["", "abc", "1..2", "1.2a", "v1.0", "１.0"])
def test_malformed_versions_raise(value: str) -> None:
    with pytest.raises(VersionParseError):
        GameVersion(value)


def test_versions_match_falls_back_to_text_for_unparsable_values() -> None:
    assert versions_match("01.02", "1.2")
    assert versions_match("beta", "beta")
    assert not versions_match("beta", "1.0")


def test_sort_key_places_unparsable_versions_last() -> None:
    values = ["beta", "1.10", "1.02", "1.9"]

    assert sorted(values, key=version_sort_key) == ["1.02", "1.9", "1.10", "beta"]
