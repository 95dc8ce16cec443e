# ---------------------------------------------------------------------------- #

from __future__ import annotations

from decimal import ROUND_CEILING

import pytest

from modelcache.shared.kubernetes import parse_and_round_quantity
from modelcache.shared.util import clean_path, join_path, parse_bool

# ---------------------------------------------------------------------------- #


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("", ""),
        ("/", "/"),
        ("//", "/"),
        ("/a/b", "/a/b"),
        ("/a/b/", "/a/b"),
        ("/a//b/./c/..", "/a/b"),
        ("//a/b", "/a/b"),
        ("/../a", "/a"),
        ("a/../..", ".."),
    ],
)
def test_clean_path(path: str, expected: str) -> None:
    assert clean_path(path) == expected
    assert clean_path(expected) == expected


@pytest.mark.parametrize(
    ("elements", "expected"),
    [
        (("/data", "pvc-1_default_claim"), "/data/pvc-1_default_claim"),
        (("/data/", "/x/"), "/data/x"),
        (("/data", "", "x"), "/data/x"),
        (("ns/", "claim"), "ns/claim"),
        (("/data", "a/../../etc"), "/etc"),
        (("", ""), ""),
    ],
)
def test_join_path(elements: tuple[str, ...], expected: str) -> None:
    assert join_path(*elements) == expected


# ---------------------------------------------------------------------------- #


@pytest.mark.parametrize("value", ["1", "t", "T", "TRUE", "true", "True"])
def test_parse_bool_true(value: str) -> None:
    assert parse_bool(value) is True


@pytest.mark.parametrize("value", ["0", "f", "F", "FALSE", "false", "False"])
def test_parse_bool_false(value: str) -> None:
    assert parse_bool(value) is False


@pytest.mark.parametrize("value", ["", "yes", "no", "tRuE", " true"])
def test_parse_bool_invalid(value: str) -> None:
    with pytest.raises(ValueError):
        parse_bool(value)


# ---------------------------------------------------------------------------- #


def test_parse_and_round_quantity() -> None:

    assert parse_and_round_quantity("1Gi") == 1024**3
    assert parse_and_round_quantity("100M") == 100 * 1000**2
    assert parse_and_round_quantity("1.5") == 2
    assert parse_and_round_quantity("1.2") == 1
    assert parse_and_round_quantity("1.2", rounding_mode=ROUND_CEILING) == 2


# ---------------------------------------------------------------------------- #
