# ---------------------------------------------------------------------------- #

from __future__ import annotations

import posixpath
from datetime import datetime
from sys import stderr

# ---------------------------------------------------------------------------- #

_TRUE_STRINGS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_STRINGS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def parse_bool(value: str) -> bool:

    if value in _TRUE_STRINGS:
        return True
    elif value in _FALSE_STRINGS:
        return False
    else:
        raise ValueError(f"Invalid boolean value {value!r}")


# ---------------------------------------------------------------------------- #


def clean_path(path: str) -> str:
    """
    Return the shortest equivalent of `path` by purely lexical processing:
    repeated and trailing separators are dropped and '.' and '..' elements are
    resolved.

    Unlike `posixpath.normpath`, a leading '//' is collapsed into '/', and the
    empty path is returned unchanged.
    """

    if not path:
        return ""

    cleaned = posixpath.normpath(path)

    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")

    return cleaned


def join_path(*elements: str) -> str:
    """
    Join the non-empty elements with '/' and clean the result.

    Unlike `posixpath.join`, an absolute element does not discard the elements
    that precede it, so `join_path("/data", "/x")` is "/data/x".
    """

    return clean_path("/".join(e for e in elements if e))


# ---------------------------------------------------------------------------- #

_debug = False


def set_debug(enabled: bool) -> None:
    global _debug
    _debug = enabled


def log(obj: object) -> None:
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")
    print(f"\033[36m[{now}]\033[0m {obj}", file=stderr, flush=True)


def log_debug(obj: object) -> None:
    if _debug:
        log(obj)


# ---------------------------------------------------------------------------- #
