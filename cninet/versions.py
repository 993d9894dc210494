"""Parsing and comparison of CNI specification version strings."""

from __future__ import annotations

import json
import re

from .errors import CNIError

_PART = re.compile(r"[+-]?[0-9]+")
_LABELS = ("major", "minor", "micro")


def parse_version(text: str) -> tuple[int, int, int]:
    """Split a version string into (major, minor, micro).

    An empty string means the configuration declared no version, which is 0.1.0.
    Missing parts default to zero.
    """
    if text == "":
        return (0, 1, 0)
    parts = text.split(".")
    if len(parts) > 3:
        quoted = json.dumps(text, ensure_ascii=False)
        raise CNIError(f"invalid version {quoted}: too many parts")
    numbers = []
    for label, part in zip(_LABELS, parts):
        if not _PART.fullmatch(part):
            quoted = json.dumps(part, ensure_ascii=False)
            raise CNIError(f"failed to convert {label} version part {quoted}")
        numbers.append(int(part))
    numbers.extend([0] * (3 - len(numbers)))
    major, minor, micro = numbers
    return (major, minor, micro)


def greater_than_or_equal_to(version: str, other: str) -> bool:
    """Return True when ``version`` is at least ``other``."""
    return parse_version(version) >= parse_version(other)