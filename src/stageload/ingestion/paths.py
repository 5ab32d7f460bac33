"""
Path lookup into JSON documents.

Paths use dots for object keys and brackets for array positions:
``station.id``, ``weather[0].main``, ``[2]``.
"""

import re
from typing import Any

_TOKEN = re.compile(r"\[(\d+)\]|([^.\[\]]+)")


def parse_path(path: str) -> list[str | int]:
    """
    Split a path into keys and indices.

    Raises:
        ValueError: If the path is empty or malformed.
    """
    steps: list[str | int] = []
    pos = 0
    while pos < len(path):
        if path[pos] == "." and steps:
            pos += 1
        match = _TOKEN.match(path, pos)
        if match is None:
            msg = f"Malformed path {path!r} at position {pos}"
            raise ValueError(msg)
        index, key = match.groups()
        steps.append(int(index) if index is not None else key)
        pos = match.end()
    if not steps:
        msg = "Path must not be empty"
        raise ValueError(msg)
    return steps


def extract_path(document: Any, path: str) -> Any:
    """
    Look up a path in a JSON document.

    Missing keys, out-of-range indices and type mismatches yield None,
    the same as an absent value in a delimited file.
    """
    current = document
    for step in parse_path(path):
        if isinstance(step, int):
            if not isinstance(current, list) or step >= len(current):
                return None
            current = current[step]
        else:
            if not isinstance(current, dict):
                return None
            current = current.get(step)
    return current
