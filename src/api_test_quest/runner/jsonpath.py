"""Small JSONPath evaluator used by assert_jsonpath.

Supported syntax examples:
  - "$"              -> whole document
  - "$.name"         -> top-level field
  - "$.data.id"      -> nested dict
  - "$.items[0].id"  -> list index (negative indexes count from the end)
  - "$['odd key']"   -> bracketed field name
  - "$.items[*].id"  -> every element ("$.data.*" for every value)
  - "$..id"          -> recursive descent
"""

import re
from typing import Any

_TOKEN = re.compile(
    r"""
    \.\.(?P<deep>[A-Za-z_][\w-]*|\*)       # ..name / ..*
  | \.(?P<key>[A-Za-z_$@][\w$@-]*|\*)     # .name / .*
  | \[\s*(?P<index>-?\d+)\s*\]            # [0]
  | \[\s*(?P<quoted>'[^']*'|"[^"]*")\s*\] # ['name']
  | \[\s*(?P<star>\*)\s*\]                # [*]
    """,
    re.VERBOSE,
)


class JsonPathSyntaxError(ValueError):
    pass


def parse(path: str) -> list[tuple[str, Any]]:
    """Split a JSONPath expression into (operation, argument) steps."""
    path = path.strip()
    if not path.startswith("$"):
        raise JsonPathSyntaxError(f"JSONPath must start with $: {path!r}")

    steps = []
    pos = 1
    while pos < len(path):
        match = _TOKEN.match(path, pos)
        if not match:
            raise JsonPathSyntaxError(f"unexpected {path[pos:]!r} in JSONPath {path!r}")
        if match.group("deep") is not None:
            steps.append(("deep", match.group("deep")))
        elif match.group("key") is not None:
            key = match.group("key")
            steps.append(("wild", None) if key == "*" else ("key", key))
        elif match.group("index") is not None:
            steps.append(("index", int(match.group("index"))))
        elif match.group("quoted") is not None:
            steps.append(("key", match.group("quoted")[1:-1]))
        else:
            steps.append(("wild", None))
        pos = match.end()
    return steps


def find(data: Any, path: str) -> list[Any]:
    """Return every value matched by path, in document order."""
    nodes = [data]
    for op, arg in parse(path):
        nodes = [child for node in nodes for child in _step(node, op, arg)]
    return nodes


def _step(node: Any, op: str, arg: Any) -> list[Any]:
    if op == "key":
        if isinstance(node, dict) and arg in node:
            return [node[arg]]
        return []
    if op == "index":
        if isinstance(node, list) and -len(node) <= arg < len(node):
            return [node[arg]]
        return []
    if op == "wild":
        return _children(node)
    # deep
    found = []
    for descendant in _walk(node):
        if arg == "*":
            found.extend(_children(descendant))
        elif isinstance(descendant, dict) and arg in descendant:
            found.append(descendant[arg])
    return found


def _children(node: Any) -> list[Any]:
    if isinstance(node, dict):
        return list(node.values())
    if isinstance(node, list):
        return list(node)
    return []


def _walk(node: Any):
    yield node
    for child in _children(node):
        yield from _walk(child)
