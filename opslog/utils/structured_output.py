"""Tolerant parser for JSON objects embedded in free-form model output.

Models asked for "JSON only" still wrap the object in code fences or surround it
with prose. ``parse_json_object`` accepts, in order:

1. The whole (fence-stripped) text as a JSON object.
2. Each balanced ``{...}`` span in turn, scanning with string/escape awareness so
   braces inside string values do not end a span early. The first span that
   decodes to an object wins.

Anything else raises ``DataIntegrityError``.
"""

import json
import re
from typing import Any, Dict, Iterator, List, Optional, Tuple

from opslog.errors import DataIntegrityError

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Remove a single surrounding Markdown code fence, if present."""
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def iter_balanced_objects(text: str) -> Iterator[str]:
    """Yield every balanced ``{...}`` span of `text`, by start position, outer spans first.

    A single scan pairs braces with a stack; quotes only open a string inside an
    open brace, so apostrophes and quotes in surrounding prose are ignored.
    """
    spans: List[Tuple[int, int]] = []
    stack: List[int] = []
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and stack:
            in_string = True
        elif ch == "{":
            stack.append(i)
        elif ch == "}" and stack:
            spans.append((stack.pop(), i + 1))
    for start, end in sorted(spans, key=lambda span: (span[0], -span[1])):
        yield text[start:end]


def find_balanced_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring of `text`, or None."""
    return next(iter_balanced_objects(text), None)


def parse_json_object(text: Optional[str]) -> Dict[str, Any]:
    """Parse a JSON object out of model output.

    Args:
        text: Raw completion text.

    Returns:
        The first balanced span that decodes to an object.

    Raises:
        DataIntegrityError: If no JSON object can be recovered.
    """
    if text is None or not text.strip():
        raise DataIntegrityError("empty response")

    body = strip_code_fences(text)
    try:
        value = json.loads(body)
        if isinstance(value, dict):
            return value
    except json.JSONDecodeError:
        pass

    last_error: Optional[str] = None
    for candidate in iter_balanced_objects(body):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = f"malformed JSON object: {e}"
            continue
        if isinstance(value, dict):
            return value
    raise DataIntegrityError(last_error or f"no JSON object in response: {body[:80]!r}")
