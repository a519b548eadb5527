"""Recover JSON from noisy LLM output.

Strategies, in order: the first fenced code block, the first balanced
`{...}`/`[...]` span, and a cleanup pass (strip surrounding prose, unescape,
quote bare keys). Each candidate must parse AND match the expected shape.
When all of them fail the caller gets an empty default (`{}` / `[]`), which
is the extraction-failure signal.
"""

from __future__ import annotations

import json
import re
from typing import Any, Literal

from ..domain.errors import ParseFailureError
from ..observability.logger import get_logger

logger = get_logger(__name__)

Expected = Literal["object", "array"]

_FENCE_RE = re.compile(r"```(?:[a-zA-Z0-9_-]+)?[ \t]*\r?\n?(.*?)```", re.DOTALL)
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_-]*)(\s*:)")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _empty(expected: Expected) -> str:
    return "{}" if expected == "object" else "[]"


def _shape_ok(value: Any, expected: Expected) -> bool:
    return isinstance(value, dict) if expected == "object" else isinstance(value, list)


def _try_parse(candidate: str, expected: Expected) -> Any | None:
    try:
        value = json.loads(candidate)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None
    return value if _shape_ok(value, expected) else None


def _balanced_spans(text: str, opener: str):
    """Yield every balanced span starting at an `opener`, string-literal aware."""
    closer = "}" if opener == "{" else "]"
    start = text.find(opener)
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch in "{[":
                depth += 1
            elif ch in "}]":
                depth -= 1
                if depth == 0:
                    if ch == closer:
                        yield text[start : i + 1]
                    break
        start = text.find(opener, start + 1)


def _from_fence(text: str, expected: Expected) -> Any | None:
    m = _FENCE_RE.search(text)
    if not m:
        return None
    body = m.group(1).strip()
    value = _try_parse(body, expected)
    if value is not None:
        return value
    # Fenced block with prose around the JSON inside it
    return _from_balanced(body, expected)


def _repair(s: str) -> str:
    s = s.replace("\\n", " ").replace('\\"', '"')
    s = " ".join(s.split())
    s = _BARE_KEY_RE.sub(r'\1"\2"\3', s)
    s = _TRAILING_COMMA_RE.sub(r"\1", s)
    return s


def _from_balanced(text: str, expected: Expected) -> Any | None:
    opener = "{" if expected == "object" else "["
    for span in _balanced_spans(text, opener):
        # An outer span is repaired before any span nested in it is tried
        value = _try_parse(span, expected)
        if value is None:
            value = _try_parse(_repair(span), expected)
        if value is not None:
            return value
    return None


def _from_cleanup(text: str, expected: Expected) -> Any | None:
    opener, closer = ("{", "}") if expected == "object" else ("[", "]")
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end <= start:
        return None
    return _try_parse(_repair(text[start : end + 1]), expected)


def extract_json(text: str, expected: Expected = "object") -> str:
    """Return a JSON string of the expected shape recovered from `text`, or `{}`/`[]`."""
    if not text or not isinstance(text, str):
        return _empty(expected)

    direct = _try_parse(text.strip(), expected)
    if direct is not None:
        return json.dumps(direct, ensure_ascii=False)

    for strategy in (_from_fence, _from_balanced, _from_cleanup):
        value = strategy(text, expected)
        if value is not None:
            return json.dumps(value, ensure_ascii=False)

    logger.warning(
        "json_extraction_failed",
        expected=expected,
        preview=text.strip().replace("\n", " ")[:200],
    )
    return _empty(expected)


def parse_json(text: str, expected: Expected = "object") -> Any:
    """`extract_json` + `json.loads`; returns `{}` / `[]` on failure."""
    return json.loads(extract_json(text, expected))


def parse_json_strict(text: str, expected: Expected = "object") -> Any:
    """Like `parse_json` but raises `ParseFailureError` instead of returning the empty default."""
    value = parse_json(text, expected)
    if not value and not _looks_empty(text, expected):
        raise ParseFailureError("llm_output_not_json", detail=(text or "")[:200])
    return value


def _looks_empty(text: str, expected: Expected) -> bool:
    """True when the model genuinely answered with an empty object/array."""
    compact = "".join((text or "").split())
    return _empty(expected) in compact


def safe_stringify(value: Any) -> str:
    """Serialize an LLM result (str, dict, list, ...) to text without raising."""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)
