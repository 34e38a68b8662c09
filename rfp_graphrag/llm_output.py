from __future__ import annotations

import json
import logging
from typing import Any, Iterator, List, Optional, Sequence, Tuple


logger = logging.getLogger(__name__)


def extract_json_block(raw: str) -> str:
    """
    Try to robustly extract a JSON object or array from an LLM response.

    Strips a Markdown code fence if present and takes the substring from the
    first opening bracket to the matching last closing bracket.
    """
    text = raw.strip()

    if text.startswith("```"):
        first_newline = text.find("\n")
        if first_newline != -1:
            text = text[first_newline + 1 :]
        end_fence = text.rfind("```")
        if end_fence != -1:
            text = text[:end_fence]
        text = text.strip()

    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return text
    start = min(starts)
    closing = "}" if text[start] == "{" else "]"
    end = text.rfind(closing)
    if end <= start:
        return text[start:]
    return text[start : end + 1]


_CLOSERS = {"{": "}", "[": "]"}


def _cut_points(text: str) -> Iterator[Tuple[int, Tuple[str, ...]]]:
    """
    Yield ``(end, open_brackets)`` for every offset where ``text[:end]`` ends
    right after a complete value, with the brackets still open at that point.
    Brackets inside string literals are ignored.
    """
    stack: List[str] = []
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
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in "}]":
            if not stack:
                return
            stack.pop()
            yield i + 1, tuple(stack)
        elif ch == "," and stack:
            yield i, tuple(stack)


def parse_json_with_trimming(raw: str) -> Any:
    """
    Parse JSON, recovering replies cut off by the token limit.

    When the text does not parse, it is cut back to the last complete array
    element or object member and the brackets still open there are closed,
    so ``{"items": [{"a": 1}, {"b"`` yields ``{"items": [{"a": 1}]}``.
    Trailing text after a complete document is dropped the same way.
    """
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        first_error = e
        logger.warning("Initial JSON parse failed: %s", e)

    for end, still_open in reversed(list(_cut_points(raw))):
        candidate = raw[:end] + "".join(_CLOSERS[b] for b in reversed(still_open))
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        logger.info(
            "JSON recovered from the first %d of %d chars (closed %d bracket(s))",
            end,
            len(raw),
            len(still_open),
        )
        return data

    raise first_error


def iter_json_objects(text: str) -> Iterator[str]:
    """
    Iterate over every balanced JSON object substring, tracking curly brace
    balance from each opening brace. Objects inside an outer object that was
    never closed (a truncated response) are still produced.
    """
    for start, ch in enumerate(text):
        if ch != "{":
            continue
        depth = 0
        for i in range(start, len(text)):
            if text[i] == "{":
                depth += 1
            elif text[i] == "}":
                depth -= 1
                if depth == 0:
                    yield text[start : i + 1]
                    break


def salvage_objects(raw: str, required_keys: Sequence[str]) -> List[dict]:
    """
    Fallback parse when the overall JSON is broken (e.g. cut off by length)
    but individual objects are still valid: keep every object that carries
    all ``required_keys``.
    """
    found: List[dict] = []
    for obj_str in iter_json_objects(raw):
        try:
            obj = json.loads(obj_str)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict) and all(k in obj for k in required_keys):
            found.append(obj)
    return found


def parse_llm_json(raw: str) -> Any:
    """
    Extract and parse the JSON payload of an LLM response.

    Raises ``json.JSONDecodeError`` when nothing parseable is found.
    """
    if raw is None:
        raise json.JSONDecodeError("Empty LLM response", "", 0)
    return parse_json_with_trimming(extract_json_block(raw))


def parse_llm_records(raw: str, required_keys: Sequence[str], list_key: Optional[str] = None) -> List[dict]:
    """
    Parse a list of records from an LLM response.

    Accepts a bare JSON array, an object wrapping the array under
    ``list_key``, or (as a last resort) salvaged standalone objects.
    Returns an empty list when nothing usable is present.
    """
    try:
        data = parse_llm_json(raw)
    except json.JSONDecodeError as e:
        logger.warning("LLM output is not valid JSON, salvaging objects: %s", e)
        return salvage_objects(raw or "", required_keys)

    if isinstance(data, dict) and list_key and isinstance(data.get(list_key), list):
        data = data[list_key]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []
    return [
        item
        for item in data
        if isinstance(item, dict) and all(k in item for k in required_keys)
    ]


__all__ = [
    "extract_json_block",
    "parse_json_with_trimming",
    "iter_json_objects",
    "salvage_objects",
    "parse_llm_json",
    "parse_llm_records",
]
