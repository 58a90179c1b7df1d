"""Response Recovery Engine: coerce model text into one JSON object.

The model is asked for a single JSON object but routinely returns it wrapped
in markdown fences, followed by an explanation, cut off mid-array, or with
trailing commas.  Repairs run in a fixed order; each step is idempotent and
string-aware (nothing inside a JSON string literal is touched except by the
quote and newline steps, which only act *inside* strings):

  1. strip_fences              ``` / ```json markers, <think> blocks, leading prose
  2. remove_trailing_commas    ,}  ,]  → }  ]
  3. escape_nested_quotes      "he said "hi" twice" → "he said \\"hi\\" twice"
  4. collapse_string_newlines  literal newlines inside strings → one space
  5. balance_brackets          close open strings/arrays/objects in nesting order
  6. truncate_after_object     drop trailing prose after the top-level object
  7. parse                     json.loads, or UnrecoverableParseError

The engine never invents domain content: when parsing still fails the caller
decides what the deterministic fallback is.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import ClassVar, Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from leaseguard.config import TRACE_ENABLED
from leaseguard.pipeline.errors import MalformedResponseError, UnrecoverableParseError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_CLOSERS = {"{": "}", "[": "]"}
_VALUE_TERMINATORS = ",:}]"

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*[ \t]*\n?")
_FENCE_LINE_RE = re.compile(r"^[ \t]*```[a-zA-Z]*[ \t]*$", re.MULTILINE)
_TRAILING_FENCE_RE = re.compile(r"```\s*$")
_DANGLING_MEMBER_RE = re.compile(r',?\s*"(?:[^"\\]|\\.)*"\s*:\s*$')

_EXCERPT_CHARS = 200


def _trace(step: str, text: str) -> None:
    if TRACE_ENABLED:
        logger.debug(f"[TRACE] recovery {step}: {text[:_EXCERPT_CHARS]!r}")


def _next_significant(text: str, start: int) -> str | None:
    """Return the next non-whitespace character at or after *start*."""
    for ch in text[start:]:
        if not ch.isspace():
            return ch
    return None


# ═══════════════════════════════════════════════════════════════════
# Repair steps
# ═══════════════════════════════════════════════════════════════════

def strip_fences(text: str) -> str:
    """Remove code fences, inline reasoning blocks and any prose before the first '{'."""
    text = _THINK_RE.sub("", text).strip()
    text = _OPEN_FENCE_RE.sub("", text, count=1)
    text = _FENCE_LINE_RE.sub("", text)
    text = _TRAILING_FENCE_RE.sub("", text).strip()
    first_brace = text.find("{")
    if first_brace > 0:
        text = text[first_brace:]
    return text


def remove_trailing_commas(text: str) -> str:
    out = []
    in_string = escape = False
    n = len(text)
    for i, ch in enumerate(text):
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            # Look past whitespace and repeated commas for a closer
            j = i + 1
            while j < n and (text[j].isspace() or text[j] == ","):
                j += 1
            if j < n and text[j] in "}]":
                continue
        out.append(ch)
    return "".join(out)


def escape_nested_quotes(text: str) -> str:
    """Escape quotes that cannot be the end of the string they appear in.

    A quote inside a string is treated as its closing quote only when the next
    significant character is a JSON delimiter (or the end of input); anything
    else means the model quoted a word inside a value.  Valid JSON always
    satisfies that rule, so it passes through unchanged.
    """
    out = []
    in_string = escape = False
    for i, ch in enumerate(text):
        if not in_string:
            out.append(ch)
            if ch == '"':
                in_string = True
            continue
        if escape:
            escape = False
            out.append(ch)
            continue
        if ch == "\\":
            escape = True
            out.append(ch)
            continue
        if ch == '"':
            nxt = _next_significant(text, i + 1)
            if nxt is None or nxt in _VALUE_TERMINATORS:
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
            continue
        out.append(ch)
    return "".join(out)


def collapse_string_newlines(text: str) -> str:
    out: list[str] = []
    in_string = escape = False
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if not in_string:
            out.append(ch)
            if ch == '"':
                in_string = True
            i += 1
            continue
        if escape:
            escape = False
            out.append(ch)
        elif ch == "\\":
            escape = True
            out.append(ch)
        elif ch == '"':
            in_string = False
            out.append(ch)
        elif ch in "\r\n":
            while out and out[-1] in " \t":
                out.pop()
            while i + 1 < n and text[i + 1] in " \t\r\n":
                i += 1
            out.append(" ")
        else:
            out.append(ch)
        i += 1
    return "".join(out)


def balance_brackets(text: str) -> str:
    """Close whatever the model left open, innermost first.

    A closer that skips over an open container (``[1,2}``) first closes the
    containers in between.  A truncated string is terminated, a member whose
    value never arrived is dropped, and the dangling commas that truncation
    leaves behind are stripped again afterwards.
    """
    out: list[str] = []
    stack: list[str] = []
    in_string = escape = False
    for ch in text:
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            out.append(ch)
            continue
        if ch == '"':
            in_string = True
        elif ch in _CLOSERS:
            stack.append(ch)
        elif ch in "}]":
            opener = "{" if ch == "}" else "["
            if stack and stack[-1] == opener:
                stack.pop()
            elif opener in stack:
                while stack[-1] != opener:
                    out.append(_CLOSERS[stack.pop()])
                stack.pop()
        out.append(ch)

    if not stack and not in_string:
        return "".join(out)

    if in_string:
        if escape:
            out.pop()
        out.append('"')
    candidate = _DANGLING_MEMBER_RE.sub("", "".join(out).rstrip())
    candidate += "".join(_CLOSERS[opener] for opener in reversed(stack))
    return remove_trailing_commas(candidate)


def truncate_after_object(text: str) -> str:
    """Cut everything after the top-level object closes."""
    start = text.find("{")
    if start < 0:
        return text
    depth = 0
    in_string = escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
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
                return text[: i + 1]
    last_brace = text.rfind("}")
    return text[: last_brace + 1] if last_brace >= 0 else text


REPAIR_STEPS = (
    strip_fences,
    remove_trailing_commas,
    escape_nested_quotes,
    collapse_string_newlines,
    balance_brackets,
    truncate_after_object,
)


# ═══════════════════════════════════════════════════════════════════
# Entry points
# ═══════════════════════════════════════════════════════════════════

def _parse_object(text: str) -> dict:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Not valid JSON: {e.msg} at char {e.pos}") from e
    if not isinstance(parsed, dict):
        raise MalformedResponseError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed


def repair_text(raw: str) -> str:
    """Run every repair step and return the candidate text (without parsing)."""
    text = raw
    for step in REPAIR_STEPS:
        text = step(text)
        _trace(step.__name__, text)
    return text


def recover_json(raw: str | None) -> dict:
    """Return the JSON object contained in *raw*, repairing it if needed.

    Raises:
        UnrecoverableParseError: nothing parseable remains after every repair.
    """
    if raw is None or not raw.strip():
        raise UnrecoverableParseError("Empty model response")

    try:
        return _parse_object(raw.strip())
    except MalformedResponseError as e:
        logger.debug(f"Direct parse failed ({e.message}); attempting repair")

    candidate = repair_text(raw)
    try:
        result = _parse_object(candidate)
    except MalformedResponseError as e:
        logger.warning(f"JSON repair exhausted: {e.message}")
        raise UnrecoverableParseError(
            f"Could not recover a JSON object: {e.message}",
            raw_excerpt=raw[:_EXCERPT_CHARS],
        ) from e
    logger.info(f"Recovered malformed JSON response ({len(raw):,} chars)")
    return result


# ═══════════════════════════════════════════════════════════════════
# Tagged validation results
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RecoveryFailure:
    """Why a stage output could not be turned into its schema."""

    label: str
    reason: str
    raw_excerpt: str = ""
    errors: list[dict] = field(default_factory=list)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Err:
    failure: RecoveryFailure
    ok: ClassVar[bool] = False


def validate_output(raw: str | None, model: type[T], label: str = "") -> Ok[T] | Err:
    """Recover JSON from *raw* and validate it against *model*.

    Never raises for bad model output; the caller branches on ``.ok``.
    """
    label = label or model.__name__
    try:
        data = recover_json(raw)
    except UnrecoverableParseError as e:
        return Err(RecoveryFailure(label, e.message, e.raw_excerpt))

    try:
        return Ok(model.model_validate(data))
    except PydanticValidationError as e:
        logger.warning(f"[{label}] Schema validation failed: {e.error_count()} error(s)")
        return Err(RecoveryFailure(
            label,
            f"Output does not match {model.__name__} ({e.error_count()} error(s))",
            (raw or "")[:_EXCERPT_CHARS],
            [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()],
        ))
