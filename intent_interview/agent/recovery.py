"""Layered recovery of structured data from free-form model replies.

Model replies are supposed to be JSON but routinely arrive wrapped in prose,
fenced as markdown, cut off mid-object, or sprinkled with trailing commas.
Each layer below is a plain function that either returns parsed data or
raises ``RecoveryError``; ``recover`` runs them in order and reports which
one succeeded.

Layers:

1. ``parse_direct``     - the reply is clean JSON.
2. ``parse_unwrapped``  - strip code fences / prose, take the first JSON region of the right shape.
3. ``parse_repaired``   - drop trailing separators, close truncated structures.
4. ``scan_fragments``   - salvage individual objects carrying a required key.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence

logger = logging.getLogger(__name__)

LAYER_DIRECT = "direct"
LAYER_UNWRAPPED = "unwrapped"
LAYER_REPAIRED = "repaired"
LAYER_FRAGMENTS = "fragments"

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?([\s\S]*?)```")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_DANGLING_KEY_RE = re.compile(r',?\s*"(?:[^"\\]|\\.)*"\s*:?\s*$')
_DANGLING_SEPARATOR_RE = re.compile(r"[,:]\s*$")
_FRAGMENT_START_RE = re.compile(r"\{\s*\"")
_OPENER_RE = re.compile(r"[{\[]")
_MAX_REGIONS = 64


class RecoveryError(ValueError):
    """A recovery layer could not turn the text into structured data."""


@dataclass(frozen=True)
class RecoveryResult:
    value: Any = None
    layer: Optional[str] = None
    attempts: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.layer is not None

    def describe_failure(self) -> str:
        if self.ok:
            return ""
        return "; ".join(self.attempts) or "empty response"


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise RecoveryError(str(exc)) from exc


def strip_code_fences(content: str) -> str:
    text = (content or "").strip()
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    # Truncated reply: opening fence without a closing one.
    if text.startswith("```"):
        first_newline = text.find("\n")
        return text[first_newline + 1 :].strip() if first_newline != -1 else ""
    return text


def _scan_structure(text: str) -> tuple[list[str], bool]:
    """Return the stack of unclosed openers and whether text ends inside a string."""
    stack: list[str] = []
    in_string = False
    escape = False
    for ch in text:
        if escape:
            escape = False
            continue
        if ch == "\\" and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            stack.append(ch)
        elif ch in "}]":
            if stack and ((ch == "}" and stack[-1] == "{") or (ch == "]" and stack[-1] == "[")):
                stack.pop()
    return stack, in_string


def extract_json_region(content: str, start: int | None = None) -> Optional[str]:
    """Return the outermost balanced object/array starting at the first opener.

    When the structure never closes, everything from the opener to the end
    is returned so that ``repair_json`` can finish it.
    """
    text = content or ""
    if start is None:
        candidates = [i for i in (text.find("{"), text.find("[")) if i != -1]
        if not candidates:
            return None
        start = min(candidates)

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\" and in_string:
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return text[start:]


def repair_json(text: str) -> str:
    repaired = (text or "").rstrip()
    stack, in_string = _scan_structure(repaired)
    if in_string:
        repaired += '"'
    if stack and stack[-1] == "{" and _ends_with_key(repaired):
        # `{"a": 1, "b"` or `{"a": 1, "b":` - the last key has no value.
        repaired = _DANGLING_KEY_RE.sub("", repaired)
    repaired = _DANGLING_SEPARATOR_RE.sub("", repaired.rstrip())
    repaired += "".join("}" if opener == "{" else "]" for opener in reversed(stack))
    return _TRAILING_COMMA_RE.sub(r"\1", repaired)


def _ends_with_key(text: str) -> bool:
    stripped = text.rstrip()
    if stripped.endswith(":"):
        return True
    # A bare string directly after `{` or `,` inside an object is a key, not a value.
    match = re.search(r'([{,])\s*"(?:[^"\\]|\\.)*"$', stripped)
    return match is not None


def parse_direct(content: str) -> Any:
    text = (content or "").strip()
    if not text:
        raise RecoveryError("empty response")
    return _loads(text)


def json_regions(content: str) -> Iterator[str]:
    """Yield the balanced region at every ``{`` or ``[`` in order, skipping repeats.

    Prose like ``Here are [2] questions:`` puts a bracket ahead of the real
    payload, so the first opener is not always the right one.
    """
    text = content or ""
    seen: set[str] = set()
    for count, match in enumerate(_OPENER_RE.finditer(text)):
        if count >= _MAX_REGIONS:
            break
        region = extract_json_region(text, match.start())
        if region and region not in seen:
            seen.add(region)
            yield region


def _first_accepted(
    candidates: Iterable[str],
    accept: Callable[[Any], bool] | None,
    transform: Callable[[str], str] | None = None,
) -> Any:
    errors: list[str] = []
    for candidate in candidates:
        try:
            value = _loads(transform(candidate) if transform else candidate)
        except RecoveryError as exc:
            errors.append(str(exc))
            continue
        if accept is not None and not accept(value):
            errors.append(f"unexpected shape ({type(value).__name__})")
            continue
        return value
    raise RecoveryError(errors[-1] if errors else "no JSON region found")


def parse_unwrapped(content: str, accept: Callable[[Any], bool] | None = None) -> Any:
    stripped = strip_code_fences(content)
    if not stripped:
        raise RecoveryError("no content after removing code fences")

    def candidates() -> Iterator[str]:
        yield stripped
        yield from json_regions(stripped)
        if stripped != (content or "").strip():
            yield from json_regions(content)

    return _first_accepted(candidates(), accept)


def parse_repaired(content: str, accept: Callable[[Any], bool] | None = None) -> Any:
    stripped = strip_code_fences(content)

    def candidates() -> Iterator[str]:
        yield from json_regions(stripped)
        if stripped != (content or "").strip():
            yield from json_regions(content)

    return _first_accepted(candidates(), accept, transform=repair_json)


def scan_fragments(content: str, *, required_key: str) -> list[dict[str, Any]]:
    """Parse every standalone object in ``content`` that carries ``required_key``.

    Unparseable fragments are skipped; an empty result raises.
    """
    text = content or ""
    fragments: list[dict[str, Any]] = []
    position = 0
    while True:
        match = _FRAGMENT_START_RE.search(text, position)
        if match is None:
            break
        start = match.start()
        region = extract_json_region(text, start) or ""
        parsed: Any = None
        if f'"{required_key}"' in region:
            for candidate in (region, repair_json(region)):
                try:
                    parsed = json.loads(candidate)
                    break
                except json.JSONDecodeError:
                    continue
        if isinstance(parsed, dict) and required_key in parsed:
            fragments.append(parsed)
            position = start + max(len(region), 1)
        else:
            position = start + 1
    if not fragments:
        raise RecoveryError(f"no object fragments with '{required_key}' found")
    return fragments


def recover(
    content: str,
    *,
    fragment_key: str | None = None,
    accept: Callable[[Any], bool] | None = None,
) -> RecoveryResult:
    """Run the layers in order and return the first acceptable result.

    ``accept`` lets callers reject structurally valid JSON of the wrong shape
    (for example a bare string). The unwrapped and repaired layers use it to
    skip regions of the wrong shape, and a rejected result lets the next
    layer have a go.
    """
    layers: list[tuple[str, Callable[[str], Any]]] = [
        (LAYER_DIRECT, parse_direct),
        (LAYER_UNWRAPPED, lambda text: parse_unwrapped(text, accept)),
        (LAYER_REPAIRED, lambda text: parse_repaired(text, accept)),
    ]
    if fragment_key:
        layers.append((LAYER_FRAGMENTS, lambda text: scan_fragments(text, required_key=fragment_key)))

    attempts: list[str] = []
    for name, layer in layers:
        try:
            value = layer(content)
        except RecoveryError as exc:
            attempts.append(f"{name}: {exc}")
            continue
        if accept is not None and not accept(value):
            attempts.append(f"{name}: unexpected shape ({type(value).__name__})")
            continue
        if name != LAYER_DIRECT:
            logger.debug("recover: succeeded at layer %s", name)
        return RecoveryResult(value=value, layer=name, attempts=attempts)

    return RecoveryResult(value=None, layer=None, attempts=attempts)


def first_list(value: Any, keys: Sequence[str]) -> list[Any]:
    """Pull a list out of ``value``: the value itself, or the first matching key."""
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in keys:
            items = value.get(key)
            if isinstance(items, list):
                return items
    return []
