"""Path-based censoring of sensitive fields before entries reach storage."""

from __future__ import annotations

import copy
import dataclasses
import re
from collections.abc import Callable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeVar

from telescope_collector.utils.diagnostics import ConfigurationError

DEFAULT_CENSOR = "[REDACTED]"

DEFAULT_REDACT_PATHS: tuple[str, ...] = (
    # Request and response headers
    "headers.authorization",
    "headers.cookie",
    'headers["set-cookie"]',
    'headers["x-api-key"]',
    'headers["x-auth-token"]',
    'headers["proxy-authorization"]',
    'response_headers["set-cookie"]',
    # Query string
    "query.token",
    "query.api_key",
    "query.apiKey",
    "query.access_token",
    "query.secret",
    # Bodies
    "body.password",
    "body.token",
    "body.apiKey",
    "body.api_key",
    "body.secret",
    "body.accessToken",
    "body.refreshToken",
    "body.creditCard",
    "body.ssn",
    "response_body.accessToken",
    "response_body.refreshToken",
    "response_body.token",
    "response_body.secret",
    # Log context
    "context.password",
    "context.token",
    "context.secret",
    "context.apiKey",
    "context.api_key",
    "context.accessToken",
)

# Entry attributes a redactor is applied to.
REDACTABLE_FIELDS: tuple[str, ...] = ("headers", "query", "body", "response_headers", "response_body", "context")

# Fields whose keys are HTTP header names, matched case-insensitively.
HEADER_FIELDS: frozenset[str] = frozenset({"headers", "response_headers"})

Redactor = Callable[[Mapping[str, Any]], dict[str, Any]]

_T = TypeVar("_T")


class _Wildcard:
    __slots__ = ()

    def __repr__(self) -> str:
        return "*"


WILDCARD = _Wildcard()
Segment = str | _Wildcard

_IDENT = re.compile(r"[A-Za-z0-9_$\-]+")


@dataclass(slots=True, frozen=True)
class RedactOptions:
    """Explicit redaction setup. ``paths`` are added to the defaults."""

    paths: Sequence[str] = field(default_factory=tuple)
    censor: str = DEFAULT_CENSOR


RedactSetting = bool | Sequence[str] | RedactOptions | None


def parse_path(path: str) -> tuple[Segment, ...]:
    """Split ``headers["x-api-key"]`` or ``body.*.token`` into segments.

    Raises:
        ConfigurationError: if the path is empty or malformed.
    """

    segments: list[Segment] = []
    position = 0
    expect_segment = True
    while position < len(path):
        char = path[position]
        if char == "[":
            end, key = _read_bracket(path, position)
            segments.append(key)
            position = end
            expect_segment = False
            continue
        if char == ".":
            if expect_segment:
                raise _malformed(path, f"empty segment at offset {position}")
            position += 1
            expect_segment = True
            if position == len(path):
                raise _malformed(path, "trailing dot")
            continue
        if not expect_segment:
            raise _malformed(path, f"unexpected {char!r} at offset {position}")
        if char == "*":
            segments.append(WILDCARD)
            position += 1
        else:
            match = _IDENT.match(path, position)
            if match is None:
                raise _malformed(path, f"unexpected {char!r} at offset {position}")
            segments.append(match.group())
            position = match.end()
        expect_segment = False

    if not segments:
        raise _malformed(path, "empty path")
    return tuple(segments)


def _read_bracket(path: str, start: int) -> tuple[int, Segment]:
    position = start + 1
    if position < len(path) and path[position] == "*":
        if path[position + 1 : position + 2] != "]":
            raise _malformed(path, f"unterminated bracket at offset {start}")
        return position + 2, WILDCARD
    if position >= len(path) or path[position] not in "\"'":
        raise _malformed(path, f"bracket keys must be quoted (offset {start})")
    quote = path[position]
    close = path.find(quote, position + 1)
    if close == -1 or path[close + 1 : close + 2] != "]":
        raise _malformed(path, f"unterminated bracket at offset {start}")
    key = path[position + 1 : close]
    if not key:
        raise _malformed(path, f"empty bracket key at offset {start}")
    return close + 2, key


def _malformed(path: str, reason: str) -> ConfigurationError:
    return ConfigurationError("InvalidRedactPath", f"Malformed redaction path {path!r}", detail=reason)


def create_redactor(setting: RedactSetting, censor: str | None = None) -> Redactor | None:
    """Build a redactor from a ``redact`` setting.

    ``True`` uses the default paths, a list of paths extends them, ``RedactOptions`` extends them and overrides
    ``censor``, and ``False``/``None`` disables redaction. Every path is parsed eagerly so a bad path fails here rather
    than on the first recorded entry.
    """

    if setting is None or setting is False:
        return None
    if setting is True:
        extra: Sequence[str] = ()
    elif isinstance(setting, RedactOptions):
        extra = setting.paths
        censor = setting.censor
    elif isinstance(setting, str):
        raise ConfigurationError("InvalidRedactSetting", "redact must be a bool, a list of paths or RedactOptions")
    else:
        extra = setting

    paths = list(dict.fromkeys([*DEFAULT_REDACT_PATHS, *extra]))
    compiled = [parse_path(path) for path in paths]
    replacement = censor or DEFAULT_CENSOR

    def redact(data: Mapping[str, Any]) -> dict[str, Any]:
        result = _plain(data)
        for segments in compiled:
            _censor(result, segments, replacement, fold_case=segments[0] in HEADER_FIELDS)
        return result

    return redact


def _plain(value: Any) -> Any:
    """Deep copy ``value``, turning read-only mappings such as Starlette ``Headers`` into dicts."""

    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return copy.deepcopy(value)


def _censor(node: Any, segments: Sequence[Segment], replacement: str, fold_case: bool = False) -> None:
    head, rest = segments[0], segments[1:]
    for key, child in _children(node, head, fold_case):
        if rest:
            _censor(child, rest, replacement, fold_case)
        else:
            node[key] = replacement


def _children(node: Any, segment: Segment, fold_case: bool = False) -> list[tuple[Any, Any]]:
    if isinstance(node, MutableMapping):
        if segment is WILDCARD:
            return list(node.items())
        if fold_case:
            wanted = segment.lower()
            return [(key, child) for key, child in node.items() if isinstance(key, str) and key.lower() == wanted]
        if segment in node:
            return [(segment, node[segment])]
        return []
    if isinstance(node, list):
        if segment is WILDCARD:
            return list(enumerate(node))
        if isinstance(segment, str) and segment.isdigit() and int(segment) < len(node):
            index = int(segment)
            return [(index, node[index])]
    return []


def redact_entry(entry: _T, redactor: Redactor | None) -> _T:
    """Return a copy of a dataclass entry with its redactable fields censored.

    The input is never mutated; fields the entry does not have are skipped.
    """

    if redactor is None:
        return entry
    present = {name: getattr(entry, name) for name in REDACTABLE_FIELDS if hasattr(entry, name)}
    censored = redactor(present)
    changes = {name: censored[name] for name in present}
    return dataclasses.replace(entry, **changes)  # type: ignore[type-var]


__all__ = [
    "DEFAULT_CENSOR",
    "DEFAULT_REDACT_PATHS",
    "HEADER_FIELDS",
    "REDACTABLE_FIELDS",
    "RedactOptions",
    "RedactSetting",
    "Redactor",
    "WILDCARD",
    "create_redactor",
    "parse_path",
    "redact_entry",
]
