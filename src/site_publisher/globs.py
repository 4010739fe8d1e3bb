"""
site_publisher.globs — Glob matching for substitution rules and file options.

Two flavours:
  - path globs (substitution rules): '*' and '?' stay inside one path
    segment, '**/' spans zero or more directories.
  - filter globs (file options): aws-cli filter semantics, '*' also
    matches '/'.

Both reject malformed patterns at compile time with InvalidGlobPattern.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from functools import lru_cache

from site_publisher.exceptions import InvalidGlobPattern
from site_publisher.models import FileOption


def _translate_class(pattern: str, start: int) -> tuple[str, int]:
    """Translate the '[...]' class opening at start. Returns (regex, next index)."""
    j = start + 1
    if j < len(pattern) and pattern[j] in "!^":
        j += 1
    if j < len(pattern) and pattern[j] == "]":
        j += 1
    while j < len(pattern) and pattern[j] != "]":
        j += 1
    if j >= len(pattern):
        raise InvalidGlobPattern(pattern, "unterminated character class")

    body = pattern[start + 1 : j]
    if body[:1] in ("!", "^"):
        body = "^" + body[1:]
    body = body.replace("\\", "\\\\")
    return f"[{body}]", j + 1


def _translate(pattern: str, *, cross_segments: bool) -> str:
    star = ".*" if cross_segments else "[^/]*"
    single = "." if cross_segments else "[^/]"
    out: list[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                if i + 2 < n and pattern[i + 2] == "/":
                    out.append("(?:.*/)?")
                    i += 3
                else:
                    out.append(".*")
                    i += 2
                continue
            out.append(star)
            i += 1
        elif c == "?":
            out.append(single)
            i += 1
        elif c == "[":
            regex, i = _translate_class(pattern, i)
            out.append(regex)
        else:
            out.append(re.escape(c))
            i += 1
    return "(?s:" + "".join(out) + r")\Z"


@lru_cache(maxsize=512)
def compile_glob(pattern: str, *, cross_segments: bool = False) -> re.Pattern[str]:
    """Compile a glob into a regex. Raises InvalidGlobPattern."""
    if not isinstance(pattern, str) or not pattern.strip():
        raise InvalidGlobPattern(str(pattern), "pattern must be a non-empty string")
    try:
        return re.compile(_translate(pattern, cross_segments=cross_segments))
    except re.error as exc:
        raise InvalidGlobPattern(pattern, str(exc)) from exc


def matches(pattern: str, path: str) -> bool:
    """Match a relative path against a path glob."""
    return compile_glob(pattern).match(path) is not None


def filter_matches(pattern: str, path: str) -> bool:
    """Match a relative path against an aws-cli style filter glob."""
    return compile_glob(pattern, cross_segments=True).match(path) is not None


def validate_patterns(patterns: Iterable[str], *, cross_segments: bool = False) -> None:
    for pattern in patterns:
        compile_glob(pattern, cross_segments=cross_segments)


def validate_file_options(options: Sequence[FileOption]) -> None:
    for option in options:
        validate_patterns(option.exclude, cross_segments=True)
        validate_patterns(option.include, cross_segments=True)


def option_applies(option: FileOption, path: str) -> bool:
    """Return True if the option selects path.

    Every file starts included; excludes then includes are applied in
    order and the last matching filter decides.
    """
    included = True
    for pattern in option.exclude:
        if filter_matches(pattern, path):
            included = False
    for pattern in option.include:
        if filter_matches(pattern, path):
            included = True
    return included


def cache_control_for(
    path: str, options: Sequence[FileOption], default: str | None = None
) -> str | None:
    """Resolve the Cache-Control header for path. The last applying option wins."""
    value = default
    for option in options:
        if option_applies(option, path):
            value = option.cache_control
    return value
