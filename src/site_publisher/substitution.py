"""
site_publisher.substitution — Placeholder substitution rules.

Every declared environment variable NAME yields two rules, both replacing the
literal token "{{ NAME }}" with the variable's value:

    ("**/*.js",     "{{ NAME }}", value)   every script asset
    ("index.html",  "{{ NAME }}", value)   the entry document

Explicit replace values from configuration are appended after the generated
rules. Rules are pure data; the orchestrator applies them to staged objects.

Known limitation: a build that already emits unrelated "{{ ... }}" text
matching a declared token will have that text replaced too.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Mapping, Sequence

from site_publisher.globs import compile_glob, matches
from site_publisher.models import DEFAULT_INDEX_PAGE, SubstitutionRule

SCRIPT_ASSET_PATTERN = "**/*.js"


def placeholder_token(name: str) -> str:
    return f"{{{{ {name} }}}}"


def placeholder_environment(environment: Mapping[str, str]) -> dict[str, str]:
    """Map each declared variable to its token, for the build step's environment."""
    return {name: placeholder_token(name) for name in environment}


def compile_rules(
    environment: Mapping[str, str],
    *,
    index_page: str = DEFAULT_INDEX_PAGE,
    extra: Iterable[Mapping[str, str]] = (),
) -> list[SubstitutionRule]:
    """Compile substitution rules in declaration order.

    extra items use the configuration shape {"files", "search", "replace"}.
    All file patterns are validated here; an invalid one raises
    InvalidGlobPattern.
    """
    rules: list[SubstitutionRule] = []
    for name, value in environment.items():
        token = placeholder_token(name)
        rules.append(SubstitutionRule(SCRIPT_ASSET_PATTERN, token, str(value)))
        rules.append(SubstitutionRule(index_page, token, str(value)))
    for item in extra:
        rules.append(
            SubstitutionRule(
                file_pattern=str(item["files"]),
                token=str(item["search"]),
                replacement=str(item["replace"]),
            )
        )

    for rule in rules:
        compile_glob(rule.file_pattern)
    return rules


def rules_for(path: str, rules: Sequence[SubstitutionRule]) -> list[SubstitutionRule]:
    return [rule for rule in rules if matches(rule.file_pattern, path)]


def apply_rules(path: str, content: bytes, rules: Sequence[SubstitutionRule]) -> bytes:
    """Return content with every matching rule applied, in rule order."""
    for rule in rules_for(path, rules):
        content = content.replace(rule.token.encode("utf-8"), rule.replacement.encode("utf-8"))
    return content


def rules_digest(rules: Sequence[SubstitutionRule]) -> str:
    canonical = json.dumps(
        [[rule.file_pattern, rule.token, rule.replacement] for rule in rules],
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
