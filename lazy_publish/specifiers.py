"""Dependency specifier parsing.

Classifies the version specifier strings found in package.json into one of
a handful of variants. The same parse is used both to validate a manifest
(anything INVALID rejects the load) and to decide whether a dependency is
internal to the workspace.

Accepted:
    workspace:*, workspace:^1.0.0   → INTERNAL
    1.2.3, =1.2.3, v1.2.3-rc.1      → EXACT
    ^1.2, ~1.2.3, >=1 <2, 1.x, ...  → RANGE
    latest, next, beta, ...         → DIST_TAG
    *, x, ""                        → WILDCARD

Rejected (INVALID): anything that can't be resolved against the registry,
such as file:../foo, link:../foo, git+ssh://..., https://..., ./vendor/foo
or a GitHub "user/repo" shorthand.
"""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel

WORKSPACE_PREFIX = "workspace:"

DIST_TAGS = frozenset(
    {"latest", "next", "stable", "beta", "alpha", "canary", "rc", "dev"}
)

_IDENT = r"[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*"
_SUFFIX = rf"(?:-{_IDENT})?(?:\+{_IDENT})?"
_EXACT = re.compile(rf"^(?:=\s*)?v?\d+\.\d+\.\d+{_SUFFIX}$")
_PART = r"(?:\d+|[xX*])"
_PARTIAL = rf"{_PART}(?:\.{_PART}(?:\.{_PART}{_SUFFIX})?)?"
_COMPARATOR = re.compile(rf"^(?:\^|~>?|>=|<=|>|<|=)?v?{_PARTIAL}$")
_PROTOCOL = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*:")
_OPERATOR_GAP = re.compile(r"(\^|~>?|>=|<=|>|<|=)\s+")


class SpecifierKind(str, Enum):
    INTERNAL = "internal"
    EXACT = "exact"
    RANGE = "range"
    DIST_TAG = "dist-tag"
    WILDCARD = "wildcard"
    INVALID = "invalid"


class Specifier(BaseModel):
    """A classified dependency specifier.

    Attributes:
        kind: Which variant the raw string parsed as.
        raw: The specifier exactly as declared.
    """

    kind: SpecifierKind
    raw: str

    @property
    def is_valid(self) -> bool:
        return self.kind is not SpecifierKind.INVALID

    @property
    def is_internal(self) -> bool:
        return self.kind is SpecifierKind.INTERNAL


def parse_specifier(raw: str) -> Specifier:
    """Classify a raw dependency specifier string."""
    value = raw.strip()

    if value.startswith(WORKSPACE_PREFIX):
        rest = value[len(WORKSPACE_PREFIX) :].strip()
        if rest in ("*", "^", "~") or _classify_version(rest) in (
            SpecifierKind.EXACT,
            SpecifierKind.RANGE,
            SpecifierKind.WILDCARD,
        ):
            return Specifier(kind=SpecifierKind.INTERNAL, raw=raw)
        return Specifier(kind=SpecifierKind.INVALID, raw=raw)

    if value in DIST_TAGS:
        return Specifier(kind=SpecifierKind.DIST_TAG, raw=raw)

    return Specifier(kind=_classify_version(value), raw=raw)


def _classify_version(value: str) -> SpecifierKind:
    if value in ("", "*", "x", "X"):
        return SpecifierKind.WILDCARD
    # file:, link:, git+ssh:, https:, github:, npm: aliases ...
    if _PROTOCOL.match(value):
        return SpecifierKind.INVALID
    # Local paths and "user/repo" shorthands
    if value.startswith((".", "/", "~/")) or "/" in value:
        return SpecifierKind.INVALID
    if _EXACT.match(value):
        return SpecifierKind.EXACT
    if all(_is_valid_range(alt) for alt in value.split("||")):
        return SpecifierKind.RANGE
    return SpecifierKind.INVALID


def _is_valid_range(alternative: str) -> bool:
    """Check one "||"-separated alternative of a range."""
    alternative = alternative.strip()
    if not alternative:
        return False
    # Hyphen range: "1.2.3 - 2.3.4"
    if " - " in alternative:
        low, _, high = alternative.partition(" - ")
        return _is_plain_partial(low.strip()) and _is_plain_partial(high.strip())
    comparators = _OPERATOR_GAP.sub(r"\1", alternative).split()
    return all(_COMPARATOR.match(c) for c in comparators)


def _is_plain_partial(value: str) -> bool:
    return bool(re.match(rf"^v?{_PARTIAL}$", value))
