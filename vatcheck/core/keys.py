from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")
JURISDICTION_RE = re.compile(r"^[A-Z]{2}$")

# VIES uses EL for Greece; ISO GR is accepted on input.
JURISDICTION_ALIASES = {"GR": "EL"}


class MalformedReason(str, Enum):
    EMPTY_OR_TOO_SHORT = "empty_or_too_short"
    INVALID_JURISDICTION_PREFIX = "invalid_jurisdiction_prefix"
    MISSING_IDENTIFIER_BODY = "missing_identifier_body"


class MalformedInputError(ValueError):
    """Raised when an input line cannot be turned into a lookup key."""

    def __init__(self, reason: MalformedReason, raw: str) -> None:
        super().__init__(f"{reason.value}: {raw!r}")
        self.reason = reason
        self.raw = raw


@dataclass(frozen=True, slots=True)
class LookupKey:
    jurisdiction_code: str
    identifier_body: str

    @property
    def value(self) -> str:
        return f"{self.jurisdiction_code}:{self.identifier_body}"


@dataclass(frozen=True, slots=True)
class ParsedLine:
    input: str
    key: LookupKey


def canonicalize_line(raw: str | None) -> str:
    return NON_ALNUM_RE.sub("", (raw or "").strip()).upper()


def parse_lookup_line(raw: str | None) -> ParsedLine:
    """Turn one raw input line into a canonical lookup key.

    Whitespace and punctuation are dropped and letters uppercased, so
    ``"nl 1234.56789 b01"`` and ``"NL123456789B01"`` produce the same key.
    """
    text = raw if isinstance(raw, str) else ""
    compact = canonicalize_line(text)
    if len(compact) < 2:
        raise MalformedInputError(MalformedReason.EMPTY_OR_TOO_SHORT, text)

    prefix = compact[:2]
    if not JURISDICTION_RE.match(prefix):
        raise MalformedInputError(MalformedReason.INVALID_JURISDICTION_PREFIX, text)

    body = compact[2:]
    if not body:
        raise MalformedInputError(MalformedReason.MISSING_IDENTIFIER_BODY, text)

    return ParsedLine(
        input=text,
        key=LookupKey(jurisdiction_code=JURISDICTION_ALIASES.get(prefix, prefix), identifier_body=body),
    )


def normalize_jurisdiction(code: str) -> str:
    upper = code.strip().upper()
    return JURISDICTION_ALIASES.get(upper, upper)
