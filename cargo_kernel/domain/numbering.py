"""
Child waybill numbering formats (``cargo_kernel.domain.numbering``).

Responsibility
--------------
Pure formatting and best-effort parsing of child-waybill numbers.  The
numbering service supplies the next sequence for a scope; this module
decides what the scope is and how the number is rendered.

Formats
-------
============== ===================== ========================
Format         Example               Scope
============== ===================== ========================
YEAR_SEQUENCE  ``20260007``          issuing year
PREFIX_SEQUENCE ``GH0007``           prefix
PLAIN_SEQUENCE ``00000007``          global
CUSTOM         ``GH-2026-0007``      template (+ year if used)
============== ===================== ========================

Custom templates use ``AAAA`` for the four-digit year and a run of ``N``
characters (two or more) for the zero-padded sequence.

Invariants enforced
-------------------
* A sequence never renders with fewer digits than its format's width,
  and a sequence that needs more digits is rejected, not truncated.

Parsing is a heuristic.  An 8-digit value whose first four digits look
like a plausible year ([2000, current_year + 1]) is read as year +
sequence; anything else of 8 digits is a plain sequence.  Stored rows
keep their format next to the number, so the parser is only used for
numbers that arrive without one.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from cargo_kernel.exceptions import NumberingOverflowError

YEAR_PLACEHOLDER = "AAAA"
MIN_PLAUSIBLE_YEAR = 2000

_SEQUENCE_PLACEHOLDER = re.compile(r"N{2,}")
_EIGHT_DIGITS = re.compile(r"^\d{8}$")
_PREFIX_DIGITS = re.compile(r"^([A-Za-z]+)(\d+)$")


class ChildNumberFormat(str, Enum):
    YEAR_SEQUENCE = "YEAR_SEQUENCE"
    PREFIX_SEQUENCE = "PREFIX_SEQUENCE"
    PLAIN_SEQUENCE = "PLAIN_SEQUENCE"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True)
class NumberingPolicy:
    """Active numbering format plus its parameters.

    Contract: frozen.  ``prefix`` is used by PREFIX_SEQUENCE, ``template``
    by CUSTOM.
    """

    format: ChildNumberFormat = ChildNumberFormat.YEAR_SEQUENCE
    prefix: str = "GH"
    template: str | None = None

    def __post_init__(self) -> None:
        if self.format == ChildNumberFormat.PREFIX_SEQUENCE and not self.prefix:
            raise ValueError("PREFIX_SEQUENCE numbering requires a prefix")
        if self.format == ChildNumberFormat.CUSTOM:
            if not self.template or not _SEQUENCE_PLACEHOLDER.search(self.template):
                raise ValueError(
                    "CUSTOM numbering requires a template with an N placeholder"
                )

    @property
    def width(self) -> int:
        if self.format == ChildNumberFormat.PLAIN_SEQUENCE:
            return 8
        if self.format == ChildNumberFormat.CUSTOM:
            return len(_SEQUENCE_PLACEHOLDER.search(self.template).group(0))
        return 4

    @property
    def uses_year(self) -> bool:
        if self.format == ChildNumberFormat.YEAR_SEQUENCE:
            return True
        if self.format == ChildNumberFormat.CUSTOM:
            return YEAR_PLACEHOLDER in self.template
        return False

    def scope(self, year: int) -> str:
        """Counter scope in which sequences must be unique."""
        if self.format == ChildNumberFormat.YEAR_SEQUENCE:
            return f"child_waybill:year:{year}"
        if self.format == ChildNumberFormat.PREFIX_SEQUENCE:
            return f"child_waybill:prefix:{self.prefix}"
        if self.format == ChildNumberFormat.PLAIN_SEQUENCE:
            return "child_waybill:plain"
        if self.uses_year:
            return f"child_waybill:custom:{self.template}:{year}"
        return f"child_waybill:custom:{self.template}"

    def render(self, sequence: int, year: int) -> str:
        """Render ``sequence`` (and ``year``) as a child waybill number."""
        if sequence <= 0:
            raise ValueError(f"sequence must be positive, got {sequence}")
        width = self.width
        if sequence >= 10**width:
            raise NumberingOverflowError(self.scope(year), sequence, width)

        padded = str(sequence).zfill(width)
        if self.format == ChildNumberFormat.YEAR_SEQUENCE:
            return f"{year}{padded}"
        if self.format == ChildNumberFormat.PREFIX_SEQUENCE:
            return f"{self.prefix}{padded}"
        if self.format == ChildNumberFormat.PLAIN_SEQUENCE:
            return padded
        rendered = self.template.replace(YEAR_PLACEHOLDER, f"{year:04d}")
        return _SEQUENCE_PLACEHOLDER.sub(padded, rendered, count=1)


@dataclass(frozen=True)
class IssuedNumber:
    """A number handed out by the numbering service."""

    number: str
    format: ChildNumberFormat
    scope: str
    sequence: int
    year: int | None


@dataclass(frozen=True)
class ParsedChildNumber:
    """Components recovered from a number string by ``parse_child_number``."""

    format: ChildNumberFormat
    raw: str
    sequence: int | None = None
    year: int | None = None
    prefix: str | None = None


def parse_child_number(value: str, current_year: int) -> ParsedChildNumber:
    """Best-effort reverse parse of a child waybill number."""
    if _EIGHT_DIGITS.match(value):
        year = int(value[:4])
        if MIN_PLAUSIBLE_YEAR <= year <= current_year + 1:
            return ParsedChildNumber(
                format=ChildNumberFormat.YEAR_SEQUENCE,
                raw=value,
                year=year,
                sequence=int(value[4:]),
            )
        return ParsedChildNumber(
            format=ChildNumberFormat.PLAIN_SEQUENCE,
            raw=value,
            sequence=int(value),
        )

    match = _PREFIX_DIGITS.match(value)
    if match:
        return ParsedChildNumber(
            format=ChildNumberFormat.PREFIX_SEQUENCE,
            raw=value,
            prefix=match.group(1),
            sequence=int(match.group(2)),
        )

    return ParsedChildNumber(format=ChildNumberFormat.CUSTOM, raw=value)
