"""Operator and EVSE identifiers.

Identifiers are plain comparable values.  Each carries a canonical string that
drives equality, hashing and ordering, plus a format tag that only affects how
the value is printed.  ``DE*GEF*E1234`` and ``DEGEF*E1234`` are therefore the
same EVSE.

Supported formats::

    ISO       DEGEF*E1234
    ISO_STAR  DE*GEF*E1234
    DIN       +49*822*1234
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from enum import Enum

from .errors import MalformedIdentifier


class IdFormat(str, Enum):
    ISO = "ISO"
    ISO_STAR = "ISO_STAR"
    DIN = "DIN"


_ISO_OPERATOR = re.compile(r"^([A-Za-z]{2})(\*?)([A-Za-z0-9]{3})$")
_DIN_OPERATOR = re.compile(r"^\+?([0-9]{1,5})\*([0-9]{3,6})$")

_ISO_EVSE = re.compile(r"^([A-Za-z]{2}\*?[A-Za-z0-9]{3})\*?E([A-Za-z0-9*]{1,30})$")
_DIN_EVSE = re.compile(r"^(\+?[0-9]{1,5}\*[0-9]{3,6})\*?([0-9*]{1,32})$")

_ISO_SUFFIX = re.compile(r"^[A-Za-z0-9*]{1,30}$")
_DIN_SUFFIX = re.compile(r"^[0-9*]{1,32}$")


@dataclass(frozen=True, order=True, slots=True)
class OperatorId:
    """A charging station operator, the scope prefix of every EVSE id."""

    canonical: str
    country: str = field(compare=False)
    code: str = field(compare=False)
    id_format: IdFormat = field(default=IdFormat.ISO_STAR, compare=False)

    def __str__(self) -> str:
        return self.format(self.id_format)

    def format(self, id_format: IdFormat) -> str:
        if self.id_format is IdFormat.DIN or id_format is IdFormat.DIN:
            if self.id_format is not id_format:
                raise MalformedIdentifier(
                    "operator", self.canonical, f"cannot convert to {id_format.value}"
                )
            return f"+{self.country}*{self.code}"
        if id_format is IdFormat.ISO:
            return f"{self.country}{self.code}"
        return f"{self.country}*{self.code}"

    def with_format(self, id_format: IdFormat) -> "OperatorId":
        self.format(id_format)
        return OperatorId(self.canonical, self.country, self.code, id_format)


@dataclass(frozen=True, order=True, slots=True)
class EntityId:
    """An EVSE identifier scoped to an operator."""

    canonical: str
    operator_id: OperatorId = field(compare=False)
    suffix: str = field(compare=False)

    @property
    def id_format(self) -> IdFormat:
        return self.operator_id.id_format

    def __str__(self) -> str:
        return self.format(self.id_format)

    def format(self, id_format: IdFormat) -> str:
        operator = self.operator_id.format(id_format)
        if id_format is IdFormat.DIN:
            return f"{operator}*{self.suffix}"
        return f"{operator}*E{self.suffix}"

    def with_format(self, id_format: IdFormat) -> "EntityId":
        return EntityId(self.canonical, self.operator_id.with_format(id_format), self.suffix)


def operator_id(country: str, code: str, id_format: IdFormat = IdFormat.ISO_STAR) -> OperatorId:
    """Build an :class:`OperatorId` from its parts."""
    if not isinstance(country, str) or not isinstance(code, str):
        raise MalformedIdentifier("operator", (country, code), "parts must be strings")
    if id_format is IdFormat.DIN:
        country = country.lstrip("+")
        if not _DIN_OPERATOR.match(f"{country}*{code}"):
            raise MalformedIdentifier("operator", f"+{country}*{code}")
        return OperatorId(f"+{country}*{code}", country, code, id_format)
    if not _ISO_OPERATOR.match(f"{country}{code}"):
        raise MalformedIdentifier("operator", f"{country}*{code}")
    country, code = country.upper(), code.upper()
    return OperatorId(f"{country}*{code}", country, code, id_format)


def parse_operator_id(text: str) -> OperatorId:
    """Parse ``DE*GEF``, ``DEGEF`` or ``+49*822``.

    Raises
    ------
    MalformedIdentifier
        If ``text`` matches none of the supported formats.
    """
    if not isinstance(text, str) or not text.strip():
        raise MalformedIdentifier("operator", text, "empty")
    text = text.strip()
    match = _ISO_OPERATOR.match(text)
    if match:
        id_format = IdFormat.ISO_STAR if match.group(2) else IdFormat.ISO
        return operator_id(match.group(1), match.group(3), id_format)
    match = _DIN_OPERATOR.match(text)
    if match:
        return operator_id(match.group(1), match.group(2), IdFormat.DIN)
    raise MalformedIdentifier("operator", text)


def entity_id(operator: OperatorId | str, suffix: str) -> EntityId:
    """Build an :class:`EntityId` from an operator and a suffix."""
    if isinstance(operator, str):
        operator = parse_operator_id(operator)
    if not isinstance(suffix, str):
        raise MalformedIdentifier("EVSE", suffix, "suffix must be a string")
    if operator.id_format is IdFormat.DIN:
        if not _DIN_SUFFIX.match(suffix):
            raise MalformedIdentifier("EVSE suffix", suffix)
        return EntityId(f"{operator.canonical}*{suffix}", operator, suffix)
    if not _ISO_SUFFIX.match(suffix):
        raise MalformedIdentifier("EVSE suffix", suffix)
    suffix = suffix.upper()
    return EntityId(f"{operator.canonical}*E{suffix}", operator, suffix)


def parse_entity_id(text: str) -> EntityId:
    """Parse the text representation of an EVSE identification."""
    if not isinstance(text, str) or not text.strip():
        raise MalformedIdentifier("EVSE", text, "empty")
    text = text.strip()
    match = _ISO_EVSE.match(text)
    if match:
        return entity_id(parse_operator_id(match.group(1)), match.group(2))
    match = _DIN_EVSE.match(text)
    if match:
        return entity_id(parse_operator_id(match.group(1)), match.group(2))
    raise MalformedIdentifier("EVSE", text)


def try_parse_entity_id(text: str) -> EntityId | None:
    """Like :func:`parse_entity_id` but return ``None`` for malformed text."""
    try:
        return parse_entity_id(text)
    except MalformedIdentifier:
        return None


def compare_ids(a: EntityId | OperatorId, b: EntityId | OperatorId) -> int:
    """Three-way comparison over the canonical strings."""
    return (a.canonical > b.canonical) - (a.canonical < b.canonical)


def new_reservation_id() -> str:
    return f"R-{uuid.uuid4().hex}"


def new_session_id() -> str:
    return f"S-{uuid.uuid4().hex}"
