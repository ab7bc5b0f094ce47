"""
Query language for library search.

Grammar (keywords are case-insensitive, evaluation is left to right):

    query      := term { [AND | OR] term }
    term       := [NOT] (field_expr | free_text)
    field_expr := FIELD ":" value
    value      := quoted_string | bareword

Fields are tag, type, name, content, modified and status. Adjacent terms
without a joiner are ANDed. Parentheses are accepted and flattened.
Bare words become content filters.

``modified`` takes a duration like ``>7d`` or ``<2w`` (units d, w, m, y).
``>N`` selects items modified within the last N units, ``<N`` selects items
last modified more than N units ago.
"""

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ..errors import ParseError


FIELDS = frozenset({"tag", "type", "name", "content", "modified", "status"})

AND = "AND"
OR = "OR"
NOT = "NOT"
_JOINERS = frozenset({AND, OR})

STATUS_ARCHIVED = "archived"
STATUS_ACTIVE = "active"

# Days per duration unit
DURATION_UNITS = {"d": 1, "w": 7, "m": 30, "y": 365}

_FIELD_RE = re.compile(r"^(\w+):(.+)$", re.DOTALL)
_DURATION_RE = re.compile(r"^([<>])(\d+)([dwmy])$")
_QUOTES = "\"'"


@dataclass(frozen=True)
class Token:
    """A query token and the character offset where it starts."""
    text: str
    position: int


@dataclass(frozen=True)
class Filter:
    """
    One field condition of a query.

    Attributes:
        field: One of FIELDS
        value: Unquoted value (lowercased for modified and status)
        negated: True if preceded by NOT
        quoted: True if the value was written in quotes
        comparator: ">" or "<" for modified filters
        threshold: Duration for modified filters
        position: Offset of the term in the raw query
    """
    field: str
    value: str
    negated: bool = False
    quoted: bool = False
    comparator: Optional[str] = None
    threshold: Optional[timedelta] = None
    position: int = -1

    def __str__(self) -> str:
        value = f'"{self.value}"' if self.quoted or " " in self.value else self.value
        text = f"{self.field}:{value}"
        return f"NOT {text}" if self.negated else text


@dataclass(frozen=True)
class Query:
    """A parsed query: filters joined pairwise by operators."""
    filters: tuple[Filter, ...] = ()
    operators: tuple[str, ...] = ()
    free_text: Optional[str] = None
    raw: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.filters

    @property
    def wants_archived(self) -> bool:
        """True if any status filter names archived items (negated or not)."""
        return any(
            f.field == "status" and f.value == STATUS_ARCHIVED
            for f in self.filters
        )

    def positive_filters(self, field: Optional[str] = None) -> list[Filter]:
        """Non-negated filters, optionally restricted to one field."""
        return [
            f for f in self.filters
            if not f.negated and (field is None or f.field == field)
        ]

    def __str__(self) -> str:
        if not self.filters:
            return ""
        parts = [str(self.filters[0])]
        for op, f in zip(self.operators, self.filters[1:]):
            parts.append(op)
            parts.append(str(f))
        return " ".join(parts)


def _opens_quote(buf: list[str], ch: str) -> bool:
    # Double quotes group anywhere; a single quote only at a token start or
    # right after "field:", so apostrophes inside words stay literal.
    if ch == '"':
        return True
    return not buf or buf[-1] == ":"


def tokenize(text: str) -> list[Token]:
    """
    Split a query into tokens.

    Whitespace separates tokens except inside quotes; quotes are kept in
    the token text. Parentheses outside quotes are tokens of their own.

    Raises:
        ParseError: If a quote is never closed
    """
    tokens: list[Token] = []
    buf: list[str] = []
    start = 0
    quote: Optional[str] = None
    quote_start = 0

    def flush():
        if buf:
            tokens.append(Token("".join(buf), start))
            buf.clear()

    for i, ch in enumerate(text):
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in _QUOTES and _opens_quote(buf, ch):
            if not buf:
                start = i
            quote = ch
            quote_start = i
            buf.append(ch)
        elif ch.isspace():
            flush()
        elif ch in "()":
            flush()
            tokens.append(Token(ch, i))
        else:
            if not buf:
                start = i
            buf.append(ch)

    if quote:
        raise ParseError("unterminated quote", "".join(buf), quote_start)
    flush()
    return tokens


def _unquote(value: str) -> tuple[str, bool]:
    """Strip quotes from a value; report whether it was quoted."""
    if len(value) >= 2 and value[0] in _QUOTES and value[-1] == value[0]:
        return value[1:-1], True
    if '"' in value:
        return value.replace('"', ""), True
    return value, False


def parse_duration(value: str) -> tuple[str, timedelta]:
    """Parse a modified value like ">7d" into (comparator, threshold).

    Raises:
        ParseError: If the value is not a duration
    """
    m = _DURATION_RE.match(value.strip().lower())
    if not m:
        raise ParseError(
            f"invalid modified value {value!r} (expected e.g. >7d, <2w, >1m, <1y)",
            value,
        )
    comparator, amount, unit = m.groups()
    return comparator, timedelta(days=int(amount) * DURATION_UNITS[unit])


def _parse_term(token: Token, negated: bool) -> Optional[Filter]:
    m = _FIELD_RE.match(token.text)
    if m:
        field = m.group(1).lower()
        if field not in FIELDS:
            raise ParseError(f"unknown field {m.group(1)!r}", token.text, token.position)
        value, quoted = _unquote(m.group(2))
        if not value.strip():
            raise ParseError(f"empty value for {field}:", token.text, token.position)
        if field == "modified":
            try:
                comparator, threshold = parse_duration(value)
            except ParseError as e:
                raise ParseError(e.message, token.text, token.position) from None
            return Filter(
                field, value.strip().lower(), negated, quoted,
                comparator, threshold, token.position,
            )
        if field == "status":
            value = value.strip().lower()
        return Filter(field, value, negated, quoted, position=token.position)

    value, quoted = _unquote(token.text)
    if not value.strip():
        return None
    return Filter("content", value, negated, quoted, position=token.position)


def parse_query(text: str) -> Query:
    """
    Parse a query string.

    Pure and deterministic: the index is never consulted.

    Raises:
        ParseError: On unknown fields, bad durations, unterminated quotes,
            or misplaced AND/OR/NOT
    """
    filters: list[Filter] = []
    operators: list[str] = []
    free_text: list[str] = []
    pending_op: Optional[Token] = None
    pending_not: Optional[Token] = None

    for token in tokenize(text):
        if token.text in ("(", ")"):
            continue
        word = token.text.upper()

        if word in _JOINERS:
            if pending_not is not None:
                raise ParseError("NOT operator requires a condition", pending_not.text, pending_not.position)
            if not filters:
                raise ParseError(f"query cannot start with {word}", token.text, token.position)
            if pending_op is not None:
                raise ParseError(
                    f"{word} cannot follow {pending_op.text.upper()}", token.text, token.position,
                )
            pending_op = token
            continue

        if word == NOT:
            if pending_not is not None:
                raise ParseError("NOT operator requires a condition", pending_not.text, pending_not.position)
            pending_not = token
            continue

        f = _parse_term(token, negated=pending_not is not None)
        if f is None:
            continue
        if filters:
            operators.append(pending_op.text.upper() if pending_op else AND)
        filters.append(f)
        if f.field == "content" and _FIELD_RE.match(token.text) is None:
            free_text.append(f.value)
        pending_op = None
        pending_not = None

    if pending_not is not None:
        raise ParseError("NOT operator requires a condition", pending_not.text, pending_not.position)
    if pending_op is not None:
        raise ParseError(
            f"{pending_op.text.upper()} operator requires a condition",
            pending_op.text, pending_op.position,
        )

    return Query(
        filters=tuple(filters),
        operators=tuple(operators),
        free_text=" ".join(free_text) if free_text else None,
        raw=text,
    )
