"""
Tolerant extraction of numbers from semi-structured text, such as the
box-drawn tables printed by CLI tools.

Two disciplines are supported:
 - labeled fields: a fixed label followed by a number on the same line.
   A missing label or an unparseable value is an error naming the field.
 - repeated rows: every match of a row pattern with ``name`` and
   ``value`` groups, collected in document order. No matches is fine.

Column widths and whitespace are not stable upstream, so nothing here
depends on exact spacing.
"""

import re
from typing import Callable, TypeVar

from quotabar.errors import TextParseError

T = TypeVar("T", int, float)

# optional sign and currency symbol, digits with thousands separators,
# optional decimal part
NUMBER = r"[-+]?[$€£]?[\d,]*\.?\d+"

# characters that may surround a value inside a table cell
_CELL_CHARS = "│┃|:"
_STRIP_RE = re.compile(r"[\s$€£,]")


def parse_number(raw: "str", cast: "Callable[[str], T]" = float) -> "T":
    """
    converts a displayed number like '$1,234.50' or '1,200' to a
    number. Raises ValueError when nothing numeric is left.
    """
    cleaned = _STRIP_RE.sub("", raw.strip(_CELL_CHARS + " \t"))
    if not cleaned:
        raise ValueError(f"not a number: {raw!r}")
    return cast(cleaned)


def extract_labeled_number(
    text: "str",
    label: "str",
    field: "str",
    pattern: "str" = NUMBER,
    cast: "Callable[[str], T]" = float,
) -> "T":
    """
    returns the first value following label on the same line.
    """
    label_re = re.compile(rf"(?<!\w){re.escape(label)}(?!\w)")
    match = label_re.search(text)
    if match is None:
        raise TextParseError(field, f"missing field {field!r}")

    line_end = text.find("\n", match.end())
    rest = text[match.end() : line_end if line_end != -1 else len(text)]
    token = re.match(rf"[\s{_CELL_CHARS}]*(?P<raw>[^\s{_CELL_CHARS}]*)", rest)
    raw = token.group("raw") if token else ""

    if not re.fullmatch(pattern, raw):
        raise TextParseError(
            field, f"unparseable value for field {field!r}: {raw!r}", raw
        )
    try:
        return parse_number(raw, cast)
    except ValueError as e:
        raise TextParseError(
            field, f"unparseable value for field {field!r}: {raw!r}", raw
        ) from e


def extract_rows(text: "str", pattern: "str | re.Pattern[str]") -> "dict[str, float]":
    """
    collects name -> value for every match of pattern, which must
    define the named groups 'name' and 'value'. Rows whose value
    cannot be parsed are skipped. Later rows with the same name win.
    """
    row_re = pattern if isinstance(pattern, re.Pattern) else re.compile(
        pattern, re.MULTILINE
    )
    rows: "dict[str, float]" = {}
    for match in row_re.finditer(text):
        try:
            rows[match.group("name")] = parse_number(match.group("value"))
        except ValueError:
            continue
    return rows
