"""Tolerant field scraping over near-JSON text.

Not a parser: it reads a flat-ish object whose values are strings, one
integer and one array of small objects. LLM replies are often wrapped in
prose or carry odd escapes, so every helper returns None instead of raising
when the text does not have the expected shape.
"""

import re

_SIMPLE_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}

_HEX4_RE = re.compile(r"[0-9a-fA-F]{4}")
_INT_RE = re.compile(r"[+-]?\d+")

PLACEHOLDER = "?"


def skip_whitespace(s: str, pos: int = 0) -> int:
    """Return the index of the first non-whitespace character at or after pos."""
    n = len(s)
    while pos < n and s[pos] in " \t\n\r\f\v":
        pos += 1
    return pos


def _read_hex4(s: str, pos: int) -> int | None:
    if _HEX4_RE.fullmatch(s, pos, pos + 4):
        return int(s[pos : pos + 4], 16)
    return None


def parse_string(
    s: str, pos: int = 0, *, full_unicode: bool = False
) -> tuple[str, int] | None:
    """Decode the quoted string starting at pos (after optional whitespace).

    Returns (decoded, end) where end is the index just past the closing
    quote, or None if there is no opening quote or the string never closes.

    By default \\uXXXX is only honoured for code points 0x00-0xFF; anything
    else becomes "?". With full_unicode, every escape is decoded and UTF-16
    surrogate pairs are combined.
    """
    pos = skip_whitespace(s, pos)
    if pos >= len(s) or s[pos] != '"':
        return None
    pos += 1

    out: list[str] = []
    n = len(s)
    while pos < n:
        c = s[pos]
        pos += 1
        if c == '"':
            return "".join(out), pos
        if c != "\\":
            out.append(c)
            continue
        if pos >= n:
            break
        esc = s[pos]
        pos += 1
        if esc in _SIMPLE_ESCAPES:
            out.append(_SIMPLE_ESCAPES[esc])
        elif esc == "u":
            code = _read_hex4(s, pos)
            if code is None:
                out.append(PLACEHOLDER)
                continue
            pos += 4
            if not full_unicode:
                out.append(chr(code) if code <= 0xFF else PLACEHOLDER)
                continue
            if 0xD800 <= code <= 0xDBFF and s.startswith("\\u", pos):
                low = _read_hex4(s, pos + 2)
                if low is not None and 0xDC00 <= low <= 0xDFFF:
                    pos += 6
                    code = 0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)
            if 0xD800 <= code <= 0xDFFF:
                out.append("\ufffd")
            else:
                out.append(chr(code))
        else:
            out.append(esc)

    return None


def parse_int(s: str, pos: int = 0) -> tuple[int, int] | None:
    """Parse a decimal integer at pos (after optional whitespace).

    Returns (value, end) or None when no digits are found.
    """
    pos = skip_whitespace(s, pos)
    m = _INT_RE.match(s, pos)
    if m is None:
        return None
    return int(m.group()), m.end()


def match_closing(s: str, pos: int, open_char: str, close_char: str) -> int | None:
    """Return the index of the delimiter closing the span opened at pos.

    Delimiters inside quoted strings (including escaped quotes) are ignored.
    """
    if pos >= len(s) or s[pos] != open_char:
        return None

    depth = 0
    in_str = False
    esc = False
    for i in range(pos, len(s)):
        c = s[i]
        if in_str:
            if esc:
                esc = False
            elif c == "\\":
                esc = True
            elif c == '"':
                in_str = False
            continue
        if c == '"':
            in_str = True
        elif c == open_char:
            depth += 1
        elif c == close_char:
            depth -= 1
            if depth == 0:
                return i
    return None


def find_field_value_start(s: str, field: str) -> int | None:
    """Locate the value of the first ``"field":`` occurrence anywhere in s.

    The search is not scoped to a nesting level: slice s down to the object
    of interest first if nested content could contain the same key.
    """
    needle = f'"{field}"'
    start = s.find(needle)
    while start != -1:
        q = skip_whitespace(s, start + len(needle))
        if q < len(s) and s[q] == ":":
            return skip_whitespace(s, q + 1)
        start = s.find(needle, start + 1)
    return None


def extract_string_field(
    s: str, field: str, *, full_unicode: bool = False
) -> str | None:
    pos = find_field_value_start(s, field)
    if pos is None:
        return None
    parsed = parse_string(s, pos, full_unicode=full_unicode)
    if parsed is None:
        return None
    return parsed[0]


def _extract_span(
    s: str, field: str, open_char: str, close_char: str
) -> tuple[int, int] | None:
    pos = find_field_value_start(s, field)
    if pos is None or pos >= len(s) or s[pos] != open_char:
        return None
    end = match_closing(s, pos, open_char, close_char)
    if end is None:
        return None
    return pos, end


def extract_object_span(s: str, field: str) -> tuple[int, int] | None:
    """Return (start, end) of the object value of field, end inclusive."""
    return _extract_span(s, field, "{", "}")


def extract_array_span(s: str, field: str) -> tuple[int, int] | None:
    """Return (start, end) of the array value of field, end inclusive."""
    return _extract_span(s, field, "[", "]")


def strip_to_json(s: str | None) -> str | None:
    """Cut s down to the text between the first '{' and the last '}'.

    Lets a reply survive banner lines or prose printed around the object.
    """
    if not s:
        return None
    first = s.find("{")
    last = s.rfind("}")
    if first == -1 or last <= first:
        return None
    return s[first : last + 1]
