# =============================================================================
# IMAP Wire Protocol
# =============================================================================
# The small slice of RFC 3501 the sync and search paths need, kept
# independent of any transport so the grammar can be tested on plain lines.
#
#   - TagGenerator: a1, a2, a3... one per command, scoped to a session
#   - quote_string: the only argument encoding we use (quoted strings)
#   - ResponseLine: one logical server line plus any {N} literals it carried
#   - classify(): turns a ResponseLine into a structured event
#
# Events:
#   Completion(tag, status, text)   "a3 OK SEARCH completed"
#   SearchHit(ids)                  "* SEARCH 3 5 9"
#   FetchItem(seq, attrs)           "* 12 FETCH (UID 40 FLAGS (\Seen))"
#   Continuation(text)              "+ go ahead"
#   Untagged(text)                  anything else starting with "*"
# =============================================================================

import re
from dataclasses import dataclass, field
from typing import Any, Iterator

# Largest value an IMAP UID / MODSEQ-less number may take (32-bit unsigned)
MAX_UID = 2**32 - 1

# A line that ends with a literal announcement: "... {123}"
LITERAL_RE = re.compile(rb"\{(\d+)\}\r?\n?$")


def quote_string(value: str) -> str:
    """
    Encode a string argument as an IMAP quoted string.

    Backslash becomes \\\\, double quote becomes \\", and the result is
    wrapped in double quotes. No other escaping is applied.

    Example:
        >>> quote_string('say "hi"')
        '"say \\\\"hi\\\\""'
    """
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def unquote_string(value: str) -> str:
    """
    Decode an IMAP quoted string the way a server does.

    Accepts the surrounding quotes optionally, so it also works on the
    contents of a token the tokenizer already unwrapped.
    """
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        value = value[1:-1]
    out = []
    chars = iter(value)
    for ch in chars:
        if ch == "\\":
            out.append(next(chars, ""))
        else:
            out.append(ch)
    return "".join(out)


class TagGenerator:
    """
    Hands out monotonically increasing command tags for one session.

    Usage:
        >>> tags = TagGenerator()
        >>> tags.next(), tags.next()
        ('a1', 'a2')
    """

    def __init__(self, prefix: str = "a") -> None:
        self.prefix = prefix
        self._counter = 0

    def next(self) -> str:
        self._counter += 1
        return f"{self.prefix}{self._counter}"

    @property
    def issued(self) -> int:
        """How many tags have been handed out so far."""
        return self._counter


# =============================================================================
# Response Lines and Events
# =============================================================================

@dataclass
class ResponseLine:
    """
    One logical server response.

    A server line that announces a literal ("{N}") continues after the N
    literal bytes. The reader glues the pieces back together: `text`
    keeps the "{N}" markers in place and `literals` holds the payloads
    in order.
    """
    text: str
    literals: list[bytes] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: bytes | str) -> "ResponseLine":
        """Build a literal-free line from raw bytes (CRLF stripped)."""
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        return cls(text=raw.rstrip("\r\n"))


@dataclass
class Completion:
    """Tagged completion: the end of a command's response."""
    tag: str
    status: str         # "OK", "NO" or "BAD"
    text: str           # Rest of the line, the server's human text
    line: str = ""      # The whole raw line, for diagnostics

    @property
    def ok(self) -> bool:
        return self.status == "OK"


@dataclass
class SearchHit:
    """A * SEARCH response. An empty list is a valid (empty) result."""
    ids: list[int]


@dataclass
class FetchItem:
    """A * N FETCH (...) response with its attributes keyed by name."""
    seq: int
    attrs: dict[str, Any]

    @property
    def uid(self) -> int | None:
        value = self.attrs.get("UID")
        return int(value) if value is not None else None


@dataclass
class Continuation:
    """A '+' continuation request."""
    text: str


@dataclass
class Untagged:
    """Any other untagged response ("* 23 EXISTS", "* OK [UIDVALIDITY 1]")."""
    text: str


Event = Completion | SearchHit | FetchItem | Continuation | Untagged

_COMPLETION_STATUSES = ("OK", "NO", "BAD")


def classify(line: ResponseLine, tag: str | None = None) -> Event:
    """
    Turn one response line into a structured event.

    Args:
        line: The response line.
        tag: The tag of the in-flight command. A tagged line for a
             different tag is reported as Untagged so the reader keeps
             going instead of stopping on a stray completion.

    Returns:
        The matching event.
    """
    text = line.text
    if text.startswith("+"):
        return Continuation(text[1:].strip())

    head, _, rest = text.partition(" ")
    if head != "*":
        status, _, message = rest.partition(" ")
        status = status.upper()
        if status in _COMPLETION_STATUSES and (tag is None or head == tag):
            return Completion(tag=head, status=status, text=message, line=text)
        return Untagged(text)

    keyword, _, args = rest.partition(" ")
    if keyword.upper() == "SEARCH":
        return SearchHit(_parse_search_ids(args))

    second, _, fetch_args = args.partition(" ")
    if keyword.isdigit() and second.upper() == "FETCH":
        return FetchItem(seq=int(keyword), attrs=_parse_fetch_attrs(fetch_args, line.literals))

    return Untagged(rest)


def _parse_search_ids(args: str) -> list[int]:
    """
    Collect the numbers of a * SEARCH line in wire order.

    Anything that isn't an unsigned 32-bit number is skipped; CONDSTORE
    servers append "(MODSEQ n)" which must not turn into a UID.
    """
    ids: list[int] = []
    seen: set[int] = set()
    for token in args.split("(", 1)[0].split():
        if not token.isdigit():
            continue
        value = int(token)
        if value > MAX_UID or value in seen:
            continue
        seen.add(value)
        ids.append(value)
    return ids


# =============================================================================
# FETCH attribute tokenizer
# =============================================================================

def tokenize(text: str, literals: list[bytes] | None = None) -> list[Any]:
    """
    Tokenize a parenthesized IMAP data list into nested Python lists.

    Atoms stay strings, quoted strings are unescaped, NIL becomes None,
    "{N}" markers are replaced with the next literal payload (bytes).
    Section specifiers are kept whole: BODY[HEADER.FIELDS (FROM)] is one
    atom even though it contains spaces and parentheses.

    Example:
        >>> tokenize('(UID 7 FLAGS (\\\\Seen))')
        [['UID', '7', 'FLAGS', ['\\\\Seen']]]
    """
    pending = iter(literals or [])
    root: list[Any] = []
    stack: list[list[Any]] = [root]
    for token in _scan(text):
        if token == "(":
            child: list[Any] = []
            stack[-1].append(child)
            stack.append(child)
        elif token == ")":
            if len(stack) > 1:
                stack.pop()
        elif isinstance(token, _Literal):
            stack[-1].append(next(pending, b""))
        else:
            stack[-1].append(token)
    return root


class _Literal:
    """Marker for a "{N}" literal reference in the token stream."""


class _Quoted(str):
    """A string that came from a quoted string (never NIL)."""


def _scan(text: str) -> Iterator[Any]:
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
        elif ch in "()":
            yield ch
            i += 1
        elif ch == '"':
            j = i + 1
            buf = []
            while j < n and text[j] != '"':
                if text[j] == "\\" and j + 1 < n:
                    j += 1
                buf.append(text[j])
                j += 1
            yield _Quoted("".join(buf))
            i = j + 1
        elif ch == "{":
            j = text.find("}", i)
            if j == -1:
                j = n
            yield _Literal()
            i = j + 1
        else:
            j = i
            depth = 0
            while j < n:
                c = text[j]
                if c == "[":
                    depth += 1
                elif c == "]":
                    depth -= 1
                elif depth == 0 and (c.isspace() or c in "()"):
                    break
                j += 1
            atom = text[i:j]
            yield None if atom.upper() == "NIL" else atom
            i = j


def _parse_fetch_attrs(args: str, literals: list[bytes]) -> dict[str, Any]:
    """Pair up NAME VALUE items of a FETCH response into a dict."""
    tokens = tokenize(args, literals)
    items = tokens[0] if tokens and isinstance(tokens[0], list) else tokens
    attrs: dict[str, Any] = {}
    for i in range(0, len(items) - 1, 2):
        name = items[i]
        if isinstance(name, str):
            attrs[_attr_name(name)] = items[i + 1]
    return attrs


def _attr_name(name: str) -> str:
    """
    Normalize a FETCH attribute name.

    Servers echo BODY.PEEK[...] back as BODY[...], and some uppercase the
    section; we key everything by the uppercased name with PEEK removed.
    """
    name = name.upper().replace("BODY.PEEK[", "BODY[")
    return name
