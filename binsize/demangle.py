"""Symbol name demangling for legacy and v0 mangling schemes."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass


class Kind(enum.Enum):
    LEGACY = "legacy"
    V0 = "v0"
    UNKNOWN = "unknown"


@dataclass
class SymbolName:
    complete: str
    trimmed: str
    crate_name: str | None
    kind: Kind


@dataclass
class SymbolData:
    name: SymbolName
    address: int
    size: int


_ESCAPES = {
    "SP": "@",
    "BP": "*",
    "RF": "&",
    "LT": "<",
    "GT": ">",
    "LP": "(",
    "RP": ")",
    "C": ",",
}

_ESCAPE_RE = re.compile(r"\$([A-Za-z0-9]+)\$")
_HASH_RE = re.compile(r"h[0-9a-f]{16}")


class _Malformed(Exception):
    pass


def _unescape(ident: str) -> str:
    if ident.startswith("_$"):
        ident = ident[1:]

    def repl(m: re.Match) -> str:
        code = m.group(1)
        if code in _ESCAPES:
            return _ESCAPES[code]
        if code.startswith("u"):
            try:
                return chr(int(code[1:], 16))
            except ValueError:
                pass
        return m.group(0)

    return _ESCAPE_RE.sub(repl, ident).replace("..", "::")


def _read_length_prefixed(text: str, pos: int) -> tuple[str, int]:
    start = pos
    while pos < len(text) and text[pos].isdigit():
        pos += 1
    if start == pos:
        raise _Malformed
    length = int(text[start:pos])
    end = pos + length
    if end > len(text) or length == 0:
        raise _Malformed
    return text[pos:end], end


def _demangle_legacy(body: str) -> list[str]:
    parts = []
    pos = 0
    while pos < len(body):
        if body[pos] == "E":
            return parts
        ident, pos = _read_length_prefixed(body, pos)
        parts.append(ident)
    raise _Malformed


def _legacy(mangled: str, body: str) -> SymbolName:
    parts = _demangle_legacy(body)
    names = [_unescape(p) for p in parts]
    complete = "::".join(names)
    if len(parts) > 1 and _HASH_RE.fullmatch(parts[-1]):
        trimmed = "::".join(names[:-1])
    else:
        trimmed = complete
    return SymbolName(complete, trimmed, None, Kind.LEGACY)


class _V0Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def take(self) -> str:
        ch = self.peek()
        if not ch:
            raise _Malformed
        self.pos += 1
        return ch

    def disambiguator(self) -> None:
        if self.peek() == "s":
            self.pos += 1
            while self.peek() and self.peek() != "_":
                self.pos += 1
            self.take()

    def ident(self) -> str:
        if self.peek() == "u":
            self.pos += 1
        start = self.pos
        while self.peek().isdigit():
            self.pos += 1
        if start == self.pos:
            raise _Malformed
        length = int(self.text[start:self.pos])
        if self.peek() == "_":
            self.pos += 1
        end = self.pos + length
        if end > len(self.text):
            raise _Malformed
        value = self.text[self.pos:end]
        self.pos = end
        return value

    def path(self) -> tuple[list[str], str]:
        tag = self.take()
        if tag == "C":
            self.disambiguator()
            name = self.ident()
            return [name], name
        if tag == "N":
            self.take()
            parts, crate = self.path()
            self.disambiguator()
            name = self.ident()
            if name:
                parts.append(name)
            return parts, crate
        raise _Malformed


def _v0(mangled: str, body: str) -> SymbolName:
    parser = _V0Parser(body)
    while parser.peek().isdigit():
        parser.pos += 1
    try:
        parts, crate = parser.path()
    except (_Malformed, IndexError):
        return SymbolName(mangled, mangled, None, Kind.V0)
    joined = "::".join(parts)
    return SymbolName(joined, joined, crate, Kind.V0)


def demangle(mangled: str) -> SymbolName:
    """Demangle a symbol, classifying it by mangling scheme."""
    for prefix in ("__ZN", "_ZN", "ZN"):
        if mangled.startswith(prefix):
            body = mangled[len(prefix):]
            try:
                return _legacy(mangled, body)
            except _Malformed:
                break
    for prefix in ("__R", "_R", "R"):
        if mangled.startswith(prefix) and len(mangled) > len(prefix):
            return _v0(mangled, mangled[len(prefix):])
    return SymbolName(mangled, mangled, None, Kind.UNKNOWN)