"""
S-format (PHP ``serialize``) codec.

Value model
-----------
Decoded values are plain Python scalars plus three tagged containers:

- ``None``, ``bool``, ``int``, ``float``, ``str``
- :class:`PhpArray` -- ordered ``(key, value)`` pairs; keys are ``int`` or ``str``
- :class:`PhpObject` -- class name plus ordered ``(name, value)`` fields
- :class:`PhpOpaque` -- kinds that are never walked or rewritten
  (custom-serialized ``C:`` objects, ``E:`` enums, ``r:``/``R:`` references);
  they re-encode byte-for-byte.

Notes
-----
String lengths in the format are byte lengths of the UTF-8 encoding. Input
that is not valid UTF-8 survives a decode/encode cycle unchanged because text
is carried with the ``surrogateescape`` error handler.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, NoReturn, Union

from ..errors import SerializationError

_ENCODING = "utf-8"
_ERRORS = "surrogateescape"

TRIM_CHARS = " \t\n\r\0\x0b"
_INT_RE = re.compile(rb"[+-]?[0-9]+")
_SIZE_RE = re.compile(rb"[0-9]+")
_FLOAT_RE = re.compile(rb"[+-]?(?:[0-9.]+(?:[eE][+-]?[0-9]+)?|INF|NAN)")


@dataclass(frozen=True, slots=True)
class PhpArray:
    """An ordered S-format array."""

    items: tuple[tuple[Union[int, str], Any], ...] = ()

    @classmethod
    def from_mapping(cls, mapping: Mapping[Union[int, str], Any]) -> "PhpArray":
        return cls(items=tuple(mapping.items()))

    @classmethod
    def from_list(cls, values: Iterable[Any]) -> "PhpArray":
        return cls(items=tuple(enumerate(values)))

    def as_dict(self) -> dict[Union[int, str], Any]:
        return dict(self.items)

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True, slots=True)
class PhpObject:
    """An S-format object with its class name and ordered fields."""

    class_name: str
    fields: tuple[tuple[Union[int, str], Any], ...] = ()

    def as_dict(self) -> dict[Union[int, str], Any]:
        return dict(self.fields)


@dataclass(frozen=True, slots=True)
class PhpOpaque:
    """A value kept in its encoded form because it cannot be safely rewritten."""

    raw: str


Value = Union[None, bool, int, float, str, PhpArray, PhpObject, PhpOpaque]


def loads(text: str) -> Value:
    """
    Decode one S-format value.

    The whole input must be consumed.

    Raises
    ------
    SerializationError
        If the input is not a single well-formed value.
    """
    data = text.encode(_ENCODING, _ERRORS)
    decoder = _Decoder(data)
    value = decoder.value()
    if decoder.pos != len(data):
        decoder.fail("Trailing data after value")
    return value


def dumps(value: Value) -> str:
    """
    Encode a value in S-format.

    Raises
    ------
    SerializationError
        If the value (or something nested in it) has no S-format encoding.
    """
    return _encode(value).decode(_ENCODING, _ERRORS)


def maybe_loads(text: str) -> tuple[bool, Value]:
    """
    Decode `text` when it looks serialized.

    Returns
    -------
    tuple[bool, Value]
        ``(True, value)`` when decoded, ``(False, text)`` otherwise. Decode
        failures are reported as not decoded.
    """
    if not is_serialized(text, strict=True):
        return False, text
    try:
        return True, loads(text.strip(TRIM_CHARS))
    except SerializationError:
        return False, text


def is_serialized(text: object, strict: bool = True) -> bool:
    """
    Return True when `text` looks like an S-format value.

    This is a cheap shape check, not a parse: a True result does not guarantee
    that :func:`loads` succeeds.

    Parameters
    ----------
    text:
        Candidate value. Non-strings are never serialized.
    strict:
        If True, the value must end in ``;`` or ``}`` and scalar tokens must
        span the whole input. If False, only the leading token is checked.
    """
    if not isinstance(text, str):
        return False
    data = text.strip(TRIM_CHARS).encode(_ENCODING, _ERRORS)
    if data == b"N;":
        return True
    if len(data) < 4:
        return False
    if data[1:2] != b":":
        return False

    if strict:
        if data[-1:] not in (b";", b"}"):
            return False
    else:
        semicolon = data.find(b";")
        brace = data.find(b"}")
        if semicolon == -1 and brace == -1:
            return False
        if semicolon != -1 and semicolon < 3:
            return False
        if brace != -1 and brace < 4:
            return False

    token = data[0:1]
    if token == b"s":
        if strict:
            if data[-2:-1] != b'"':
                return False
        elif b'"' not in data:
            return False
    if token in (b"s", b"a", b"O", b"E"):
        return re.match(rb"^" + token + rb":[0-9]+:", data, re.S) is not None
    if token in (b"b", b"i", b"d"):
        end = rb"$" if strict else rb""
        return re.match(rb"^" + token + rb":[0-9.E+-]+;" + end, data) is not None
    return False


def is_serialized_string(text: object) -> bool:
    """Return True when `text` looks like a serialized string (``s:N:"...";``)."""
    if not isinstance(text, str):
        return False
    data = text.strip(TRIM_CHARS).encode(_ENCODING, _ERRORS)
    if len(data) < 4:
        return False
    if data[1:2] != b":":
        return False
    if not data.endswith(b";"):
        return False
    if data[0:1] != b"s":
        return False
    return data[-2:-1] == b'"'


class _Decoder:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def fail(self, message: str) -> NoReturn:
        raise SerializationError(f"{message} at offset {self.pos}")

    def expect(self, literal: bytes) -> None:
        end = self.pos + len(literal)
        if self.data[self.pos:end] != literal:
            self.fail(f"Expected {literal.decode('ascii')!r}")
        self.pos = end

    def take(self, length: int) -> bytes:
        end = self.pos + length
        if end > len(self.data):
            self.fail("Length exceeds input")
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def read_until(self, delimiter: bytes) -> bytes:
        index = self.data.find(delimiter, self.pos)
        if index == -1:
            self.fail(f"Missing {delimiter.decode('ascii')!r}")
        chunk = self.data[self.pos:index]
        self.pos = index + len(delimiter)
        return chunk

    def read_int(self, delimiter: bytes) -> int:
        chunk = self.read_until(delimiter)
        if _INT_RE.fullmatch(chunk) is None:
            self.fail("Invalid integer")
        return int(chunk)

    def read_size(self, delimiter: bytes) -> int:
        chunk = self.read_until(delimiter)
        if _SIZE_RE.fullmatch(chunk) is None:
            self.fail("Invalid length")
        return int(chunk)

    def quoted(self) -> bytes:
        length = self.read_size(b":")
        self.expect(b'"')
        raw = self.take(length)
        self.expect(b'"')
        return raw

    def key(self) -> Union[int, str]:
        token = self.data[self.pos:self.pos + 1]
        if token == b"i":
            self.expect(b"i:")
            return self.read_int(b";")
        if token == b"s":
            self.expect(b"s:")
            raw = self.quoted()
            self.expect(b";")
            return raw.decode(_ENCODING, _ERRORS)
        self.fail("Invalid array key")

    def pairs(self, count: int) -> tuple[tuple[Union[int, str], Any], ...]:
        self.expect(b"{")
        items = []
        for _ in range(count):
            key = self.key()
            items.append((key, self.value()))
        self.expect(b"}")
        return tuple(items)

    def value(self) -> Value:
        start = self.pos
        token = self.data[self.pos:self.pos + 1]

        if token == b"N":
            self.expect(b"N;")
            return None

        if token == b"b":
            self.expect(b"b:")
            flag = self.read_int(b";")
            if flag not in (0, 1):
                self.fail("Invalid boolean")
            return bool(flag)

        if token == b"i":
            self.expect(b"i:")
            return self.read_int(b";")

        if token == b"d":
            self.expect(b"d:")
            chunk = self.read_until(b";")
            if _FLOAT_RE.fullmatch(chunk) is None:
                self.fail("Invalid float")
            return float(chunk)

        if token == b"s":
            self.expect(b"s:")
            raw = self.quoted()
            self.expect(b";")
            return raw.decode(_ENCODING, _ERRORS)

        if token == b"a":
            self.expect(b"a:")
            count = self.read_size(b":")
            return PhpArray(items=self.pairs(count))

        if token == b"O":
            self.expect(b"O:")
            class_name = self.quoted().decode(_ENCODING, _ERRORS)
            self.expect(b":")
            count = self.read_size(b":")
            return PhpObject(class_name=class_name, fields=self.pairs(count))

        if token == b"C":
            self.expect(b"C:")
            self.quoted()
            self.expect(b":")
            length = self.read_size(b":")
            self.expect(b"{")
            self.take(length)
            self.expect(b"}")
            return self._opaque(start)

        if token == b"E":
            self.expect(b"E:")
            self.quoted()
            self.expect(b";")
            return self._opaque(start)

        if token in (b"r", b"R"):
            self.pos += 2
            self.read_size(b";")
            return self._opaque(start)

        self.fail("Unknown token")

    def _opaque(self, start: int) -> PhpOpaque:
        return PhpOpaque(raw=self.data[start:self.pos].decode(_ENCODING, _ERRORS))


def _format_float(value: float) -> bytes:
    if math.isnan(value):
        return b"NAN"
    if math.isinf(value):
        return b"INF" if value > 0 else b"-INF"
    if value.is_integer() and abs(value) < 1e15:
        return b"%d" % int(value)
    return repr(value).encode("ascii")


def _encode_string(value: str) -> bytes:
    raw = value.encode(_ENCODING, _ERRORS)
    return b's:%d:"%s";' % (len(raw), raw)


def _encode_key(key: object) -> bytes:
    if isinstance(key, bool):
        raise SerializationError("Boolean array keys are not encodable")
    if isinstance(key, int):
        return b"i:%d;" % key
    if isinstance(key, str):
        return _encode_string(key)
    raise SerializationError(f"Unsupported array key type: {type(key).__name__}")


def _encode_pairs(items: Iterable[tuple[object, Any]]) -> tuple[int, bytes]:
    parts = []
    for key, item in items:
        parts.append(_encode_key(key))
        parts.append(_encode(item))
    return len(parts) // 2, b"".join(parts)


def _encode(value: object) -> bytes:
    if value is None:
        return b"N;"
    if isinstance(value, bool):
        return b"b:1;" if value else b"b:0;"
    if isinstance(value, int):
        return b"i:%d;" % value
    if isinstance(value, float):
        return b"d:" + _format_float(value) + b";"
    if isinstance(value, str):
        return _encode_string(value)
    if isinstance(value, PhpArray):
        count, body = _encode_pairs(value.items)
        return b"a:%d:{%s}" % (count, body)
    if isinstance(value, PhpObject):
        name = value.class_name.encode(_ENCODING, _ERRORS)
        count, body = _encode_pairs(value.fields)
        return b'O:%d:"%s":%d:{%s}' % (len(name), name, count, body)
    if isinstance(value, PhpOpaque):
        return value.raw.encode(_ENCODING, _ERRORS)
    raise SerializationError(f"Unsupported value type: {type(value).__name__}")
