"""Structured content exchanged between the session, its tools and the model.

A :class:`GeneratedContent` is one of four variants: a string, an ordered
array, an insertion-ordered object, or null. Numbers and booleans have no
variant of their own; they travel as their canonical text (``"42"``,
``"3.5"``, ``"true"``) and are recovered with :meth:`GeneratedContent.value`.

Example::

    content = GeneratedContent.parse('{"city": "Oslo", "days": 3}')
    content.value(str, key="city")   # "Oslo"
    content.value(int, key="days")   # 3
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic_core import core_schema

from colloquy.errors import DecodeError, MalformedInputError, ShapeMismatchError

_TRUE_WORDS = {"true", "yes", "1", "on"}
_FALSE_WORDS = {"false", "no", "0", "off"}
_INTEGER = re.compile(r"-?[0-9]+")
_NUMBER = re.compile(r"-?[0-9]+(\.[0-9]+)?([eE][+-]?[0-9]+)?")


class Kind(Enum):
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"
    NULL = "null"


def _canonical_int(text: str) -> str:
    return str(int(text))


def _canonical_float(text: str) -> str:
    return repr(float(text))


def _reject_constant(name: str):
    raise ValueError(f"{name} is not valid JSON")


def _convert(value: Any) -> tuple[Kind, Any]:
    if value is None:
        return Kind.NULL, None
    if isinstance(value, GeneratedContent):
        return value._kind, value._value
    if isinstance(value, str):
        return Kind.STRING, value
    if isinstance(value, bool):
        return Kind.STRING, "true" if value else "false"
    if isinstance(value, int):
        return Kind.STRING, str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            raise ValueError(f"{value} has no JSON representation")
        return Kind.STRING, repr(value)
    if isinstance(value, Enum):
        return _convert(value.value)
    if isinstance(value, BaseModel):
        return _convert(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        properties = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Object keys must be str, got {type(key).__name__}")
            properties[key] = GeneratedContent(item)
        return Kind.OBJECT, properties
    if isinstance(value, (list, tuple)):
        return Kind.ARRAY, tuple(GeneratedContent(item) for item in value)
    raise TypeError(f"Cannot convert {type(value).__name__} to GeneratedContent")


class GeneratedContent:
    """Immutable tagged-union value: string, array, object or null.

    ``GeneratedContent(value)`` converts plain Python data (``str``,
    ``list``/``tuple``, ``dict``, ``None``, scalars and pydantic models).
    Equality is structural; object key order is kept for serialization
    but does not affect equality.
    """

    __slots__ = ("_kind", "_value")

    def __init__(self, value: Any = None):
        kind, stored = _convert(value)
        object.__setattr__(self, "_kind", kind)
        object.__setattr__(self, "_value", stored)

    def __setattr__(self, name, value):
        raise AttributeError("GeneratedContent is immutable")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def string(cls, text: str) -> GeneratedContent:
        if not isinstance(text, str):
            raise TypeError(f"Expected str, got {type(text).__name__}")
        return cls(text)

    @classmethod
    def array(cls, items: Iterable[Any] = ()) -> GeneratedContent:
        return cls(tuple(items))

    @classmethod
    def object(
        cls, properties: Mapping[str, Any] | Iterable[tuple[str, Any]] = (),
    ) -> GeneratedContent:
        return cls(dict(properties))

    @classmethod
    def null(cls) -> GeneratedContent:
        return cls(None)

    @classmethod
    def from_python(cls, value: Any) -> GeneratedContent:
        return value if isinstance(value, cls) else cls(value)

    @classmethod
    def parse(cls, text: str) -> GeneratedContent:
        """Parse complete JSON text.

        Raises:
            MalformedInputError: If *text* is not valid JSON.
        """
        try:
            raw = json.loads(
                text,
                parse_int=_canonical_int,
                parse_float=_canonical_float,
                parse_constant=_reject_constant,
            )
        except ValueError as e:
            raise MalformedInputError(f"Invalid JSON: {e}") from e
        return cls(raw)

    @classmethod
    def parse_partial(cls, text: str) -> GeneratedContent:
        """Best-effort parse of a JSON prefix that may still be growing.

        Open strings, arrays and objects are closed and trailing members
        that cannot be completed are dropped, so ``'{"a": "he'`` reads as
        ``{"a": "he"}``. Text that yields nothing usable comes back as a
        string. Never raises.
        """
        try:
            return cls.parse(text)
        except MalformedInputError:
            pass
        scan = _scan(text)
        if scan is not None:
            for end in [len(text), *reversed(scan)]:
                candidate = _close(text[:end])
                if candidate is None:
                    continue
                try:
                    return cls.parse(candidate)
                except MalformedInputError:
                    continue
        return cls.string(text)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    @property
    def kind(self) -> Kind:
        return self._kind

    @property
    def is_null(self) -> bool:
        return self._kind is Kind.NULL

    def properties(self) -> dict[str, GeneratedContent]:
        if self._kind is not Kind.OBJECT:
            raise ShapeMismatchError("object", self._kind.value)
        return dict(self._value)

    def elements(self) -> list[GeneratedContent]:
        if self._kind is not Kind.ARRAY:
            raise ShapeMismatchError("array", self._kind.value)
        return list(self._value)

    def value(self, type_: type, key: str | None = None) -> Any:
        """Extract a ``str``, ``int``, ``float`` or ``bool``.

        With *key*, the value is read from that property of an object.

        Raises:
            ShapeMismatchError: If the content (or property) is not a string.
            DecodeError: If the text does not parse as *type_*, or *key*
                is missing.
        """
        if key is not None:
            properties = self.properties()
            if key not in properties:
                raise DecodeError(f"Missing property '{key}'")
            return properties[key].value(type_)

        expected = getattr(type_, "__name__", str(type_))
        if self._kind is not Kind.STRING:
            raise ShapeMismatchError(expected, self._kind.value)
        text = self._value

        if type_ is str:
            return text
        if type_ is bool:
            word = text.strip().lower()
            if word in _TRUE_WORDS:
                return True
            if word in _FALSE_WORDS:
                return False
        elif type_ is int:
            word = text.strip()
            if _INTEGER.fullmatch(word):
                return int(word)
            if _NUMBER.fullmatch(word) and float(word).is_integer():
                return int(float(word))
        elif type_ is float:
            word = text.strip()
            if _NUMBER.fullmatch(word):
                return float(word)
        else:
            raise TypeError(f"Unsupported scalar type: {expected}")
        raise DecodeError(f"Cannot read {text!r} as {expected}")

    def decode(self, shape: Any) -> Any:
        """Decode into *shape*. See :func:`colloquy.schema.decode`."""
        from colloquy.schema import decode

        return decode(self, shape)

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def to_python(self) -> Any:
        if self._kind is Kind.ARRAY:
            return [item.to_python() for item in self._value]
        if self._kind is Kind.OBJECT:
            return {key: item.to_python() for key, item in self._value.items()}
        return self._value

    def encode(self, indent: int | None = None) -> str:
        return json.dumps(self.to_python(), ensure_ascii=False, indent=indent)

    def __eq__(self, other):
        if not isinstance(other, GeneratedContent):
            return NotImplemented
        return self._kind is other._kind and self._value == other._value

    def __hash__(self):
        return hash((self._kind, json.dumps(self.to_python(), sort_keys=True)))

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return (GeneratedContent, (self.to_python(),))

    def __str__(self):
        if self._kind is Kind.STRING:
            return self._value
        return self.encode()

    def __repr__(self):
        return f"GeneratedContent({self.encode()})"

    # ------------------------------------------------------------------
    # pydantic integration
    # ------------------------------------------------------------------

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type, handler):
        return core_schema.no_info_plain_validator_function(
            cls._validate,
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda content: content.to_python(),
            ),
        )

    @classmethod
    def _validate(cls, value: Any) -> GeneratedContent:
        try:
            return cls.from_python(value)
        except TypeError as e:
            raise ValueError(str(e)) from e


# ----------------------------------------------------------------------
# Partial JSON helpers
# ----------------------------------------------------------------------

def _scan(text: str) -> list[int] | None:
    """Return prefix lengths that end on a member boundary.

    A boundary is the position of a ``,`` or just past an opening
    bracket, outside any string. ``None`` means the text is unbalanced
    beyond repair (a closer without an opener).
    """
    cuts: list[int] = []
    depth = 0
    in_string = escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
            cuts.append(i + 1)
        elif ch in "}]":
            depth -= 1
            if depth < 0:
                return None
        elif ch == ",":
            cuts.append(i)
    return cuts


def _close(prefix: str) -> str | None:
    """Terminate an open string and append the closers *prefix* needs."""
    closers: list[str] = []
    in_string = escaped = False
    for ch in prefix:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            closers.append("}")
        elif ch == "[":
            closers.append("]")
        elif ch in "}]":
            if not closers:
                return None
            closers.pop()

    body = prefix
    if in_string:
        if escaped:
            body = body[:-1]
        body += '"'
    body = body.rstrip()
    if body.endswith(","):
        body = body[:-1]
    if not body:
        return None
    return body + "".join(reversed(closers))
