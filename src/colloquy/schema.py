"""Descriptions of the structure a response or a tool's arguments should take.

A *shape* tells the session how to decode content. It can be:

- ``str``, ``int``, ``float`` or ``bool`` (read with ``GeneratedContent.value``)
- :class:`GeneratedContent` itself (no decoding)
- a :class:`GenerationSchema`
- a pydantic ``BaseModel`` subclass
- any object with a ``from_generated_content(content)`` callable
"""

from __future__ import annotations

import enum
import types
from collections.abc import Sequence
from typing import Annotated, Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from colloquy.content import GeneratedContent, Kind
from colloquy.errors import DecodeError, MalformedInputError

SchemaType = Literal["object", "string", "integer", "number", "boolean", "array"]

_SCALAR_TYPES: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}
_PYTHON_TYPES: dict[str, type] = {v: k for k, v in _SCALAR_TYPES.items()}


class Property(BaseModel):
    """A named field of an object schema."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    description: str = ""
    schema_: GenerationSchema = Field(alias="schema")
    optional: bool = False


class GenerationSchema(BaseModel):
    """Read-only description of expected structure.

    Either an object with named, typed properties, an enumeration of
    string values (``any_of``), an array, or a scalar.

    Example::

        reply = GenerationSchema.object(
            {"message": str, "mood": GenerationSchema.enumeration(["calm", "angry"])},
            title="Reply",
        )
    """

    model_config = ConfigDict(frozen=True)

    type: SchemaType = "object"
    title: str | None = None
    description: str | None = None
    properties: list[Property] = Field(default_factory=list)
    any_of: list[str] = Field(default_factory=list)
    items: GenerationSchema | None = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def object(
        cls,
        properties: dict[str, Any],
        title: str | None = None,
        description: str | None = None,
        optional: Sequence[str] = (),
    ) -> GenerationSchema:
        """Build an object schema from ``{name: type-or-schema}``."""
        return cls(
            type="object",
            title=title,
            description=description,
            properties=[
                value if isinstance(value, Property) else Property(
                    name=name,
                    schema=cls.for_type(value),
                    optional=name in optional,
                )
                for name, value in properties.items()
            ],
        )

    @classmethod
    def enumeration(
        cls, values: Sequence[str], title: str | None = None,
        description: str | None = None,
    ) -> GenerationSchema:
        return cls(
            type="string", title=title, description=description,
            any_of=[str(v) for v in values],
        )

    @classmethod
    def for_type(cls, tp: Any) -> GenerationSchema:
        """Derive a schema from a Python type annotation.

        Unknown annotations fall back to ``string``.
        """
        if isinstance(tp, GenerationSchema):
            return tp
        if isinstance(tp, type) and tp in _SCALAR_TYPES:
            return cls(type=_SCALAR_TYPES[tp])

        origin = get_origin(tp)
        if origin is Annotated:
            return cls.for_type(get_args(tp)[0])
        if origin is Literal:
            return cls.enumeration([str(v) for v in get_args(tp)])
        if origin is Union or origin is types.UnionType:
            args = [a for a in get_args(tp) if a is not type(None)]
            if len(args) == 1:
                return cls.for_type(args[0])
            return cls(type="string")
        if origin in (list, tuple, set, frozenset, Sequence) or tp in (list, tuple, set, frozenset):
            args = [a for a in get_args(tp) if a is not Ellipsis]
            return cls(type="array", items=cls.for_type(args[0]) if args else None)
        if origin is dict or tp is dict:
            return cls(type="object")
        if isinstance(tp, type) and issubclass(tp, enum.Enum):
            return cls.enumeration([str(m.value) for m in tp], title=tp.__name__)
        if isinstance(tp, type) and issubclass(tp, BaseModel):
            return cls.from_json_schema(tp.model_json_schema())
        return cls(type="string")

    @classmethod
    def from_json_schema(
        cls, data: dict[str, Any], defs: dict[str, Any] | None = None,
    ) -> GenerationSchema:
        """Read the JSON Schema subset produced by pydantic's
        ``model_json_schema()`` (``$ref``/``$defs``, ``anyOf`` with null,
        ``enum``, ``properties``/``required``, ``items``)."""
        if defs is None:
            defs = data.get("$defs", {})
        title = data.get("title")
        description = data.get("description") or None

        if "$ref" in data:
            target = cls.from_json_schema(defs[data["$ref"].rsplit("/", 1)[-1]], defs)
            if description:
                return target.model_copy(update={"description": description})
            return target

        for key in ("anyOf", "oneOf", "allOf"):
            if key in data:
                options = [o for o in data[key] if o.get("type") != "null"]
                if len(options) == 1:
                    inner = cls.from_json_schema(options[0], defs)
                    if description:
                        return inner.model_copy(update={"description": description})
                    return inner
                return cls(type="string", title=title, description=description)

        if "enum" in data:
            return cls(
                type="string", title=title, description=description,
                any_of=[str(v) for v in data["enum"]],
            )

        type_ = data.get("type", "object" if "properties" in data else "string")
        if isinstance(type_, list):
            type_ = next((t for t in type_ if t != "null"), "string")
        if type_ not in ("object", "string", "integer", "number", "boolean", "array"):
            type_ = "string"

        if type_ == "object":
            required = set(data.get("required", []))
            return cls(
                type="object",
                title=title,
                description=description,
                properties=[
                    Property(
                        name=name,
                        description=sub.get("description", ""),
                        schema=cls.from_json_schema(sub, defs),
                        optional=name not in required,
                    )
                    for name, sub in data.get("properties", {}).items()
                ],
            )
        if type_ == "array":
            items = data.get("items")
            return cls(
                type="array", title=title, description=description,
                items=cls.from_json_schema(items, defs) if isinstance(items, dict) else None,
            )
        return cls(type=type_, title=title, description=description)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def to_json_schema(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.title:
            data["title"] = self.title
        if self.description:
            data["description"] = self.description
        if self.any_of:
            data["enum"] = list(self.any_of)
        if self.type == "object":
            data["properties"] = {
                p.name: {**p.schema_.to_json_schema(), "description": p.description}
                for p in self.properties
            }
            data["required"] = [p.name for p in self.properties if not p.optional]
        if self.type == "array" and self.items is not None:
            data["items"] = self.items.to_json_schema()
        return data

    def get_property(self, name: str) -> Property | None:
        return next((p for p in self.properties if p.name == name), None)

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def decode(self, content: GeneratedContent) -> Any:
        """Decode *content* into plain Python data.

        Objects become ``dict``, arrays ``list``, scalars their Python type.

        Raises:
            DecodeError: On a wrong variant, missing required property,
                unparsable scalar or value outside the enumeration.
        """
        return self._decode(content, "$")

    def _decode(self, content: GeneratedContent, path: str) -> Any:
        if self.type == "object":
            if content.kind is not Kind.OBJECT:
                raise DecodeError(f"{path}: expected object, got {content.kind.value}")
            if not self.properties:
                return content.to_python()
            found = content.properties()
            result = {}
            for prop in self.properties:
                item = found.get(prop.name)
                if item is None or item.is_null:
                    if not prop.optional:
                        raise DecodeError(f"{path}: missing property '{prop.name}'")
                    if item is not None:
                        result[prop.name] = None
                    continue
                result[prop.name] = prop.schema_._decode(item, f"{path}.{prop.name}")
            return result

        if self.type == "array":
            if content.kind is not Kind.ARRAY:
                raise DecodeError(f"{path}: expected array, got {content.kind.value}")
            if self.items is None:
                return content.to_python()
            return [
                self.items._decode(item, f"{path}[{i}]")
                for i, item in enumerate(content.elements())
            ]

        if content.kind is not Kind.STRING:
            raise DecodeError(f"{path}: expected {self.type}, got {content.kind.value}")
        try:
            value = content.value(_PYTHON_TYPES[self.type])
        except DecodeError as e:
            raise DecodeError(f"{path}: {e}") from e
        if self.any_of and value not in self.any_of:
            raise DecodeError(f"{path}: {value!r} is not one of {self.any_of}")
        return value


Property.model_rebuild()
GenerationSchema.model_rebuild()


def is_structured(shape: Any) -> bool:
    """Whether *shape* requires parsed content rather than raw text."""
    return shape is not None and shape is not str


def is_scalar(shape: Any) -> bool:
    return isinstance(shape, type) and shape in _SCALAR_TYPES


def parse_response(text: str, shape: Any) -> GeneratedContent:
    """Read model text as content for *shape*.

    Scalar shapes also accept bare text such as ``yes`` or ``42``; every
    other structured shape requires JSON.

    Raises:
        DecodeError: If the text is not JSON and *shape* is not a scalar.
    """
    try:
        return GeneratedContent.parse(text)
    except MalformedInputError as e:
        if is_scalar(shape):
            return GeneratedContent.string(text)
        raise DecodeError(f"Response is not valid JSON for {shape_name(shape)}") from e


def shape_name(shape: Any) -> str:
    if shape is None:
        return "text"
    if isinstance(shape, GenerationSchema):
        return shape.title or "schema-based"
    return getattr(shape, "__name__", type(shape).__name__)


def decode(content: GeneratedContent, shape: Any) -> Any:
    """Decode *content* against *shape*.

    Primitive shapes use exact-match dispatch; everything else defers to
    the shape's own decoder, whose errors surface unchanged.
    """
    if shape is None or shape is GeneratedContent:
        return content
    if is_scalar(shape):
        return content.value(shape)
    if isinstance(shape, GenerationSchema):
        return shape.decode(content)
    if isinstance(shape, type) and issubclass(shape, BaseModel):
        try:
            return shape.model_validate(content.to_python())
        except ValidationError as e:
            raise DecodeError(f"Cannot decode {shape.__name__}: {e}") from e
    decoder = getattr(shape, "from_generated_content", None)
    if callable(decoder):
        return decoder(content)
    raise TypeError(f"Unsupported shape: {shape!r}")
