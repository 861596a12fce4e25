import inspect
import json
import logging
import re
import typing
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from colloquy.content import GeneratedContent, Kind
from colloquy.errors import DecodeError, ToolNotFoundError
from colloquy.schema import GenerationSchema, Property
from colloquy.transcript import ToolDefinition

logger = logging.getLogger(__name__)

# Parameters with this name receive a ToolContext and never reach the model.
CONTEXT_PARAM = "context"

_SKIPPED_KINDS = (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD)


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


# ---------------------------------------------------------------------------
# Docstring parsing
# ---------------------------------------------------------------------------

_GOOGLE_HEADERS = {"args:", "arguments:", "parameters:", "params:"}
_NUMPY_HEADERS = {"parameters", "params", "arguments", "args"}
_GOOGLE_PARAM = re.compile(r"^\*{0,2}(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")
_REST_PARAM = re.compile(r"^:param\s+(?:[^:]*\s)?(\w+)\s*:\s*(.*)$")
_NUMPY_PARAM = re.compile(r"^\*{0,2}(\w+)\s*(?::.*)?$")


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _append(descriptions: dict[str, str], name: str, text: str) -> None:
    current = descriptions[name]
    descriptions[name] = f"{current}\n{text}" if current else text


def _parse_rest(lines: list[str]) -> dict[str, str]:
    descriptions: dict[str, str] = {}
    current = None
    for line in lines:
        stripped = line.strip()
        match = _REST_PARAM.match(stripped)
        if match:
            current = match.group(1)
            descriptions[current] = match.group(2).strip()
        elif stripped.startswith(":") or not stripped:
            current = None
        elif current is not None:
            _append(descriptions, current, stripped)
    return descriptions


def _parse_google(lines: list[str]) -> dict[str, str]:
    for start, line in enumerate(lines):
        if line.strip().lower() in _GOOGLE_HEADERS:
            break
    else:
        return {}

    descriptions: dict[str, str] = {}
    base = None
    current = None
    for line in lines[start + 1:]:
        if not line.strip():
            current = None
            continue
        indent = _indent(line)
        if base is None:
            base = indent
        if indent < base:
            break
        if indent == base:
            match = _GOOGLE_PARAM.match(line.strip())
            if not match:
                break
            current = match.group(1)
            descriptions[current] = match.group(2).strip()
        elif current is not None:
            _append(descriptions, current, line.strip())
    return descriptions


def _parse_numpy(lines: list[str]) -> dict[str, str]:
    for start, line in enumerate(lines[:-1]):
        underline = lines[start + 1].strip()
        if line.strip().lower() in _NUMPY_HEADERS and underline and set(underline) == {"-"}:
            break
    else:
        return {}

    descriptions: dict[str, str] = {}
    current = None
    body = lines[start + 2:]
    for i, line in enumerate(body):
        if not line.strip():
            continue
        if _indent(line) == 0:
            following = body[i + 1].strip() if i + 1 < len(body) else ""
            if following and set(following) == {"-"}:
                break
            match = _NUMPY_PARAM.match(line.strip())
            if not match:
                break
            current = match.group(1)
            descriptions[current] = ""
        elif current is not None:
            _append(descriptions, current, line.strip())
    return descriptions


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Extract per-parameter descriptions from a docstring.

    Google (``Args:``), reST (``:param x:``) and NumPy (``Parameters``
    with an underline) styles are recognised. Continuation lines are
    joined with newlines.
    """
    doc = inspect.getdoc(func)
    if not doc:
        return {}
    lines = doc.splitlines()
    return _parse_rest(lines) or _parse_google(lines) or _parse_numpy(lines)


def _summary(func: Callable) -> str:
    doc = inspect.getdoc(func)
    if not doc:
        return ""
    return doc.split("\n\n", 1)[0].strip()


# ---------------------------------------------------------------------------
# Schema generation
# ---------------------------------------------------------------------------

def _type_hints(func: Callable) -> dict[str, Any]:
    try:
        return typing.get_type_hints(func)
    except (NameError, TypeError):
        # Unresolvable forward references; fall back to raw annotations.
        return dict(getattr(func, "__annotations__", {}))


def _model_params(func: Callable, exclude=()) -> list[inspect.Parameter]:
    """Parameters the model supplies: everything but context and *args/**kwargs."""
    return [
        param
        for name, param in inspect.signature(func).parameters.items()
        if name != CONTEXT_PARAM and name not in exclude
        and param.kind not in _SKIPPED_KINDS
    ]


def _build_parameters_schema(
    func: Callable, exclude=(),
) -> tuple[GenerationSchema, list[str]]:
    """Derive the argument schema for *func* from its signature.

    Returns the object schema and the names of required parameters.
    """
    hints = _type_hints(func)
    descriptions = _parse_param_descriptions(func)
    properties = []
    required = []
    for param in _model_params(func, exclude):
        annotation = hints.get(param.name, param.annotation)
        if annotation is inspect.Parameter.empty:
            annotation = str
        optional = param.default is not inspect.Parameter.empty
        if not optional:
            required.append(param.name)
        properties.append(Property(
            name=param.name,
            description=descriptions.get(param.name, ""),
            schema=GenerationSchema.for_type(annotation),
            optional=optional,
        ))
    return GenerationSchema(type="object", properties=properties), required


# ---------------------------------------------------------------------------
# Tool
# ---------------------------------------------------------------------------

class Tool(BaseModel):
    """A named capability the model can call.

    A tool is the triple of an argument decoder, the wrapped function and
    an output encoder. By default arguments are validated against the
    function's type hints and the result is converted with
    :meth:`GeneratedContent.from_python`; pass ``decoder=`` or
    ``encoder=`` to replace either step.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters: GenerationSchema
    decoder: Callable | None = Field(default=None, exclude=True)
    encoder: Callable | None = Field(default=None, exclude=True)
    bound: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def __init__(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
        parameters: GenerationSchema | None = None,
        decoder: Callable | None = None,
        encoder: Callable | None = None,
        bound: dict[str, Any] | None = None,
    ):
        if parameters is None:
            parameters, _ = _build_parameters_schema(func, exclude=bound or ())
        super().__init__(
            func=func,
            name=name or func.__name__,
            description=_summary(func) if description is None else description,
            parameters=parameters,
            decoder=decoder,
            encoder=encoder,
            bound=dict(bound or {}),
        )

    @property
    def parameters_schema(self) -> dict[str, Any]:
        return self.parameters.to_json_schema()

    @property
    def accepts_context(self) -> bool:
        return CONTEXT_PARAM in inspect.signature(self.func).parameters

    def model_dump(self, **kwargs):
        """Return the OpenAI function-tool schema instead of the fields."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def model_dump_json(self, **kwargs):
        return json.dumps(self.model_dump())

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name, description=self.description, parameters=self.parameters,
        )

    # ------------------------------------------------------------------
    # Decode / invoke / encode
    # ------------------------------------------------------------------

    def decode_arguments(self, arguments: GeneratedContent) -> dict[str, Any]:
        """Turn the model's argument object into keyword arguments.

        ``Null`` means no arguments. Unknown keys are dropped.

        Raises:
            DecodeError: If the arguments are not an object, a required
                argument is missing, or a value fails validation.
        """
        if self.decoder is not None:
            return self.decoder(arguments)
        if arguments.is_null:
            provided = {}
        elif arguments.kind is Kind.OBJECT:
            provided = arguments.properties()
        else:
            raise DecodeError(
                f"Arguments for '{self.name}' must be an object, got {arguments.kind.value}"
            )

        hints = _type_hints(self.func)
        params = _model_params(self.func, exclude=self.bound)
        known = {p.name for p in params}
        unknown = sorted(set(provided) - known)
        if unknown:
            logger.warning(f"Ignoring unknown arguments for {self.name}: {unknown}")

        kwargs: dict[str, Any] = {}
        for param in params:
            if param.name not in provided:
                if param.default is inspect.Parameter.empty:
                    raise DecodeError(f"Missing argument '{param.name}' for '{self.name}'")
                continue
            value = provided[param.name]
            annotation = hints.get(param.name, param.annotation)
            if annotation is GeneratedContent:
                kwargs[param.name] = value
            elif annotation is inspect.Parameter.empty or annotation is Any:
                kwargs[param.name] = value.to_python()
            else:
                try:
                    kwargs[param.name] = TypeAdapter(annotation).validate_python(
                        value.to_python()
                    )
                except ValidationError as e:
                    raise DecodeError(
                        f"Invalid argument '{param.name}' for '{self.name}': {e}"
                    ) from e
        return kwargs

    async def invoke(self, arguments: dict[str, Any], context=None) -> Any:
        kwargs = {**self.bound, **arguments}
        if self.accepts_context:
            kwargs[CONTEXT_PARAM] = context
        result = self.func(**kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def encode_output(self, result: Any) -> GeneratedContent:
        if self.encoder is not None:
            return self.encoder(result)
        return GeneratedContent.from_python(result)

    async def __call__(self, **kwargs) -> ToolCallResult:
        context = kwargs.pop(CONTEXT_PARAM, None)
        output = await self.invoke(kwargs, context=context)
        return ToolCallResult(tool_name=self.name, output=output)

    def bind(self, **kwargs) -> "Tool":
        """Fix some arguments and hide them from the model.

        Returns a new Tool; the original is unchanged.
        """
        names = {p.name for p in _model_params(self.func, exclude=self.bound)}
        unknown = set(kwargs) - names
        if unknown:
            raise ValueError(f"Cannot bind unknown parameters: {sorted(unknown)}")
        parameters = self.parameters.model_copy(update={
            "properties": [p for p in self.parameters.properties if p.name not in kwargs],
        })
        return Tool(
            self.func,
            name=self.name,
            description=self.description,
            parameters=parameters,
            decoder=self.decoder,
            encoder=self.encoder,
            bound={**self.bound, **kwargs},
        )


def tool(
    func: Callable | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
    decoder: Callable | None = None,
    encoder: Callable | None = None,
):
    """Wrap a sync or async function as a :class:`Tool`.

    Usable bare (``@tool``) or with arguments
    (``@tool(name="lookup", description="...")``).
    """
    def wrap(f: Callable) -> Tool:
        return Tool(f, name=name, description=description, decoder=decoder, encoder=encoder)

    if func is None:
        return wrap
    return wrap(func)


class ToolRegistry:
    """Name-to-tool mapping fixed at session construction."""

    def __init__(self, tools=()):
        self._tools: dict[str, Tool] = {}
        for item in tools:
            if not isinstance(item, Tool):
                item = Tool(item)
            if item.name in self._tools:
                raise ValueError(f"Duplicate tool name: '{item.name}'")
            self._tools[item.name] = item

    def resolve(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def definitions(self) -> list[ToolDefinition]:
        return [t.definition() for t in self._tools.values()]

    def schemas(self) -> list[dict[str, Any]]:
        return [t.model_dump() for t in self._tools.values()]

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name):
        return name in self._tools

    def __iter__(self):
        return iter(self._tools.values())

    def __len__(self):
        return len(self._tools)
