"""
Tool catalogue and local tool registry for Parley.

The catalogue describes which tools an agent may call; the registry holds in-process tool
functions used by :class:`parley.tools.services.LocalToolService`.  Tools in the registry are
plain functions registered with :func:`register_tool` that accept keyword arguments and return a
JSON-serialisable value.
"""

import ast
import inspect
import logging
import operator
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    get_type_hints,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

logger = logging.getLogger(__name__)

TOOL_REGISTRY: Dict[str, Callable] = {}
"""Global registry of local tool functions."""

TOOL_NAME_CORRECTIONS: Mapping[str, str] = {
    "gmail_send_message": "send_email",
    "gmail_send": "send_email",
    "gmail_read_messages": "read_emails",
    "gmail_search": "search_emails",
    "gmail_search_messages": "search_emails",
    "gmail_email_actions": "email_actions",
}
"""Known model naming drift: alias -> canonical tool name."""


class ToolSpec(BaseModel):
    """Definition of a tool as advertised to the model."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class ToolCatalogue:
    """Read-only set of tools an agent is permitted to call."""

    def __init__(self, tools: Iterable[ToolSpec] = ()) -> None:
        self._tools: Dict[str, ToolSpec] = {}
        for tool in tools:
            if tool.name in self._tools:
                logger.warning("Duplicate tool '%s' in catalogue; keeping the first", tool.name)
                continue
            self._tools[tool.name] = tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def get(self, name: str) -> Optional[ToolSpec]:
        """Return the spec for *name*, if permitted."""
        return self._tools.get(name)

    @property
    def names(self) -> List[str]:
        """Tool names in catalogue order."""
        return list(self._tools)


def register_tool(name: str) -> Callable:
    """
    Register a local tool function with the given name.

    The function is registered as a decorator, so it can be used like this:
        @register_tool("my_tool")
        def my_tool_function(arg1: str) -> str:
            \"\"\"Shown to the model as the tool description.\"\"\"
            return arg1

    Parameters
    ----------
    name: str
        The name of the tool.  This must be unique and is what the model calls.
    Raises
    ------
    ValueError
        If a function with the same name is already registered.
    """
    if name in TOOL_REGISTRY:
        raise ValueError(f"Tool '{name}' is already registered.")
    logger.debug("Registering tool '%s'", name)

    def wrapper(fn: Callable) -> Callable:
        TOOL_REGISTRY[name] = fn
        return fn

    return wrapper


_JSON_TYPES: Mapping[Any, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


def get_tool_specs(
    names: Iterable[str] | None = None, registry: Mapping[str, Callable] | None = None
) -> List[ToolSpec]:
    """Build :class:`ToolSpec` entries from registered functions' signatures and docstrings."""
    specs: List[ToolSpec] = []
    for name, func in (TOOL_REGISTRY if registry is None else registry).items():
        if names is not None and name not in names:
            continue
        sig = inspect.signature(func)
        type_hints = get_type_hints(func)
        properties: Dict[str, Any] = {}
        required: List[str] = []
        for param_name, param in sig.parameters.items():
            param_type = type_hints.get(param_name)
            properties[param_name] = {"type": _JSON_TYPES.get(param_type, "string")}
            if param.default is inspect.Parameter.empty:
                required.append(param_name)
        specs.append(
            ToolSpec(
                name=name,
                description=inspect.getdoc(func) or "",
                parameters={"type": "object", "properties": properties, "required": required},
            )
        )
    return specs


# ---------------------------------------------------------------------------
# Built-in local tools
# ---------------------------------------------------------------------------
_BIN_OPS: Mapping[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: Mapping[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}
_MAX_RESULT_BITS = 4096


def _bounded(value: Any) -> Any:
    if isinstance(value, int) and value.bit_length() > _MAX_RESULT_BITS:
        raise ValueError("result too large")
    return value


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return _bounded(node.value)
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left, right = _eval_node(node.left), _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > 100:
            raise ValueError("exponent too large")
        return _bounded(_BIN_OPS[type(node.op)](left, right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    raise ValueError(f"unsupported expression element: {type(node).__name__}")


@register_tool("calculate")
def calculate_tool(expression: str) -> float:
    """Evaluate an arithmetic expression such as '2 + 2' or '(3 * 4) / 2'."""
    return _eval_node(ast.parse(expression, mode="eval"))


@register_tool("echo")
def echo_tool(text: str) -> str:
    """Echo the input text back to the caller."""
    return text
