"""
Attribute expressions - references, templates and resolution.

Attribute values in a desired-state document are plain YAML/JSON values.
Strings may carry ``${...}`` expressions:

- ``"${null_resource.vpc.id}"`` (the whole string) becomes a ``Reference``
  and resolves to the referenced value with its original type.
- ``"subnet-${null_resource.vpc.id}-a"`` becomes a ``Template`` and resolves
  to a string.
- ``"${var.region}"`` is substituted from the document's variables before
  any of the above happens.

Values that cannot be known before apply resolve to ``UNKNOWN``.
"""

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Tuple, Union

from errors import ValidationError

EXPRESSION_PATTERN = re.compile(r"\$\{([^}]*)\}")
SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

VARIABLE_PREFIX = "var"


class _Unknown:
    """Sentinel for values that are only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """Reference to an attribute or output of another resource."""

    resource_type: str
    name: str
    attribute: str
    path: Tuple[str, ...] = ()

    @property
    def address(self) -> str:
        return f"{self.resource_type}.{self.name}"

    def __str__(self) -> str:
        segments = [self.resource_type, self.name, self.attribute, *self.path]
        return "${" + ".".join(segments) + "}"


@dataclass(frozen=True)
class Template:
    """String with one or more embedded references."""

    parts: Tuple[Union[str, Reference], ...]

    def references(self) -> Iterator[Reference]:
        for part in self.parts:
            if isinstance(part, Reference):
                yield part

    def __str__(self) -> str:
        return "".join(str(part) for part in self.parts)


def parse_reference(expression: str) -> Reference:
    """
    Parse the inside of a ``${...}`` expression into a Reference.

    Args:
        expression: Dotted expression, e.g. ``null_resource.vpc.id``

    Returns:
        The parsed Reference

    Raises:
        ValidationError: If the expression is not ``type.name.attribute[.path]``
    """
    segments = expression.strip().split(".")
    if len(segments) < 3 or not all(SEGMENT_PATTERN.match(s) for s in segments):
        raise ValidationError(
            f"Invalid reference '${{{expression}}}': "
            f"expected '${{type.name.attribute}}'"
        )
    return Reference(
        resource_type=segments[0],
        name=segments[1],
        attribute=segments[2],
        path=tuple(segments[3:]),
    )


def parse_value(value: Any) -> Any:
    """Recursively turn ``${...}`` strings into Reference/Template values."""
    if isinstance(value, dict):
        return {key: parse_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [parse_value(item) for item in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    whole = EXPRESSION_PATTERN.fullmatch(value)
    if whole:
        return parse_reference(whole.group(1))

    parts = []
    position = 0
    for match in EXPRESSION_PATTERN.finditer(value):
        if match.start() > position:
            parts.append(value[position : match.start()])
        parts.append(parse_reference(match.group(1)))
        position = match.end()
    if position < len(value):
        parts.append(value[position:])
    return Template(parts=tuple(parts))


def substitute_variables(value: Any, variables: Dict[str, Any]) -> Any:
    """
    Replace ``${var.name}`` expressions with variable values.

    A string consisting only of a variable expression takes the variable's
    value and type; embedded variables are interpolated as strings.

    Raises:
        ValidationError: If an undeclared variable is referenced
    """
    if isinstance(value, dict):
        return {
            key: substitute_variables(item, variables) for key, item in value.items()
        }
    if isinstance(value, list):
        return [substitute_variables(item, variables) for item in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    def lookup(expression: str) -> Any:
        name = expression.strip()[len(VARIABLE_PREFIX) + 1 :]
        if name not in variables:
            raise ValidationError(f"Undeclared variable '{name}'")
        return variables[name]

    def is_variable(expression: str) -> bool:
        return expression.strip().startswith(VARIABLE_PREFIX + ".")

    whole = EXPRESSION_PATTERN.fullmatch(value)
    if whole and is_variable(whole.group(1)):
        return lookup(whole.group(1))

    def replace(match: "re.Match[str]") -> str:
        if not is_variable(match.group(1)):
            return match.group(0)
        return format_scalar(lookup(match.group(1)))

    return EXPRESSION_PATTERN.sub(replace, value)


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference contained in a parsed value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Template):
        yield from value.references()
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_references(item)


def has_expressions(value: Any) -> bool:
    """Check whether a parsed value contains any reference."""
    return next(iter_references(value), None) is not None


def contains_unknown(value: Any) -> bool:
    """Check whether a resolved value contains UNKNOWN anywhere."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    return False


def format_scalar(value: Any) -> str:
    """Format a value for string interpolation."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """
    Resolve every reference in a parsed value.

    Args:
        value: Parsed attribute value
        lookup: Callable returning the value for a Reference, or UNKNOWN

    Returns:
        The concrete value; parts that could not be resolved are UNKNOWN
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Template):
        pieces = []
        for part in value.parts:
            if isinstance(part, Reference):
                resolved = lookup(part)
                if contains_unknown(resolved):
                    return UNKNOWN
                pieces.append(format_scalar(resolved))
            else:
                pieces.append(part)
        return "".join(pieces)
    if isinstance(value, dict):
        return {key: resolve_value(item, lookup) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_value(item, lookup) for item in value]
    return value


def select_path(data: Dict[str, Any], reference: Reference) -> Any:
    """
    Read ``reference.attribute`` and its nested path from a mapping.

    Numeric path segments index into lists.

    Raises:
        KeyError: If the attribute or a path segment does not exist
    """
    current: Any = data[reference.attribute]
    for segment in reference.path:
        if isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                raise KeyError(segment)
        elif isinstance(current, dict):
            current = current[segment]
        else:
            raise KeyError(segment)
    return current


def to_raw(value: Any) -> Any:
    """Convert a parsed value back to its document form."""
    if isinstance(value, (Reference, Template)):
        return str(value)
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, dict):
        return {key: to_raw(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_raw(item) for item in value]
    return value
