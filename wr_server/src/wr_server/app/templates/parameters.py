from __future__ import annotations

"""
Template parameters: declaration, validation, and resolution.

A Parameter declares a typed input (number, string, boolean) with a default,
a mutability flag and an optional constraint (enumerated options or a
numeric range). Submitted values are coerced to the declared type and
checked against the constraint; any violation raises ParameterInvalid before
the reconciler touches the container engine.

Immutable parameters may only be set at workspace creation. On
reconfiguration, resolve_parameters() compares against the previous values
and rejects changes to immutable parameters.
"""

import enum
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from wr_server.app.errors import ParameterInvalid

ParameterValue = Union[int, float, str, bool]

_TRUE_STRINGS = ("true", "1", "yes", "on")
_FALSE_STRINGS = ("false", "0", "no", "off")


class ParameterType(str, enum.Enum):
    number = "number"
    string = "string"
    boolean = "boolean"


class ParameterOption(BaseModel):
    name: str
    value: ParameterValue
    description: Optional[str] = None
    icon: Optional[str] = None


def _coerce_number(name: str, value: Any) -> Union[int, float]:
    if isinstance(value, bool):
        raise ParameterInvalid(name, f"expected a number, got boolean {value!r}")
    if isinstance(value, (int, float)):
        num = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            num = int(text)
        except ValueError:
            try:
                num = float(text)
            except ValueError:
                raise ParameterInvalid(name, f"expected a number, got {value!r}") from None
    else:
        raise ParameterInvalid(name, f"expected a number, got {type(value).__name__}")
    if isinstance(num, float):
        if not math.isfinite(num):
            raise ParameterInvalid(name, f"expected a finite number, got {value!r}")
        if num.is_integer():
            return int(num)
    return num


def _coerce_boolean(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ParameterInvalid(name, f"expected a boolean, got {value!r}")


def _coerce_string(name: str, value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    raise ParameterInvalid(name, f"expected a string, got {type(value).__name__}")


class Parameter(BaseModel):
    """
    A single declared template input.
    """

    name: str = Field(..., pattern=r"^[a-z][a-z0-9_]*$")
    display_name: Optional[str] = None
    description: str = ""
    type: ParameterType = ParameterType.string
    default: Optional[ParameterValue] = None
    mutable: bool = True
    options: List[ParameterOption] = Field(default_factory=list)
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    order: int = 0

    @field_validator("options")
    def v_unique_options(cls, v: List[ParameterOption]) -> List[ParameterOption]:
        seen = set()
        for opt in v:
            key = str(opt.value)
            if key in seen:
                raise ValueError(f"duplicate option value {opt.value!r}")
            seen.add(key)
        return v

    @model_validator(mode="after")
    def v_declaration(self) -> "Parameter":
        if self.minimum is not None or self.maximum is not None:
            if self.type is not ParameterType.number:
                raise ValueError(f"parameter '{self.name}': minimum/maximum require type 'number'")
            if self.minimum is not None and self.maximum is not None and self.minimum > self.maximum:
                raise ValueError(f"parameter '{self.name}': minimum is greater than maximum")
        if self.type is ParameterType.boolean and self.options:
            raise ValueError(f"parameter '{self.name}': boolean parameters cannot declare options")
        # Option values and the default must satisfy the declaration itself
        try:
            for opt in self.options:
                self.coerce(opt.value)
            if self.default is not None:
                self.validate_value(self.default)
        except ParameterInvalid as exc:
            raise ValueError(exc.detail) from None
        return self

    @property
    def label(self) -> str:
        return self.display_name or self.name

    @property
    def required(self) -> bool:
        return self.default is None

    def coerce(self, value: Any) -> ParameterValue:
        """
        Convert a submitted value to the declared type without checking constraints.
        """
        if value is None:
            raise ParameterInvalid(self.name, "a value is required")
        if self.type is ParameterType.number:
            return _coerce_number(self.name, value)
        if self.type is ParameterType.boolean:
            return _coerce_boolean(self.name, value)
        return _coerce_string(self.name, value)

    def validate_value(self, value: Any) -> ParameterValue:
        """
        Coerce and check a value against this parameter's constraint.

        Raises:
            ParameterInvalid when the value has the wrong type, is not one of the
            declared options, or is outside the declared numeric range.
        """
        typed = self.coerce(value)
        if self.options:
            allowed = [self.coerce(opt.value) for opt in self.options]
            if typed not in allowed:
                choices = ", ".join(repr(a) for a in allowed)
                raise ParameterInvalid(self.name, f"{typed!r} is not one of the allowed options ({choices})")
        if self.type is ParameterType.number:
            if self.minimum is not None and typed < self.minimum:
                raise ParameterInvalid(self.name, f"{typed!r} is below the minimum {self.minimum:g}")
            if self.maximum is not None and typed > self.maximum:
                raise ParameterInvalid(self.name, f"{typed!r} is above the maximum {self.maximum:g}")
        return typed


def resolve_parameters(
    declared: Sequence[Parameter],
    submitted: Optional[Mapping[str, Any]],
    previous: Optional[Mapping[str, Any]] = None,
) -> Dict[str, ParameterValue]:
    """
    Produce the full, validated parameter set for a workspace.

    - submitted: values supplied by the user for this creation/reconfiguration
    - previous: values currently recorded for the workspace (None at creation)

    Unknown names, missing required values, constraint violations and changes
    to immutable parameters after creation all raise ParameterInvalid.
    """
    by_name = {p.name: p for p in declared}
    submitted = dict(submitted or {})

    unknown = sorted(set(submitted) - set(by_name))
    if unknown:
        raise ParameterInvalid(unknown[0], "unknown parameter")

    resolved: Dict[str, ParameterValue] = {}
    for param in sorted(declared, key=lambda p: (p.order, p.name)):
        if param.name in submitted:
            value = param.validate_value(submitted[param.name])
            if previous is not None and param.name in previous and not param.mutable:
                if value != param.coerce(previous[param.name]):
                    raise ParameterInvalid(param.name, "parameter is immutable and cannot be changed after creation")
        elif previous is not None and param.name in previous:
            value = param.validate_value(previous[param.name])
        elif param.default is not None:
            value = param.validate_value(param.default)
        else:
            raise ParameterInvalid(param.name, "a value is required")
        resolved[param.name] = value
    return resolved


__all__ = [
    "ParameterType",
    "ParameterOption",
    "Parameter",
    "ParameterValue",
    "resolve_parameters",
]
