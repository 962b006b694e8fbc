from __future__ import annotations

"""
Templates package: parameter declarations, template model, and discovery.

from wr_server.app.templates import Parameter, Template, TemplateRegistry
"""

from wr_server.app.templates.model import AppSpec, HealthcheckSpec, Template, VolumeSpec, render_value
from wr_server.app.templates.parameters import (
    Parameter,
    ParameterOption,
    ParameterType,
    ParameterValue,
    resolve_parameters,
)
from wr_server.app.templates.registry import TemplateRegistry, get_template_registry

__all__ = [
    "AppSpec",
    "HealthcheckSpec",
    "Template",
    "VolumeSpec",
    "render_value",
    "Parameter",
    "ParameterOption",
    "ParameterType",
    "ParameterValue",
    "resolve_parameters",
    "TemplateRegistry",
    "get_template_registry",
]
