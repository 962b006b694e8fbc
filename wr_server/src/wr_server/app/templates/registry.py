from __future__ import annotations

"""
Template discovery and lookup.

Templates are discovered from:
1) the built-in template directory shipped with the package
2) an optional directory configured via WORKSPACE_TEMPLATES_DIR

Each immediate subdirectory containing a template.json is one template. A
template found in a later source replaces an earlier one with the same name.
Load failures are recorded and reported instead of aborting discovery,
unless fail-fast is configured.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from wr_server.app.config import ServerConfig
from wr_server.app.errors import TemplateNotFound
from wr_server.app.templates.model import Template

_LOGGER = logging.getLogger("workspace_reconciler")
_REGISTRY_CACHE: Dict[Tuple[object, ...], "TemplateRegistry"] = {}

TEMPLATE_FILE_NAME = "template.json"
BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "builtin_templates"


@dataclass(frozen=True)
class TemplateLoadError:
    name: str
    origin: str
    error_type: str
    message: str


@dataclass
class _LoadedTemplate:
    template: Template
    origin: str


class TemplateRegistry:
    """
    Discovers and serves Template definitions.
    """

    def __init__(self, sources: Sequence[Tuple[str, Path]], fail_fast: bool = False):
        self._fail_fast = fail_fast
        self._templates: Dict[str, _LoadedTemplate] = {}
        self._load_errors: List[TemplateLoadError] = []
        for origin, directory in sources:
            self._load_directory(directory, origin)

    @classmethod
    def from_settings(cls, settings: ServerConfig) -> "TemplateRegistry":
        sources: List[Tuple[str, Path]] = [("builtin", BUILTIN_TEMPLATES_DIR)]
        if settings.templates_dir:
            sources.append(("directory", Path(settings.templates_dir).expanduser()))
        return cls(sources, fail_fast=settings.templates_fail_fast)

    # --------------------
    # Discovery / loading
    # --------------------

    def _load_directory(self, directory: Path, origin: str) -> None:
        if not directory.is_dir():
            self._record_error(name=f"<dir:{directory}>", origin=origin, error=FileNotFoundError(f"not a directory: {directory}"))
            if self._fail_fast:
                raise FileNotFoundError(f"Template directory not found: {directory}")
            return
        for child in sorted(directory.iterdir()):
            tpl_file = child / TEMPLATE_FILE_NAME
            if not tpl_file.is_file():
                continue
            try:
                self.register(Template.from_file(tpl_file), origin=f"{origin}:{child}")
            except Exception as exc:
                self._record_error(name=child.name, origin=origin, error=exc)
                if self._fail_fast:
                    raise

    def register(self, template: Template, origin: str = "api") -> None:
        if template.root is None:
            raise ValueError(f"template '{template.name}' has no root directory")
        if not template.context_dir().is_dir():
            raise FileNotFoundError(f"build context not found: {template.context_dir()}")
        previous = self._templates.get(template.name)
        if previous is not None:
            _LOGGER.info("Template %s from %s overrides %s", template.name, origin, previous.origin)
        self._templates[template.name] = _LoadedTemplate(template=template, origin=origin)

    def _record_error(self, name: str, origin: str, error: Exception) -> None:
        _LOGGER.warning("Failed to load template %s (%s): %s", name, origin, error)
        self._load_errors.append(
            TemplateLoadError(
                name=name or "<unknown>",
                origin=origin,
                error_type=error.__class__.__name__,
                message=str(error),
            )
        )

    # --------------------
    # Public introspection
    # --------------------

    def get(self, name: str) -> Template:
        entry = self._templates.get(name)
        if entry is None:
            raise TemplateNotFound(name)
        return entry.template

    def origin_of(self, name: str) -> Optional[str]:
        entry = self._templates.get(name)
        return entry.origin if entry else None

    def list_templates(self) -> List[Template]:
        return [entry.template for _, entry in sorted(self._templates.items())]

    def list_errors(self) -> List[TemplateLoadError]:
        return list(self._load_errors)


def _registry_signature(settings: ServerConfig) -> Tuple[object, ...]:
    return (settings.templates_dir, settings.templates_fail_fast)


def get_template_registry(settings: ServerConfig) -> TemplateRegistry:
    sig = _registry_signature(settings)
    registry = _REGISTRY_CACHE.get(sig)
    if registry is None:
        registry = TemplateRegistry.from_settings(settings)
        _REGISTRY_CACHE.clear()
        _REGISTRY_CACHE[sig] = registry
    return registry


__all__ = [
    "TEMPLATE_FILE_NAME",
    "BUILTIN_TEMPLATES_DIR",
    "TemplateLoadError",
    "TemplateRegistry",
    "get_template_registry",
]
