from __future__ import annotations

"""
Declarative workspace templates.

A template is a JSON document (template.json) next to a build context
directory. It declares the parameters a user chooses, how to build the image,
which durable volumes to mount where, the environment handed to the
instance, the agent payload, and the applications exposed from inside the
running instance.

String values in build.args and environment may reference parameters as
${name}; they are rendered with the resolved parameter set.
"""

import enum
import json
from pathlib import Path
from string import Template as _StringTemplate
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, PrivateAttr, field_validator, model_validator

from wr_server.app.templates.parameters import Parameter, ParameterType, ParameterValue


def render_value(raw: str, params: Mapping[str, ParameterValue]) -> str:
    """
    Substitute ${name} references with parameter values.
    Booleans render as 'true'/'false'; unknown references raise KeyError.
    """
    values = {k: (str(v).lower() if isinstance(v, bool) else str(v)) for k, v in params.items()}
    return _StringTemplate(raw).substitute(values)


class BuildSpec(BaseModel):
    context: str = "build"
    dockerfile: str = "Dockerfile"
    args: Dict[str, str] = Field(default_factory=dict)


class ResourceSpec(BaseModel):
    """
    Names of the parameters feeding resource limits. Either may be absent.
    """
    cpu_parameter: Optional[str] = None
    memory_gb_parameter: Optional[str] = None


class VolumeSpec(BaseModel):
    category: str = Field(..., pattern=r"^[a-z0-9][a-z0-9_.-]*$")
    mount_path: str

    @field_validator("mount_path")
    def v_mount_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("mount_path must be an absolute path inside the instance")
        return v


class StartupBehavior(str, enum.Enum):
    non_blocking = "non-blocking"


class AgentMetadataItem(BaseModel):
    key: str
    display_name: str
    script: str
    interval: int = Field(10, ge=1)
    timeout: int = Field(1, ge=1)


class AgentSpec(BaseModel):
    os: str = "linux"
    arch: str = "amd64"
    user: str = "coder"
    directory: str = "/home/coder"
    startup_script: str = ""
    startup_script_behavior: StartupBehavior = StartupBehavior.non_blocking
    metadata: List[AgentMetadataItem] = Field(default_factory=list)


class HealthcheckSpec(BaseModel):
    url: str
    interval: float = Field(5.0, gt=0)
    threshold: int = Field(6, ge=1)


class AppSpec(BaseModel):
    slug: str = Field(..., pattern=r"^[a-z0-9](-?[a-z0-9])*$")
    display_name: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)
    url: Optional[str] = None
    command: Optional[str] = None
    icon: Optional[str] = None
    subdomain: bool = False
    share: str = "owner"
    healthcheck: Optional[HealthcheckSpec] = None

    @model_validator(mode="after")
    def v_target(self) -> "AppSpec":
        if self.command and (self.url or self.port):
            raise ValueError(f"app '{self.slug}': command apps cannot declare a url or port")
        if not self.command and not (self.url or self.port):
            raise ValueError(f"app '{self.slug}': declare either a port/url or a command")
        if self.healthcheck and self.command:
            raise ValueError(f"app '{self.slug}': health checks require a url app")
        return self

    @property
    def effective_url(self) -> Optional[str]:
        if self.url:
            return self.url
        if self.port:
            return f"http://localhost:{self.port}"
        return None


class Template(BaseModel):
    """
    A workspace template: resource graph inputs plus user-facing parameters.
    """

    name: str = Field(..., pattern=r"^[a-z0-9][a-z0-9_-]*$")
    display_name: Optional[str] = None
    description: str = ""
    icon: Optional[str] = None
    parameters: List[Parameter] = Field(default_factory=list)
    build: BuildSpec = Field(default_factory=BuildSpec)
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    volumes: List[VolumeSpec] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)
    agent: AgentSpec = Field(default_factory=AgentSpec)
    apps: List[AppSpec] = Field(default_factory=list)
    mount_engine_socket: bool = True

    _root: Optional[Path] = PrivateAttr(default=None)

    @model_validator(mode="after")
    def v_references(self) -> "Template":
        names = [p.name for p in self.parameters]
        if len(names) != len(set(names)):
            raise ValueError("parameter names must be unique")
        by_name = {p.name: p for p in self.parameters}
        for field_name in ("cpu_parameter", "memory_gb_parameter"):
            ref = getattr(self.resources, field_name)
            if ref is None:
                continue
            if ref not in by_name:
                raise ValueError(f"resources.{field_name} references unknown parameter '{ref}'")
            if by_name[ref].type is not ParameterType.number:
                raise ValueError(f"resources.{field_name} must reference a number parameter")
        categories = [v.category for v in self.volumes]
        if len(categories) != len(set(categories)):
            raise ValueError("volume categories must be unique")
        mounts = [v.mount_path for v in self.volumes]
        if len(mounts) != len(set(mounts)):
            raise ValueError("volume mount paths must be unique")
        slugs = [a.slug for a in self.apps]
        if len(slugs) != len(set(slugs)):
            raise ValueError("app slugs must be unique")
        # Every ${name} reference must resolve to a declared parameter ($$ escapes)
        for where, mapping in (("build.args", self.build.args), ("environment", self.environment)):
            for key, raw in mapping.items():
                tpl = _StringTemplate(raw)
                if not tpl.is_valid():
                    raise ValueError(f"{where}.{key}: invalid placeholder syntax")
                missing = [ident for ident in tpl.get_identifiers() if ident not in by_name]
                if missing:
                    raise ValueError(f"{where}.{key} references unknown parameter '{missing[0]}'")
        return self

    # ----------------
    # Loading
    # ----------------

    @classmethod
    def from_file(cls, path: str | Path) -> "Template":
        p = Path(path)
        data = json.loads(p.read_text(encoding="utf-8"))
        tpl = cls.model_validate(data)
        tpl._root = p.resolve().parent
        return tpl

    @property
    def root(self) -> Optional[Path]:
        return self._root

    def with_root(self, root: str | Path) -> "Template":
        self._root = Path(root).resolve()
        return self

    def context_dir(self) -> Path:
        if self._root is None:
            raise ValueError(f"template '{self.name}' has no root directory; load it with from_file()")
        return (self._root / self.build.context).resolve()

    # ----------------
    # Rendering
    # ----------------

    def render_build_args(self, params: Mapping[str, ParameterValue]) -> Dict[str, str]:
        return {k: render_value(v, params) for k, v in sorted(self.build.args.items())}

    def render_environment(self, params: Mapping[str, ParameterValue]) -> Dict[str, str]:
        return {k: render_value(v, params) for k, v in self.environment.items()}

    def summary(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name or self.name,
            "description": self.description,
            "icon": self.icon,
            "parameters": [p.model_dump(mode="json") for p in self.parameters],
            "volumes": [v.model_dump(mode="json") for v in self.volumes],
            "apps": [a.model_dump(mode="json") for a in self.apps],
        }


__all__ = [
    "render_value",
    "BuildSpec",
    "ResourceSpec",
    "VolumeSpec",
    "StartupBehavior",
    "AgentMetadataItem",
    "AgentSpec",
    "HealthcheckSpec",
    "AppSpec",
    "Template",
]
