"""Services file loading.

A services file groups command lists by project and, optionally, stage::

    projects:
      myapp:
        description: Main application
        stages:
          dev:
            services:
              db:
                description: Database tunnel
                commands:
                  - ssh -L 5432:db.internal:5432 bastion -N

Projects without stages may list ``services`` directly. Services are
addressed as ``project.stage.service`` or ``project.service``.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml

from .config import ServiceSpec
from .errors import ConfigError, ServiceNotFound

logger = logging.getLogger(__name__)


def _mapping(value: Any, where: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    return value


def _service(project: Any, stage: Any, name: Any, raw: Any) -> ServiceSpec:
    # YAML keys may be numbers
    project, name = str(project), str(name)
    stage = None if stage is None else str(stage)
    where = ".".join(part for part in (project, stage, name) if part)
    raw = _mapping(raw, where)
    commands = raw.get("commands", raw.get("command", []))
    if isinstance(commands, str):
        commands = [commands]
    if not isinstance(commands, list) or not all(isinstance(c, str) for c in commands):
        raise ConfigError(f"{where}: commands must be a list of strings")
    return ServiceSpec(
        project=project,
        name=name,
        commands=list(commands),
        stage=stage,
        description=str(raw.get("description") or ""),
    )


@dataclass
class ServicesFile:
    """Services parsed from a services file, keyed by full name."""

    path: Path
    services: dict[str, ServiceSpec] = field(default_factory=dict)

    def resolve(self, name: str) -> ServiceSpec:
        """Look up a service by ``project.stage.service`` or ``project.service``.

        Raises:
            ServiceNotFound: If no service has that name.
            InvalidService: If the service has no commands.
        """
        service = self.services.get(name)
        if service is None:
            raise ServiceNotFound(name)
        service.validate()
        return service

    def all_services(self) -> list[ServiceSpec]:
        return [self.services[name] for name in sorted(self.services)]


def load_services(path: Union[str, Path]) -> ServicesFile:
    """Load a services file.

    Raises:
        ConfigError: If the file is missing, not YAML, or has the wrong shape.
    """
    path = Path(path).expanduser()
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Services file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    result = ServicesFile(path=path)
    projects = _mapping(_mapping(data, str(path)).get("projects"), "projects")
    for project, project_raw in projects.items():
        project_raw = _mapping(project_raw, project)

        for name, raw in _mapping(project_raw.get("services"), f"{project}.services").items():
            spec = _service(project, None, name, raw)
            result.services[spec.full_name] = spec

        for stage, stage_raw in _mapping(project_raw.get("stages"), f"{project}.stages").items():
            stage_raw = _mapping(stage_raw, f"{project}.{stage}")
            services = _mapping(stage_raw.get("services"), f"{project}.{stage}.services")
            for name, raw in services.items():
                spec = _service(project, stage, name, raw)
                result.services[spec.full_name] = spec

    logger.debug("Loaded %d services from %s", len(result.services), path)
    return result
