"""Layered YAML configuration.

A base ``deploy.yaml`` holds project-wide settings; ``environments/<env>.yaml``
overlays extend it and override only what differs per environment.
"""
from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import yaml

from kbudget_deploy.errors import ConfigurationError
from kbudget_deploy.models import Environment
from kbudget_deploy.naming import ResourceNames

CONFIG_DIR_ENV_VAR = "KBUDGET_DEPLOY_CONFIG_DIR"
BASE_CONFIG_NAME = "deploy.yaml"
PATH_KEYS = ("templatesRoot", "outputDir", "logDir")


def _sequence_key(item: Any) -> Optional[str]:
  if not isinstance(item, dict):
    return None
  name = item.get("name")
  if isinstance(name, str) and name:
    return name
  return None


def _merge_sequences(base: List[Any], override: List[Any]) -> List[Any]:
  if not base or not override:
    return copy.deepcopy(override or base)

  if not all(isinstance(item, dict) for item in base + override):
    return copy.deepcopy(override)

  keys: List[str] = []
  merged: Dict[str, Any] = {}
  for item in base:
    key = _sequence_key(item)
    if key is None or key in merged:
      # Unkeyed or duplicated entries cannot be merged; the overlay wins.
      return copy.deepcopy(override)
    keys.append(key)
    merged[key] = copy.deepcopy(item)

  for item in override:
    key = _sequence_key(item)
    if key is None:
      return copy.deepcopy(override)
    if key in merged:
      merged[key] = deep_merge(merged[key], item)
    else:
      merged[key] = copy.deepcopy(item)
      keys.append(key)
  return [merged[key] for key in keys]


def deep_merge(base: Any, override: Any) -> Any:
  if isinstance(base, dict) and isinstance(override, dict):
    result = copy.deepcopy(base)
    for key, value in override.items():
      result[key] = deep_merge(result[key], value) if key in result else copy.deepcopy(value)
    return result
  if isinstance(base, list) and isinstance(override, list):
    return _merge_sequences(base, override)
  return copy.deepcopy(override)


def load_layered_yaml(config_path: Path, seen: Optional[Set[Path]] = None) -> Dict[str, Any]:
  if seen is None:
    seen = set()

  resolved = config_path.resolve()
  if resolved in seen:
    raise ConfigurationError(f"Cyclic 'extends' reference detected at {config_path}.")
  seen.add(resolved)

  try:
    with config_path.open("r", encoding="utf-8") as handle:
      loaded = yaml.safe_load(handle) or {}
  except yaml.YAMLError as exc:
    raise ConfigurationError(f"Config file {config_path} is not valid YAML: {exc}") from exc

  if not isinstance(loaded, dict):
    raise ConfigurationError(f"Config file {config_path} must parse to a mapping.")

  extends_value = loaded.pop("extends", None)
  merged: Dict[str, Any] = {}
  if extends_value:
    if isinstance(extends_value, str):
      extends_list = [extends_value]
    elif isinstance(extends_value, list) and all(isinstance(item, str) for item in extends_value):
      extends_list = extends_value
    else:
      raise ConfigurationError(
        f"Config file {config_path}: 'extends' must be a string or list of strings when specified."
      )
    for entry in extends_list:
      base_path = (config_path.parent / entry).resolve()
      if not base_path.exists():
        raise ConfigurationError(f"Config file {config_path}: extended file '{entry}' was not found.")
      merged = deep_merge(merged, load_layered_yaml(base_path, seen))

  _absolutize_paths(loaded, config_path.parent)
  merged = deep_merge(merged, loaded)
  seen.remove(resolved)
  return merged


def _absolutize_paths(data: Dict[str, Any], parent_dir: Path) -> None:
  for key in PATH_KEYS:
    value = data.get(key)
    if isinstance(value, str) and value:
      candidate = Path(value)
      data[key] = str(candidate if candidate.is_absolute() else (parent_dir / candidate).resolve())


@dataclass
class DeploymentSettings:
  project: str
  location: str
  templates_root: Path
  output_dir: Path
  log_dir: Path
  database_name: Optional[str] = None
  resource_group: Optional[str] = None
  tags: Dict[str, str] = field(default_factory=dict)
  source: Optional[Path] = None

  @classmethod
  def from_mapping(cls, data: Dict[str, Any], *, source: Optional[Path] = None) -> "DeploymentSettings":
    origin = source or Path.cwd()
    project = data.get("project")
    if not isinstance(project, str) or not project.strip():
      raise ConfigurationError(f"{origin}: 'project' is required.")
    location = data.get("location")
    if not isinstance(location, str) or not location.strip():
      raise ConfigurationError(f"{origin}: 'location' is required.")
    tags = data.get("tags") or {}
    if not isinstance(tags, dict):
      raise ConfigurationError(f"{origin}: 'tags' must be a mapping when specified.")
    base_dir = origin.parent if source else Path.cwd()
    return cls(
      project=project.strip().lower(),
      location=location.strip(),
      templates_root=Path(data.get("templatesRoot") or base_dir / "arm-templates"),
      output_dir=Path(data.get("outputDir") or base_dir / "deployment-results"),
      log_dir=Path(data.get("logDir") or base_dir / "logs"),
      database_name=data.get("databaseName"),
      resource_group=data.get("resourceGroup"),
      tags={str(key): str(value) for key, value in tags.items()},
      source=source,
    )

  def names_for(self, environment: Environment) -> ResourceNames:
    return ResourceNames(
      project=self.project,
      environment=environment.value,
      database_name=self.database_name,
      resource_group_override=self.resource_group,
    )

  def tags_for(self, environment: Environment) -> Dict[str, str]:
    tags = {"project": self.project, "environment": environment.value, "managedBy": "kbudget-deploy"}
    tags.update(self.tags)
    return tags


def resolve_config_file(environment: Environment, config_dir: Optional[Path] = None) -> Path:
  directory = Path(config_dir or os.environ.get(CONFIG_DIR_ENV_VAR) or "config")
  overlay = directory / "environments" / f"{environment.value}.yaml"
  if overlay.is_file():
    return overlay
  base = directory / BASE_CONFIG_NAME
  if base.is_file():
    return base
  raise ConfigurationError(
    f"No configuration found for '{environment.value}' under '{directory}' "
    f"(looked for {overlay} and {base})."
  )


def load_settings(
  environment: Environment,
  *,
  config_dir: Optional[Path] = None,
  overrides: Optional[Dict[str, Any]] = None,
) -> DeploymentSettings:
  config_file = resolve_config_file(environment, config_dir)
  data = load_layered_yaml(config_file)
  if overrides:
    data = deep_merge(data, {key: value for key, value in overrides.items() if value is not None})
  return DeploymentSettings.from_mapping(data, source=config_file)
