from __future__ import annotations

from pathlib import Path
from typing import Tuple

from kbudget_deploy.errors import TemplateNotFound
from kbudget_deploy.resource_types import ResourceTypeSpec


class TemplateStore:
  """Read-only view over ``{type}/azuredeploy.json`` + ``{type}/parameters.{env}.json``."""

  def __init__(self, root: Path) -> None:
    self._root = root

  @property
  def root(self) -> Path:
    return self._root

  def resolve(self, spec: ResourceTypeSpec, environment: str) -> Tuple[Path, Path]:
    template_path = (self._root / spec.template_locator).resolve()
    parameter_path = (self._root / spec.parameter_locator(environment)).resolve()
    for path in (template_path, parameter_path):
      if not path.is_file():
        raise TemplateNotFound(
          f"Template file '{path}' for '{spec.type_tag.value}' does not exist.",
          type_tag=spec.type_tag.value,
        )
    return template_path, parameter_path
