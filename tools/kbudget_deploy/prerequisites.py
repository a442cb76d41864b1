"""Checks that must hold before any deployment step runs."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog

from kbudget_deploy.errors import MissingDependency
from kbudget_deploy.gateway import ProviderGateway
from kbudget_deploy.models import DeploymentRequest
from kbudget_deploy.naming import ResourceNames
from kbudget_deploy.resource_types import RESOURCE_TYPES, ResourceType, ResourceTypeSpec

log = structlog.get_logger(__name__)


@dataclass
class PrerequisiteReport:
  account: Dict[str, Any]
  deferred: Dict[ResourceType, Tuple[ResourceType, ...]] = field(default_factory=dict)
  failures: Dict[ResourceType, MissingDependency] = field(default_factory=dict)

  @property
  def ok(self) -> bool:
    return not self.failures


class PrerequisiteValidator:
  """Authentication and parent-existence checks, re-run on every invocation."""

  def __init__(self, gateway: ProviderGateway, names: ResourceNames) -> None:
    self._gateway = gateway
    self._names = names

  def check_authentication(self) -> Dict[str, Any]:
    account = self._gateway.current_account()
    log.info(
      "Logged in to Azure",
      success=True,
      account=account.get("name"),
      subscription_id=account.get("id"),
    )
    return account

  def check_parent(self, spec: ResourceTypeSpec, parent: ResourceType) -> None:
    parent_spec = RESOURCE_TYPES[parent]
    locator = self._names.locator(parent_spec)
    if self._gateway.show_resource(locator) is not None:
      return
    raise MissingDependency(
      f"'{spec.type_tag.value}' requires {parent_spec.description or parent.value} "
      f"'{locator.display_name}', which does not exist.",
      parent_type=parent.value,
      type_tag=spec.type_tag.value,
      remediation=f"kbudget-deploy deploy {self._names.environment} --resource-types {parent.value}",
    )

  def check_parents(self, spec: ResourceTypeSpec, only: Optional[Tuple[ResourceType, ...]] = None) -> None:
    for parent in only if only is not None else spec.prerequisites:
      self.check_parent(spec, parent)

  def validate(self, request: DeploymentRequest, specs: List[ResourceTypeSpec]) -> PrerequisiteReport:
    """Authenticate, then check every requested type's prerequisites.

    Authentication failures propagate and end the run. A prerequisite that is
    requested in the same run is deferred until just before its dependent step.
    """
    report = PrerequisiteReport(account=self.check_authentication())
    for spec in specs:
      if not spec.prerequisites:
        continue
      if spec.type_tag is request.skip_prerequisite_type:
        log.warning("Skipping prerequisite checks", type_tag=spec.type_tag.value)
        continue
      deferred = tuple(parent for parent in spec.prerequisites if parent in request.requested_types)
      if deferred:
        report.deferred[spec.type_tag] = deferred
      try:
        self.check_parents(spec, tuple(parent for parent in spec.prerequisites if parent not in deferred))
      except MissingDependency as exc:
        log.error(exc.message, type_tag=spec.type_tag.value, remediation=exc.remediation)
        report.failures[spec.type_tag] = exc
    return report
