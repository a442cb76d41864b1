"""Dependency-ordered deployment of the requested resource types.

Types are deployed strictly in ascending rank. The deployer is fail-fast across
ranks: once a step fails, later ranks are never attempted because they may
depend on outputs that were never produced.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

import structlog

from kbudget_deploy.children import SubResourceDeployer
from kbudget_deploy.errors import DeploymentError, MissingDependency, ProviderError
from kbudget_deploy.gateway import ProviderGateway
from kbudget_deploy.models import (
  ChildDeploymentOutcome,
  DeploymentOutcome,
  DeploymentRequest,
  ProvisioningState,
  RunReport,
  utc_now,
)
from kbudget_deploy.naming import ResourceNames
from kbudget_deploy.prerequisites import PrerequisiteReport, PrerequisiteValidator
from kbudget_deploy.resource_types import ResourceType, ResourceTypeSpec, ordered_specs
from kbudget_deploy.steps import SecretFactory, StepContext, build_step_handlers, generate_secret
from kbudget_deploy.templates import TemplateStore

log = structlog.get_logger(__name__)


def blocking_failures(
  specs: List[ResourceTypeSpec], failed: Iterable[ResourceType]
) -> Dict[ResourceType, List[ResourceType]]:
  """Failed type -> later requested types that depend on it."""
  failed_set = set(failed)
  blocked: Dict[ResourceType, List[ResourceType]] = {}
  for spec in specs:
    for dependency in spec.dependencies() & failed_set:
      blocked.setdefault(dependency, []).append(spec.type_tag)
  return blocked


class DependencyOrderedDeployer:
  def __init__(
    self,
    gateway: ProviderGateway,
    names: ResourceNames,
    store: TemplateStore,
    prerequisites: PrerequisiteValidator,
    *,
    location: str,
    tags: Optional[Dict[str, str]] = None,
    clock: Callable[[], datetime] = utc_now,
    secret_factory: SecretFactory = generate_secret,
  ) -> None:
    self._gateway = gateway
    self._names = names
    self._prerequisites = prerequisites
    self._location = location
    self._tags = dict(tags or {})
    self._clock = clock
    self._sub_deployer = SubResourceDeployer(gateway, prerequisites, names, clock=clock)
    self._steps, _ = build_step_handlers(
      gateway, store, self._sub_deployer, secret_factory=secret_factory
    )

  def run(
    self,
    request: DeploymentRequest,
    report: RunReport,
    prerequisite_report: Optional[PrerequisiteReport] = None,
  ) -> RunReport:
    specs = ordered_specs(request.requested_types)
    failures = dict(prerequisite_report.failures) if prerequisite_report else {}
    deferred = dict(prerequisite_report.deferred) if prerequisite_report else {}

    blocked = blocking_failures(specs, failures)
    if blocked and not request.dry_run:
      for type_tag, dependents in blocked.items():
        log.error(
          "Prerequisite failure blocks dependent types, aborting run",
          type_tag=type_tag.value,
          dependents=[dependent.value for dependent in dependents],
        )
      for spec in specs:
        if spec.type_tag in failures:
          now = self._clock()
          report.record(self._outcome(spec, ProvisioningState.SKIPPED, now, error=failures[spec.type_tag]))
      return report

    deployable = [spec for spec in specs if spec.type_tag not in failures]
    if deployable and not request.dry_run:
      log.info("Ensuring resource group", resource_group=self._names.resource_group, location=self._location)
      self._gateway.ensure_resource_group(self._names.resource_group, self._location, self._tags)

    context = StepContext(request=request, names=self._names)
    for index, spec in enumerate(specs):
      if spec.type_tag in failures and not request.dry_run:
        now = self._clock()
        log.warning("Skipping type with unmet prerequisite", type_tag=spec.type_tag.value)
        report.record(self._outcome(spec, ProvisioningState.SKIPPED, now, error=failures[spec.type_tag]))
        continue

      started = self._clock()
      try:
        outcome = self._deploy_one(spec, context, deferred.get(spec.type_tag, ()), started)
      except DeploymentError as exc:
        log.error("Deployment interrupted, aborting run", type_tag=spec.type_tag.value, code=exc.code, error=exc.message)
        report.record(
          self._outcome(spec, ProvisioningState.FAILED, started, children=exc.partial_children, error=exc)
        )
        raise
      report.record(outcome)

      if outcome.provisioning_state is ProvisioningState.FAILED:
        remaining = [later.type_tag.value for later in specs[index + 1:]]
        if remaining:
          log.error("Aborting remaining deployments", failed=spec.type_tag.value, not_attempted=remaining)
        break
      if outcome.provisioning_state is ProvisioningState.SKIPPED:
        dependents = blocking_failures(specs[index + 1:], [spec.type_tag])
        if dependents:
          log.error(
            "Skipped type is required by later types, aborting run",
            type_tag=spec.type_tag.value,
            dependents=[dependent.value for dependent in dependents[spec.type_tag]],
          )
          break
    return report

  def _deploy_one(
    self,
    spec: ResourceTypeSpec,
    context: StepContext,
    deferred: Tuple[ResourceType, ...],
    started: datetime,
  ) -> DeploymentOutcome:
    """Deploy one type. Errors other than MissingDependency and ProviderError propagate."""
    request = context.request
    tag = spec.type_tag.value

    if request.dry_run:
      log.info("Dry run: would deploy", type_tag=tag, rank=spec.rank)
      children = self._sub_deployer.plan_children(spec) if spec.has_children else {}
      return self._outcome(spec, ProvisioningState.WOULD_DEPLOY, started, children=children)

    log.info("Deploying resource type", type_tag=tag, rank=spec.rank)
    try:
      if deferred and not spec.has_children and spec.type_tag is not request.skip_prerequisite_type:
        self._prerequisites.check_parents(spec, tuple(deferred))
      result = self._steps[spec.kind].execute(spec, context)
    except MissingDependency as exc:
      log.error(exc.message, type_tag=tag, remediation=exc.remediation)
      return self._outcome(spec, ProvisioningState.SKIPPED, started, error=exc)
    except ProviderError as exc:
      log.error("Deployment failed", type_tag=tag, error=exc.message)
      return self._outcome(spec, ProvisioningState.FAILED, started, error=exc)

    failed_children = [child for child in result.children.values() if child.provisioning_state is ProvisioningState.FAILED]
    if failed_children:
      error = failed_children[0].error
      log.error("Child collection failed", type_tag=tag, child=failed_children[0].child_id)
      return self._outcome(
        spec, ProvisioningState.FAILED, started, outputs=result.outputs, children=result.children, error=error
      )

    context.captured[spec.type_tag] = result.outputs
    try:
      self._store_secret_outputs(spec, result.outputs, already_stored=result.stored)
    except ProviderError as exc:
      log.error("Storing secret outputs failed", type_tag=tag, error=exc.message)
      return self._outcome(
        spec, ProvisioningState.FAILED, started, outputs=result.outputs, children=result.children, error=exc
      )

    log.info("Deployment succeeded", success=True, type_tag=tag)
    return self._outcome(spec, ProvisioningState.SUCCEEDED, started, outputs=result.outputs, children=result.children)

  def _store_secret_outputs(
    self, spec: ResourceTypeSpec, outputs: Dict[str, object], *, already_stored: FrozenSet[str] = frozenset()
  ) -> None:
    for output_name, secret_name in spec.secret_output_names.items():
      value = outputs.get(output_name)
      if value is None or output_name in already_stored:
        continue
      self._gateway.set_secret(self._names.key_vault, secret_name, str(value))
      log.info("Stored secret", type_tag=spec.type_tag.value, secret=secret_name, vault=self._names.key_vault)

  def _outcome(
    self,
    spec: ResourceTypeSpec,
    state: ProvisioningState,
    started: datetime,
    *,
    outputs: Optional[Dict[str, object]] = None,
    children: Optional[Dict[str, ChildDeploymentOutcome]] = None,
    error: Optional[DeploymentError] = None,
  ) -> DeploymentOutcome:
    return DeploymentOutcome(
      type_tag=spec.type_tag,
      provisioning_state=state,
      started_at=started,
      finished_at=self._clock(),
      outputs=dict(outputs or {}),
      error=error,
      children=dict(children or {}),
      secret_outputs=frozenset(spec.secret_output_names),
    )
