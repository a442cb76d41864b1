"""Deployment of child-collection resource types, one child at a time.

The children API has no create-or-update semantics, so idempotency is realised
here: a child that already exists is recorded as skipped.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, Optional

import structlog

from kbudget_deploy.errors import AlreadyExists, DeploymentError, ProviderError, QuotaExceeded
from kbudget_deploy.gateway import ChildResourceRequest, ProviderGateway
from kbudget_deploy.models import ChildDeploymentOutcome, ProvisioningState, utc_now
from kbudget_deploy.naming import ResourceNames
from kbudget_deploy.prerequisites import PrerequisiteValidator
from kbudget_deploy.resource_types import ResourceType, ResourceTypeSpec

log = structlog.get_logger(__name__)


class SubResourceDeployer:
  def __init__(
    self,
    gateway: ProviderGateway,
    prerequisites: PrerequisiteValidator,
    names: ResourceNames,
    *,
    clock: Callable[[], datetime] = utc_now,
  ) -> None:
    self._gateway = gateway
    self._prerequisites = prerequisites
    self._names = names
    self._clock = clock

  def plan_children(self, spec: ResourceTypeSpec) -> Dict[str, ChildDeploymentOutcome]:
    planned: Dict[str, ChildDeploymentOutcome] = {}
    for child in spec.children:
      now = self._clock()
      planned[child.child_id] = ChildDeploymentOutcome(
        parent_type=spec.type_tag,
        child_id=child.child_id,
        provisioning_state=ProvisioningState.WOULD_DEPLOY,
        started_at=now,
        finished_at=now,
      )
    return planned

  def run_children(
    self,
    spec: ResourceTypeSpec,
    *,
    skip_prerequisite_type: Optional[ResourceType] = None,
  ) -> Dict[str, ChildDeploymentOutcome]:
    """Create every child in order; returns child id -> outcome.

    Raises MissingDependency before any child is attempted when the parent is
    absent. AlreadyExists skips the child; QuotaExceeded or any other provider
    failure stops the loop. A non-provider error, such as an expired login, is
    re-raised with the children handled so far in ``partial_children``.
    """
    if spec.type_tag is not skip_prerequisite_type:
      self._prerequisites.check_parents(spec)

    parent = self._names.collection_parent(spec)
    results: Dict[str, ChildDeploymentOutcome] = {}
    for child in spec.children:
      started = self._clock()
      request = ChildResourceRequest(parent=parent, child_id=child.child_id, partition_key_path=child.partition_key_path)
      log.info("Creating child resource", parent=parent.display_name, child=child.child_id)
      try:
        outputs = self._gateway.create_child_resource(request)
      except AlreadyExists:
        log.warning("Child resource already exists, skipping", child=child.child_id)
        results[child.child_id] = self._outcome(spec, child.child_id, ProvisioningState.SKIPPED, started, error=None)
        continue
      except QuotaExceeded as exc:
        log.error("Quota exceeded, aborting remaining children", child=child.child_id, error=exc.message)
        results[child.child_id] = self._outcome(spec, child.child_id, ProvisioningState.FAILED, started, error=exc)
        break
      except ProviderError as exc:
        log.error("Child resource creation failed, aborting remaining children", child=child.child_id, error=exc.message)
        results[child.child_id] = self._outcome(spec, child.child_id, ProvisioningState.FAILED, started, error=exc)
        break
      except DeploymentError as exc:
        log.error("Child resource creation interrupted", child=child.child_id, code=exc.code, error=exc.message)
        results[child.child_id] = self._outcome(spec, child.child_id, ProvisioningState.FAILED, started, error=exc)
        exc.partial_children = dict(results)
        raise
      log.info("Child resource created", success=True, child=child.child_id)
      results[child.child_id] = self._outcome(
        spec, child.child_id, ProvisioningState.SUCCEEDED, started, outputs=outputs
      )
    return results

  def _outcome(self, spec, child_id, state, started, *, error=None, outputs=None) -> ChildDeploymentOutcome:
    return ChildDeploymentOutcome(
      parent_type=spec.type_tag,
      child_id=child_id,
      provisioning_state=state,
      started_at=started,
      finished_at=self._clock(),
      outputs=dict(outputs or {}),
      error=error,
    )
