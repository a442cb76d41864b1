"""Post-deployment validation: re-query every requested type's live state.

Read-only. Produces one verdict per requested type-tag plus one per expected
child of a collection type.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple

import structlog

from kbudget_deploy.errors import ProviderError
from kbudget_deploy.gateway import ProviderGateway, ResourceLocator
from kbudget_deploy.models import Environment, ValidationResult, ValidationVerdict
from kbudget_deploy.naming import ResourceNames
from kbudget_deploy.resource_types import ResourceType, ShapeCheck, StepKind, ordered_specs

log = structlog.get_logger(__name__)

_MISSING = object()


def lookup_attribute(payload: Dict[str, Any], dotted: str) -> Any:
  current: Any = payload
  for part in dotted.split("."):
    if not isinstance(current, dict) or part not in current:
      return _MISSING
    current = current[part]
  return current


def _normalize(value: Any) -> Any:
  if isinstance(value, str):
    return value.casefold()
  if isinstance(value, (list, tuple)):
    return [_normalize(item) for item in value]
  return value


def shape_mismatches(payload: Dict[str, Any], checks: Sequence[ShapeCheck], label: str) -> List[str]:
  mismatches: List[str] = []
  for check in checks:
    actual = lookup_attribute(payload, check.attribute)
    if actual is _MISSING:
      mismatches.append(f"{label}: '{check.attribute}' is missing (expected {check.expected!r})")
    elif _normalize(actual) != _normalize(check.expected):
      mismatches.append(f"{label}: '{check.attribute}' is {actual!r}, expected {check.expected!r}")
  return mismatches


class PostDeploymentValidator:
  def __init__(self, gateway: ProviderGateway, names_for: Callable[[Environment], ResourceNames]) -> None:
    self._gateway = gateway
    self._names_for = names_for

  def validate(self, environment: Environment, requested_types: Iterable[ResourceType]) -> ValidationResult:
    names: ResourceNames = self._names_for(environment)
    result = ValidationResult()
    for spec in ordered_specs(requested_types):
      if spec.kind is StepKind.GENERATED_SECRETS:
        targets = [(names.secret_locator(secret), secret.secret_name) for secret in spec.generated_secrets]
        result.verdicts[spec.type_tag.value] = self._verdict(spec.type_tag.value, targets, spec.shape)
      elif spec.has_children:
        child_verdicts = [
          self._verdict(f"{spec.type_tag.value}/{child.child_id}", [(names.child_locator(spec, child), child.child_id)], spec.shape)
          for child in spec.children
        ]
        parent = self._verdict(spec.type_tag.value, [(names.collection_parent(spec), "database")], ())
        result.verdicts[spec.type_tag.value] = self._aggregate(parent, child_verdicts)
        for verdict in child_verdicts:
          result.verdicts[verdict.type_tag] = verdict
      else:
        target = [(names.locator(spec), names.primary_name(spec.type_tag))]
        result.verdicts[spec.type_tag.value] = self._verdict(spec.type_tag.value, target, spec.shape)

    for verdict in result.verdicts.values():
      if verdict.passed:
        log.info("Validation passed", success=True, type_tag=verdict.type_tag)
      else:
        log.error(
          "Validation failed",
          type_tag=verdict.type_tag,
          exists=verdict.exists,
          mismatches=list(verdict.mismatches),
          error=verdict.error,
        )
    log.info("Validation complete", overall_status=result.overall_status.value, verdicts=len(result.verdicts))
    return result

  def _verdict(
    self,
    type_tag: str,
    targets: Sequence[Tuple[ResourceLocator, str]],
    checks: Sequence[ShapeCheck],
  ) -> ValidationVerdict:
    exists = True
    mismatches: List[str] = []
    for locator, label in targets:
      try:
        payload = self._gateway.show_resource(locator)
      except ProviderError as exc:
        return ValidationVerdict(type_tag, exists=False, live_shape_matches_expected=False, error=exc.message)
      if payload is None:
        exists = False
        mismatches.append(f"{label}: {locator.provider_type} '{locator.display_name}' not found")
        continue
      mismatches.extend(shape_mismatches(payload, checks, label))
    return ValidationVerdict(
      type_tag,
      exists=exists,
      live_shape_matches_expected=exists and not mismatches,
      mismatches=tuple(mismatches),
    )

  @staticmethod
  def _aggregate(parent: ValidationVerdict, children: List[ValidationVerdict]) -> ValidationVerdict:
    mismatches = list(parent.mismatches)
    for child in children:
      if not child.passed:
        mismatches.append(f"child '{child.type_tag}' failed validation")
    return ValidationVerdict(
      parent.type_tag,
      exists=parent.exists and all(child.exists for child in children),
      live_shape_matches_expected=parent.live_shape_matches_expected and all(child.passed for child in children),
      error=parent.error,
      mismatches=tuple(mismatches),
    )
