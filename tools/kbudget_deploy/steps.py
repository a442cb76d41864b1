"""One deployment step handler per step kind, plus parameter binding."""
from __future__ import annotations

import secrets
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Set, Tuple

import structlog

from kbudget_deploy.children import SubResourceDeployer
from kbudget_deploy.errors import ConfigurationError, MissingDependency
from kbudget_deploy.gateway import ProviderGateway, TemplateDeployment
from kbudget_deploy.models import ChildDeploymentOutcome, DeploymentRequest
from kbudget_deploy.naming import ResourceNames
from kbudget_deploy.resource_types import RESOURCE_TYPES, ResourceType, ResourceTypeSpec, StepKind
from kbudget_deploy.templates import TemplateStore

log = structlog.get_logger(__name__)

SecretFactory = Callable[[int], str]

_SECRET_ALPHABET = string.ascii_letters + string.digits


def generate_secret(length: int) -> str:
  return "".join(secrets.choice(_SECRET_ALPHABET) for _ in range(length))


@dataclass
class StepResult:
  outputs: Dict[str, Any] = field(default_factory=dict)
  children: Dict[str, ChildDeploymentOutcome] = field(default_factory=dict)
  # Outputs whose secret value is already in the Key Vault.
  stored: FrozenSet[str] = frozenset()


@dataclass
class StepContext:
  request: DeploymentRequest
  names: ResourceNames
  captured: Dict[ResourceType, Dict[str, Any]] = field(default_factory=dict)
  recovered: Dict[ResourceType, Dict[str, Any]] = field(default_factory=dict)

  @property
  def environment(self) -> str:
    return self.request.environment.value


class DeploymentStep(ABC):
  @abstractmethod
  def execute(self, spec: ResourceTypeSpec, context: StepContext) -> StepResult:
    """Deploy ``spec``; raises ProviderError or MissingDependency on failure."""

  def recover_outputs(self, spec: ResourceTypeSpec, context: StepContext) -> Dict[str, Any]:
    """Outputs of an earlier run, for bindings whose source is not in this run."""
    return {}


class BindingResolver:
  def __init__(self, steps: Dict[StepKind, DeploymentStep]) -> None:
    self._steps = steps

  def _source_outputs(self, source: ResourceType, context: StepContext) -> Dict[str, Any]:
    if source in context.captured:
      return context.captured[source]
    if source in context.request.requested_types:
      # Requested but not captured: the source step did not succeed in this run.
      return {}
    if source not in context.recovered:
      source_spec = RESOURCE_TYPES[source]
      context.recovered[source] = self._steps[source_spec.kind].recover_outputs(source_spec, context)
    return context.recovered[source]

  def resolve(self, spec: ResourceTypeSpec, context: StepContext) -> Tuple[Dict[str, Any], Set[str]]:
    overrides: Dict[str, Any] = {}
    secret_parameters: Set[str] = set()
    for binding in spec.bindings:
      outputs = self._source_outputs(binding.source, context)
      if binding.output not in outputs:
        if binding.required:
          raise MissingDependency(
            f"Output '{binding.output}' from '{binding.source.value}' is unavailable; "
            f"cannot bind parameter '{binding.parameter}' for '{spec.type_tag.value}'.",
            parent_type=binding.source.value,
            type_tag=spec.type_tag.value,
            remediation=f"kbudget-deploy deploy {context.environment} --resource-types {binding.source.value}",
          )
        log.warning(
          "Optional binding unavailable, parameter omitted",
          type_tag=spec.type_tag.value,
          parameter=binding.parameter,
          source=f"{binding.source.value}.{binding.output}",
        )
        continue
      overrides[binding.parameter] = outputs[binding.output]
      if binding.output in RESOURCE_TYPES[binding.source].secret_output_names:
        secret_parameters.add(binding.parameter)
    return overrides, secret_parameters


class TemplateStep(DeploymentStep):
  def __init__(self, gateway: ProviderGateway, store: TemplateStore, resolver: BindingResolver) -> None:
    self._gateway = gateway
    self._store = store
    self._resolver = resolver

  def execute(self, spec: ResourceTypeSpec, context: StepContext) -> StepResult:
    template_file, parameter_file = self._store.resolve(spec, context.environment)
    overrides, secret_parameters = self._resolver.resolve(spec, context)
    deployment = TemplateDeployment(
      resource_group=context.names.resource_group,
      deployment_name=context.names.deployment_name(spec.type_tag),
      template_file=template_file,
      parameter_file=parameter_file,
      overrides=overrides,
      secret_parameters=frozenset(secret_parameters),
    )
    log.info(
      "Starting deployment",
      type_tag=spec.type_tag.value,
      deployment=deployment.deployment_name,
      template=str(template_file),
      parameters=str(parameter_file),
    )
    return StepResult(outputs=self._gateway.deploy_template(deployment))

  def recover_outputs(self, spec: ResourceTypeSpec, context: StepContext) -> Dict[str, Any]:
    return self._gateway.fetch_deployment_outputs(
      context.names.resource_group, context.names.deployment_name(spec.type_tag)
    )


class GeneratedSecretsStep(DeploymentStep):
  """Generates secret values missing from the Key Vault; existing values are kept."""

  def __init__(self, gateway: ProviderGateway, secret_factory: SecretFactory = generate_secret) -> None:
    self._gateway = gateway
    self._secret_factory = secret_factory

  def execute(self, spec: ResourceTypeSpec, context: StepContext) -> StepResult:
    existing = self.recover_outputs(spec, context)
    outputs = dict(existing)
    for secret in spec.generated_secrets:
      if secret.output not in outputs:
        outputs[secret.output] = self._secret_factory(secret.length)
    log.info(
      "Generated secrets",
      type_tag=spec.type_tag.value,
      generated=len(outputs) - len(existing),
      kept=len(existing),
    )
    return StepResult(outputs=outputs, stored=frozenset(existing))

  def recover_outputs(self, spec: ResourceTypeSpec, context: StepContext) -> Dict[str, Any]:
    recovered: Dict[str, Any] = {}
    for secret in spec.generated_secrets:
      value = self._gateway.get_secret(context.names.key_vault, secret.secret_name)
      if value is not None:
        recovered[secret.output] = value
    return recovered


class ChildCollectionStep(DeploymentStep):
  def __init__(self, sub_deployer: SubResourceDeployer) -> None:
    self._sub_deployer = sub_deployer

  def execute(self, spec: ResourceTypeSpec, context: StepContext) -> StepResult:
    children = self._sub_deployer.run_children(
      spec, skip_prerequisite_type=context.request.skip_prerequisite_type
    )
    return StepResult(children=children)


def build_step_handlers(
  gateway: ProviderGateway,
  store: TemplateStore,
  sub_deployer: SubResourceDeployer,
  *,
  secret_factory: SecretFactory = generate_secret,
) -> Tuple[Dict[StepKind, DeploymentStep], BindingResolver]:
  steps: Dict[StepKind, DeploymentStep] = {}
  resolver = BindingResolver(steps)
  steps[StepKind.TEMPLATE] = TemplateStep(gateway, store, resolver)
  steps[StepKind.GENERATED_SECRETS] = GeneratedSecretsStep(gateway, secret_factory)
  steps[StepKind.CHILD_COLLECTION] = ChildCollectionStep(sub_deployer)

  missing = {spec.kind for spec in RESOURCE_TYPES.values()} - set(steps)
  if missing:
    raise ConfigurationError(f"No step handler registered for: {', '.join(sorted(kind.value for kind in missing))}")
  return steps, resolver
