"""Unit tests for step handlers and parameter binding."""
import pytest

from kbudget_deploy.children import SubResourceDeployer
from kbudget_deploy.errors import MissingDependency, TemplateNotFound
from kbudget_deploy.models import DeploymentRequest
from kbudget_deploy.prerequisites import PrerequisiteValidator
from kbudget_deploy.resource_types import RESOURCE_TYPES, ResourceType, StepKind
from kbudget_deploy.steps import GeneratedSecretsStep, StepContext, build_step_handlers, generate_secret
from kbudget_deploy.templates import TemplateStore


@pytest.fixture
def handlers(gateway, names, template_root):
  sub_deployer = SubResourceDeployer(gateway, PrerequisiteValidator(gateway, names), names)
  return build_step_handlers(gateway, TemplateStore(template_root), sub_deployer, secret_factory=lambda length: "k" * length)


def context(names, **kwargs):
  return StepContext(request=DeploymentRequest.build("dev", **kwargs), names=names)


def test_generate_secret():
  value = generate_secret(64)
  assert len(value) == 64
  assert value.isalnum()
  assert generate_secret(64) != value


def test_every_step_kind_has_a_handler(handlers):
  steps, _ = handlers
  assert set(steps) == set(StepKind)


def test_generated_secrets_use_declared_lengths(gateway, names):
  step = GeneratedSecretsStep(gateway, lambda length: "k" * length)
  result = step.execute(RESOURCE_TYPES[ResourceType.SECRETS], context(names))
  assert result.outputs == {"jwtSigningKey": "k" * 64, "sessionSecret": "k" * 48}


def test_generated_secrets_keep_existing_values(gateway, names):
  gateway.secrets[(names.key_vault, "jwt-signing-key")] = "existing-key"
  step = GeneratedSecretsStep(gateway, lambda length: "k" * length)
  result = step.execute(RESOURCE_TYPES[ResourceType.SECRETS], context(names))
  assert result.outputs == {"jwtSigningKey": "existing-key", "sessionSecret": "k" * 48}
  assert result.stored == frozenset({"jwtSigningKey"})


def test_resolver_prefers_captured_outputs(handlers, names, gateway):
  _, resolver = handlers
  ctx = context(names, resource_types=["monitoring", "network"])
  ctx.captured[ResourceType.MONITORING] = {"workspaceId": "ws-1"}
  overrides, secret_parameters = resolver.resolve(RESOURCE_TYPES[ResourceType.NETWORK], ctx)
  assert overrides == {"diagnosticsWorkspaceId": "ws-1"}
  assert secret_parameters == set()
  assert gateway.calls_named("fetch_deployment_outputs") == []


def test_resolver_does_not_recover_failed_sources(handlers, names, gateway):
  _, resolver = handlers
  ctx = context(names, resource_types=["monitoring", "keyvault", "database", "secrets", "compute"])
  with pytest.raises(MissingDependency) as excinfo:
    resolver.resolve(RESOURCE_TYPES[ResourceType.COMPUTE], ctx)
  assert excinfo.value.parent_type == "monitoring"
  assert gateway.calls_named("fetch_deployment_outputs") == []


def test_recovered_outputs_are_cached(handlers, names, gateway):
  _, resolver = handlers
  ctx = context(names, resource_types=["network", "keyvault"])
  resolver.resolve(RESOURCE_TYPES[ResourceType.NETWORK], ctx)
  resolver.resolve(RESOURCE_TYPES[ResourceType.KEYVAULT], ctx)
  assert gateway.calls_named("fetch_deployment_outputs") == ["kbudget-monitoring-dev"]


def test_template_store_resolve(template_root):
  store = TemplateStore(template_root)
  template, parameters = store.resolve(RESOURCE_TYPES[ResourceType.STORAGE], "prod")
  assert template.name == "azuredeploy.json"
  assert parameters.name == "parameters.prod.json"
  with pytest.raises(TemplateNotFound):
    TemplateStore(template_root / "missing").resolve(RESOURCE_TYPES[ResourceType.STORAGE], "prod")
