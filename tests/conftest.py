"""Pytest configuration and fixtures."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
import structlog

from kbudget_deploy.config import DeploymentSettings
from kbudget_deploy.engine import DeploymentEngine
from kbudget_deploy.errors import AlreadyExists, AuthenticationRequired, DeploymentError, ProviderError
from kbudget_deploy.gateway import ChildResourceRequest, ResourceLocator, TemplateDeployment
from kbudget_deploy.logging_setup import shutdown_logging
from kbudget_deploy.models import AlertPayload, Environment
from kbudget_deploy.naming import ResourceNames
from kbudget_deploy.resource_types import RESOURCE_TYPES, ResourceType, ShapeCheck

FAKE_OUTPUTS: Dict[ResourceType, Dict[str, Any]] = {
  ResourceType.MONITORING: {
    "workspaceId": "/subscriptions/sub/resourceGroups/rg-kbudget-dev/providers/Microsoft.OperationalInsights/workspaces/log-kbudget-dev",
    "appInsightsConnectionString": "InstrumentationKey=00000000-0000-0000-0000-000000000000",
  },
  ResourceType.NETWORK: {"vnetId": "vnet-kbudget-dev"},
  ResourceType.KEYVAULT: {"vaultUri": "https://kv-kbudget-dev.vault.azure.net/"},
  ResourceType.STORAGE: {"connectionString": "DefaultEndpointsProtocol=https;AccountKey=storage-key"},
  ResourceType.DATABASE: {
    "accountEndpoint": "https://cosmos-kbudget-dev.documents.azure.com:443/",
    "primaryKey": "cosmos-key",
  },
  ResourceType.COMPUTE: {"defaultHostName": "app-kbudget-dev.azurewebsites.net"},
}

MUTATING_CALLS = ("ensure_resource_group", "deploy_template", "create_child_resource", "set_secret")


def shape_payload(checks: Tuple[ShapeCheck, ...]) -> Dict[str, Any]:
  """Build a live-resource payload that satisfies ``checks``."""
  payload: Dict[str, Any] = {}
  for check in checks:
    node = payload
    *parents, leaf = check.attribute.split(".")
    for part in parents:
      node = node.setdefault(part, {})
    node[leaf] = check.expected
  return payload


class FakeGateway:
  """In-memory provider gateway with create-or-update semantics for templates."""

  def __init__(self, names: ResourceNames, *, logged_in: bool = True) -> None:
    self.names = names
    self.logged_in = logged_in
    self.resources: Dict[Tuple[str, Tuple[str, ...]], Dict[str, Any]] = {}
    self.secrets: Dict[Tuple[str, str], str] = {}
    self.deployments: Dict[str, Dict[str, Any]] = {}
    self.calls: List[Tuple[str, Any]] = []
    self.deploy_failures: Dict[ResourceType, DeploymentError] = {}
    self.child_failures: Dict[str, DeploymentError] = {}
    self.secret_failures: Dict[str, ProviderError] = {}
    self.show_failures: Dict[str, ProviderError] = {}

  @property
  def mutating_calls(self) -> List[Tuple[str, Any]]:
    return [call for call in self.calls if call[0] in MUTATING_CALLS]

  def calls_named(self, name: str) -> List[Any]:
    return [argument for call_name, argument in self.calls if call_name == name]

  def seed(self, locator: ResourceLocator, payload: Optional[Dict[str, Any]] = None) -> None:
    self.resources[(locator.provider_type, locator.names)] = dict(payload or {})

  def seed_type(self, type_tag: ResourceType) -> None:
    spec = RESOURCE_TYPES[type_tag]
    self.seed(self.names.locator(spec), shape_payload(spec.shape))
    if type_tag is ResourceType.DATABASE:
      containers = RESOURCE_TYPES[ResourceType.CONTAINERS]
      self.seed(self.names.collection_parent(containers), {"name": self.names.cosmos_database})

  def seed_child(self, child_id: str) -> None:
    containers = RESOURCE_TYPES[ResourceType.CONTAINERS]
    child = next(item for item in containers.children if item.child_id == child_id)
    self.seed(self.names.child_locator(containers, child), shape_payload(containers.shape))

  def current_account(self) -> Dict[str, Any]:
    self.calls.append(("current_account", None))
    if not self.logged_in:
      raise AuthenticationRequired()
    return {"id": "00000000-0000-0000-0000-000000000001", "name": "KBudget Subscription"}

  def ensure_resource_group(self, name: str, location: str, tags: Dict[str, str]) -> Dict[str, Any]:
    self.calls.append(("ensure_resource_group", (name, location, dict(tags))))
    return {"name": name, "location": location}

  def deploy_template(self, deployment: TemplateDeployment) -> Dict[str, Any]:
    self.calls.append(("deploy_template", deployment))
    type_tag = next(item for item in ResourceType if self.names.deployment_name(item) == deployment.deployment_name)
    if type_tag in self.deploy_failures:
      raise self.deploy_failures[type_tag]
    self.seed_type(type_tag)
    outputs = dict(FAKE_OUTPUTS.get(type_tag, {}))
    self.deployments[deployment.deployment_name] = outputs
    return dict(outputs)

  def fetch_deployment_outputs(self, resource_group: str, deployment_name: str) -> Dict[str, Any]:
    self.calls.append(("fetch_deployment_outputs", deployment_name))
    return dict(self.deployments.get(deployment_name, {}))

  def create_child_resource(self, request: ChildResourceRequest) -> Dict[str, Any]:
    self.calls.append(("create_child_resource", request))
    if request.child_id in self.child_failures:
      raise self.child_failures[request.child_id]
    containers = RESOURCE_TYPES[ResourceType.CONTAINERS]
    key = (containers.provider_type, request.parent.names + (request.child_id,))
    if key in self.resources:
      raise AlreadyExists(f"Container '{request.child_id}' already exists.")
    self.resources[key] = shape_payload(containers.shape)
    return {"name": request.child_id, "partitionKeyPath": request.partition_key_path}

  def set_secret(self, vault_name: str, secret_name: str, value: str) -> None:
    self.calls.append(("set_secret", (vault_name, secret_name)))
    if secret_name in self.secret_failures:
      raise self.secret_failures[secret_name]
    self.secrets[(vault_name, secret_name)] = value
    secrets_spec = RESOURCE_TYPES[ResourceType.SECRETS]
    locator = ResourceLocator(self.names.resource_group, secrets_spec.provider_type, (vault_name, secret_name))
    self.seed(locator, shape_payload(secrets_spec.shape))

  def get_secret(self, vault_name: str, secret_name: str) -> Optional[str]:
    self.calls.append(("get_secret", (vault_name, secret_name)))
    return self.secrets.get((vault_name, secret_name))

  def show_resource(self, locator: ResourceLocator) -> Optional[Dict[str, Any]]:
    self.calls.append(("show_resource", locator))
    if locator.display_name in self.show_failures:
      raise self.show_failures[locator.display_name]
    payload = self.resources.get((locator.provider_type, locator.names))
    return dict(payload) if payload is not None else None


class RecordingSink:
  def __init__(self) -> None:
    self.payloads: List[AlertPayload] = []

  def notify(self, payload: AlertPayload) -> None:
    self.payloads.append(payload)


class SteppingClock:
  """Deterministic clock advancing one second per reading."""

  def __init__(self, start: Optional[datetime] = None) -> None:
    self.current = start or datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

  def __call__(self) -> datetime:
    value = self.current
    self.current += timedelta(seconds=1)
    return value


def write_template_store(root: Path) -> Path:
  for type_tag in ResourceType:
    spec = RESOURCE_TYPES[type_tag]
    template = root / spec.template_locator
    template.parent.mkdir(parents=True, exist_ok=True)
    template.write_text(json.dumps({"resources": []}), encoding="utf-8")
    for environment in Environment:
      (root / spec.parameter_locator(environment.value)).write_text(
        json.dumps({"parameters": {}}), encoding="utf-8"
      )
  return root


@pytest.fixture
def names() -> ResourceNames:
  return ResourceNames(project="kbudget", environment="dev")


@pytest.fixture
def gateway(names: ResourceNames) -> FakeGateway:
  return FakeGateway(names)


@pytest.fixture
def template_root(tmp_path: Path) -> Path:
  return write_template_store(tmp_path / "arm-templates")


@pytest.fixture
def settings(tmp_path: Path, template_root: Path) -> DeploymentSettings:
  return DeploymentSettings(
    project="kbudget",
    location="eastus",
    templates_root=template_root,
    output_dir=tmp_path / "deployment-results",
    log_dir=tmp_path / "logs",
  )


@pytest.fixture
def clock() -> SteppingClock:
  return SteppingClock()


@pytest.fixture
def sink() -> RecordingSink:
  return RecordingSink()


@pytest.fixture
def engine(gateway: FakeGateway, settings: DeploymentSettings, sink: RecordingSink, clock: SteppingClock) -> DeploymentEngine:
  return DeploymentEngine(gateway, settings, sink=sink, clock=clock, secret_factory=lambda length: "s" * length)


@pytest.fixture
def reset_logging():
  yield
  shutdown_logging()
  structlog.reset_defaults()
