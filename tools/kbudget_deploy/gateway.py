"""Provider gateway: the boundary between the engine and Azure.

``AzureCliGateway`` drives the Azure CLI the same way a human operator would,
one blocking command at a time, and turns CLI failures into typed errors.
"""
from __future__ import annotations

import json
import re
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple

from kbudget_deploy.errors import (
  AlreadyExists,
  AuthenticationRequired,
  DeploymentError,
  ProviderError,
  ProvisioningFailed,
  QuotaExceeded,
  ResourceNotFound,
)

REDACTED = "***"


@dataclass(frozen=True)
class ResourceLocator:
  resource_group: str
  provider_type: str
  names: Tuple[str, ...]

  @property
  def display_name(self) -> str:
    return "/".join(self.names)

  def resource_id(self, subscription_id: str) -> str:
    namespace, *type_segments = self.provider_type.split("/")
    if len(type_segments) != len(self.names):
      raise ValueError(
        f"Resource type '{self.provider_type}' needs {len(type_segments)} name segments, "
        f"got {len(self.names)}."
      )
    path = "/".join(f"{segment}/{name}" for segment, name in zip(type_segments, self.names))
    return f"/subscriptions/{subscription_id}/resourceGroups/{self.resource_group}/providers/{namespace}/{path}"


@dataclass(frozen=True)
class TemplateDeployment:
  resource_group: str
  deployment_name: str
  template_file: Path
  parameter_file: Optional[Path]
  overrides: Dict[str, Any] = field(default_factory=dict)
  secret_parameters: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class ChildResourceRequest:
  parent: ResourceLocator
  child_id: str
  partition_key_path: str


class ProviderGateway(Protocol):
  def current_account(self) -> Dict[str, Any]: ...

  def ensure_resource_group(self, name: str, location: str, tags: Dict[str, str]) -> Dict[str, Any]: ...

  def deploy_template(self, deployment: TemplateDeployment) -> Dict[str, Any]: ...

  def fetch_deployment_outputs(self, resource_group: str, deployment_name: str) -> Dict[str, Any]: ...

  def create_child_resource(self, request: ChildResourceRequest) -> Dict[str, Any]: ...

  def set_secret(self, vault_name: str, secret_name: str, value: str) -> None: ...

  def get_secret(self, vault_name: str, secret_name: str) -> Optional[str]: ...

  def show_resource(self, locator: ResourceLocator) -> Optional[Dict[str, Any]]: ...


_AUTH_PATTERNS = (
  re.compile(r"az login", re.IGNORECASE),
  re.compile(r"\bAADSTS\d+", re.IGNORECASE),
  re.compile(r"refresh token has expired", re.IGNORECASE),
)
_QUOTA_PATTERNS = (
  re.compile(r"\bQuotaExceeded\b"),
  re.compile(r"quota\b.*\bexceeded", re.IGNORECASE),
)
_CONFLICT_PATTERNS = (
  re.compile(r"already exists", re.IGNORECASE),
  re.compile(r"\(Conflict\)"),
)
_NOT_FOUND_PATTERNS = (
  re.compile(r"\b(ResourceNotFound|ResourceGroupNotFound|SecretNotFound|DeploymentNotFound|NotFound)\b"),
  re.compile(r"could not be found", re.IGNORECASE),
)


def classify_cli_failure(stderr: str, summary: str) -> DeploymentError:
  """Map Azure CLI stderr to exactly one error category; unknown text is fatal."""
  text = stderr or ""
  first_line = text.strip().splitlines()[0] if text.strip() else "no error output"
  message = f"{summary}: {first_line}"
  if any(pattern.search(text) for pattern in _AUTH_PATTERNS):
    return AuthenticationRequired(message)
  if any(pattern.search(text) for pattern in _QUOTA_PATTERNS):
    return QuotaExceeded(message, details=text)
  if any(pattern.search(text) for pattern in _CONFLICT_PATTERNS):
    return AlreadyExists(message, details=text)
  if any(pattern.search(text) for pattern in _NOT_FOUND_PATTERNS):
    return ResourceNotFound(message, details=text)
  return ProvisioningFailed(message, details=text)


def unwrap_outputs(outputs: Optional[Dict[str, Any]]) -> Dict[str, Any]:
  resolved: Dict[str, Any] = {}
  for key, value in (outputs or {}).items():
    if isinstance(value, dict) and "value" in value:
      resolved[key] = value["value"]
    else:
      resolved[key] = value
  return resolved


def format_command(command: Iterable[str], redact: Sequence[str] = ()) -> str:
  rendered: List[str] = []
  for arg in command:
    for secret in redact:
      if secret and secret in arg:
        arg = arg.replace(secret, REDACTED)
    rendered.append(json.dumps(arg))
  return " ".join(rendered)


Runner = Callable[..., "subprocess.CompletedProcess[str]"]


class AzureCliGateway:
  def __init__(self, az_cli: str = "az", *, echo: bool = False, runner: Optional[Runner] = None) -> None:
    self._az_cli = az_cli
    self._echo = echo
    self._runner = runner or subprocess.run
    self._subscription_id: Optional[str] = None

  def _invoke(self, args: List[str], *, summary: str, redact: Sequence[str] = ()) -> Any:
    command = [self._az_cli, *args, "--output", "json"]
    if self._echo:
      print(format_command(command, redact), file=sys.stderr)
    try:
      completed = self._runner(command, check=False, capture_output=True, text=True)
    except FileNotFoundError as exc:
      raise ProvisioningFailed(
        f"Command '{self._az_cli}' could not be executed ({exc.strerror or 'file not found'}). "
        "Ensure it is installed and available on PATH."
      ) from exc
    if completed.returncode != 0:
      raise classify_cli_failure(completed.stderr, summary)
    stdout = (completed.stdout or "").strip()
    if not stdout:
      return None
    try:
      return json.loads(stdout)
    except json.JSONDecodeError as exc:
      raise ProvisioningFailed(f"{summary}: Azure CLI returned invalid JSON.", details=stdout) from exc

  def current_account(self) -> Dict[str, Any]:
    try:
      account = self._invoke(["account", "show"], summary="Reading the signed-in account")
    except ProviderError as exc:
      raise AuthenticationRequired(f"Not logged in to Azure ({exc.message}).") from exc
    if not isinstance(account, dict) or not account.get("id"):
      raise AuthenticationRequired("Azure CLI returned no active subscription.")
    self._subscription_id = account["id"]
    return account

  def _subscription(self) -> str:
    if self._subscription_id is None:
      self.current_account()
    return self._subscription_id  # type: ignore[return-value]

  def ensure_resource_group(self, name: str, location: str, tags: Dict[str, str]) -> Dict[str, Any]:
    args = ["group", "create", "--name", name, "--location", location]
    if tags:
      args.append("--tags")
      args.extend(f"{key}={value}" for key, value in sorted(tags.items()))
    return self._invoke(args, summary=f"Creating resource group '{name}'") or {}

  def deploy_template(self, deployment: TemplateDeployment) -> Dict[str, Any]:
    args = [
      "deployment",
      "group",
      "create",
      "--resource-group",
      deployment.resource_group,
      "--name",
      deployment.deployment_name,
      "--template-file",
      str(deployment.template_file),
    ]
    if deployment.parameter_file:
      args.extend(["--parameters", f"@{deployment.parameter_file}"])

    redact: List[str] = []
    for param_name, value in deployment.overrides.items():
      serialized = json.dumps(value)
      args.extend(["--parameters", f"{param_name}={serialized}"])
      if param_name in deployment.secret_parameters:
        redact.append(serialized)

    payload = self._invoke(
      args,
      summary=f"Deployment '{deployment.deployment_name}' failed",
      redact=redact,
    ) or {}
    properties = payload.get("properties", {}) or {}
    state = properties.get("provisioningState")
    if state and state != "Succeeded":
      raise ProvisioningFailed(
        f"Deployment '{deployment.deployment_name}' finished in state '{state}'."
      )
    return unwrap_outputs(properties.get("outputs"))

  def fetch_deployment_outputs(self, resource_group: str, deployment_name: str) -> Dict[str, Any]:
    try:
      payload = self._invoke(
        ["deployment", "group", "show", "--resource-group", resource_group, "--name", deployment_name],
        summary=f"Reading deployment '{deployment_name}'",
      ) or {}
    except ResourceNotFound:
      return {}
    return unwrap_outputs((payload.get("properties", {}) or {}).get("outputs"))

  def create_child_resource(self, request: ChildResourceRequest) -> Dict[str, Any]:
    account_name, database_name = request.parent.names[0], request.parent.names[-1]
    payload = self._invoke(
      [
        "cosmosdb",
        "sql",
        "container",
        "create",
        "--resource-group",
        request.parent.resource_group,
        "--account-name",
        account_name,
        "--database-name",
        database_name,
        "--name",
        request.child_id,
        "--partition-key-path",
        request.partition_key_path,
      ],
      summary=f"Creating container '{request.child_id}'",
    ) or {}
    return {
      "id": payload.get("id"),
      "name": payload.get("name", request.child_id),
      "partitionKeyPath": request.partition_key_path,
    }

  def set_secret(self, vault_name: str, secret_name: str, value: str) -> None:
    self._invoke(
      ["keyvault", "secret", "set", "--vault-name", vault_name, "--name", secret_name, "--value", value],
      summary=f"Storing secret '{secret_name}' in '{vault_name}'",
      redact=[value],
    )

  def get_secret(self, vault_name: str, secret_name: str) -> Optional[str]:
    try:
      payload = self._invoke(
        ["keyvault", "secret", "show", "--vault-name", vault_name, "--name", secret_name],
        summary=f"Reading secret '{secret_name}' from '{vault_name}'",
      )
    except ResourceNotFound:
      return None
    if not isinstance(payload, dict):
      return None
    return payload.get("value")

  def show_resource(self, locator: ResourceLocator) -> Optional[Dict[str, Any]]:
    resource_id = locator.resource_id(self._subscription())
    try:
      payload = self._invoke(
        ["resource", "show", "--ids", resource_id],
        summary=f"Reading {locator.provider_type} '{locator.display_name}'",
      )
    except ResourceNotFound:
      return None
    return payload if isinstance(payload, dict) else None
