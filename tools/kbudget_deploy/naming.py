"""Resource naming convention for one project environment."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional

from kbudget_deploy.gateway import ResourceLocator
from kbudget_deploy.resource_types import (
  RESOURCE_TYPES,
  ChildSpec,
  GeneratedSecret,
  ResourceType,
  ResourceTypeSpec,
  StepKind,
)

# Key Vault and storage account names are capped at 24 characters by Azure.
_MAX_VAULT_NAME = 24
_MAX_STORAGE_NAME = 24


@dataclass(frozen=True)
class ResourceNames:
  project: str
  environment: str
  database_name: Optional[str] = None
  resource_group_override: Optional[str] = None

  @property
  def resource_group(self) -> str:
    return self.resource_group_override or f"rg-{self.project}-{self.environment}"

  @property
  def log_workspace(self) -> str:
    return f"log-{self.project}-{self.environment}"

  @property
  def virtual_network(self) -> str:
    return f"vnet-{self.project}-{self.environment}"

  @property
  def key_vault(self) -> str:
    return f"kv-{self.project}-{self.environment}"[:_MAX_VAULT_NAME].rstrip("-")

  @property
  def storage_account(self) -> str:
    compact = re.sub(r"[^a-z0-9]", "", f"st{self.project}{self.environment}".lower())
    return compact[:_MAX_STORAGE_NAME]

  @property
  def cosmos_account(self) -> str:
    return f"cosmos-{self.project}-{self.environment}"

  @property
  def cosmos_database(self) -> str:
    return self.database_name or f"{self.project}-db"

  @property
  def web_app(self) -> str:
    return f"app-{self.project}-{self.environment}"

  def deployment_name(self, type_tag: ResourceType) -> str:
    return f"{self.project}-{type_tag.value}-{self.environment}"

  def primary_name(self, type_tag: ResourceType) -> str:
    names: Dict[ResourceType, str] = {
      ResourceType.MONITORING: self.log_workspace,
      ResourceType.NETWORK: self.virtual_network,
      ResourceType.KEYVAULT: self.key_vault,
      ResourceType.SECRETS: self.key_vault,
      ResourceType.STORAGE: self.storage_account,
      ResourceType.DATABASE: self.cosmos_account,
      ResourceType.CONTAINERS: self.cosmos_account,
      ResourceType.COMPUTE: self.web_app,
    }
    return names[type_tag]

  def locator(self, spec: ResourceTypeSpec) -> ResourceLocator:
    """Locator of the resource whose existence proves ``spec`` was deployed."""
    if spec.kind is StepKind.GENERATED_SECRETS:
      return self.locator(RESOURCE_TYPES[ResourceType.KEYVAULT])
    if spec.has_children:
      return self.collection_parent(spec)
    return ResourceLocator(self.resource_group, spec.provider_type, (self.primary_name(spec.type_tag),))

  def secret_locator(self, secret: GeneratedSecret) -> ResourceLocator:
    return ResourceLocator(
      self.resource_group,
      RESOURCE_TYPES[ResourceType.SECRETS].provider_type,
      (self.key_vault, secret.secret_name),
    )

  def collection_parent(self, spec: ResourceTypeSpec) -> ResourceLocator:
    parent_type = spec.provider_type.rsplit("/", 1)[0]
    return ResourceLocator(self.resource_group, parent_type, (self.cosmos_account, self.cosmos_database))

  def child_locator(self, spec: ResourceTypeSpec, child: ChildSpec) -> ResourceLocator:
    parent = self.collection_parent(spec)
    return ResourceLocator(self.resource_group, spec.provider_type, parent.names + (child.child_id,))
