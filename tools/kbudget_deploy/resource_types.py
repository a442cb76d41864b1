"""Static table of deployable resource types.

The table is the single source of truth for deployment order: every type carries
an explicit rank and execution order is derived by sorting on it.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from kbudget_deploy.errors import ConfigurationError

ALL_TYPES_SENTINEL = "all"


class ResourceType(str, Enum):
  MONITORING = "monitoring"
  NETWORK = "network"
  KEYVAULT = "keyvault"
  SECRETS = "secrets"
  STORAGE = "storage"
  DATABASE = "database"
  CONTAINERS = "containers"
  COMPUTE = "compute"


class StepKind(str, Enum):
  TEMPLATE = "template"
  GENERATED_SECRETS = "generated-secrets"
  CHILD_COLLECTION = "child-collection"


@dataclass(frozen=True)
class ParameterBinding:
  parameter: str
  source: ResourceType
  output: str
  required: bool = True

  @classmethod
  def parse(cls, parameter: str, expression: str, *, required: bool = True) -> "ParameterBinding":
    if not isinstance(expression, str) or "." not in expression:
      raise ConfigurationError(f"Parameter binding '{expression}' for '{parameter}' is invalid.")
    source, output = expression.split(".", 1)
    try:
      source_type = ResourceType(source)
    except ValueError as exc:
      raise ConfigurationError(
        f"Parameter binding '{parameter}' references unknown resource type '{source}'."
      ) from exc
    return cls(parameter=parameter, source=source_type, output=output, required=required)


@dataclass(frozen=True)
class ShapeCheck:
  attribute: str
  expected: Any


@dataclass(frozen=True)
class GeneratedSecret:
  output: str
  secret_name: str
  length: int = 48


@dataclass(frozen=True)
class ChildSpec:
  child_id: str
  partition_key_path: str


@dataclass(frozen=True)
class ResourceTypeSpec:
  type_tag: ResourceType
  rank: int
  kind: StepKind
  provider_type: str
  description: str = ""
  prerequisites: Tuple[ResourceType, ...] = ()
  bindings: Tuple[ParameterBinding, ...] = ()
  secret_outputs: Tuple[Tuple[str, str], ...] = ()
  generated_secrets: Tuple[GeneratedSecret, ...] = ()
  children: Tuple[ChildSpec, ...] = ()
  shape: Tuple[ShapeCheck, ...] = ()

  @property
  def has_children(self) -> bool:
    return bool(self.children)

  @property
  def child_ids(self) -> List[str]:
    return [child.child_id for child in self.children]

  @property
  def template_locator(self) -> str:
    return f"{self.type_tag.value}/azuredeploy.json"

  def parameter_locator(self, environment: str) -> str:
    return f"{self.type_tag.value}/parameters.{environment}.json"

  @property
  def secret_output_names(self) -> Dict[str, str]:
    """Output name -> Key Vault secret name for every output that is a secret."""
    names = {secret.output: secret.secret_name for secret in self.generated_secrets}
    names.update(dict(self.secret_outputs))
    return names

  def dependencies(self) -> Set[ResourceType]:
    deps = set(self.prerequisites)
    deps.update(binding.source for binding in self.bindings if binding.required)
    return deps


def _bind(parameter: str, expression: str, *, required: bool = True) -> ParameterBinding:
  return ParameterBinding.parse(parameter, expression, required=required)


USER_PARTITION = "/userId"

RESOURCE_TYPES: Dict[ResourceType, ResourceTypeSpec] = {
  spec.type_tag: spec
  for spec in (
    ResourceTypeSpec(
      type_tag=ResourceType.MONITORING,
      rank=10,
      kind=StepKind.TEMPLATE,
      provider_type="Microsoft.OperationalInsights/workspaces",
      description="Log Analytics workspace and Application Insights",
      shape=(ShapeCheck("properties.sku.name", "PerGB2018"),),
    ),
    ResourceTypeSpec(
      type_tag=ResourceType.NETWORK,
      rank=20,
      kind=StepKind.TEMPLATE,
      provider_type="Microsoft.Network/virtualNetworks",
      description="Virtual network and subnets",
      bindings=(_bind("diagnosticsWorkspaceId", "monitoring.workspaceId", required=False),),
      shape=(ShapeCheck("properties.provisioningState", "Succeeded"),),
    ),
    ResourceTypeSpec(
      type_tag=ResourceType.KEYVAULT,
      rank=30,
      kind=StepKind.TEMPLATE,
      provider_type="Microsoft.KeyVault/vaults",
      description="Key Vault holding application secrets",
      bindings=(_bind("diagnosticsWorkspaceId", "monitoring.workspaceId", required=False),),
      shape=(ShapeCheck("properties.sku.name", "standard"),),
    ),
    ResourceTypeSpec(
      type_tag=ResourceType.SECRETS,
      rank=40,
      kind=StepKind.GENERATED_SECRETS,
      provider_type="Microsoft.KeyVault/vaults/secrets",
      description="Generated application secrets",
      prerequisites=(ResourceType.KEYVAULT,),
      generated_secrets=(
        GeneratedSecret(output="jwtSigningKey", secret_name="jwt-signing-key", length=64),
        GeneratedSecret(output="sessionSecret", secret_name="session-secret"),
      ),
      shape=(ShapeCheck("properties.attributes.enabled", True),),
    ),
    ResourceTypeSpec(
      type_tag=ResourceType.STORAGE,
      rank=50,
      kind=StepKind.TEMPLATE,
      provider_type="Microsoft.Storage/storageAccounts",
      description="Storage account for receipts and exports",
      prerequisites=(ResourceType.KEYVAULT,),
      secret_outputs=(("connectionString", "storage-connection-string"),),
      shape=(ShapeCheck("kind", "StorageV2"),),
    ),
    ResourceTypeSpec(
      type_tag=ResourceType.DATABASE,
      rank=60,
      kind=StepKind.TEMPLATE,
      provider_type="Microsoft.DocumentDB/databaseAccounts",
      description="Cosmos DB account and SQL database",
      prerequisites=(ResourceType.KEYVAULT,),
      secret_outputs=(("primaryKey", "cosmos-primary-key"),),
      shape=(ShapeCheck("kind", "GlobalDocumentDB"),),
    ),
    ResourceTypeSpec(
      type_tag=ResourceType.CONTAINERS,
      rank=70,
      kind=StepKind.CHILD_COLLECTION,
      provider_type="Microsoft.DocumentDB/databaseAccounts/sqlDatabases/containers",
      description="Cosmos DB containers",
      prerequisites=(ResourceType.DATABASE,),
      children=(
        ChildSpec("users", USER_PARTITION),
        ChildSpec("budgets", USER_PARTITION),
        ChildSpec("envelopes", USER_PARTITION),
        ChildSpec("transactions", USER_PARTITION),
      ),
      shape=(ShapeCheck("properties.resource.partitionKey.paths", [USER_PARTITION]),),
    ),
    ResourceTypeSpec(
      type_tag=ResourceType.COMPUTE,
      rank=80,
      kind=StepKind.TEMPLATE,
      provider_type="Microsoft.Web/sites",
      description="App Service plan and web app",
      prerequisites=(ResourceType.KEYVAULT,),
      bindings=(
        _bind("logAnalyticsWorkspaceId", "monitoring.workspaceId"),
        _bind("appInsightsConnectionString", "monitoring.appInsightsConnectionString"),
        _bind("keyVaultUri", "keyvault.vaultUri"),
        _bind("cosmosEndpoint", "database.accountEndpoint"),
        _bind("jwtSigningKey", "secrets.jwtSigningKey"),
      ),
      shape=(ShapeCheck("properties.state", "Running"),),
    ),
  )
}


def validate_registry(registry: Dict[ResourceType, ResourceTypeSpec]) -> None:
  seen_ranks: Dict[int, ResourceType] = {}
  for type_tag, spec in registry.items():
    if spec.type_tag is not type_tag:
      raise ConfigurationError(f"Resource table key '{type_tag.value}' does not match its spec.")
    other = seen_ranks.get(spec.rank)
    if other is not None:
      raise ConfigurationError(
        f"Resource types '{other.value}' and '{type_tag.value}' share rank {spec.rank}."
      )
    seen_ranks[spec.rank] = type_tag
    if spec.kind is StepKind.CHILD_COLLECTION and not spec.children:
      raise ConfigurationError(f"Collection type '{type_tag.value}' declares no children.")

    upstream = set(spec.prerequisites) | {binding.source for binding in spec.bindings}
    for dependency in upstream:
      dependency_spec = registry.get(dependency)
      if dependency_spec is None:
        raise ConfigurationError(
          f"Resource type '{type_tag.value}' depends on unknown type '{dependency.value}'."
        )
      if dependency_spec.rank >= spec.rank:
        raise ConfigurationError(
          f"Resource type '{type_tag.value}' (rank {spec.rank}) depends on "
          f"'{dependency.value}' (rank {dependency_spec.rank}) which does not deploy first."
        )


validate_registry(RESOURCE_TYPES)


def parse_resource_types(values: Optional[Iterable[str]]) -> FrozenSet[ResourceType]:
  """Turn CLI values (tags, comma lists or ``all``) into a set of type-tags."""
  if not values:
    return frozenset(RESOURCE_TYPES)

  selected: Set[ResourceType] = set()
  for value in values:
    for token in str(value).split(","):
      token = token.strip().lower()
      if not token:
        continue
      if token == ALL_TYPES_SENTINEL:
        return frozenset(RESOURCE_TYPES)
      try:
        selected.add(ResourceType(token))
      except ValueError as exc:
        valid = ", ".join(item.value for item in ResourceType)
        raise ConfigurationError(
          f"Unknown resource type '{token}'. Valid options: {valid}, {ALL_TYPES_SENTINEL}"
        ) from exc
  if not selected:
    raise ConfigurationError("No resource types were selected.")
  return frozenset(selected)


def ordered_specs(
  requested: Iterable[ResourceType],
  registry: Optional[Dict[ResourceType, ResourceTypeSpec]] = None,
) -> List[ResourceTypeSpec]:
  table = RESOURCE_TYPES if registry is None else registry
  return sorted((table[type_tag] for type_tag in set(requested)), key=lambda spec: spec.rank)
