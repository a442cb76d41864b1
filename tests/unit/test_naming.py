"""Unit tests for the naming convention."""
from kbudget_deploy.naming import ResourceNames
from kbudget_deploy.resource_types import RESOURCE_TYPES, ResourceType


def test_default_names():
  names = ResourceNames(project="kbudget", environment="dev")
  assert names.resource_group == "rg-kbudget-dev"
  assert names.key_vault == "kv-kbudget-dev"
  assert names.storage_account == "stkbudgetdev"
  assert names.cosmos_account == "cosmos-kbudget-dev"
  assert names.cosmos_database == "kbudget-db"
  assert names.web_app == "app-kbudget-dev"
  assert names.deployment_name(ResourceType.NETWORK) == "kbudget-network-dev"


def test_overrides():
  names = ResourceNames(project="kbudget", environment="prod", database_name="KBudgetDB", resource_group_override="rg-shared")
  assert names.resource_group == "rg-shared"
  assert names.cosmos_database == "KBudgetDB"


def test_length_limited_names():
  names = ResourceNames(project="kbudget-household-finance", environment="staging")
  assert len(names.key_vault) <= 24
  assert not names.key_vault.endswith("-")
  assert len(names.storage_account) <= 24
  assert names.storage_account.isalnum()


def test_secrets_locator_points_at_key_vault():
  names = ResourceNames(project="kbudget", environment="dev")
  locator = names.locator(RESOURCE_TYPES[ResourceType.SECRETS])
  assert locator.provider_type == "Microsoft.KeyVault/vaults"
  assert locator.names == ("kv-kbudget-dev",)


def test_child_locator_nests_under_sql_database():
  names = ResourceNames(project="kbudget", environment="dev")
  containers = RESOURCE_TYPES[ResourceType.CONTAINERS]
  parent = names.collection_parent(containers)
  child = names.child_locator(containers, containers.children[0])
  assert parent.provider_type == "Microsoft.DocumentDB/databaseAccounts/sqlDatabases"
  assert child.names == ("cosmos-kbudget-dev", "kbudget-db", "users")
  assert child.resource_id("sub").endswith(
    "/providers/Microsoft.DocumentDB/databaseAccounts/cosmos-kbudget-dev/sqlDatabases/kbudget-db/containers/users"
  )
