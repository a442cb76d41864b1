"""Unit tests for child-collection deployment."""
import pytest

from kbudget_deploy.children import SubResourceDeployer
from kbudget_deploy.errors import AuthenticationRequired, MissingDependency, ProvisioningFailed, QuotaExceeded
from kbudget_deploy.models import ProvisioningState
from kbudget_deploy.prerequisites import PrerequisiteValidator
from kbudget_deploy.resource_types import RESOURCE_TYPES, ResourceType

CONTAINERS = RESOURCE_TYPES[ResourceType.CONTAINERS]


@pytest.fixture
def sub_deployer(gateway, names, clock):
  return SubResourceDeployer(gateway, PrerequisiteValidator(gateway, names), names, clock=clock)


def states(results):
  return {child_id: outcome.provisioning_state for child_id, outcome in results.items()}


def test_all_children_created(gateway, sub_deployer):
  gateway.seed_type(ResourceType.DATABASE)
  results = sub_deployer.run_children(CONTAINERS)
  assert list(results) == ["users", "budgets", "envelopes", "transactions"]
  assert set(states(results).values()) == {ProvisioningState.SUCCEEDED}
  assert results["users"].outputs["partitionKeyPath"] == "/userId"
  assert results["users"].key == "containers/users"


def test_rerun_skips_existing_children(gateway, sub_deployer):
  gateway.seed_type(ResourceType.DATABASE)
  sub_deployer.run_children(CONTAINERS)
  results = sub_deployer.run_children(CONTAINERS)
  assert set(states(results).values()) == {ProvisioningState.SKIPPED}
  assert all(outcome.error is None for outcome in results.values())


def test_already_exists_then_quota_aborts_loop(gateway, sub_deployer):
  gateway.seed_type(ResourceType.DATABASE)
  gateway.seed_child("users")
  gateway.child_failures["budgets"] = QuotaExceeded("Request rate quota exceeded")
  results = sub_deployer.run_children(CONTAINERS)
  assert states(results) == {"users": ProvisioningState.SKIPPED, "budgets": ProvisioningState.FAILED}
  assert isinstance(results["budgets"].error, QuotaExceeded)
  attempted = [request.child_id for request in gateway.calls_named("create_child_resource")]
  assert attempted == ["users", "budgets"]


def test_other_failure_aborts_loop(gateway, sub_deployer):
  gateway.seed_type(ResourceType.DATABASE)
  gateway.child_failures["envelopes"] = ProvisioningFailed("Bad request")
  results = sub_deployer.run_children(CONTAINERS)
  assert states(results)["envelopes"] is ProvisioningState.FAILED
  assert "transactions" not in results


def test_expired_login_keeps_partial_results(gateway, sub_deployer):
  gateway.seed_type(ResourceType.DATABASE)
  gateway.child_failures["budgets"] = AuthenticationRequired("The access token has expired.")
  with pytest.raises(AuthenticationRequired) as excinfo:
    sub_deployer.run_children(CONTAINERS)
  partial = excinfo.value.partial_children
  assert states(partial) == {"users": ProvisioningState.SUCCEEDED, "budgets": ProvisioningState.FAILED}
  assert partial["budgets"].error is excinfo.value


def test_missing_parent_stops_before_any_child(gateway, sub_deployer):
  with pytest.raises(MissingDependency):
    sub_deployer.run_children(CONTAINERS)
  assert gateway.calls_named("create_child_resource") == []


def test_skip_prerequisite_type_bypasses_parent_check(gateway, sub_deployer):
  sub_deployer.run_children(CONTAINERS, skip_prerequisite_type=ResourceType.CONTAINERS)
  assert gateway.calls_named("show_resource") == []
  assert len(gateway.calls_named("create_child_resource")) == 4


def test_plan_children(sub_deployer):
  planned = sub_deployer.plan_children(CONTAINERS)
  assert set(states(planned).values()) == {ProvisioningState.WOULD_DEPLOY}
