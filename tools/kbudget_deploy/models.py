"""Data carried through a deployment run and persisted in its record."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from kbudget_deploy.errors import ConfigurationError, DeploymentError, MissingDependency, error_to_dict
from kbudget_deploy.gateway import REDACTED
from kbudget_deploy.resource_types import ResourceType, ordered_specs, parse_resource_types

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


def utc_now() -> datetime:
  return datetime.now(timezone.utc)


class Environment(str, Enum):
  DEV = "dev"
  STAGING = "staging"
  PROD = "prod"

  @classmethod
  def parse(cls, value: str) -> "Environment":
    try:
      return cls(str(value).strip().lower())
    except ValueError as exc:
      valid = ", ".join(item.value for item in cls)
      raise ConfigurationError(f"Invalid environment: {value}. Valid options: {valid}") from exc


class ProvisioningState(str, Enum):
  SUCCEEDED = "Succeeded"
  FAILED = "Failed"
  SKIPPED = "Skipped"
  WOULD_DEPLOY = "WouldDeploy"


class OverallStatus(str, Enum):
  SUCCESS = "Success"
  FAILED = "Failed"


class Severity(str, Enum):
  INFO = "Info"
  WARNING = "Warning"
  CRITICAL = "Critical"


@dataclass(frozen=True)
class DeploymentRequest:
  environment: Environment
  region: Optional[str] = None
  requested_types: FrozenSet[ResourceType] = frozenset(ResourceType)
  dry_run: bool = False
  skip_prerequisite_type: Optional[ResourceType] = None

  @classmethod
  def build(
    cls,
    environment: str,
    *,
    region: Optional[str] = None,
    resource_types: Optional[Iterable[str]] = None,
    dry_run: bool = False,
    skip_prerequisite_type: Optional[str] = None,
  ) -> "DeploymentRequest":
    skip_type = None
    if skip_prerequisite_type:
      skip_types = parse_resource_types([skip_prerequisite_type])
      if len(skip_types) != 1:
        raise ConfigurationError(
          f"--skip-prerequisite-type expects exactly one resource type, got '{skip_prerequisite_type}'."
        )
      (skip_type,) = skip_types
    return cls(
      environment=Environment.parse(environment),
      region=region,
      requested_types=parse_resource_types(resource_types),
      dry_run=dry_run,
      skip_prerequisite_type=skip_type,
    )

  @property
  def ordered_types(self) -> List[ResourceType]:
    return [spec.type_tag for spec in ordered_specs(self.requested_types)]


def _redact(outputs: Dict[str, Any], secret_names: Iterable[str]) -> Dict[str, Any]:
  hidden = set(secret_names)
  return {key: (REDACTED if key in hidden else value) for key, value in outputs.items()}


def _iso(moment: Optional[datetime]) -> Optional[str]:
  return moment.isoformat() if moment else None


@dataclass(frozen=True)
class ChildDeploymentOutcome:
  parent_type: ResourceType
  child_id: str
  provisioning_state: ProvisioningState
  started_at: datetime
  finished_at: datetime
  outputs: Dict[str, Any] = field(default_factory=dict)
  error: Optional[DeploymentError] = None

  @property
  def key(self) -> str:
    return f"{self.parent_type.value}/{self.child_id}"

  def to_dict(self) -> Dict[str, Any]:
    return {
      "parentTypeTag": self.parent_type.value,
      "childId": self.child_id,
      "provisioningState": self.provisioning_state.value,
      "outputs": dict(self.outputs),
      "startedAt": _iso(self.started_at),
      "finishedAt": _iso(self.finished_at),
      "error": error_to_dict(self.error),
    }


@dataclass(frozen=True)
class DeploymentOutcome:
  type_tag: ResourceType
  provisioning_state: ProvisioningState
  started_at: datetime
  finished_at: datetime
  outputs: Dict[str, Any] = field(default_factory=dict)
  error: Optional[DeploymentError] = None
  children: Dict[str, ChildDeploymentOutcome] = field(default_factory=dict)
  secret_outputs: FrozenSet[str] = frozenset()

  @property
  def duration_seconds(self) -> float:
    return (self.finished_at - self.started_at).total_seconds()

  @property
  def is_failure(self) -> bool:
    return self.provisioning_state is ProvisioningState.FAILED or self.error is not None

  def to_dict(self) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
      "typeTag": self.type_tag.value,
      "provisioningState": self.provisioning_state.value,
      "outputs": _redact(self.outputs, self.secret_outputs),
      "startedAt": _iso(self.started_at),
      "finishedAt": _iso(self.finished_at),
      "durationSeconds": round(self.duration_seconds, 3),
      "error": error_to_dict(self.error),
    }
    if self.children:
      payload["children"] = [child.to_dict() for child in self.children.values()]
    return payload


@dataclass(frozen=True)
class ValidationVerdict:
  type_tag: str
  exists: bool
  live_shape_matches_expected: bool
  error: Optional[str] = None
  mismatches: Tuple[str, ...] = ()

  @property
  def passed(self) -> bool:
    return self.exists and self.live_shape_matches_expected and self.error is None

  def to_dict(self) -> Dict[str, Any]:
    return {
      "typeTag": self.type_tag,
      "exists": self.exists,
      "liveShapeMatchesExpected": self.live_shape_matches_expected,
      "passed": self.passed,
      "mismatches": list(self.mismatches),
      "error": self.error,
    }


@dataclass
class ValidationResult:
  verdicts: Dict[str, ValidationVerdict] = field(default_factory=dict)

  @property
  def overall_status(self) -> OverallStatus:
    if all(verdict.passed for verdict in self.verdicts.values()):
      return OverallStatus.SUCCESS
    return OverallStatus.FAILED

  @property
  def failed(self) -> List[ValidationVerdict]:
    return [verdict for verdict in self.verdicts.values() if not verdict.passed]

  def to_dict(self) -> Dict[str, Any]:
    return {
      "overallStatus": self.overall_status.value,
      "verdicts": [verdict.to_dict() for verdict in self.verdicts.values()],
    }


@dataclass
class RunReport:
  environment: Environment
  region: str
  resource_group: str
  requested_types: List[ResourceType]
  dry_run: bool
  started_at: datetime
  finished_at: Optional[datetime] = None
  outcomes: List[DeploymentOutcome] = field(default_factory=list)
  prerequisite_failures: Dict[ResourceType, MissingDependency] = field(default_factory=dict)
  validation: Optional[ValidationResult] = None
  fatal_error: Optional[BaseException] = None
  log_file: Optional[Path] = None

  @classmethod
  def start(cls, request: DeploymentRequest, *, region: str, resource_group: str, started_at: datetime) -> "RunReport":
    return cls(
      environment=request.environment,
      region=region,
      resource_group=resource_group,
      requested_types=request.ordered_types,
      dry_run=request.dry_run,
      started_at=started_at,
    )

  @property
  def timestamp(self) -> str:
    return self.started_at.strftime(TIMESTAMP_FORMAT)

  def record(self, outcome: DeploymentOutcome) -> None:
    if self.finished_at is not None:
      raise RuntimeError("Cannot record outcomes on a finalized run report.")
    self.outcomes.append(outcome)

  def outcome_for(self, type_tag: ResourceType) -> Optional[DeploymentOutcome]:
    for outcome in self.outcomes:
      if outcome.type_tag is type_tag:
        return outcome
    return None

  def finalize(self, finished_at: datetime) -> None:
    if self.finished_at is None:
      self.finished_at = finished_at

  @property
  def duration_minutes(self) -> float:
    end = self.finished_at or self.started_at
    return round((end - self.started_at).total_seconds() / 60.0, 2)

  @property
  def overall_status(self) -> OverallStatus:
    if self.fatal_error is not None or self.prerequisite_failures:
      return OverallStatus.FAILED
    if any(outcome.is_failure for outcome in self.outcomes):
      return OverallStatus.FAILED
    if self.validation is not None and self.validation.overall_status is OverallStatus.FAILED:
      return OverallStatus.FAILED
    return OverallStatus.SUCCESS

  def failed_resources(self) -> List[Tuple[str, str]]:
    """(type-tag, error) pairs for everything that went wrong, in rank order."""
    failures: List[Tuple[str, str]] = []
    seen: Set[str] = set()

    def add(tag: str, message: str) -> None:
      if tag not in seen:
        seen.add(tag)
        failures.append((tag, message))

    for outcome in self.outcomes:
      for child in outcome.children.values():
        if child.provisioning_state is ProvisioningState.FAILED:
          add(child.key, child.error.message if child.error else "Failed")
      if outcome.is_failure:
        add(outcome.type_tag.value, outcome.error.message if outcome.error else outcome.provisioning_state.value)
    for type_tag, failure in self.prerequisite_failures.items():
      add(type_tag.value, failure.message)
    if self.validation is not None:
      for verdict in self.validation.failed:
        add(verdict.type_tag, verdict.error or "; ".join(verdict.mismatches) or "Resource not found")
    if self.fatal_error is not None:
      add("run", str(self.fatal_error))
    return failures

  def to_dict(self) -> Dict[str, Any]:
    return {
      "environment": self.environment.value,
      "region": self.region,
      "timestamp": _iso(self.started_at),
      "finishedAt": _iso(self.finished_at),
      "durationMinutes": self.duration_minutes,
      "resourceGroupName": self.resource_group,
      "requestedTypes": [type_tag.value for type_tag in self.requested_types],
      "dryRun": self.dry_run,
      "outcomes": [outcome.to_dict() for outcome in self.outcomes],
      "prerequisiteFailures": [
        dict(error.to_dict(), typeTag=type_tag.value) for type_tag, error in self.prerequisite_failures.items()
      ],
      "validation": self.validation.to_dict() if self.validation else None,
      "fatalError": error_to_dict(self.fatal_error),
      "logFile": str(self.log_file) if self.log_file else None,
      "overallStatus": self.overall_status.value,
    }


@dataclass(frozen=True)
class FailedResource:
  type_tag: str
  error: str


@dataclass(frozen=True)
class AlertPayload:
  timestamp: datetime
  environment: Environment
  overall_status: OverallStatus
  severity: Severity
  failed_resource_types: Tuple[FailedResource, ...] = ()

  def to_dict(self) -> Dict[str, Any]:
    return {
      "timestamp": _iso(self.timestamp),
      "environment": self.environment.value,
      "overallStatus": self.overall_status.value,
      "severity": self.severity.value,
      "failedResourceTypes": [
        {"typeTag": item.type_tag, "error": item.error} for item in self.failed_resource_types
      ],
    }
