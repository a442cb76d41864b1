"""Assembles one deployment or validation run from its components.

prerequisites -> dependency-ordered deploy -> validation -> export -> alert
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

import structlog

from kbudget_deploy.alerts import AlertEmitter, AlertSink, LogAlertSink
from kbudget_deploy.config import DeploymentSettings
from kbudget_deploy.deployer import DependencyOrderedDeployer
from kbudget_deploy.errors import DeploymentError, RunLockHeld
from kbudget_deploy.exporter import ExportResult, ResultExporter
from kbudget_deploy.gateway import ProviderGateway
from kbudget_deploy.locking import RunLock
from kbudget_deploy.models import (
  DeploymentRequest,
  Environment,
  OverallStatus,
  RunReport,
  Severity,
  utc_now,
)
from kbudget_deploy.naming import ResourceNames
from kbudget_deploy.prerequisites import PrerequisiteValidator
from kbudget_deploy.resource_types import ResourceType, ordered_specs
from kbudget_deploy.steps import SecretFactory, generate_secret
from kbudget_deploy.templates import TemplateStore
from kbudget_deploy.validation import PostDeploymentValidator

log = structlog.get_logger(__name__)


def exit_code_for(status: OverallStatus) -> int:
  return 0 if status is OverallStatus.SUCCESS else 1


@dataclass
class RunResult:
  report: RunReport
  export: Optional[ExportResult] = None

  @property
  def exit_code(self) -> int:
    return exit_code_for(self.report.overall_status)


class DeploymentEngine:
  def __init__(
    self,
    gateway: ProviderGateway,
    settings: DeploymentSettings,
    *,
    sink: Optional[AlertSink] = None,
    clock: Callable[[], datetime] = utc_now,
    secret_factory: SecretFactory = generate_secret,
    log_file: Optional[Path] = None,
  ) -> None:
    self._gateway = gateway
    self._settings = settings
    self._clock = clock
    self._secret_factory = secret_factory
    self._log_file = log_file
    self._alerts = AlertEmitter(sink or LogAlertSink())
    self._exporter = ResultExporter(settings.output_dir)
    self._validator = PostDeploymentValidator(gateway, settings.names_for)

  def deploy(self, request: DeploymentRequest) -> RunResult:
    names = self._settings.names_for(request.environment)
    region = request.region or self._settings.location
    report = RunReport.start(request, region=region, resource_group=names.resource_group, started_at=self._clock())
    report.log_file = self._log_file
    log.info(
      "Deployment run started",
      environment=request.environment.value,
      resource_group=names.resource_group,
      region=region,
      requested=[type_tag.value for type_tag in report.requested_types],
      dry_run=request.dry_run,
    )

    lock = None if request.dry_run else RunLock(self._settings.output_dir, request.environment.value)
    try:
      if lock is not None:
        lock.acquire()
    except RunLockHeld as exc:
      log.error(exc.message, remediation=exc.remediation)
      report.fatal_error = exc
      report.finalize(self._clock())
      self._alerts.emit(report, Severity.CRITICAL)
      return RunResult(report=report)

    try:
      self._execute(request, report, names, region)
    finally:
      if lock is not None:
        lock.release()

    report.finalize(self._clock())
    export = self._exporter.export(report)
    if report.overall_status is OverallStatus.FAILED:
      self._alerts.emit(report, Severity.CRITICAL)
      log.error("Deployment run failed", environment=request.environment.value, minutes=report.duration_minutes)
    else:
      if export.degraded:
        self._alerts.emit(report, Severity.WARNING)
      log.info("Deployment run completed", success=True, minutes=report.duration_minutes)
    return RunResult(report=report, export=export)

  def _execute(self, request: DeploymentRequest, report: RunReport, names: ResourceNames, region: str) -> None:
    specs = ordered_specs(request.requested_types)
    prerequisites = PrerequisiteValidator(self._gateway, names)
    deployer = DependencyOrderedDeployer(
      self._gateway,
      names,
      TemplateStore(self._settings.templates_root),
      prerequisites,
      location=region,
      tags=self._settings.tags_for(request.environment),
      clock=self._clock,
      secret_factory=self._secret_factory,
    )
    try:
      prerequisite_report = prerequisites.validate(request, specs)
      report.prerequisite_failures = dict(prerequisite_report.failures)
      deployer.run(request, report, prerequisite_report)
      if request.dry_run:
        log.info("Dry run: skipping post-deployment validation")
      else:
        report.validation = self._validator.validate(request.environment, request.requested_types)
    except DeploymentError as exc:
      log.error(exc.message, code=exc.code, remediation=exc.remediation)
      report.fatal_error = exc
    except Exception as exc:  # pylint: disable=broad-except
      log.exception("Unhandled error during deployment run")
      report.fatal_error = exc

  def validate_only(self, environment: Environment, requested_types: Iterable[ResourceType]) -> RunResult:
    requested = frozenset(requested_types)
    names = self._settings.names_for(environment)
    request = DeploymentRequest(environment=environment, requested_types=requested)
    report = RunReport.start(
      request, region=self._settings.location, resource_group=names.resource_group, started_at=self._clock()
    )
    report.log_file = self._log_file
    try:
      PrerequisiteValidator(self._gateway, names).check_authentication()
      report.validation = self._validator.validate(environment, requested)
    except DeploymentError as exc:
      log.error(exc.message, code=exc.code, remediation=exc.remediation)
      report.fatal_error = exc
    except Exception as exc:  # pylint: disable=broad-except
      log.exception("Unhandled error during validation run")
      report.fatal_error = exc
    report.finalize(self._clock())
    if report.overall_status is OverallStatus.FAILED:
      self._alerts.emit(report, Severity.CRITICAL)
    return RunResult(report=report)
