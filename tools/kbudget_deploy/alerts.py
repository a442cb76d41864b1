from __future__ import annotations

import json
from typing import Protocol

import structlog

from kbudget_deploy.models import AlertPayload, FailedResource, RunReport, Severity, utc_now

log = structlog.get_logger(__name__)


class AlertSink(Protocol):
  def notify(self, payload: AlertPayload) -> None: ...


class LogAlertSink:
  """Default sink: alerts become warning log lines."""

  def notify(self, payload: AlertPayload) -> None:
    log.warning("Deployment alert", alert=json.dumps(payload.to_dict(), sort_keys=True))


def build_alert_payload(report: RunReport, severity: Severity) -> AlertPayload:
  return AlertPayload(
    timestamp=report.finished_at or utc_now(),
    environment=report.environment,
    overall_status=report.overall_status,
    severity=severity,
    failed_resource_types=tuple(FailedResource(tag, error) for tag, error in report.failed_resources()),
  )


class AlertEmitter:
  def __init__(self, sink: AlertSink) -> None:
    self._sink = sink

  def emit(self, report: RunReport, severity: Severity) -> AlertPayload:
    payload = build_alert_payload(report, severity)
    self._sink.notify(payload)
    return payload
