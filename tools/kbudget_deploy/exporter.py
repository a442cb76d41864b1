"""Persist run reports as a timestamped record plus a per-environment ``latest`` copy."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import structlog

from kbudget_deploy.models import RunReport

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ExportResult:
  path: Optional[Path]
  latest_path: Optional[Path]
  error: Optional[str] = None

  @property
  def degraded(self) -> bool:
    return self.error is not None


def report_paths(output_dir: Path, environment: str, timestamp: str) -> Tuple[Path, Path]:
  return (
    output_dir / f"deployment-results_{environment}_{timestamp}.json",
    output_dir / f"deployment-results_{environment}_latest.json",
  )


def _write_json(path: Path, payload: str) -> None:
  tmp_path = path.with_name(path.name + ".tmp")
  tmp_path.write_text(payload, encoding="utf-8")
  os.replace(tmp_path, path)


class ResultExporter:
  def __init__(self, output_dir: Path) -> None:
    self._output_dir = output_dir

  def export(self, report: RunReport) -> ExportResult:
    """Write both records. Failures are logged as a degraded export, never raised."""
    path, latest_path = report_paths(self._output_dir, report.environment.value, report.timestamp)
    payload = json.dumps(report.to_dict(), indent=2, default=str)
    written: Optional[Path] = None
    try:
      self._output_dir.mkdir(parents=True, exist_ok=True)
      _write_json(path, payload)
      written = path
      _write_json(latest_path, payload)
    except OSError as exc:
      log.error("Exporting deployment results failed, run is degraded", path=str(path), error=str(exc))
      return ExportResult(path=written, latest_path=None, error=str(exc))
    log.info("Deployment results saved", success=True, path=str(path), latest=str(latest_path))
    return ExportResult(path=path, latest_path=latest_path)
